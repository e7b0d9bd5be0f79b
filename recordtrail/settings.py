from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import orjson
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError


_PROJECT_ROOT = Path(__file__).resolve().parents[1]
_CONFIG_PATH = _PROJECT_ROOT / "config" / "config.json"


class _DatabaseCfg(BaseModel):
    url: str
    busy_timeout_s: int = 30


class _JournalCfg(BaseModel):
    base_dir: str
    enabled: bool = True


class _RetriesCfg(BaseModel):
    max_attempts: int
    backoff_initial_ms: int
    backoff_max_ms: int


class _RawConfig(BaseModel):
    database: _DatabaseCfg
    journal: _JournalCfg
    retries: _RetriesCfg
    capture: Optional[Dict[str, Any]] = None
    backfill: Optional[Dict[str, Any]] = None
    upstream: Optional[Dict[str, Any]] = None
    logging: Optional[Dict[str, Any]] = None
    api: Optional[Dict[str, Any]] = None


class Settings(BaseModel):
    database_url: str = Field(..., description="SQLAlchemy URL of the snapshot store")
    journal_base_dir: str = Field(..., description="Base directory for run journals")
    database: Dict[str, Any]
    journal: Dict[str, Any]
    retries: Dict[str, Any]
    capture: Dict[str, Any]
    backfill: Dict[str, Any]
    upstream: Dict[str, Any]
    logging: Dict[str, Any]
    api: Dict[str, Any]

    @classmethod
    def load(cls) -> "Settings":
        load_dotenv(dotenv_path=_PROJECT_ROOT / ".env", override=False)

        try:
            raw_bytes = _CONFIG_PATH.read_bytes()
        except FileNotFoundError as e:
            raise FileNotFoundError(f"Missing config file at {_CONFIG_PATH}") from e
        try:
            raw_obj = orjson.loads(raw_bytes)
        except orjson.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in config file: {_CONFIG_PATH}") from e
        try:
            validated = _RawConfig.model_validate(raw_obj)
        except ValidationError as e:
            raise ValueError(f"Invalid config structure: {e}") from e

        capture_cfg = {
            "overlap_days": 2,
            "initial_lookback_days": 30,
            "timeout_s": 600,
            "max_workers": 4,
            "error_summary_limit": 5,
        }
        if validated.capture:
            capture_cfg.update(validated.capture)

        backfill_cfg = {
            "lookback_days": 1825,
        }
        if validated.backfill:
            backfill_cfg.update(validated.backfill)

        upstream_cfg = {
            "api_version": "v59.0",
            "object_name": "Prof_Services_Request__c",
            "name_prefix": "PS-",
            "request_timeout_s": 30,
            "batch_size": 200,
            "token_file": ".salesforce_auth.json",
        }
        if validated.upstream:
            upstream_cfg.update(validated.upstream)
        # Secrets and endpoints come from the environment only
        upstream_cfg["login_url"] = os.getenv("SF_LOGIN_URL", upstream_cfg.get("login_url", ""))
        upstream_cfg["token_file"] = os.getenv("SF_TOKEN_FILE", upstream_cfg["token_file"])

        logging_cfg = {
            "level": "INFO",
            "file": None,
        }
        if validated.logging:
            logging_cfg.update(validated.logging)
        logging_cfg["level"] = os.getenv("LOG_LEVEL", logging_cfg["level"])
        logging_cfg["file"] = os.getenv("LOG_FILE", logging_cfg["file"])

        api_cfg = {
            "host": "127.0.0.1",
            "port": 8080,
            "max_page_size": 100,
        }
        if validated.api:
            api_cfg.update(validated.api)

        settings = cls(
            database_url=os.getenv("DATABASE_URL", validated.database.url),
            journal_base_dir=validated.journal.base_dir,
            database=validated.database.model_dump(),
            journal=validated.journal.model_dump(),
            retries=validated.retries.model_dump(),
            capture=capture_cfg,
            backfill=backfill_cfg,
            upstream=upstream_cfg,
            logging=logging_cfg,
            api=api_cfg,
        )
        return settings

    @property
    def cfg_hash(self) -> str:
        from hashlib import sha256

        try:
            raw_bytes = _CONFIG_PATH.read_bytes()
        except FileNotFoundError:
            raw_bytes = b"{}"
        try:
            obj = orjson.loads(raw_bytes)
        except orjson.JSONDecodeError:
            obj = {}
        canonical = orjson.dumps(obj, option=orjson.OPT_SORT_KEYS)
        return sha256(canonical).hexdigest()

    def resolved_database_url(self) -> str:
        # Relative SQLite paths are anchored at the project root
        prefix = "sqlite:///"
        url = self.database_url
        if url.startswith(prefix) and url != f"{prefix}:memory:":
            p = Path(url[len(prefix):])
            if not p.is_absolute():
                return f"{prefix}{_PROJECT_ROOT / p}"
        return url

    def journal_dir_for(self, run_id: str) -> Path:
        base = Path(self.journal_base_dir)
        if not base.is_absolute():
            base = _PROJECT_ROOT / base
        run_dir = base / run_id
        base.mkdir(parents=True, exist_ok=True)
        run_dir.mkdir(parents=True, exist_ok=True)
        return run_dir


# Singleton settings instance for convenience
settings = Settings.load()
