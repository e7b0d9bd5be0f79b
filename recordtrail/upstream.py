from __future__ import annotations

import datetime as _dt
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import orjson
import requests
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import UpstreamUnavailableError
from .logging_utils import get_logger
from .settings import settings


logger = get_logger(__name__)

RECORD_FIELDS = (
    "Id",
    "Name",
    "Account__c",
    "Status__c",
    "Account_Site__c",
    "TenantRequestAction__c",
    "Requested_Install_Date__c",
    "RequestedGoLiveDate__c",
    "Deployment__c",
    "Deployment__r.Name",
    "Tenant_Name__c",
    "Billing_Status__c",
    "SMLErrorMessage__c",
    "Payload_Data__c",
    "CreatedBy.Name",
    "CreatedDate",
    "LastModifiedDate",
)


class _TransientHTTPError(Exception):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


def soql_datetime(value: _dt.datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=_dt.timezone.utc)
    return value.astimezone(_dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _soql_quote(value: str) -> str:
    return "'" + value.replace("\\", "\\\\").replace("'", "\\'") + "'"


class SalesforceSource:
    """Read-only client for the request records held in Salesforce.

    Authenticates with the client-credentials flow and caches the token in a
    small JSON file so consecutive runs reuse it.
    """

    def __init__(
        self,
        login_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        token_file: Optional[str] = None,
        session: Optional[requests.Session] = None,
        upstream_cfg: Optional[Dict[str, Any]] = None,
        retries_cfg: Optional[Dict[str, Any]] = None,
    ) -> None:
        cfg = dict(settings.upstream)
        cfg.update(upstream_cfg or {})
        self.cfg = cfg
        self.login_url = (login_url or cfg.get("login_url") or "").rstrip("/")
        self.client_id = client_id or os.getenv("SF_CLIENT_ID", "")
        self.client_secret = client_secret or os.getenv("SF_CLIENT_SECRET", "")
        self.token_file = Path(token_file or cfg.get("token_file") or ".salesforce_auth.json")
        self.session = session or requests.Session()
        self.timeout = float(cfg.get("request_timeout_s", 30))
        self.api_version = str(cfg.get("api_version", "v59.0"))
        self.object_name = str(cfg.get("object_name", "Prof_Services_Request__c"))
        self.name_prefix = str(cfg.get("name_prefix", "PS-"))
        self.batch_size = max(int(cfg.get("batch_size", 200)), 1)
        self._access_token: Optional[str] = None
        self._instance_url: Optional[str] = None

        r = dict(settings.retries)
        r.update(retries_cfg or {})
        self._send = retry(
            reraise=True,
            stop=stop_after_attempt(int(r.get("max_attempts", 3))),
            wait=wait_exponential(
                multiplier=int(r.get("backoff_initial_ms", 300)) / 1000.0,
                min=int(r.get("backoff_initial_ms", 300)) / 1000.0,
                max=int(r.get("backoff_max_ms", 3000)) / 1000.0,
            ),
            retry=retry_if_exception_type((requests.ConnectionError, requests.Timeout, _TransientHTTPError)),
        )(self._send_once)

    # Auth

    def _load_cached_token(self) -> bool:
        if not self.token_file.exists():
            return False
        try:
            info = orjson.loads(self.token_file.read_bytes())
        except (OSError, orjson.JSONDecodeError):
            logger.warning("Ignoring unreadable token file %s", self.token_file)
            return False
        if not isinstance(info, dict) or not info.get("accessToken") or not info.get("instanceUrl"):
            return False
        self._access_token = info["accessToken"]
        self._instance_url = str(info["instanceUrl"]).rstrip("/")
        logger.info("Using cached access token for %s", self._instance_url)
        return True

    def authenticate(self, force: bool = False) -> None:
        if not force and self._access_token:
            return
        if not force and self._load_cached_token():
            return
        if not (self.login_url and self.client_id and self.client_secret):
            raise UpstreamUnavailableError(
                "Salesforce credentials are not configured (SF_LOGIN_URL, SF_CLIENT_ID, SF_CLIENT_SECRET)"
            )
        try:
            resp = self._send(
                "POST",
                f"{self.login_url}/services/oauth2/token",
                data={
                    "grant_type": "client_credentials",
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                },
            )
        except (requests.RequestException, _TransientHTTPError) as e:
            raise UpstreamUnavailableError(f"Salesforce authentication failed: {e}") from e
        if resp.status_code != 200:
            raise UpstreamUnavailableError(f"Salesforce authentication rejected: HTTP {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as e:
            raise UpstreamUnavailableError("Salesforce authentication returned a non-JSON response") from e
        if not isinstance(body, dict):
            raise UpstreamUnavailableError("Salesforce authentication returned an unexpected response")
        self._access_token = body.get("access_token")
        self._instance_url = str(body.get("instance_url") or "").rstrip("/")
        if not self._access_token or not self._instance_url:
            raise UpstreamUnavailableError("Salesforce authentication returned no token")
        try:
            self.token_file.write_bytes(
                orjson.dumps({"accessToken": self._access_token, "instanceUrl": self._instance_url})
            )
        except OSError as e:
            logger.warning("Could not write token file %s: %s", self.token_file, e)
        logger.info("Authenticated against %s", self._instance_url)

    # Transport

    def _send_once(self, method: str, url: str, **kwargs) -> requests.Response:
        resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        if resp.status_code == 429 or resp.status_code >= 500:
            raise _TransientHTTPError(resp.status_code, f"HTTP {resp.status_code} from {url}")
        return resp

    def _get_json(self, path_or_url: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        self.authenticate()
        for attempt in (1, 2):
            url = path_or_url if path_or_url.startswith("http") else f"{self._instance_url}{path_or_url}"
            try:
                resp = self._send(
                    "GET",
                    url,
                    params=params,
                    headers={"Authorization": f"Bearer {self._access_token}", "Accept": "application/json"},
                )
            except (requests.RequestException, _TransientHTTPError) as e:
                raise UpstreamUnavailableError(f"Salesforce request failed: {e}") from e
            if resp.status_code == 401 and attempt == 1:
                # Cached token expired
                logger.info("Access token rejected, re-authenticating")
                self._access_token = None
                self.authenticate(force=True)
                continue
            if resp.status_code != 200:
                raise UpstreamUnavailableError(f"Salesforce query failed: HTTP {resp.status_code}: {resp.text[:200]}")
            try:
                return resp.json()
            except ValueError as e:
                raise UpstreamUnavailableError("Salesforce returned a non-JSON response") from e
        raise UpstreamUnavailableError("Salesforce rejected the access token")

    def query(self, soql: str) -> List[Dict[str, Any]]:
        """Run a SOQL query and follow nextRecordsUrl until done."""
        body = self._get_json(f"/services/data/{self.api_version}/query", params={"q": soql})
        records: List[Dict[str, Any]] = list(body.get("records") or [])
        while not body.get("done", True) and body.get("nextRecordsUrl"):
            body = self._get_json(body["nextRecordsUrl"])
            records.extend(body.get("records") or [])
        return records

    # Record fetches

    def _select(self) -> str:
        return f"SELECT {', '.join(RECORD_FIELDS)} FROM {self.object_name}"

    def fetch_modified(self, start: _dt.datetime, end: _dt.datetime) -> List[Dict[str, Any]]:
        soql = (
            f"{self._select()} "
            f"WHERE LastModifiedDate >= {soql_datetime(start)} "
            f"AND LastModifiedDate <= {soql_datetime(end)} "
            f"AND Name LIKE {_soql_quote(self.name_prefix + '%')} "
            "ORDER BY LastModifiedDate ASC"
        )
        rows = self.query(soql)
        logger.info("Fetched %d records modified between %s and %s", len(rows), soql_datetime(start), soql_datetime(end))
        return rows

    def fetch_by_ids(self, ids: Iterable[str]) -> List[Dict[str, Any]]:
        unique = list(dict.fromkeys(i for i in ids if i))
        rows: List[Dict[str, Any]] = []
        for i in range(0, len(unique), self.batch_size):
            batch = unique[i:i + self.batch_size]
            soql = f"{self._select()} WHERE Id IN ({', '.join(_soql_quote(x) for x in batch)})"
            rows.extend(self.query(soql))
        logger.info("Fetched %d of %d requested records", len(rows), len(unique))
        return rows
