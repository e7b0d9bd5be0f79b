from __future__ import annotations

import datetime as _dt
import threading
import time
from pathlib import Path
from typing import Any, Dict, Optional

import orjson

from .hashing import chain_next
from .schemas import JournalEvent
from .settings import settings


JOURNAL_FILE = "journal.jsonl"


class RunJournal:
    """Hash-chained JSONL log of the steps of each capture run."""

    def __init__(self, base_dir: Optional[str] = None) -> None:
        self.base_dir = Path(base_dir) if base_dir else None
        self._last_hash_by_run: Dict[str, str] = {}
        self._lock = threading.Lock()

    def path_for(self, run_id: str) -> Path:
        if self.base_dir is None:
            return settings.journal_dir_for(run_id) / JOURNAL_FILE
        run_dir = self.base_dir / run_id
        run_dir.mkdir(parents=True, exist_ok=True)
        return run_dir / JOURNAL_FILE

    def _resolve_prev_hash(self, run_id: str, path: Path) -> str:
        if run_id in self._last_hash_by_run:
            return self._last_hash_by_run[run_id]
        # Resume a chain written by an earlier process
        if path.exists():
            lines = [ln for ln in path.read_bytes().splitlines() if ln.strip()]
            if lines:
                return orjson.loads(lines[-1]).get("event_hash", "")
        return ""

    def log_event(self, run_id: str, step: str, status: str, details: Optional[Dict[str, Any]] = None) -> JournalEvent:
        with self._lock:
            path = self.path_for(run_id)
            prev_hash = self._resolve_prev_hash(run_id, path)
            event_dict = {
                "run_id": run_id,
                "step": step,
                "status": status,
                "ts_iso": _dt.datetime.now(tz=_dt.timezone.utc).isoformat(timespec="microseconds"),
                "ts_ns": time.perf_counter_ns(),
                "details": details or {},
                "prev_event_hash": prev_hash,
            }
            event_hash = chain_next(prev_hash, event_dict)
            event = JournalEvent(**{**event_dict, "event_hash": event_hash})

            line = orjson.dumps(event.model_dump(), option=orjson.OPT_SORT_KEYS)
            with open(path, "ab") as f:
                f.write(line + b"\n")
            self._last_hash_by_run[run_id] = event_hash
            return event


def verify_chain(journal_path: Path) -> dict:
    """Re-check every link of a journal; report the first broken line."""
    events = 0
    run_id = None
    prev = ""
    break_index = -1
    for idx, line in enumerate(journal_path.read_bytes().splitlines()):
        if not line.strip():
            continue
        try:
            ev = orjson.loads(line)
        except orjson.JSONDecodeError:
            break_index = idx
            break
        if ev.get("prev_event_hash", "") != prev:
            break_index = idx
            break
        payload = {k: v for k, v in ev.items() if k != "event_hash"}
        if chain_next(prev, payload) != ev.get("event_hash"):
            break_index = idx
            break
        prev = ev["event_hash"]
        run_id = run_id or ev.get("run_id")
        events += 1
    return {
        "run_id": run_id,
        "events": events,
        "valid": break_index == -1,
        "break_index": None if break_index == -1 else break_index,
    }
