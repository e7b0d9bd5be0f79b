from __future__ import annotations

import datetime as _dt
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout, as_completed
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol

from .detector import RecordAndStatusChange, RecordOnly, Skip, decide
from .errors import ConcurrentWriteConflict, InvalidSnapshotError, StoreUnavailableError, UpstreamUnavailableError
from .journal import RunJournal
from .logging_utils import get_logger
from .normalize import normalize_record
from .schemas import CaptureRunRecord, CaptureWindow, RecordError
from .settings import settings
from .storage import SnapshotStore


logger = get_logger(__name__)


class RecordSource(Protocol):
    def fetch_modified(self, start: _dt.datetime, end: _dt.datetime) -> List[Dict[str, Any]]: ...

    def fetch_by_ids(self, ids) -> List[Dict[str, Any]]: ...


@dataclass
class CaptureOptions:
    overlap_days: int = 2
    initial_lookback_days: int = 30
    timeout_s: float = 600.0
    max_workers: int = 4
    error_summary_limit: int = 5

    @classmethod
    def from_settings(cls) -> "CaptureOptions":
        c = settings.capture
        return cls(
            overlap_days=int(c.get("overlap_days", 2)),
            initial_lookback_days=int(c.get("initial_lookback_days", 30)),
            timeout_s=float(c.get("timeout_s", 600)),
            max_workers=int(c.get("max_workers", 4)),
            error_summary_limit=int(c.get("error_summary_limit", 5)),
        )


class _RunState:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.new_snapshots = 0
        self.changes_detected = 0
        self.skipped = 0
        self.errors: List[RecordError] = []

    def wrote(self, status_changed: bool) -> None:
        with self._lock:
            self.new_snapshots += 1
            if status_changed:
                self.changes_detected += 1

    def skip(self) -> None:
        with self._lock:
            self.skipped += 1

    def fail(self, row: Dict[str, Any], exc: Exception) -> RecordError:
        err = RecordError(
            record_id=row.get("Id") if isinstance(row, dict) else None,
            record_label=row.get("Name") if isinstance(row, dict) else None,
            error_type=type(exc).__name__,
            error_message=str(exc),
        )
        with self._lock:
            self.errors.append(err)
        return err


def _group_by_record(rows: List[Dict[str, Any]]) -> List[List[Dict[str, Any]]]:
    groups: Dict[Any, List[Dict[str, Any]]] = {}
    orphans: List[List[Dict[str, Any]]] = []
    for row in rows:
        rid = row.get("Id") if isinstance(row, dict) else None
        if not rid:
            orphans.append([row])
            continue
        groups.setdefault(rid, []).append(row)
    return list(groups.values()) + orphans


def _parse_iso(value: str) -> _dt.datetime:
    dt = _dt.datetime.fromisoformat(value.replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=_dt.timezone.utc)
    return dt


class CaptureOrchestrator:
    """Drives one capture run: fetch, compare against the latest snapshot, append."""

    def __init__(
        self,
        store: SnapshotStore,
        source: RecordSource,
        journal: Optional[RunJournal] = None,
        options: Optional[CaptureOptions] = None,
    ) -> None:
        self.store = store
        self.source = source
        self.journal = journal
        self.options = options or CaptureOptions.from_settings()
        self.last_errors: List[RecordError] = []

    def default_window(self, now: Optional[_dt.datetime] = None) -> CaptureWindow:
        now = now or _dt.datetime.now(tz=_dt.timezone.utc)
        last = self.store.last_successful_run()
        if last is not None:
            start = _parse_iso(last.started_at) - _dt.timedelta(days=self.options.overlap_days)
        else:
            start = now - _dt.timedelta(days=self.options.initial_lookback_days)
        return CaptureWindow(start=start, end=now)

    def _log(self, run_id: str, step: str, status: str, details: Dict[str, Any]) -> None:
        if self.journal is not None:
            self.journal.log_event(run_id, step, status, details)

    def _fail(self, run: CaptureRunRecord, message: str, processed: int = 0, state: Optional[_RunState] = None) -> CaptureRunRecord:
        logger.error("Capture run %s failed: %s", run.run_id, message)
        state = state or _RunState()
        self.last_errors = list(state.errors)
        finished = self.store.finish_run(
            run.run_id,
            "failed",
            records_processed=processed,
            new_snapshots=state.new_snapshots,
            changes_detected=state.changes_detected,
            records_failed=len(state.errors),
            error_message=message,
        )
        self._log(run.run_id, "run_failed", "error", {"error": message, "new_snapshots": state.new_snapshots})
        return finished

    def _summarize(self, errors: List[RecordError], processed: int) -> Optional[str]:
        if not errors:
            return None
        limit = max(self.options.error_summary_limit, 1)
        parts = [f"{e.record_label or e.record_id or '?'}: {e.error_type}: {e.error_message}" for e in errors[:limit]]
        more = f" (+{len(errors) - limit} more)" if len(errors) > limit else ""
        return f"{len(errors)} of {processed} records failed: " + "; ".join(parts) + more

    def _record_failed(self, run_id: str, row: Dict[str, Any], state: _RunState, exc: Exception) -> None:
        err = state.fail(row, exc)
        logger.warning("Record %s failed: %s: %s", err.record_label or err.record_id or "?", err.error_type, exc)
        self._log(run_id, "record.failed", "error", err.model_dump())

    def _process_row(self, row: Dict[str, Any], state: _RunState, cancel: threading.Event) -> bool:
        record = normalize_record(row)
        decision = decide(record, self.store.latest(record.record_id))
        if isinstance(decision, Skip):
            state.skip()
            return True
        if cancel.is_set():
            return False
        try:
            if isinstance(decision, RecordAndStatusChange):
                self.store.append(decision.snapshot, decision.event)
                state.wrote(status_changed=True)
                logger.info(
                    "%s status %s -> %s",
                    record.record_label,
                    decision.event.previous_status,
                    decision.event.new_status,
                )
            elif isinstance(decision, RecordOnly):
                self.store.append(decision.snapshot)
                state.wrote(status_changed=False)
        except ConcurrentWriteConflict:
            logger.debug("Snapshot of %s already written by another run", record.record_label)
            state.skip()
        return True

    def _process_group(self, run_id: str, rows: List[Dict[str, Any]], state: _RunState, cancel: threading.Event) -> None:
        # Rows of one record are handled in order so each sees the previous write
        for row in rows:
            if cancel.is_set():
                return
            try:
                if not self._process_row(row, state, cancel):
                    return
            except StoreUnavailableError:
                raise
            except InvalidSnapshotError as e:
                self._record_failed(run_id, row, state, e)
            except Exception as e:
                # One bad record never aborts the batch
                logger.exception("Unexpected error on record %s", row.get("Name") if isinstance(row, dict) else "?")
                self._record_failed(run_id, row, state, e)

    def run_capture(self, window: Optional[CaptureWindow] = None) -> CaptureRunRecord:
        started = time.monotonic()
        window = window or self.default_window()
        run = self.store.create_run(window.start, window.end)
        logger.info("Capture run %s started for %s .. %s", run.run_id, window.start.isoformat(), window.end.isoformat())
        self._log(
            run.run_id,
            "run_started",
            "ok",
            {
                "window_start": run.window_start,
                "window_end": run.window_end,
                "cfg_hash": settings.cfg_hash,
            },
        )

        timeout = self.options.timeout_s
        try:
            rows = self.source.fetch_modified(window.start, window.end)
        except (UpstreamUnavailableError, StoreUnavailableError) as e:
            return self._fail(run, str(e))
        except Exception as e:
            logger.exception("Unexpected error while fetching records for run %s", run.run_id)
            return self._fail(run, f"{type(e).__name__}: {e}")
        if time.monotonic() - started > timeout:
            return self._fail(run, f"Capture timed out after {timeout:.0f}s while fetching records")

        processed = len(rows)
        groups = _group_by_record(rows)
        self._log(run.run_id, "fetch.completed", "ok", {"rows": processed, "records": len(groups)})

        state = _RunState()
        cancel = threading.Event()
        fatal: Optional[str] = None
        pool = ThreadPoolExecutor(max_workers=max(self.options.max_workers, 1), thread_name_prefix="capture")
        try:
            futures = [pool.submit(self._process_group, run.run_id, g, state, cancel) for g in groups]
            remaining = max(timeout - (time.monotonic() - started), 0.0)
            try:
                for fut in as_completed(futures, timeout=remaining):
                    try:
                        fut.result()
                    except StoreUnavailableError as e:
                        fatal = str(e)
                        cancel.set()
                        break
                    except Exception as e:
                        logger.exception("Unexpected error while capturing run %s", run.run_id)
                        fatal = f"{type(e).__name__}: {e}"
                        cancel.set()
                        break
            except FuturesTimeout:
                fatal = f"Capture timed out after {timeout:.0f}s"
                cancel.set()
        finally:
            # In-flight records stop at their next cancel check; counts are read after they drain
            pool.shutdown(wait=True, cancel_futures=True)

        if fatal is not None:
            summary = self._summarize(state.errors, processed)
            return self._fail(run, fatal + (f"; {summary}" if summary else ""), processed, state)

        self.last_errors = list(state.errors)
        finished = self.store.finish_run(
            run.run_id,
            "completed",
            records_processed=processed,
            new_snapshots=state.new_snapshots,
            changes_detected=state.changes_detected,
            records_failed=len(state.errors),
            error_message=self._summarize(state.errors, processed),
        )
        self._log(
            run.run_id,
            "run_finished",
            "ok",
            {
                "records_processed": processed,
                "new_snapshots": state.new_snapshots,
                "changes_detected": state.changes_detected,
                "records_failed": len(state.errors),
                "skipped": state.skipped,
                "duration_s": round(time.monotonic() - started, 3),
            },
        )
        logger.info(
            "Capture run %s completed: %d processed, %d new snapshots, %d status changes, %d failed",
            run.run_id,
            processed,
            state.new_snapshots,
            state.changes_detected,
            len(state.errors),
        )
        return finished
