from __future__ import annotations

import time
from typing import Any, Dict, Iterable

from .detector import build_draft
from .errors import ConcurrentWriteConflict, InvalidSnapshotError
from .logging_utils import get_logger
from .schemas import BackfillSummary, RecordError
from .storage import SnapshotStore
from .normalize import normalize_record


logger = get_logger(__name__)


def backfill(store: SnapshotStore, rows: Iterable[Dict[str, Any]]) -> BackfillSummary:
    """Write a baseline snapshot for every record that has no history yet.

    Safe to re-run: records with an existing snapshot are skipped. Only
    StoreUnavailableError escapes; other per-record errors are collected.
    """
    started = time.monotonic()
    summary = BackfillSummary()
    for row in rows:
        summary.total += 1
        label = row.get("Name") if isinstance(row, dict) else None
        try:
            record = normalize_record(row)
            if store.latest(record.record_id) is not None:
                summary.skipped += 1
                continue
            store.append(build_draft(record, 0, "initial"))
            summary.succeeded += 1
        except ConcurrentWriteConflict:
            summary.skipped += 1
        except InvalidSnapshotError as e:
            summary.failed += 1
            summary.errors.append(
                RecordError(
                    record_id=row.get("Id") if isinstance(row, dict) else None,
                    record_label=label,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
            )
            logger.warning("Backfill skipped %s: %s", label or "?", e)
        if summary.total % 100 == 0:
            logger.info("Backfill progress: %d processed, %d baselined", summary.total, summary.succeeded)

    summary.duration_seconds = round(time.monotonic() - started, 3)
    logger.info(
        "Backfill done: %d total, %d baselined, %d skipped, %d failed",
        summary.total,
        summary.succeeded,
        summary.skipped,
        summary.failed,
    )
    return summary
