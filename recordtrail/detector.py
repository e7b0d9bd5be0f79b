from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Optional, Union

from .normalize import compute_fingerprint, parse_upstream_ts
from .schemas import SnapshotDraft, SnapshotRecord, StatusChangeDraft, TrackedRecord


@dataclass(frozen=True)
class Skip:
    reason: str = "unchanged"


@dataclass(frozen=True)
class RecordOnly:
    snapshot: SnapshotDraft


@dataclass(frozen=True)
class RecordAndStatusChange:
    snapshot: SnapshotDraft
    event: StatusChangeDraft


Decision = Union[Skip, RecordOnly, RecordAndStatusChange]


def build_draft(
    record: TrackedRecord,
    seq: int,
    capture_reason: str,
    fingerprint: Optional[str] = None,
    not_before: Optional[str] = None,
) -> SnapshotDraft:
    return SnapshotDraft(
        snapshot_id=str(uuid.uuid4()),
        record_id=record.record_id,
        seq=seq,
        record_label=record.record_label,
        account_id=record.account_id,
        account_name=record.account_name,
        status=record.status,
        request_type=record.request_type,
        fingerprint=fingerprint or compute_fingerprint(record),
        raw_fields=dict(record.raw_fields),
        upstream_modified_at=record.last_modified_at,
        upstream_created_at=record.created_at,
        capture_reason=capture_reason,
        not_before=not_before,
    )


def decide(current: TrackedRecord, previous: Optional[SnapshotRecord]) -> Decision:
    """Compare the current upstream state with the latest stored snapshot.

    Pure: no I/O, ids are generated here so the caller can append as is.
    """
    fingerprint = compute_fingerprint(current)
    if previous is None:
        return RecordOnly(build_draft(current, 0, "initial", fingerprint))

    if previous.fingerprint == fingerprint:
        return Skip()

    # An overlapping run may hold an older copy of the record than the one stored
    seen = parse_upstream_ts(current.last_modified_at)
    stored = parse_upstream_ts(previous.upstream_modified_at)
    if seen is not None and stored is not None and seen < stored:
        return Skip("stale")

    draft = build_draft(current, previous.seq + 1, "periodic", fingerprint, not_before=previous.captured_at)
    if previous.status == current.status:
        return RecordOnly(draft)

    event = StatusChangeDraft(
        event_id=str(uuid.uuid4()),
        record_id=current.record_id,
        previous_status=previous.status,
        new_status=current.status,
        prior_snapshot_id=previous.snapshot_id,
        new_snapshot_id=draft.snapshot_id,
    )
    return RecordAndStatusChange(draft, event)
