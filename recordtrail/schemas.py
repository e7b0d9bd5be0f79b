from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


CaptureReason = Literal["initial", "periodic"]
RunStatus = Literal["running", "completed", "failed"]


class ModelEntitlement(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["model"] = "model"
    product_code: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    quantity: Optional[float] = None


class DataEntitlement(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["data"] = "data"
    product_code: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None


class AppEntitlement(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["app"] = "app"
    product_code: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    quantity: Optional[float] = None
    package_name: Optional[str] = None


Entitlement = Annotated[
    Union[ModelEntitlement, DataEntitlement, AppEntitlement],
    Field(discriminator="kind"),
]


class TrackedRecord(BaseModel):
    """Current upstream state of one record, as parsed from a source row."""

    model_config = ConfigDict(frozen=True)

    record_id: str
    record_label: str
    status: str
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    account_site: Optional[str] = None
    request_type: Optional[str] = None
    requested_install_date: Optional[str] = None
    requested_go_live_date: Optional[str] = None
    deployment_id: Optional[str] = None
    deployment_name: Optional[str] = None
    tenant_name: Optional[str] = None
    billing_status: Optional[str] = None
    error_message: Optional[str] = None
    created_by: Optional[str] = None
    created_at: Optional[str] = None
    last_modified_at: Optional[str] = None
    entitlements: List[Entitlement] = Field(default_factory=list)
    raw_fields: Dict[str, Any] = Field(default_factory=dict)


class SnapshotDraft(BaseModel):
    """A snapshot ready to be appended; the store stamps captured_at."""

    snapshot_id: str
    record_id: Optional[str]
    seq: int = Field(..., ge=0)
    record_label: Optional[str] = None
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    status: Optional[str]
    request_type: Optional[str] = None
    fingerprint: str
    raw_fields: Dict[str, Any] = Field(default_factory=dict)
    upstream_modified_at: Optional[str] = None
    upstream_created_at: Optional[str] = None
    capture_reason: str
    # captured_at of the predecessor; the new row is never stamped earlier
    not_before: Optional[str] = None


class StatusChangeDraft(BaseModel):
    event_id: str
    record_id: str
    previous_status: str
    new_status: str
    prior_snapshot_id: str
    new_snapshot_id: str


class SnapshotRecord(BaseModel):
    snapshot_id: str
    record_id: str
    seq: int
    record_label: Optional[str] = None
    account_id: Optional[str] = None
    account_name: Optional[str] = None
    status: str
    request_type: Optional[str] = None
    fingerprint: str
    raw_fields: Dict[str, Any] = Field(default_factory=dict)
    upstream_modified_at: Optional[str] = None
    upstream_created_at: Optional[str] = None
    captured_at: str
    capture_reason: CaptureReason


class StatusChangeRecord(BaseModel):
    event_id: str
    record_id: str
    previous_status: str
    new_status: str
    prior_snapshot_id: str
    new_snapshot_id: str
    detected_at: str


class CaptureRunRecord(BaseModel):
    run_id: str
    started_at: str
    completed_at: Optional[str] = None
    window_start: Optional[str] = None
    window_end: Optional[str] = None
    records_processed: int = 0
    new_snapshots: int = 0
    changes_detected: int = 0
    records_failed: int = 0
    status: RunStatus
    error_message: Optional[str] = None


class CaptureWindow(BaseModel):
    start: datetime
    end: datetime


class TimelineEntry(BaseModel):
    snapshot: SnapshotRecord
    status_change: Optional[StatusChangeRecord] = None


class SearchFilters(BaseModel):
    query: Optional[str] = None
    account_name: Optional[str] = None
    status: Optional[str] = None
    captured_from: Optional[str] = None
    captured_to: Optional[str] = None
    latest_only: bool = False


class SnapshotPage(BaseModel):
    records: List[SnapshotRecord]
    page: int
    limit: int
    total_count: int
    total_pages: int


class AuditStats(BaseModel):
    total_records: int = 0
    total_snapshots: int = 0
    total_status_changes: int = 0
    earliest_snapshot_at: Optional[str] = None
    latest_snapshot_at: Optional[str] = None


class VolumeWeek(BaseModel):
    week_start: str  # Monday, YYYY-MM-DD
    requests_created: int = 0
    unique_accounts: int = 0
    request_types: List[str] = Field(default_factory=list)


class RequestVolume(BaseModel):
    """Records created per week, counted from each record's first snapshot."""

    period_start: str
    period_end: str
    months: int
    days_in_period: int
    weeks_in_period: float
    total_requests: int = 0
    unique_accounts: int = 0
    weeks_with_activity: int = 0
    requests_per_week: float = 0.0
    requests_per_day: float = 0.0
    request_types: Dict[str, int] = Field(default_factory=dict)
    weekly: List[VolumeWeek] = Field(default_factory=list)


class RecordError(BaseModel):
    record_id: Optional[str] = None
    record_label: Optional[str] = None
    error_type: str
    error_message: str


class BackfillSummary(BaseModel):
    total: int = 0
    succeeded: int = 0
    skipped: int = 0
    failed: int = 0
    duration_seconds: float = 0.0
    errors: List[RecordError] = Field(default_factory=list)


class JournalEvent(BaseModel):
    run_id: str
    step: str
    status: Literal["ok", "error"]
    ts_iso: str  # UTC ISO 8601
    ts_ns: int   # monotonic clock nanoseconds
    details: Dict[str, Any] = Field(default_factory=dict)
    prev_event_hash: str
    event_hash: str
