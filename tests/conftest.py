from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

import orjson
import pytest

from recordtrail.capture import CaptureOptions
from recordtrail.errors import UpstreamUnavailableError
from recordtrail.storage import SnapshotStore


def make_row(
    record_id: str = "a01X1",
    name: str = "PS-4215",
    status: str = "Pending",
    account: Optional[str] = "Acme Re",
    request_type: Optional[str] = "Provision",
    install_date: Optional[str] = "2024-03-01",
    entitlements: Optional[List[Dict[str, Any]]] = None,
    modified: str = "2024-02-01T10:00:00.000+0000",
    **extra: Any,
) -> Dict[str, Any]:
    if entitlements is None:
        entitlements = [
            {"productCode": "RMS-EQ", "startDate": "2024-03-01", "endDate": "2025-03-01", "quantity": 1},
        ]
    payload = {"properties": {"provisioningDetail": {"entitlements": {"modelEntitlements": entitlements}}}}
    row = {
        "attributes": {"type": "Prof_Services_Request__c"},
        "Id": record_id,
        "Name": name,
        "Status__c": status,
        "Account__c": account,
        "TenantRequestAction__c": request_type,
        "Requested_Install_Date__c": install_date,
        "Payload_Data__c": orjson.dumps(payload).decode(),
        "LastModifiedDate": modified,
    }
    row.update(extra)
    return row


class FakeSource:
    """In-memory stand-in for the Salesforce source."""

    def __init__(self, rows: Optional[List[Dict[str, Any]]] = None, error: Optional[Exception] = None) -> None:
        self.rows = list(rows or [])
        self.error = error
        self.calls: List[tuple] = []

    def fetch_modified(self, start, end):
        self.calls.append(("modified", start, end))
        if self.error is not None:
            raise self.error
        return list(self.rows)

    def fetch_by_ids(self, ids):
        self.calls.append(("ids", list(ids)))
        if self.error is not None:
            raise self.error
        wanted = set(ids)
        return [r for r in self.rows if r.get("Id") in wanted]


@pytest.fixture
def store(tmp_path: Path) -> SnapshotStore:
    s = SnapshotStore.from_url(f"sqlite:///{tmp_path / 'trail.db'}", busy_timeout_s=30)
    yield s
    s.close()


@pytest.fixture
def options() -> CaptureOptions:
    return CaptureOptions(overlap_days=2, initial_lookback_days=30, timeout_s=60, max_workers=4, error_summary_limit=3)


@pytest.fixture
def unavailable() -> UpstreamUnavailableError:
    return UpstreamUnavailableError("Salesforce request failed: connection refused")
