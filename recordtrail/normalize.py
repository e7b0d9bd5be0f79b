from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import orjson
from pydantic import ValidationError

from .errors import InvalidSnapshotError
from .hashing import canonical_digest
from .schemas import AppEntitlement, DataEntitlement, ModelEntitlement, TrackedRecord


_START_KEYS = ("startDate", "start_date", "StartDate")
_END_KEYS = ("endDate", "end_date", "EndDate")
_TENANT_PATHS = (
    ("properties", "provisioningDetail", "tenantName"),
    ("properties", "tenantName"),
    ("preferredSubdomain1",),
    ("preferredSubdomain2",),
    ("properties", "preferredSubdomain1"),
    ("properties", "preferredSubdomain2"),
    ("tenantName",),
)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _first(item: Dict[str, Any], keys) -> Optional[str]:
    for k in keys:
        v = _clean(item.get(k))
        if v:
            return v
    return None


def _quantity(value: Any) -> Optional[float]:
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _dig(obj: Any, path) -> Any:
    for key in path:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(key)
    return obj


def parse_payload(raw: Any) -> Dict[str, Any]:
    """Decode the structured payload column into a dict ({} when absent)."""
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    try:
        obj = orjson.loads(raw)
    except (orjson.JSONDecodeError, TypeError) as e:
        raise InvalidSnapshotError(f"Payload is not valid JSON: {e}") from e
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise InvalidSnapshotError("Payload must be a JSON object")
    return obj


def extract_entitlements(payload: Dict[str, Any]) -> List[Any]:
    nested = _dig(payload, ("properties", "provisioningDetail", "entitlements")) or {}
    if not isinstance(nested, dict):
        nested = {}
    groups = (
        ("model", (nested.get("modelEntitlements"), payload.get("productEntitlements"))),
        ("data", (nested.get("dataEntitlements"), payload.get("dataEntitlements"))),
        ("app", (nested.get("appEntitlements"), payload.get("appEntitlements"))),
    )
    out: List[Any] = []
    for kind, sources in groups:
        for items in sources:
            if not isinstance(items, list):
                continue
            for item in items:
                if not isinstance(item, dict):
                    continue
                common = {
                    "product_code": _first(item, ("productCode", "product_code")),
                    "start_date": _first(item, _START_KEYS),
                    "end_date": _first(item, _END_KEYS),
                }
                if kind == "model":
                    out.append(ModelEntitlement(quantity=_quantity(item.get("quantity")), **common))
                elif kind == "data":
                    out.append(DataEntitlement(**common))
                else:
                    out.append(
                        AppEntitlement(
                            quantity=_quantity(item.get("quantity")),
                            package_name=_first(item, ("packageName", "package_name")),
                            **common,
                        )
                    )
    return out


def tenant_name_from(payload: Dict[str, Any]) -> Optional[str]:
    for path in _TENANT_PATHS:
        v = _clean(_dig(payload, path))
        if v:
            return v
    return None


def normalize_record(row: Dict[str, Any]) -> TrackedRecord:
    """Turn one upstream row into a TrackedRecord.

    Raises InvalidSnapshotError when the identifier, label or status is
    missing or the payload cannot be decoded.
    """
    if not isinstance(row, dict):
        raise InvalidSnapshotError(f"Upstream row must be an object, got {type(row).__name__}")
    record_id = _clean(row.get("Id"))
    label = _clean(row.get("Name"))
    status = _clean(row.get("Status__c"))
    missing = [name for name, v in (("Id", record_id), ("Name", label), ("Status__c", status)) if not v]
    if missing:
        raise InvalidSnapshotError(f"Record {record_id or '?'} is missing {', '.join(missing)}")

    payload = parse_payload(row.get("Payload_Data__c"))
    deployment = row.get("Deployment__r") or {}
    created_by = row.get("CreatedBy") or {}
    account = _clean(row.get("Account__c"))
    try:
        return TrackedRecord(
            record_id=record_id,
            record_label=label,
            status=status,
            account_id=account,
            account_name=account,
            account_site=_clean(row.get("Account_Site__c")),
            request_type=_clean(row.get("TenantRequestAction__c")),
            requested_install_date=_clean(row.get("Requested_Install_Date__c")),
            requested_go_live_date=_clean(row.get("RequestedGoLiveDate__c")),
            deployment_id=_clean(row.get("Deployment__c")),
            deployment_name=_clean(deployment.get("Name")) if isinstance(deployment, dict) else None,
            tenant_name=_clean(row.get("Tenant_Name__c")) or tenant_name_from(payload),
            billing_status=_clean(row.get("Billing_Status__c")),
            error_message=_clean(row.get("SMLErrorMessage__c")),
            created_by=_clean(created_by.get("Name")) if isinstance(created_by, dict) else None,
            created_at=_clean(row.get("CreatedDate")),
            last_modified_at=_clean(row.get("LastModifiedDate")),
            entitlements=extract_entitlements(payload),
            raw_fields={k: v for k, v in row.items() if k != "attributes"},
        )
    except ValidationError as e:
        raise InvalidSnapshotError(f"Record {record_id} failed validation: {e}") from e


def monitored_dates(record: TrackedRecord) -> List[str]:
    dates = [
        f"record:requested_install_date:{record.requested_install_date or ''}",
        f"record:requested_go_live_date:{record.requested_go_live_date or ''}",
    ]
    for ent in record.entitlements:
        dates.append(f"{ent.kind}:{ent.product_code or ''}:{ent.start_date or ''}:{ent.end_date or ''}")
    return sorted(dates)


def compute_fingerprint(record: TrackedRecord) -> str:
    # Only monitored fields; quantities and package names are not part of it
    return canonical_digest(
        {
            "status": record.status,
            "account_id": record.account_id,
            "request_type": record.request_type,
            "dates": monitored_dates(record),
        }
    )


def parse_upstream_ts(value: Optional[str]) -> Optional[datetime]:
    """Parse an upstream timestamp such as 2024-02-01T10:00:00.000+0000."""
    if not value:
        return None
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)
