from __future__ import annotations

import orjson
import pytest

from conftest import make_row
from recordtrail.errors import InvalidSnapshotError
from recordtrail.normalize import compute_fingerprint, extract_entitlements, normalize_record, parse_payload
from recordtrail.schemas import AppEntitlement, DataEntitlement, ModelEntitlement


def test_normalize_maps_upstream_columns():
    row = make_row(
        Account_Site__c="London",
        Deployment__c="a02D1",
        Deployment__r={"Name": "DEP-77"},
        CreatedBy={"Name": "Jo Smith"},
        Tenant_Name__c=" acme-prod ",
    )
    rec = normalize_record(row)
    assert rec.record_id == "a01X1"
    assert rec.record_label == "PS-4215"
    assert rec.status == "Pending"
    assert rec.account_id == rec.account_name == "Acme Re"
    assert rec.account_site == "London"
    assert rec.deployment_name == "DEP-77"
    assert rec.created_by == "Jo Smith"
    assert rec.tenant_name == "acme-prod"
    assert rec.last_modified_at == "2024-02-01T10:00:00.000+0000"
    assert "attributes" not in rec.raw_fields
    assert rec.raw_fields["Name"] == "PS-4215"


def test_tenant_name_falls_back_to_payload():
    payload = {"properties": {"provisioningDetail": {"tenantName": "acme-uat"}}}
    rec = normalize_record(make_row(Payload_Data__c=orjson.dumps(payload).decode()))
    assert rec.tenant_name == "acme-uat"


@pytest.mark.parametrize("missing", ["Id", "Name", "Status__c"])
def test_missing_required_field_is_invalid(missing):
    row = make_row()
    row[missing] = None
    with pytest.raises(InvalidSnapshotError):
        normalize_record(row)


def test_malformed_payload_is_invalid():
    with pytest.raises(InvalidSnapshotError):
        normalize_record(make_row(Payload_Data__c="{not json"))
    with pytest.raises(InvalidSnapshotError):
        parse_payload("[1, 2]")
    assert parse_payload(None) == {}
    assert parse_payload("") == {}


def test_entitlements_are_tagged_by_kind():
    payload = {
        "properties": {
            "provisioningDetail": {
                "entitlements": {
                    "modelEntitlements": [{"productCode": "M1", "start_date": "2024-01-01", "quantity": "2"}],
                    "dataEntitlements": [{"productCode": "D1", "StartDate": "2024-02-01", "EndDate": "2025-02-01"}],
                    "appEntitlements": [{"productCode": "A1", "packageName": "Pkg", "quantity": "n/a"}],
                }
            }
        },
        "productEntitlements": [{"productCode": "M2", "endDate": "2026-01-01"}],
    }
    ents = extract_entitlements(payload)
    kinds = [type(e) for e in ents]
    assert kinds == [ModelEntitlement, ModelEntitlement, DataEntitlement, AppEntitlement]
    assert ents[0].quantity == 2.0
    assert ents[0].start_date == "2024-01-01"
    assert ents[1].end_date == "2026-01-01"
    assert ents[2].end_date == "2025-02-01"
    assert ents[3].package_name == "Pkg"
    assert ents[3].quantity is None


def test_fingerprint_ignores_quantities_and_unmonitored_fields():
    base = normalize_record(make_row())
    qty = normalize_record(
        make_row(
            entitlements=[{"productCode": "RMS-EQ", "startDate": "2024-03-01", "endDate": "2025-03-01", "quantity": 9}],
            Billing_Status__c="Invoiced",
            LastModifiedDate="2024-05-01T00:00:00.000+0000",
        )
    )
    assert compute_fingerprint(base) == compute_fingerprint(qty)


def test_fingerprint_tracks_monitored_fields():
    base = compute_fingerprint(normalize_record(make_row()))
    assert compute_fingerprint(normalize_record(make_row(status="Completed"))) != base
    assert compute_fingerprint(normalize_record(make_row(account="Other Co"))) != base
    assert compute_fingerprint(normalize_record(make_row(request_type="Update"))) != base
    assert compute_fingerprint(normalize_record(make_row(install_date="2024-04-01"))) != base
    moved = [{"productCode": "RMS-EQ", "startDate": "2024-03-01", "endDate": "2026-03-01", "quantity": 1}]
    assert compute_fingerprint(normalize_record(make_row(entitlements=moved))) != base


def test_fingerprint_independent_of_entitlement_order():
    a = {"productCode": "A", "startDate": "2024-01-01"}
    b = {"productCode": "B", "startDate": "2024-06-01"}
    one = normalize_record(make_row(entitlements=[a, b]))
    two = normalize_record(make_row(entitlements=[b, a]))
    assert compute_fingerprint(one) == compute_fingerprint(two)
