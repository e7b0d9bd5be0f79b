from __future__ import annotations

import datetime as _dt
from pathlib import Path
from typing import Any, List

import orjson
import pytest
import requests

from recordtrail.errors import UpstreamUnavailableError
from recordtrail.upstream import SalesforceSource, soql_datetime

FAST_RETRIES = {"max_attempts": 3, "backoff_initial_ms": 1, "backoff_max_ms": 2}


class FakeResponse:
    def __init__(self, status_code: int = 200, body: Any = None) -> None:
        self.status_code = status_code
        self._body = body if body is not None else {}
        self.text = orjson.dumps(self._body).decode()

    def json(self):
        return self._body


class FakeSession:
    def __init__(self, responses: List[Any]) -> None:
        self.responses = list(responses)
        self.requests: List[tuple] = []

    def request(self, method, url, timeout=None, **kwargs):
        self.requests.append((method, url, kwargs))
        nxt = self.responses.pop(0)
        if isinstance(nxt, Exception):
            raise nxt
        return nxt


def _source(tmp_path: Path, responses, token=True, **kwargs) -> SalesforceSource:
    token_file = tmp_path / "auth.json"
    if token:
        token_file.write_bytes(orjson.dumps({"accessToken": "tok", "instanceUrl": "https://org.example.com"}))
    return SalesforceSource(
        login_url="https://login.example.com",
        client_id="cid",
        client_secret="secret",
        token_file=str(token_file),
        session=FakeSession(responses),
        retries_cfg=FAST_RETRIES,
        **kwargs,
    )


def test_fetch_modified_follows_pagination(tmp_path: Path):
    src = _source(
        tmp_path,
        [
            FakeResponse(200, {"done": False, "nextRecordsUrl": "/services/data/v59.0/query/01g-2000", "records": [{"Id": "a"}]}),
            FakeResponse(200, {"done": True, "records": [{"Id": "b"}]}),
        ],
    )
    start = _dt.datetime(2024, 1, 1, tzinfo=_dt.timezone.utc)
    rows = src.fetch_modified(start, start + _dt.timedelta(days=1))
    assert [r["Id"] for r in rows] == ["a", "b"]

    method, url, kwargs = src.session.requests[0]
    soql = kwargs["params"]["q"]
    assert url == "https://org.example.com/services/data/v59.0/query"
    assert "LastModifiedDate >= 2024-01-01T00:00:00Z" in soql
    assert "Name LIKE 'PS-%'" in soql
    assert kwargs["headers"]["Authorization"] == "Bearer tok"
    assert src.session.requests[1][1] == "https://org.example.com/services/data/v59.0/query/01g-2000"


def test_fetch_by_ids_batches(tmp_path: Path):
    ids = [f"id{i}" for i in range(5)]
    src = _source(
        tmp_path,
        [FakeResponse(200, {"done": True, "records": [{"Id": i} for i in ids[j:j + 2]]}) for j in (0, 2, 4)],
        upstream_cfg={"batch_size": 2},
    )
    rows = src.fetch_by_ids(ids + ["id0"])
    assert len(rows) == 5
    assert len(src.session.requests) == 3
    assert "Id IN ('id4')" in src.session.requests[2][2]["params"]["q"]


def test_transient_errors_are_retried(tmp_path: Path):
    src = _source(
        tmp_path,
        [
            requests.ConnectionError("reset"),
            FakeResponse(503, {"error": "busy"}),
            FakeResponse(200, {"done": True, "records": []}),
        ],
    )
    assert src.query("SELECT Id FROM Prof_Services_Request__c") == []
    assert len(src.session.requests) == 3


def test_exhausted_retries_raise_upstream_unavailable(tmp_path: Path):
    src = _source(tmp_path, [requests.Timeout("slow")] * 3)
    with pytest.raises(UpstreamUnavailableError):
        src.query("SELECT Id FROM Prof_Services_Request__c")


def test_client_credentials_login_and_token_cache(tmp_path: Path):
    src = _source(
        tmp_path,
        [
            FakeResponse(200, {"access_token": "fresh", "instance_url": "https://org.example.com"}),
            FakeResponse(200, {"done": True, "records": []}),
        ],
        token=False,
    )
    src.query("SELECT Id FROM Prof_Services_Request__c")
    method, url, kwargs = src.session.requests[0]
    assert (method, url) == ("POST", "https://login.example.com/services/oauth2/token")
    assert kwargs["data"]["grant_type"] == "client_credentials"
    cached = orjson.loads((tmp_path / "auth.json").read_bytes())
    assert cached == {"accessToken": "fresh", "instanceUrl": "https://org.example.com"}


def test_expired_token_is_refreshed_once(tmp_path: Path):
    src = _source(
        tmp_path,
        [
            FakeResponse(401, [{"errorCode": "INVALID_SESSION_ID"}]),
            FakeResponse(200, {"access_token": "fresh", "instance_url": "https://org.example.com"}),
            FakeResponse(200, {"done": True, "records": [{"Id": "a"}]}),
        ],
    )
    assert src.query("SELECT Id FROM Prof_Services_Request__c") == [{"Id": "a"}]
    assert src.session.requests[2][2]["headers"]["Authorization"] == "Bearer fresh"


def test_missing_credentials(tmp_path: Path, monkeypatch):
    monkeypatch.delenv("SF_CLIENT_ID", raising=False)
    monkeypatch.delenv("SF_CLIENT_SECRET", raising=False)
    src = SalesforceSource(
        login_url="",
        token_file=str(tmp_path / "none.json"),
        session=FakeSession([]),
        retries_cfg=FAST_RETRIES,
    )
    with pytest.raises(UpstreamUnavailableError):
        src.fetch_by_ids(["a"])


def test_http_error_raises_upstream_unavailable(tmp_path: Path):
    src = _source(tmp_path, [FakeResponse(400, [{"errorCode": "MALFORMED_QUERY"}])])
    with pytest.raises(UpstreamUnavailableError, match="HTTP 400"):
        src.query("SELECT")


class HTMLResponse(FakeResponse):
    def json(self):
        raise ValueError("Expecting value: line 1 column 1 (char 0)")


def test_non_json_login_response_raises_upstream_unavailable(tmp_path: Path):
    src = _source(tmp_path, [HTMLResponse(200)], token=False)
    with pytest.raises(UpstreamUnavailableError, match="non-JSON"):
        src.fetch_modified(_dt.datetime(2024, 1, 1), _dt.datetime(2024, 1, 2))
    assert not (tmp_path / "auth.json").exists()


def test_login_response_that_is_not_an_object(tmp_path: Path):
    src = _source(tmp_path, [FakeResponse(200, ["token"])], token=False)
    with pytest.raises(UpstreamUnavailableError, match="unexpected response"):
        src.authenticate()


def test_soql_datetime_is_utc():
    local = _dt.datetime(2024, 1, 1, 12, 0, tzinfo=_dt.timezone(_dt.timedelta(hours=2)))
    assert soql_datetime(local) == "2024-01-01T10:00:00Z"
