from __future__ import annotations

import orjson

from conftest import FakeSource, make_row
from recordtrail import cli_backfill, cli_capture
from recordtrail.settings import settings


def _wire(monkeypatch, module, store, source):
    monkeypatch.setattr(module, "configure_logging", lambda: None)
    monkeypatch.setattr(module, "get_default_store", lambda: store)
    monkeypatch.setattr(module, "SalesforceSource", lambda: source)


def test_capture_cli_success(store, monkeypatch, capsys):
    monkeypatch.setitem(settings.journal, "enabled", False)
    _wire(monkeypatch, cli_capture, store, FakeSource([make_row()]))
    assert cli_capture.main([]) == 0
    out = orjson.loads(capsys.readouterr().out)
    assert out["status"] == "completed"
    assert out["new_snapshots"] == 1


def test_capture_cli_upstream_failure(store, monkeypatch, capsys, unavailable):
    monkeypatch.setitem(settings.journal, "enabled", False)
    _wire(monkeypatch, cli_capture, store, FakeSource(error=unavailable))
    assert cli_capture.main([]) == 1
    assert orjson.loads(capsys.readouterr().out)["status"] == "failed"


def test_backfill_cli_by_ids(store, monkeypatch, capsys):
    source = FakeSource([make_row(record_id="r1", name="PS-1"), make_row(record_id="r2", name="PS-2")])
    _wire(monkeypatch, cli_backfill, store, source)
    assert cli_backfill.main(["--ids", "r2"]) == 0
    summary = orjson.loads(capsys.readouterr().out)
    assert summary["succeeded"] == 1
    assert source.calls == [("ids", ["r2"])]
    assert store.latest("r1") is None


def test_backfill_cli_upstream_failure(store, monkeypatch, capsys, unavailable):
    _wire(monkeypatch, cli_backfill, store, FakeSource(error=unavailable))
    assert cli_backfill.main(["--lookback-days", "7"]) == 1
    err = orjson.loads(capsys.readouterr().err)
    assert err["status"] == "failed"
