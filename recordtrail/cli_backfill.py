from __future__ import annotations

import argparse
import datetime as _dt
import sys

import orjson

from .backfill import backfill
from .errors import StoreUnavailableError, UpstreamUnavailableError
from .logging_utils import configure_logging
from .settings import settings
from .storage import get_default_store
from .upstream import SalesforceSource


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Write baseline snapshots for records without history")
    parser.add_argument(
        "--lookback-days",
        type=int,
        default=int(settings.backfill.get("lookback_days", 1825)),
        help="How far back to look for modified records",
    )
    parser.add_argument("--ids", nargs="+", default=None, help="Only baseline these record ids")
    args = parser.parse_args(argv)
    configure_logging()

    source = SalesforceSource()
    try:
        store = get_default_store()
        if args.ids:
            rows = source.fetch_by_ids(args.ids)
        else:
            end = _dt.datetime.now(tz=_dt.timezone.utc)
            rows = source.fetch_modified(end - _dt.timedelta(days=args.lookback_days), end)
        summary = backfill(store, rows)
    except (UpstreamUnavailableError, StoreUnavailableError) as e:
        sys.stderr.write(orjson.dumps({"status": "failed", "error": str(e)}).decode() + "\n")
        return 1

    print(orjson.dumps(summary.model_dump(), option=orjson.OPT_SORT_KEYS | orjson.OPT_INDENT_2).decode())
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
