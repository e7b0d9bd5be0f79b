from __future__ import annotations

import argparse
import sys

import orjson

from .capture import CaptureOrchestrator
from .errors import StoreUnavailableError
from .journal import RunJournal
from .logging_utils import configure_logging
from .settings import settings
from .storage import get_default_store
from .upstream import SalesforceSource


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Capture changed request records into the audit trail")
    parser.parse_args(argv)
    configure_logging()

    journal = RunJournal() if settings.journal.get("enabled", True) else None
    try:
        store = get_default_store()
        orchestrator = CaptureOrchestrator(store, SalesforceSource(), journal=journal)
        run = orchestrator.run_capture()
    except StoreUnavailableError as e:
        sys.stderr.write(orjson.dumps({"status": "failed", "error": str(e)}).decode() + "\n")
        return 1

    print(orjson.dumps(run.model_dump(), option=orjson.OPT_SORT_KEYS | orjson.OPT_INDENT_2).decode())
    return 0 if run.status == "completed" else 1


if __name__ == "__main__":
    raise SystemExit(main())
