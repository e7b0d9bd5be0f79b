from __future__ import annotations

import argparse

import uvicorn

from .api import create_app
from .logging_utils import configure_logging
from .settings import settings


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Serve the audit trail query API")
    parser.add_argument("--host", default=str(settings.api.get("host", "127.0.0.1")))
    parser.add_argument("--port", type=int, default=int(settings.api.get("port", 8080)))
    args = parser.parse_args(argv)
    configure_logging()

    uvicorn.run(create_app(), host=args.host, port=args.port, log_config=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
