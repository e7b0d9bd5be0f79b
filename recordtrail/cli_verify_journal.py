from __future__ import annotations

import argparse
from pathlib import Path

import orjson

from .journal import JOURNAL_FILE, verify_chain


usage = """
Usage: recordtrail-verify-journal --run <run_id_or_path>
- If a directory is provided, it will look for journal.jsonl in it.
- If a run_id is provided, it will resolve to journal/<run_id>/journal.jsonl.
"""


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Verify the hash chain of a capture run journal", epilog=usage)
    parser.add_argument("--run", required=True)
    args = parser.parse_args(argv)

    target = Path(args.run)
    if target.is_dir():
        journal = target / JOURNAL_FILE
    elif target.is_file():
        journal = target
    else:
        from .settings import settings
        journal = settings.journal_dir_for(args.run) / JOURNAL_FILE
    if not journal.exists():
        print(orjson.dumps({"valid": False, "error": f"{JOURNAL_FILE} not found", "path": str(journal)}).decode())
        return 2
    result = verify_chain(journal)
    print(orjson.dumps(result, option=orjson.OPT_SORT_KEYS).decode())
    return 0 if result.get("valid") else 1


if __name__ == "__main__":
    raise SystemExit(main())
