"""
Apply active quota strategies to every known user.

Exits 0 when no user failed, 1 otherwise.
"""
from __future__ import annotations

import argparse
import json
import sys
from typing import List, Optional

from quota_manager.core.config import settings, validate_config
from quota_manager.core.logging import configure_logging
from quota_manager.features.strategy.service import run_active_strategies


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Execute quota grant strategies.")
    parser.add_argument(
        "--strategy",
        action="append",
        dest="strategies",
        help="Strategy name to run (repeatable); defaults to every active strategy.",
    )
    args = parser.parse_args(argv)

    # stdout carries the JSON report
    configure_logging(settings.ENV, settings.LOG_LEVEL, stream=sys.stderr)
    validate_config()

    reports = run_active_strategies(names=args.strategies)
    print(json.dumps([r.to_dict() for r in reports], indent=2))
    return 0 if all(r.ok for r in reports) else 1


if __name__ == "__main__":
    raise SystemExit(main())
