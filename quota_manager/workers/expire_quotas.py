"""
Run one quota expiry pass.

Exits 0 when every due lot expired, 1 when any lot failed.
"""
from __future__ import annotations

import argparse
import json
import sys
from datetime import datetime
from typing import List, Optional

from quota_manager.core.config import settings, validate_config
from quota_manager.core.logging import configure_logging
from quota_manager.features.quota.expiry import run_expiry_pass


def _parse_now(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Expire quota lots past their expiry date.")
    parser.add_argument("--now", help="Processing instant (ISO 8601); defaults to the current time.")
    parser.add_argument("--workers", type=int, default=settings.EXPIRY_MAX_WORKERS, help="Users processed in parallel.")
    parser.add_argument("--limit", type=int, default=settings.EXPIRY_BATCH_LIMIT, help="Max lots per pass (0 = all).")
    args = parser.parse_args(argv)

    # stdout carries the JSON report
    configure_logging(settings.ENV, settings.LOG_LEVEL, stream=sys.stderr)
    validate_config()

    report = run_expiry_pass(_parse_now(args.now), max_workers=args.workers, limit=args.limit)
    print(json.dumps(report.to_dict(), indent=2))
    return 0 if report.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
