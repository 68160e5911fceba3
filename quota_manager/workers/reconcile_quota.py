"""
Compare quota store totals and the audit trail against the lot ledger.

Report-only by default. Use --fix to push ledger totals to the store.
"""
from __future__ import annotations

import argparse
import json
import sys
from typing import List, Optional

from quota_manager.core.config import settings, validate_config
from quota_manager.core.logging import configure_logging
from quota_manager.features.quota.reconciliation import run_reconciliation


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Reconcile quota store totals with the lot ledger.")
    parser.add_argument("--fix", action="store_true", help="Push the ledger total for drifted users.")
    args = parser.parse_args(argv)

    # stdout carries the JSON report
    configure_logging(settings.ENV, settings.LOG_LEVEL, stream=sys.stderr)
    validate_config()

    report = run_reconciliation(fix=args.fix)
    print(json.dumps(report, indent=2, default=str))
    return 0 if report["status"] in {"ok", "fixed"} else 1


if __name__ == "__main__":
    raise SystemExit(main())
