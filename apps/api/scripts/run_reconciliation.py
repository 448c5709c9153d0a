import argparse
import asyncio
import json
import os
import sys

# Add parent dir to path
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from database import async_session_maker, engine
from services.reconciliation import SCANS, ReconciliationService


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Run credits ledger reconciliation scans.")
    parser.add_argument(
        "scan",
        nargs="?",
        default="all",
        choices=("all",) + SCANS,
        help="Scan to run (default: all, in a safe order)",
    )
    parser.add_argument("--account-id", default=None, help="Limit the balance drift scan to one account")
    return parser.parse_args(argv)


async def main(argv=None) -> int:
    args = parse_args(argv)
    scans = list(SCANS) if args.scan == "all" else [args.scan]
    reports = []

    print(f"🧮 Running reconciliation: {', '.join(scans)}")
    try:
        async with async_session_maker() as db:
            service = ReconciliationService(db)
            for scan in scans:
                if scan == "balance_drift":
                    report = await service.find_balance_drift(account_id=args.account_id)
                else:
                    report = await service.run(scan)
                reports.append(report.to_dict())
                marker = "⚠️" if report.issues else "✅"
                print(f"{marker} {scan}: examined={report.examined} fixed={report.fixed} issues={len(report.issues)}")
    finally:
        await engine.dispose()

    print(json.dumps(reports, indent=2))
    drift = [report for report in reports if report["scan"] == "balance_drift" and report["issues"]]
    return 1 if drift else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
