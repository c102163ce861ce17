"""Re-assert every gift's cached funded flag and report orphaned contributions.

Exits with status 1 when orphaned ledger entries exist.
"""
import argparse
import asyncio
import sys

from registry.core.errors import OrphanedContribution
from registry.core.logger import configure_logging
from registry.db.session import Database
from registry.services.accounting import ContributionService
from registry.services.reconciliation import ReconciliationService


async def run(database_url: str | None, dry_run: bool) -> int:
    database = Database(database_url)
    try:
        accounting = ContributionService(database)
        reconciliation = ReconciliationService(database, accounting)
        if dry_run:
            try:
                await reconciliation.assert_no_orphans()
            except OrphanedContribution as exc:
                print(exc.message, exc.context["contribution_ids"])
                return 1
            print("no orphaned contributions")
            return 0

        report = await reconciliation.reconcile()
        print(f"checked={report.checked} corrected={len(report.corrected)} orphans={len(report.orphans)}")
        for state in report.corrected:
            print(
                f"  gift={state.gift_id} price={state.price} total={state.total_contributed} "
                f"funded={state.is_fully_funded}"
            )
        for orphan in report.orphans:
            print(f"  orphan contribution={orphan.id} gift={orphan.gift_id} amount={orphan.amount}")
        return 1 if report.orphans else 0
    finally:
        await database.dispose()


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--database-url", default=None, help="defaults to DATABASE_URL / settings")
    parser.add_argument("--dry-run", action="store_true", help="only check for orphaned contributions")
    parser.add_argument("--log-file", default=None, help="also write log records to this file")
    args = parser.parse_args()
    configure_logging(args.log_file)
    sys.exit(asyncio.run(run(args.database_url, args.dry_run)))


if __name__ == "__main__":
    main()
