"""Maintenance checks over the contribution ledger."""

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from registry.core.errors import GiftNotFound, OrphanedContribution
from registry.db.session import Database
from registry.models.models import Contribution, Gift
from registry.services.accounting import ContributionService, FundingState


logger = logging.getLogger("registry.reconciliation")


@dataclass
class ReconciliationReport:
    checked: int = 0
    corrected: list[FundingState] = field(default_factory=list)
    orphans: list[Contribution] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.corrected and not self.orphans


async def find_orphans(session: AsyncSession) -> list[Contribution]:
    """Ledger entries whose gift row no longer exists."""
    result = await session.execute(
        select(Contribution)
        .outerjoin(Gift, Gift.id == Contribution.gift_id)
        .where(Gift.id.is_(None))
        .order_by(Contribution.id)
    )
    return list(result.scalars().all())


class ReconciliationService:
    def __init__(self, database: Database, accounting: ContributionService) -> None:
        self._database = database
        self._accounting = accounting

    async def orphans(self) -> list[Contribution]:
        await self._database.ensure_schema_ready()
        async with self._database.session() as session:
            return await find_orphans(session)

    async def assert_no_orphans(self) -> None:
        orphans = await self.orphans()
        if orphans:
            raise OrphanedContribution([c.id for c in orphans])

    async def reconcile(self) -> ReconciliationReport:
        """Re-assert every gift's cached flag and collect orphaned entries."""
        await self._database.ensure_schema_ready()
        async with self._database.session() as session:
            gift_ids = list((await session.execute(select(Gift.id).order_by(Gift.id))).scalars().all())

        report = ReconciliationReport()
        for gift_id in gift_ids:
            try:
                state, corrected = await self._accounting.recompute(gift_id)
            except GiftNotFound:
                continue
            report.checked += 1
            if corrected:
                report.corrected.append(state)

        report.orphans = await self.orphans()
        if report.orphans:
            logger.error(
                "Orphaned contributions found count=%d ids=%s",
                len(report.orphans),
                [c.id for c in report.orphans],
            )
        logger.info(
            "Reconciliation finished checked=%d corrected=%d orphans=%d",
            report.checked,
            len(report.corrected),
            len(report.orphans),
        )
        return report
