from decimal import Decimal
import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from registry.api.deps import DbSessionDep, ReconciliationDep, require_admin
from registry.api.routes.gifts import serialize_funding_state
from registry.core.audit import AuditAction, audit_log
from registry.core.money import ZERO, to_money
from registry.models.models import Contribution, Gift, User
from registry.schemas.report import (
    ContributionReport,
    GiftContributionReport,
    OrphanPublic,
    ReconcileResponse,
    ReportContribution,
    SummaryRow,
)
from registry.services.reconciliation import find_orphans

logger = logging.getLogger("registry.reports")

router = APIRouter(prefix="/reports", tags=["reports"])


def _serialize_orphan(contribution: Contribution) -> OrphanPublic:
    return OrphanPublic(
        contribution_id=contribution.id,
        gift_id=contribution.gift_id,
        user_id=contribution.user_id,
        amount=float(contribution.amount),
        created_at=contribution.created_at,
    )


async def _active_gift_totals(db: AsyncSession) -> list[tuple[Gift, Decimal, int]]:
    result = await db.execute(
        select(
            Gift,
            func.coalesce(func.sum(Contribution.amount), 0),
            func.count(Contribution.id),
        )
        .outerjoin(Contribution, Contribution.gift_id == Gift.id)
        .where(Gift.is_active.is_(True))
        .group_by(Gift.id)
        .order_by(Gift.name.asc(), Gift.id.asc())
    )
    return [(gift, to_money(total), int(count)) for gift, total, count in result.all()]


@router.get("/contributions", response_model=ContributionReport)
async def contributions_report(
    db: DbSessionDep,
    admin: User = Depends(require_admin),
) -> ContributionReport:
    rows = await _active_gift_totals(db)

    contributions_result = await db.execute(
        select(Contribution)
        .options(selectinload(Contribution.user))
        .where(Contribution.gift_id.in_([gift.id for gift, _, _ in rows]))
        .order_by(Contribution.gift_id, Contribution.created_at.desc(), Contribution.id.asc())
    )
    by_gift: dict[int, list[ReportContribution]] = {}
    for c in contributions_result.scalars().all():
        by_gift.setdefault(c.gift_id, []).append(
            ReportContribution(
                contribution_id=c.id,
                user_id=c.user_id,
                username=c.user.username if c.user is not None else None,
                amount=float(c.amount),
                created_at=c.created_at,
                receipt_file=c.receipt_file,
                note=c.note,
            )
        )

    gifts: list[GiftContributionReport] = []
    for gift, total, _ in rows:
        price = to_money(gift.price)
        funded = total >= price
        if bool(gift.is_contributed) != funded:
            logger.warning(
                "Report found drifted flag gift_id=%s cached=%s total=%s price=%s",
                gift.id,
                gift.is_contributed,
                total,
                price,
            )
        gifts.append(
            GiftContributionReport(
                gift_id=gift.id,
                gift_name=gift.name,
                price=float(price),
                is_contributed=bool(gift.is_contributed),
                total_contributed=float(total),
                is_fully_funded=funded,
                is_consistent=bool(gift.is_contributed) == funded,
                contributions=by_gift.get(gift.id, []),
            )
        )

    orphans = await find_orphans(db)
    return ContributionReport(
        gifts=gifts,
        orphaned_contributions=[_serialize_orphan(c) for c in orphans],
    )


@router.get("/summary", response_model=list[SummaryRow])
async def contributions_summary(
    db: DbSessionDep,
    admin: User = Depends(require_admin),
) -> list[SummaryRow]:
    summary: list[SummaryRow] = []
    for gift, total, count in await _active_gift_totals(db):
        price = to_money(gift.price)
        summary.append(
            SummaryRow(
                gift_id=gift.id,
                gift_name=gift.name,
                price=float(price),
                is_contributed=bool(gift.is_contributed),
                total_contributed=float(total),
                contribution_count=count,
                remaining=float(max(price - total, ZERO)),
                percentage=float(total / price * 100) if price > 0 else 0.0,
            )
        )
    return summary


@router.post("/reconcile", response_model=ReconcileResponse)
async def reconcile(
    request: Request,
    reconciliation: ReconciliationDep,
    admin: User = Depends(require_admin),
) -> ReconcileResponse:
    report = await reconciliation.reconcile()
    audit_log(
        AuditAction.RECONCILE,
        request=request,
        user_id=admin.id,
        details={
            "checked": report.checked,
            "corrected": [s.gift_id for s in report.corrected],
            "orphans": [c.id for c in report.orphans],
        },
    )
    return ReconcileResponse(
        checked=report.checked,
        corrected=[serialize_funding_state(s) for s in report.corrected],
        orphaned_contributions=[_serialize_orphan(c) for c in report.orphans],
    )
