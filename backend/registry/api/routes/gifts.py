from decimal import Decimal
from typing import Literal
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from registry.api.deps import AccountingDep, DbSessionDep, get_current_user, require_admin
from registry.core.audit import AuditAction, audit_contribution, audit_gift_action
from registry.core.config import settings
from registry.core.errors import AccountingError
from registry.core.money import ZERO, to_money
from registry.models.models import Category, Contribution, Gift, User
from registry.schemas.gift import (
    ContributionCreate,
    ContributionPublic,
    FundingStatePublic,
    GiftCreate,
    GiftPublic,
    GiftUpdate,
)
from registry.services.accounting import FundingState, load_contributions, sum_ledger

logger = logging.getLogger("registry.gifts")

router = APIRouter(prefix="/gifts", tags=["gifts"])

_NOT_NULLABLE = {"name", "price", "currency", "available", "total", "is_active"}


def _serialize_contribution(contribution: Contribution) -> ContributionPublic:
    user = contribution.user
    return ContributionPublic(
        id=contribution.id,
        user_id=contribution.user_id,
        username=user.username if user is not None else None,
        amount=float(contribution.amount),
        receipt_file=contribution.receipt_file,
        note=contribution.note,
        created_at=contribution.created_at,
    )


def _serialize_gift(
    gift: Gift,
    total_contributed: Decimal,
    contributions: list[Contribution] | None = None,
) -> GiftPublic:
    price = to_money(gift.price)
    total = to_money(total_contributed)
    return GiftPublic(
        id=gift.id,
        name=gift.name,
        description=gift.description,
        price=float(price),
        currency=gift.currency,
        category=gift.category,
        category_id=gift.category_id,
        available=gift.available,
        total=gift.total,
        gift_type=gift.gift_type,
        image_url=gift.image_url,
        is_active=gift.is_active,
        is_contributed=bool(gift.is_contributed),
        total_contributed=float(total),
        remaining=float(max(price - total, ZERO)),
        is_fully_funded=total >= price,
        created_at=gift.created_at,
        contributions=[_serialize_contribution(c) for c in contributions or []],
    )


def serialize_funding_state(state: FundingState) -> FundingStatePublic:
    return FundingStatePublic(
        gift_id=state.gift_id,
        price=float(state.price),
        total_contributed=float(state.total_contributed),
        remaining=float(state.remaining),
        is_fully_funded=state.is_fully_funded,
        is_contributed=state.is_contributed,
    )


async def _get_gift_or_404(db: AsyncSession, gift_id: int, for_update: bool = False) -> Gift:
    stmt = select(Gift).where(Gift.id == gift_id)
    if for_update:
        stmt = stmt.with_for_update()
    gift = (await db.execute(stmt)).scalar_one_or_none()
    if not gift:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Gift not found")
    return gift


async def _resolve_category(db: AsyncSession, category_id: int | None) -> Category | None:
    if category_id is None:
        return None
    category = await db.get(Category, category_id)
    if not category:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Category not found")
    return category


@router.get("", response_model=list[GiftPublic])
async def list_gifts(
    db: DbSessionDep,
    category: str | None = None,
    min_price: Decimal | None = Query(default=None, ge=0),
    max_price: Decimal | None = Query(default=None, ge=0),
    sort: Literal["name", "price_asc", "price_desc"] = "name",
) -> list[GiftPublic]:
    stmt = select(Gift).where(Gift.is_active.is_(True))
    if category:
        stmt = stmt.where(Gift.category == category)
    if min_price is not None:
        stmt = stmt.where(Gift.price >= min_price)
    if max_price is not None:
        stmt = stmt.where(Gift.price <= max_price)
    if sort == "price_asc":
        stmt = stmt.order_by(Gift.price.asc(), Gift.id.asc())
    elif sort == "price_desc":
        stmt = stmt.order_by(Gift.price.desc(), Gift.id.asc())
    else:
        stmt = stmt.order_by(Gift.name.asc(), Gift.id.asc())
    gifts = list((await db.execute(stmt)).scalars().all())

    totals: dict[int, Decimal] = {}
    if gifts:
        totals_result = await db.execute(
            select(Contribution.gift_id, func.coalesce(func.sum(Contribution.amount), 0))
            .where(Contribution.gift_id.in_([g.id for g in gifts]))
            .group_by(Contribution.gift_id)
        )
        totals = {row[0]: to_money(row[1]) for row in totals_result.all()}

    return [_serialize_gift(g, totals.get(g.id, ZERO)) for g in gifts]


@router.get("/{gift_id}", response_model=GiftPublic)
async def get_gift(gift_id: int, db: DbSessionDep) -> GiftPublic:
    gift = await _get_gift_or_404(db, gift_id)
    total = await sum_ledger(db, gift.id)
    contributions = await load_contributions(db, gift.id)
    return _serialize_gift(gift, total, contributions)


@router.get("/{gift_id}/funding", response_model=FundingStatePublic)
async def get_funding_state(gift_id: int, accounting: AccountingDep) -> FundingStatePublic:
    return serialize_funding_state(await accounting.get_funding_state(gift_id))


@router.post("", response_model=GiftPublic, status_code=status.HTTP_201_CREATED)
async def create_gift(
    payload: GiftCreate,
    request: Request,
    db: DbSessionDep,
    admin: User = Depends(require_admin),
) -> GiftPublic:
    category = await _resolve_category(db, payload.category_id)
    data = payload.model_dump()
    data["currency"] = (payload.currency or settings.default_currency).upper()
    data["gift_type"] = payload.gift_type.value if payload.gift_type else None
    if category is not None and not payload.category:
        data["category"] = category.name
    gift = Gift(**data)
    db.add(gift)
    await db.commit()
    await db.refresh(gift)
    audit_gift_action(AuditAction.GIFT_CREATE, request, admin.id, gift.id, {"price": gift.price})
    logger.info("Gift created gift_id=%s price=%s", gift.id, gift.price)
    return _serialize_gift(gift, ZERO)


@router.put("/{gift_id}", response_model=GiftPublic)
async def update_gift(
    gift_id: int,
    payload: GiftUpdate,
    request: Request,
    db: DbSessionDep,
    accounting: AccountingDep,
    admin: User = Depends(require_admin),
) -> GiftPublic:
    changes = payload.model_dump(exclude_unset=True)
    price_changed = False
    async with accounting.gift_lock(gift_id):
        gift = await _get_gift_or_404(db, gift_id, for_update=True)
        total = await sum_ledger(db, gift.id)

        new_price = changes.get("price")
        if new_price is not None:
            if new_price < total:
                raise HTTPException(
                    status_code=status.HTTP_409_CONFLICT,
                    detail=f"Price cannot be lower than the amount already contributed ({total})",
                )
            price_changed = to_money(new_price) != to_money(gift.price)

        if "category_id" in changes:
            category = await _resolve_category(db, changes["category_id"])
            if category is not None and "category" not in changes:
                changes["category"] = category.name
        if changes.get("gift_type") is not None:
            changes["gift_type"] = changes["gift_type"].value
        if changes.get("currency"):
            changes["currency"] = changes["currency"].upper()

        for field, value in changes.items():
            if field in _NOT_NULLABLE and value is None:
                continue
            setattr(gift, field, value)
        await db.commit()

    if price_changed:
        await accounting.recompute(gift_id)
    await db.refresh(gift)
    audit_gift_action(AuditAction.GIFT_UPDATE, request, admin.id, gift.id, {"fields": sorted(changes)})
    return _serialize_gift(gift, await sum_ledger(db, gift.id))


@router.delete("/{gift_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_gift(
    gift_id: int,
    request: Request,
    db: DbSessionDep,
    accounting: AccountingDep,
    admin: User = Depends(require_admin),
) -> None:
    async with accounting.gift_lock(gift_id):
        gift = await _get_gift_or_404(db, gift_id, for_update=True)
        count_result = await db.execute(
            select(func.count(Contribution.id)).where(Contribution.gift_id == gift.id)
        )
        if count_result.scalar_one() > 0:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Cannot delete a gift with contributions; deactivate it instead",
            )
        await db.delete(gift)
        await db.commit()
    audit_gift_action(AuditAction.GIFT_DELETE, request, admin.id, gift_id)


@router.post("/{gift_id}/contribute", response_model=GiftPublic)
async def contribute_to_gift(
    gift_id: int,
    payload: ContributionCreate,
    request: Request,
    accounting: AccountingDep,
    current_user: User = Depends(get_current_user),
) -> GiftPublic:
    try:
        result = await accounting.contribute(
            gift_id,
            current_user.id,
            payload.amount,
            receipt=payload.receipt,
            note=payload.note,
        )
    except AccountingError as exc:
        audit_contribution(request, current_user.id, gift_id, payload.amount, error=exc.code)
        raise

    audit_contribution(
        request,
        current_user.id,
        gift_id,
        result.contribution.amount,
        contribution_id=result.contribution.id,
    )
    return _serialize_gift(result.gift, result.funding.total_contributed, result.contributions)


@router.post("/{gift_id}/reset")
async def reset_gift(
    gift_id: int,
    request: Request,
    accounting: AccountingDep,
    admin: User = Depends(require_admin),
) -> dict[str, int]:
    deleted = await accounting.reset(gift_id)
    audit_gift_action(AuditAction.GIFT_RESET, request, admin.id, gift_id, {"deleted": deleted})
    return {"gift_id": gift_id, "deleted_contributions": deleted}
