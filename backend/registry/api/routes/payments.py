import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from registry.api.deps import AccountingDep, DbSessionDep, get_guest_user, get_optional_user
from registry.core.audit import AuditAction, audit_contribution, audit_log
from registry.core.errors import AccountingError
from registry.models.models import User
from registry.schemas.gift import (
    PaymentConfirmRequest,
    PaymentConfirmResponse,
    PaymentFailure,
    PaymentOutcome,
)

logger = logging.getLogger("registry.payments")

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/confirm", response_model=PaymentConfirmResponse)
async def confirm_payment(
    payload: PaymentConfirmRequest,
    request: Request,
    db: DbSessionDep,
    accounting: AccountingDep,
    current_user: User | None = Depends(get_optional_user),
) -> PaymentConfirmResponse:
    """Record a checkout covering one or more gifts.

    Each gift is settled in its own accounting transaction: either with the
    matching entry of ``amounts`` or, when absent, with the full remaining
    balance. One gift failing does not undo the others.
    """
    contributor = current_user or await get_guest_user(db)
    amounts = payload.amounts or []

    confirmed: list[PaymentOutcome] = []
    failed: list[PaymentFailure] = []
    for index, gift_id in enumerate(payload.gift_ids):
        amount = amounts[index] if index < len(amounts) else None
        try:
            if amount is None:
                result = await accounting.settle_full(
                    gift_id, contributor.id, receipt=payload.receipt, note=payload.note
                )
            else:
                result = await accounting.contribute(
                    gift_id, contributor.id, amount, receipt=payload.receipt, note=payload.note
                )
        except AccountingError as exc:
            audit_contribution(request, contributor.id, gift_id, amount, error=exc.code)
            max_amount = exc.context.get("max_amount")
            failed.append(
                PaymentFailure(
                    gift_id=gift_id,
                    error=exc.code,
                    detail=exc.message,
                    max_amount=float(max_amount) if max_amount is not None else None,
                )
            )
            continue

        audit_contribution(
            request,
            contributor.id,
            gift_id,
            result.contribution.amount,
            contribution_id=result.contribution.id,
        )
        confirmed.append(
            PaymentOutcome(
                gift_id=gift_id,
                contribution_id=result.contribution.id,
                amount=float(result.contribution.amount),
                total_contributed=float(result.funding.total_contributed),
                remaining=float(result.funding.remaining),
                is_fully_funded=result.funding.is_fully_funded,
            )
        )

    audit_log(
        AuditAction.PAYMENT_CONFIRM,
        request=request,
        user_id=contributor.id,
        details={
            "confirmed": [c.gift_id for c in confirmed],
            "failed": [f.gift_id for f in failed],
            "payment_reference": payload.payment_reference,
        },
        success=bool(confirmed),
    )

    if not confirmed:
        logger.info("Payment confirmation rejected user_id=%s gifts=%s", contributor.id, payload.gift_ids)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "message": "No gift could be processed",
                "failed": [f.model_dump() for f in failed],
            },
        )

    return PaymentConfirmResponse(
        message="Payment confirmed",
        contributor_id=contributor.id,
        confirmed=confirmed,
        failed=failed,
        payment_method=payload.payment_method,
        payment_reference=payload.payment_reference,
    )
