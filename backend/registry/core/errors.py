"""Error taxonomy of the contribution accounting service.

Every error carries an HTTP status, a stable ``code`` and the numeric context a
client needs to correct its request without a second round trip.
"""

import math
from decimal import Decimal
from typing import Any


class AccountingError(Exception):
    status_code = 400
    code = "accounting_error"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"detail": self.message, "error": self.code}
        for key, value in self.context.items():
            body[key] = float(value) if isinstance(value, Decimal) else value
        return body


def _echo_amount(amount: Any) -> Any:
    """The rejected value as it can be sent back in a JSON body."""
    if isinstance(amount, float) and not math.isfinite(amount):
        return str(amount)
    return amount if isinstance(amount, (int, float, str)) else None


class InvalidAmount(AccountingError):
    code = "invalid_amount"

    def __init__(self, amount: Any, reason: str = "Amount must be a positive number") -> None:
        super().__init__(reason, amount=_echo_amount(amount))


class GiftNotFound(AccountingError):
    status_code = 404
    code = "gift_not_found"

    def __init__(self, gift_id: int) -> None:
        super().__init__(f"Gift {gift_id} not found", gift_id=gift_id)


class AlreadyFullyFunded(AccountingError):
    code = "already_fully_funded"

    def __init__(self, gift_id: int, price: Decimal, total_contributed: Decimal) -> None:
        super().__init__(
            f"Gift {gift_id} is already fully funded",
            gift_id=gift_id,
            price=price,
            total_contributed=total_contributed,
            max_amount=Decimal("0.00"),
        )


class AmountExceedsPrice(AccountingError):
    code = "amount_exceeds_price"

    def __init__(self, gift_id: int, amount: Decimal, price: Decimal, remaining: Decimal) -> None:
        super().__init__(
            f"Amount {amount} exceeds the gift price {price}; maximum allowed is {remaining}",
            gift_id=gift_id,
            amount=amount,
            price=price,
            remaining=remaining,
            max_amount=remaining,
        )


class AmountExceedsRemaining(AccountingError):
    code = "amount_exceeds_remaining"

    def __init__(self, gift_id: int, amount: Decimal, remaining: Decimal) -> None:
        super().__init__(
            f"Amount {amount} exceeds the remaining balance; maximum allowed is {remaining}",
            gift_id=gift_id,
            amount=amount,
            remaining=remaining,
            max_amount=remaining,
        )


class OrphanedContribution(AccountingError):
    status_code = 409
    code = "orphaned_contribution"

    def __init__(self, contribution_ids: list[int]) -> None:
        super().__init__(
            f"{len(contribution_ids)} contribution(s) reference a gift that no longer exists",
            contribution_ids=list(contribution_ids),
        )
