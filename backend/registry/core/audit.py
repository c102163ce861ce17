"""Audit logging for registry operations that move money or change the catalog."""

import logging
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any

from fastapi import Request


logger = logging.getLogger("registry.audit")

_SENSITIVE_KEYS = ("password", "token", "secret", "key", "authorization")


class AuditAction(str, Enum):
    LOGIN = "login"
    LOGIN_FAILED = "login_failed"
    ADMIN_SETUP = "admin_setup"

    GIFT_CREATE = "gift_create"
    GIFT_UPDATE = "gift_update"
    GIFT_DELETE = "gift_delete"
    GIFT_RESET = "gift_reset"

    CONTRIBUTION_CREATE = "contribution_create"
    CONTRIBUTION_REJECTED = "contribution_rejected"
    PAYMENT_CONFIRM = "payment_confirm"

    RECONCILE = "reconcile"


def audit_log(
    action: AuditAction,
    request: Request | None = None,
    user_id: int | str | None = None,
    details: dict[str, Any] | None = None,
    success: bool = True,
) -> None:
    """
    Log an audit event.

    Args:
        action: The action being performed
        request: FastAPI request object (for IP, user agent)
        user_id: ID of the user performing the action
        details: Additional details about the action
        success: Whether the action was successful
    """
    event: dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "action": action.value,
        "success": success,
    }

    if user_id is not None:
        event["user_id"] = str(user_id)

    if request:
        client_host = request.client.host if request.client else None
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            client_host = forwarded.split(",")[0].strip()
        event["ip"] = client_host
        event["user_agent"] = request.headers.get("User-Agent", "")[:200]
        event["request_id"] = request.headers.get("X-Request-Id", "")

    if details:
        sanitized = {}
        for key, value in details.items():
            if key in _SENSITIVE_KEYS:
                sanitized[key] = "***REDACTED***"
            elif isinstance(value, Decimal):
                sanitized[key] = str(value)
            else:
                sanitized[key] = value
        event["details"] = sanitized

    if success:
        logger.info("AUDIT: %s", event)
    else:
        logger.warning("AUDIT: %s", event)


def audit_login(request: Request, username: str, user_id: int | None, reason: str | None = None) -> None:
    if reason is None:
        audit_log(AuditAction.LOGIN, request=request, user_id=user_id, details={"username": username})
    else:
        audit_log(
            AuditAction.LOGIN_FAILED,
            request=request,
            details={"username": username, "reason": reason},
            success=False,
        )


def audit_gift_action(
    action: AuditAction,
    request: Request,
    user_id: int,
    gift_id: int,
    details: dict[str, Any] | None = None,
) -> None:
    event_details: dict[str, Any] = {"gift_id": gift_id}
    if details:
        event_details.update(details)
    audit_log(action, request=request, user_id=user_id, details=event_details)


def audit_contribution(
    request: Request | None,
    user_id: int,
    gift_id: int,
    amount: Any,
    contribution_id: int | None = None,
    error: str | None = None,
) -> None:
    details: dict[str, Any] = {"gift_id": gift_id, "amount": amount}
    if contribution_id is not None:
        details["contribution_id"] = contribution_id
    if error is not None:
        details["error"] = error
    audit_log(
        AuditAction.CONTRIBUTION_CREATE if error is None else AuditAction.CONTRIBUTION_REJECTED,
        request=request,
        user_id=user_id,
        details=details,
        success=error is None,
    )
