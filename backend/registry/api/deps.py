from typing import Annotated
import logging

from fastapi import Cookie, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from registry.core.config import settings
from registry.core.security import decode_access_token, unusable_password_hash
from registry.db.session import get_db
from registry.models.models import RoleEnum, User
from registry.services.accounting import ContributionService
from registry.services.reconciliation import ReconciliationService


DbSessionDep = Annotated[AsyncSession, Depends(get_db)]
logger = logging.getLogger("registry.auth")


def _extract_token(request: Request, cookie_token: str | None) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header.removeprefix("Bearer ").strip() or None
    return cookie_token or None


async def _user_from_token(db: AsyncSession, token: str) -> User | None:
    payload = decode_access_token(token)
    if not payload or "sub" not in payload:
        return None
    try:
        user_id = int(payload["sub"])
    except (TypeError, ValueError):
        return None
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_current_user(
    request: Request,
    db: DbSessionDep,
    access_token: str | None = Cookie(default=None, alias="access_token"),
) -> User:
    token = _extract_token(request, access_token)
    if not token:
        logger.info(
            "Auth token missing path=%s ip=%s",
            request.url.path,
            request.client.host if request.client else None,
        )
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")

    user = await _user_from_token(db, token)
    if not user:
        logger.info("Auth token invalid path=%s", request.url.path)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return user


async def get_optional_user(
    request: Request,
    db: DbSessionDep,
    access_token: str | None = Cookie(default=None, alias="access_token"),
) -> User | None:
    token = _extract_token(request, access_token)
    if not token:
        return None
    return await _user_from_token(db, token)


async def require_admin(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin privileges required")
    return current_user


async def get_guest_user(db: AsyncSession) -> User:
    """Shared identity for contributions made without signing in."""
    result = await db.execute(select(User).where(User.username == settings.guest_username))
    guest = result.scalar_one_or_none()
    if guest is not None:
        return guest

    guest = User(
        username=settings.guest_username,
        hashed_password=unusable_password_hash(),
        role=RoleEnum.GUEST.value,
    )
    db.add(guest)
    try:
        await db.commit()
    except IntegrityError:
        # created concurrently by another request
        await db.rollback()
        result = await db.execute(select(User).where(User.username == settings.guest_username))
        return result.scalar_one()
    logger.info("Guest identity created user_id=%s", guest.id)
    return guest


def get_accounting(request: Request) -> ContributionService:
    return request.app.state.accounting


def get_reconciliation(request: Request) -> ReconciliationService:
    return request.app.state.reconciliation


AccountingDep = Annotated[ContributionService, Depends(get_accounting)]
ReconciliationDep = Annotated[ReconciliationService, Depends(get_reconciliation)]
