import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from registry.api.deps import DbSessionDep, get_current_user, require_admin
from registry.core.audit import AuditAction, audit_log, audit_login
from registry.core.config import settings
from registry.core.security import create_access_token, get_password_hash, verify_password
from registry.models.models import RoleEnum, User
from registry.schemas.auth import LoginRequest, SetupRequest, TokenResponse, UserCreate, UserPublic


router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger("registry.auth")


def _set_auth_cookie(response: Response, token: str) -> None:
    local = (settings.environment or "local").lower() in {"local", "test"}
    response.set_cookie(
        "access_token",
        token,
        httponly=True,
        max_age=settings.access_token_expire_minutes * 60,
        path="/",
        samesite="lax" if local else "none",
        secure=not local,
    )


@router.post("/login", response_model=TokenResponse)
async def login(
    payload: LoginRequest,
    response: Response,
    request: Request,
    db: DbSessionDep,
) -> TokenResponse:
    try:
        result = await db.execute(select(User).where(User.username == payload.username))
        user = result.scalar_one_or_none()
    except SQLAlchemyError:
        logger.exception("Auth login db error username=%s", payload.username)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database unavailable",
        )

    if not user or user.username == settings.guest_username:
        audit_login(request, payload.username, None, reason="user_not_found")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")
    if not verify_password(payload.password, user.hashed_password):
        audit_login(request, payload.username, user.id, reason="invalid_password")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid credentials")

    token = create_access_token(str(user.id), user.role)
    _set_auth_cookie(response, token)
    audit_login(request, payload.username, user.id)
    return TokenResponse(access_token=token, user=UserPublic.model_validate(user))


@router.get("/verify", response_model=UserPublic)
async def verify(current_user: User = Depends(get_current_user)) -> UserPublic:
    return UserPublic.model_validate(current_user)


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT)
async def logout(response: Response) -> None:
    response.delete_cookie("access_token", path="/")


@router.post("/setup", response_model=UserPublic, status_code=status.HTTP_201_CREATED)
async def setup_admin(payload: SetupRequest, request: Request, db: DbSessionDep) -> UserPublic:
    """Create the first administrator. Refused once any admin exists."""
    existing_admin = await db.execute(select(User.id).where(User.role == RoleEnum.ADMIN.value).limit(1))
    if existing_admin.first() is not None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="An administrator already exists")
    if payload.username == settings.guest_username:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username is reserved")

    user = User(
        username=payload.username,
        hashed_password=get_password_hash(payload.password),
        role=RoleEnum.ADMIN.value,
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User already exists") from None
    await db.refresh(user)
    audit_log(AuditAction.ADMIN_SETUP, request=request, user_id=user.id, details={"username": user.username})
    return UserPublic.model_validate(user)


@router.post("/users", response_model=UserPublic, status_code=status.HTTP_201_CREATED)
async def create_user(
    payload: UserCreate,
    db: DbSessionDep,
    admin: User = Depends(require_admin),
) -> UserPublic:
    if payload.username == settings.guest_username:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Username is reserved")
    user = User(
        username=payload.username,
        hashed_password=get_password_hash(payload.password),
        role=payload.role.value,
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="User already exists") from None
    await db.refresh(user)
    logger.info("User created user_id=%s role=%s by admin_id=%s", user.id, user.role, admin.id)
    return UserPublic.model_validate(user)
