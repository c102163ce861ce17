import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from registry.api.deps import DbSessionDep, require_admin
from registry.models.models import Category, Gift, User
from registry.schemas.catalog import CategoryCreate, CategoryPublic, CategoryUpdate

logger = logging.getLogger("registry.categories")

router = APIRouter(prefix="/categories", tags=["categories"])


async def _get_category_or_404(db: AsyncSession, category_id: int) -> Category:
    category = await db.get(Category, category_id)
    if not category:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Category not found")
    return category


@router.get("", response_model=list[CategoryPublic])
async def list_categories(db: DbSessionDep, active: bool | None = None) -> list[Category]:
    stmt = select(Category).order_by(Category.name.asc())
    if active is not None:
        stmt = stmt.where(Category.is_active.is_(active))
    return list((await db.execute(stmt)).scalars().all())


@router.get("/{category_id}", response_model=CategoryPublic)
async def get_category(category_id: int, db: DbSessionDep) -> Category:
    return await _get_category_or_404(db, category_id)


@router.post("", response_model=CategoryPublic, status_code=status.HTTP_201_CREATED)
async def create_category(
    payload: CategoryCreate,
    db: DbSessionDep,
    admin: User = Depends(require_admin),
) -> Category:
    category = Category(**payload.model_dump())
    db.add(category)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Category already exists") from None
    await db.refresh(category)
    logger.info("Category created category_id=%s by admin_id=%s", category.id, admin.id)
    return category


@router.put("/{category_id}", response_model=CategoryPublic)
async def update_category(
    category_id: int,
    payload: CategoryUpdate,
    db: DbSessionDep,
    admin: User = Depends(require_admin),
) -> Category:
    category = await _get_category_or_404(db, category_id)
    for field, value in payload.model_dump(exclude_unset=True).items():
        if value is None and field in {"name", "is_active"}:
            continue
        setattr(category, field, value.strip() if field == "name" else value)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Category already exists") from None
    await db.refresh(category)
    return category


@router.delete("/{category_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_category(
    category_id: int,
    db: DbSessionDep,
    admin: User = Depends(require_admin),
) -> None:
    category = await _get_category_or_404(db, category_id)
    in_use = await db.execute(select(func.count(Gift.id)).where(Gift.category_id == category.id))
    gift_count = in_use.scalar_one()
    if gift_count > 0:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Category is used by {gift_count} gift(s)",
        )
    await db.delete(category)
    await db.commit()
    logger.info("Category deleted category_id=%s by admin_id=%s", category_id, admin.id)
