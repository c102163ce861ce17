from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import select

from registry.api.deps import DbSessionDep, require_admin
from registry.models.models import Event, User
from registry.schemas.catalog import EventCreate, EventPublic, EventUpdate

router = APIRouter(prefix="/events", tags=["events"])


@router.get("", response_model=EventPublic)
async def get_current_event(db: DbSessionDep) -> Event:
    result = await db.execute(select(Event).order_by(Event.created_at.desc(), Event.id.desc()).limit(1))
    event = result.scalar_one_or_none()
    if not event:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
    return event


@router.post("", response_model=EventPublic, status_code=status.HTTP_201_CREATED)
async def create_event(
    payload: EventCreate,
    db: DbSessionDep,
    admin: User = Depends(require_admin),
) -> Event:
    event = Event(**payload.model_dump())
    db.add(event)
    await db.commit()
    await db.refresh(event)
    return event


@router.put("/{event_id}", response_model=EventPublic)
async def update_event(
    event_id: int,
    payload: EventUpdate,
    db: DbSessionDep,
    admin: User = Depends(require_admin),
) -> Event:
    event = await db.get(Event, event_id)
    if not event:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
    for field, value in payload.model_dump(exclude_unset=True).items():
        if field == "title" and value is None:
            continue
        setattr(event, field, value)
    await db.commit()
    await db.refresh(event)
    return event
