from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as StrEnumBase

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from registry.core.config import settings
from registry.db.session import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RoleEnum(str, StrEnumBase):
    ADMIN = "admin"
    GUEST = "guest"


class GiftTypeEnum(str, StrEnumBase):
    TICKET = "Ticket"
    OPEN_CONTRIBUTION = "Open contribution"
    FULL_PAYMENT = "Full payment"


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    username: Mapped[str] = mapped_column(String(120), unique=True, index=True, nullable=False)
    hashed_password: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), default=RoleEnum.GUEST.value, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    contributions: Mapped[list["Contribution"]] = relationship(back_populates="user")

    @property
    def is_admin(self) -> bool:
        return self.role == RoleEnum.ADMIN.value


class Category(Base):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(120), unique=True, nullable=False, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    gifts: Mapped[list["Gift"]] = relationship(back_populates="category_ref")


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    couple_names: Mapped[str | None] = mapped_column(String(255), nullable=True)
    wedding_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)
    address: Mapped[str | None] = mapped_column(String(500), nullable=True)
    dress_code: Mapped[str | None] = mapped_column(String(120), default="Elegante")
    dress_code_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    banner_image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    additional_info: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Gift(Base):
    __tablename__ = "gifts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default=lambda: settings.default_currency)
    category: Mapped[str | None] = mapped_column(String(120), nullable=True, index=True)
    category_id: Mapped[int | None] = mapped_column(ForeignKey("categories.id"), nullable=True, index=True)
    # available/total only matter for ticket-style gifts
    available: Mapped[int] = mapped_column(Integer, default=1)
    total: Mapped[int] = mapped_column(Integer, default=1)
    gift_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    image_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # Cache of (sum of ledger amounts >= price); only the accounting service writes it.
    is_contributed: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    category_ref: Mapped[Category | None] = relationship(back_populates="gifts")
    contributions: Mapped[list["Contribution"]] = relationship(back_populates="gift")

    __table_args__ = (
        CheckConstraint("price > 0", name="ck_gifts_price_positive"),
    )


class Contribution(Base):
    """Append-only ledger entry."""

    __tablename__ = "gift_contributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    gift_id: Mapped[int] = mapped_column(ForeignKey("gifts.id"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    receipt_file: Mapped[str | None] = mapped_column(String(500), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, index=True)

    gift: Mapped[Gift] = relationship(back_populates="contributions")
    user: Mapped[User] = relationship(back_populates="contributions")

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_gift_contributions_amount_positive"),
    )
