from typing import List, Optional
from datetime import datetime, date
import uuid
from sqlalchemy import (
    String,
    Boolean,
    Integer,
    Text,
    ForeignKey,
    Enum,
    Index,
    UniqueConstraint,
    CheckConstraint,
    DateTime,
    Date,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
import enum

from app.utils.datetime_utils import naive_utc_now


class Base(DeclarativeBase):
    pass


def new_uuid() -> str:
    return str(uuid.uuid4())


# Enums
class RitualStatus(enum.Enum):
    PLANNED = "planned"
    COMPLETED = "completed"
    MISSED = "missed"


class PushPlatform(enum.Enum):
    IOS = "ios"
    ANDROID = "android"
    WEB = "web"


# Base model with common audit fields
class AuditMixin:
    """Mixin for common audit fields, stored as naive UTC"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, onupdate=naive_utc_now, nullable=False
    )


# Models
class User(Base, AuditMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    display_name: Mapped[Optional[str]] = mapped_column(String(120))
    locale: Mapped[str] = mapped_column(String(16), default="pt-BR", nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), default="UTC", nullable=False)
    check_in_hour: Mapped[int] = mapped_column(Integer, default=20, nullable=False)
    check_in_minute: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notifications_enabled: Mapped[bool] = mapped_column(
        Boolean, default=True, nullable=False
    )
    sound_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Relationships
    ritual_days: Mapped[List["RitualDay"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )
    push_devices: Mapped[List["PushDevice"]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    # Constraints
    __table_args__ = (
        CheckConstraint(
            "check_in_hour >= 0 AND check_in_hour <= 23",
            name="ck_users_check_in_hour_range",
        ),
        CheckConstraint(
            "check_in_minute >= 0 AND check_in_minute <= 59",
            name="ck_users_check_in_minute_range",
        ),
    )


class RitualDay(Base, AuditMixin):
    __tablename__ = "ritual_days"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    # Calendar day in the user's timezone, deliberately timezone-naive
    local_date: Mapped[date] = mapped_column(Date, nullable=False)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    note: Mapped[Optional[str]] = mapped_column(Text)
    status: Mapped[RitualStatus] = mapped_column(
        Enum(RitualStatus), default=RitualStatus.PLANNED, nullable=False
    )
    achieved: Mapped[Optional[bool]] = mapped_column(Boolean)
    check_in_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    past_due: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reflection: Mapped[Optional[str]] = mapped_column(Text)

    # Relationships
    user: Mapped["User"] = relationship(back_populates="ritual_days")
    subtasks: Mapped[List["RitualSubtask"]] = relationship(
        back_populates="ritual_day",
        cascade="all, delete-orphan",
        order_by="RitualSubtask.order",
    )

    # Constraints
    __table_args__ = (
        UniqueConstraint("user_id", "local_date", name="uq_ritual_days_user_date"),
        Index("idx_ritual_days_status", "status", "past_due"),
        Index("idx_ritual_days_local_date", "local_date"),
        Index("idx_ritual_days_created_at", "created_at"),
    )


class RitualSubtask(Base, AuditMixin):
    __tablename__ = "ritual_subtasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    ritual_day_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("ritual_days.id", ondelete="CASCADE"), nullable=False
    )
    content: Mapped[str] = mapped_column(String(500), nullable=False)
    order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    done: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Relationships
    ritual_day: Mapped["RitualDay"] = relationship(back_populates="subtasks")

    __table_args__ = (Index("idx_ritual_subtasks_ritual_day_id", "ritual_day_id"),)


class PushDevice(Base, AuditMixin):
    __tablename__ = "push_devices"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    user_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token: Mapped[str] = mapped_column(String(512), unique=True, nullable=False)
    platform: Mapped[PushPlatform] = mapped_column(
        Enum(PushPlatform), default=PushPlatform.ANDROID, nullable=False
    )
    # Set when a provider reports the token invalid; devices are never deleted
    disabled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )

    # Relationships
    user: Mapped["User"] = relationship(back_populates="push_devices")

    __table_args__ = (Index("idx_push_devices_user_disabled", "user_id", "disabled"),)
