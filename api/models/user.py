"""User ORM model: the account fields the subscription lifecycle reads and writes."""

import uuid
from datetime import datetime
from sqlalchemy import String, Boolean, DateTime, Enum as SAEnum
from sqlalchemy.orm import Mapped, mapped_column
from db.database import Base

USER_ROLES = ("basic", "verified", "verified_basic", "verified_premium", "official", "developer")
ADMIN_ROLES = ("official", "developer")


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    phone: Mapped[str | None] = mapped_column(String(20))
    role: Mapped[str] = mapped_column(
        SAEnum(*USER_ROLES, name="user_role"),
        default="basic",
        nullable=False,
    )
    ban_status: Mapped[bool] = mapped_column(Boolean, default=False)
    ban_release_datetime: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
