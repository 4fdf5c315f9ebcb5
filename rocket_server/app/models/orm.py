from __future__ import annotations
from datetime import datetime
import hashlib
import uuid
from typing import Optional

from sqlalchemy import (
    String,
    DateTime,
    Boolean,
    ForeignKey,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from ..db import Base


def _uuid() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.utcnow()


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    # Unique email is the arbiter when two logins race to create the same synthetic account
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    password_hash: Mapped[str] = mapped_column(String(255))
    phone: Mapped[Optional[str]] = mapped_column(String(32), unique=True, nullable=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)


class Session(Base):
    __tablename__ = "sessions"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(32), ForeignKey("users.id", ondelete="CASCADE"), index=True)
    refresh_token_hash: Mapped[str] = mapped_column(String(64), index=True)
    expires_at: Mapped[datetime] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)

    @staticmethod
    def hash_token(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()


class UserPurchase(Base):
    __tablename__ = "user_purchases"
    __table_args__ = (
        UniqueConstraint("receipt_hash", name="uq_user_purchases_receipt_hash"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    # Not a foreign key: user ids may come from an external identity provider
    user_id: Mapped[str] = mapped_column(String(64), index=True)
    app_slug: Mapped[str] = mapped_column(String(64), default="unknown")
    product_id: Mapped[str] = mapped_column(String(128), default="unknown")
    platform: Mapped[str] = mapped_column(String(16), default="ios")
    transaction_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    receipt_hash: Mapped[str] = mapped_column(String(64))
    receipt_excerpt: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    source_device_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    is_valid: Mapped[bool] = mapped_column(Boolean, default=True)
    purchased_at: Mapped[datetime] = mapped_column(DateTime)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_utcnow)
