from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Index,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import UUID as PGUUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import CHAR, TypeDecorator


class GUID(TypeDecorator):
    """Platform-independent GUID type."""

    impl = CHAR
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            return dialect.type_descriptor(PGUUID(as_uuid=True))
        return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return str(value)
        return str(uuid.UUID(value))

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if isinstance(value, uuid.UUID):
            return value
        return uuid.UUID(value)


class Base(DeclarativeBase):
    """Shared base class for ORM models."""

    id: Mapped[uuid.UUID] = mapped_column(
        GUID(),
        primary_key=True,
        default=uuid.uuid4,
    )


class AdminChangeType:
    INITIAL = "initial"
    TRANSFER = "transfer"
    REVOKE = "revoke"


class Users(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("user_id", name="uq_users_user_id"),)

    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


class QBOTokens(Base):
    __tablename__ = "qbo_tokens"
    __table_args__ = (
        UniqueConstraint("realm_id", name="uq_qbo_tokens_realm"),
        Index("ix_qbo_tokens_user_id", "user_id"),
        Index("ix_qbo_tokens_expires_at", "expires_at"),
    )

    realm_id: Mapped[str] = mapped_column(String(64), nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    access_token_enc: Mapped[str] = mapped_column(String, nullable=False)
    refresh_token_enc: Mapped[str] = mapped_column(String, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    company_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_sandbox: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    metadata_json: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata",
        JSON(none_as_null=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class QBOAdminChanges(Base):
    __tablename__ = "qbo_admin_changes"
    __table_args__ = (
        Index("ix_qbo_admin_changes_realm_id", "realm_id"),
        Index("ix_qbo_admin_changes_created_at", "created_at"),
    )

    realm_id: Mapped[str] = mapped_column(String(64), nullable=False)
    previous_admin_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    new_admin_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    change_type: Mapped[str] = mapped_column(
        Enum(
            AdminChangeType.INITIAL,
            AdminChangeType.TRANSFER,
            AdminChangeType.REVOKE,
            name="admin_change_type_enum",
            native_enum=False,
        ),
        nullable=False,
    )
    initiated_by: Mapped[str] = mapped_column(String(255), nullable=False)
    reason: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)
    metadata_json: Mapped[Optional[dict[str, Any]]] = mapped_column(
        "metadata",
        JSON(none_as_null=True),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )
