"""
SQLAlchemy database models for Shipyard.

All models use:
- UUIDv7 primary keys (time-sortable)
- snake_case column names
- Plural table names
- Timezone-aware UTC timestamps
- Encrypted-at-rest credential columns (Fernet ciphertext, see encryption_service)

step_logs is append-only: rows are inserted by the step executor and never
updated or deleted.
"""

import time
import uuid
from datetime import UTC, datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (sqlite for local runs and tests)
JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


def generate_uuid7() -> uuid.UUID:
    """Generate a UUIDv7 (time-sortable UUID)."""
    timestamp_ms = int(time.time() * 1000)
    rand_bytes = uuid.uuid4().bytes[6:]

    uuid_bytes = (
        timestamp_ms.to_bytes(6, "big")
        + bytes([0x70 | (rand_bytes[0] & 0x0F)])  # Version 7
        + bytes([0x80 | (rand_bytes[1] & 0x3F)])  # Variant
        + rand_bytes[2:]
    )
    return uuid.UUID(bytes=uuid_bytes)


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONType,
    }


class Application(Base):
    """A managed (server, deployment) pairing.

    Identified by the natural key (host, username, application_name). Re-verifying
    a connection for an existing key updates the row in place.
    """

    __tablename__ = "applications"
    __table_args__ = (
        UniqueConstraint("host", "username", "application_name", name="uq_applications_natural_key"),
    )

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=generate_uuid7)
    host: Mapped[str] = mapped_column(String(255), nullable=False)
    username: Mapped[str] = mapped_column(String(255), nullable=False)
    application_name: Mapped[str] = mapped_column(String(255), nullable=False)
    port: Mapped[int] = mapped_column(Integer, default=22, nullable=False)

    # Fernet ciphertext
    ssh_private_key_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    github_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)

    github_username: Mapped[str | None] = mapped_column(String(255), nullable=True)
    selected_repo: Mapped[str | None] = mapped_column(String(255), nullable=True)
    pathname: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    domain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    db_type: Mapped[str | None] = mapped_column(String(32), nullable=True)
    private_key_secret_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(32), default="pending", nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    database_config: Mapped["DatabaseConfig | None"] = relationship(
        back_populates="application", uselist=False, lazy="selectin"
    )


class DatabaseConfig(Base):
    """Database configuration attached 1:1 to an application.

    Overwritten wholesale on save.
    """

    __tablename__ = "database_configs"

    application_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, ForeignKey("applications.id"), primary_key=True
    )
    db_type: Mapped[str] = mapped_column(String(32), nullable=False)
    db_name: Mapped[str] = mapped_column(String(255), nullable=False)
    db_username: Mapped[str] = mapped_column(String(255), nullable=False)
    db_password_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    db_port: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, onupdate=utc_now, nullable=False
    )

    application: Mapped[Application] = relationship(back_populates="database_config")


class StepLog(Base):
    """One immutable record of a single step invocation's outcome."""

    __tablename__ = "step_logs"
    __table_args__ = (Index("ix_step_logs_application_step", "application_id", "step"),)

    id: Mapped[uuid.UUID] = mapped_column(sa.Uuid, primary_key=True, default=generate_uuid7)
    application_id: Mapped[uuid.UUID] = mapped_column(
        sa.Uuid, ForeignKey("applications.id"), nullable=False, index=True
    )
    step: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)  # success, failed
    message: Mapped[str] = mapped_column(Text, default="", nullable=False)
    detail: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utc_now, nullable=False
    )
