"""
SQLAlchemy ORM models: ESP connections, backed-up subscribers, sync audit rows.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, relationship

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JsonType = JSON().with_variant(JSONB(), "postgresql")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class EspConnection(Base):
    __tablename__ = "esp_connections"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, nullable=False, index=True)
    provider = Column(String(32), nullable=False)
    auth_method = Column(String(16), nullable=False, default="api_key")
    encrypted_api_key = Column(Text)
    encrypted_access_token = Column(Text)
    encrypted_refresh_token = Column(Text)
    token_expires_at = Column(DateTime(timezone=True))
    list_ids = Column(JsonType, nullable=False, default=list)
    status = Column(String(16), nullable=False, default="active")
    sync_status = Column(String(16), nullable=False, default="idle")
    sync_started_at = Column(DateTime(timezone=True))
    sync_heartbeat_at = Column(DateTime(timezone=True))
    sync_job_id = Column(String(64))
    last_validated_at = Column(DateTime(timezone=True))
    last_synced_at = Column(DateTime(timezone=True))
    created_at = Column(DateTime(timezone=True), default=_now)
    updated_at = Column(DateTime(timezone=True), default=_now, onupdate=_now)

    subscribers = relationship(
        "Subscriber", back_populates="connection", cascade="all, delete-orphan", passive_deletes=True
    )
    sync_history = relationship(
        "SyncHistory", back_populates="connection", cascade="all, delete-orphan", passive_deletes=True
    )


class Subscriber(Base):
    __tablename__ = "subscribers"
    __table_args__ = (
        UniqueConstraint("connection_id", "external_id", name="uq_subscriber_connection_external"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    connection_id = Column(
        Uuid, ForeignKey("esp_connections.id", ondelete="CASCADE"), nullable=False
    )
    external_id = Column(String(255), nullable=False)
    encrypted_email = Column(Text, nullable=False)
    email_fingerprint = Column(String(64), nullable=False)
    masked_email = Column(String(320), nullable=False)
    status = Column(String(16), nullable=False, default="active")
    first_name = Column(String(255))
    last_name = Column(String(255))
    subscribed_at = Column(DateTime(timezone=True))
    unsubscribed_at = Column(DateTime(timezone=True))
    metadata_ = Column("metadata", JsonType)
    created_at = Column(DateTime(timezone=True), default=_now)

    connection = relationship("EspConnection", back_populates="subscribers")


class SyncHistory(Base):
    __tablename__ = "sync_history"
    __table_args__ = (
        Index("ix_sync_history_connection_started", "connection_id", "started_at"),
    )

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    connection_id = Column(
        Uuid, ForeignKey("esp_connections.id", ondelete="CASCADE"), nullable=False
    )
    list_id = Column(String(255))
    status = Column(String(16), nullable=False, default="started")
    started_at = Column(DateTime(timezone=True), nullable=False, default=_now)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text)
    subscriber_count = Column(Integer)

    connection = relationship("EspConnection", back_populates="sync_history")
