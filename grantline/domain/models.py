from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


# JSONB on Postgres, plain JSON elsewhere so the schema also builds on SQLite.
JSONType = JSON().with_variant(JSONB(), "postgresql")

ACCESS_PENDING = "PENDING"
ACCESS_GRANTED = "GRANTED"
ACCESS_FAILED = "FAILED"
ACCESS_REVOKED = "REVOKED"

PURCHASE_PENDING = "PENDING"
PURCHASE_COMPLETED = "COMPLETED"
PURCHASE_FAILED = "FAILED"

STATE_HEALTHY = "HEALTHY"
STATE_DEGRADED = "DEGRADED"

TASK_TYPE_GRANT = "grant"
TASK_TYPE_REVOKE = "revoke"
TASK_PENDING = "pending"
TASK_COMPLETED = "completed"
TASK_FAILED = "failed"

PROVISIONING_STATE_ROW_ID = 1


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    email: Mapped[str] = mapped_column(String, unique=True)
    name: Mapped[str | None] = mapped_column(String, nullable=True)
    # Username on the upstream platform; access cannot be provisioned without it.
    platform_username: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Resource(Base):
    __tablename__ = "resources"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    slug: Mapped[str] = mapped_column(String, unique=True)
    # Identifier of the protected resource on the upstream platform.
    external_id: Mapped[str] = mapped_column(String)
    # Resources with auto-provisioning disabled are always granted by an operator.
    auto_provision: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Purchase(Base):
    __tablename__ = "purchases"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    # Checkout session id from the payment provider; the idempotency key for fan-out.
    external_session_id: Mapped[str] = mapped_column(String, unique=True)
    payment_intent_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    customer_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default=PURCHASE_PENDING, nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    purchased_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AccessGrant(Base):
    __tablename__ = "access_grants"
    __table_args__ = (
        UniqueConstraint("user_id", "resource_id", name="uq_access_grants_user_resource"),
        Index("ix_access_grants_status", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    user_id: Mapped[str] = mapped_column(String, ForeignKey("users.id"), index=True)
    resource_id: Mapped[str] = mapped_column(String, ForeignKey("resources.id"), index=True)
    status: Mapped[str] = mapped_column(String, default=ACCESS_PENDING, nullable=False)
    # Counts ordinary failed attempts only; DEGRADED deferrals never increment it.
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    granted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Correlates the grant with the queue job currently responsible for it.
    job_id: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    user: Mapped[User] = relationship(lazy="joined")
    resource: Mapped[Resource] = relationship(lazy="joined")


class ProvisioningStateRecord(Base):
    __tablename__ = "provisioning_state"

    # Single-row table; every worker process reads and writes row id=1.
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    state: Mapped[str] = mapped_column(String, default=STATE_HEALTHY, nullable=False)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    incident_id: Mapped[str | None] = mapped_column(String, nullable=True)
    degraded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    healthy_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)


class ProvisioningCredential(Base):
    __tablename__ = "provisioning_credentials"
    __table_args__ = (
        # At most one active credential set at a time.
        Index(
            "uq_provisioning_credentials_active",
            "is_active",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    session_id_encrypted: Mapped[bytes] = mapped_column(LargeBinary)
    signature_encrypted: Mapped[bytes] = mapped_column(LargeBinary)
    # Concatenated per-secret nonces and GCM tags (session id first, signature second).
    iv: Mapped[bytes] = mapped_column(LargeBinary)
    auth_tag: Mapped[bytes] = mapped_column(LargeBinary)
    api_url: Mapped[str] = mapped_column(String)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    validated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class ManualTask(Base):
    __tablename__ = "manual_tasks"
    __table_args__ = (
        Index("ix_manual_tasks_status_created", "status", "created_at"),
        # One open task per grant and action.
        Index(
            "uq_manual_tasks_pending_grant",
            "access_grant_id",
            "type",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    type: Mapped[str] = mapped_column(String)
    username: Mapped[str] = mapped_column(String)
    resource_id: Mapped[str] = mapped_column(String, ForeignKey("resources.id"), index=True)
    # Linked grant is the single source of truth for "awaiting manual provisioning".
    access_grant_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("access_grants.id"), nullable=True, index=True
    )
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default=TASK_PENDING, nullable=False)
    source: Mapped[str] = mapped_column(String, default="provider", nullable=False)
    completed_by: Mapped[str | None] = mapped_column(String, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AuditEvent(Base):
    __tablename__ = "audit_events"
    __table_args__ = (
        Index("ix_audit_events_event_type_occurred", "event_type", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    actor_type: Mapped[str] = mapped_column(String)
    actor_id: Mapped[str | None] = mapped_column(String, nullable=True)
    event_type: Mapped[str] = mapped_column(String)
    outcome: Mapped[str] = mapped_column(String)
    resource_type: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    request_id: Mapped[str | None] = mapped_column(String, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
