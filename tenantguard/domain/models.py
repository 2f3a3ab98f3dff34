from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Index,
    event,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from tenantguard.core.errors import AuditImmutableError


# JSONB on Postgres, plain JSON elsewhere so tests can run on SQLite.
JsonType = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
IdType = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class RateLimitBucket(Base):
    __tablename__ = "rate_limit_buckets"
    __table_args__ = (
        UniqueConstraint("key", "window_start", name="uq_rate_limit_buckets_key_window"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    # tenant_id + ":" + credential fingerprint.
    key: Mapped[str] = mapped_column(String, index=True)
    # Truncated to the start of the UTC minute.
    window_start: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    count: Mapped[int] = mapped_column(Integer, default=1, nullable=False)


class WebhookIdempotencyRecord(Base):
    __tablename__ = "webhook_idempotency"

    # Signature values are globally unique once recorded.
    signature: Mapped[str] = mapped_column(String, primary_key=True)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))


class TenantSecret(Base):
    __tablename__ = "tenant_secrets"
    __table_args__ = (
        UniqueConstraint("tenant_id", "name", name="uq_tenant_secrets_tenant_name"),
    )

    # Integration credentials stored as versioned column ciphertext.
    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    name: Mapped[str] = mapped_column(String)
    value_enc: Mapped[str] = mapped_column(Text)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"
    __table_args__ = (
        Index("ix_audit_logs_tenant_occurred", "tenant_id", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(IdType, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    action: Mapped[str] = mapped_column(String, index=True)
    resource: Mapped[str] = mapped_column(String)
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    ip: Mapped[str | None] = mapped_column(String, nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String, nullable=True)
    # Caller-supplied snapshots; persisted without interpretation.
    old_value: Mapped[Any | None] = mapped_column(JsonType, nullable=True)
    new_value: Mapped[Any | None] = mapped_column(JsonType, nullable=True)
    result: Mapped[str] = mapped_column(String)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)


class EvidenceArtifact(Base):
    __tablename__ = "evidence_files"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String, index=True)
    path: Mapped[str] = mapped_column(String)
    sha256: Mapped[str] = mapped_column(String)
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# (table, primary key column, ciphertext column) swept by key rotation.
ENCRYPTED_COLUMNS: list[tuple[str, str, str]] = [
    (TenantSecret.__tablename__, "id", "value_enc"),
]


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target) -> None:  # noqa: ARG001
    raise AuditImmutableError("audit_logs rows cannot be updated")


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target) -> None:  # noqa: ARG001
    raise AuditImmutableError("audit_logs rows cannot be deleted")
