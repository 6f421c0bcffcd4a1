from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    Enum,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from quartermaster.domain.state import (
    ItemCategory,
    ItemStatus,
    LocationLevel,
    LocationSide,
    Role,
    TransactionAction,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _enum_column(enum_cls: type) -> Enum:
    # Persist enum values (not member names) as plain strings for portable migrations.
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [member.value for member in members],
        validate_strings=True,
    )


# Portable JSON: JSONB on Postgres, generic JSON on SQLite.
_JSON = JSON().with_variant(JSONB(), "postgresql")
# SQLite only autoincrements INTEGER primary keys.
_BIGINT_PK = BigInteger().with_variant(Integer(), "sqlite")


class Base(DeclarativeBase):
    pass


class Tenant(Base):
    __tablename__ = "tenants"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str] = mapped_column(String)
    # URL-safe selector carried on every request; the single entry point to a tenant.
    slug: Mapped[str] = mapped_column(String, unique=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Principal(Base):
    __tablename__ = "principals"
    __table_args__ = (
        # Same email may exist in different troops, never twice in one.
        UniqueConstraint("tenant_id", "email", name="uq_principals_tenant_email"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    username: Mapped[str] = mapped_column(String)
    email: Mapped[str] = mapped_column(String, index=True)
    credential_hash: Mapped[str] = mapped_column(String)
    role: Mapped[Role] = mapped_column(_enum_column(Role))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Item(Base):
    __tablename__ = "items"
    __table_args__ = (
        # Target for the ledger's composite FK so a transaction can never point across tenants.
        UniqueConstraint("id", "tenant_id", name="uq_items_id_tenant"),
        Index("ix_items_tenant_status", "tenant_id", "status"),
        Index("ix_items_tenant_category", "tenant_id", "category"),
        Index("ix_items_location", "location_side", "location_level"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    name: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[ItemCategory] = mapped_column(_enum_column(ItemCategory))
    location_side: Mapped[LocationSide] = mapped_column(_enum_column(LocationSide))
    location_level: Mapped[LocationLevel] = mapped_column(_enum_column(LocationLevel))
    # Mutated only by the circulation state machine.
    status: Mapped[ItemStatus] = mapped_column(
        _enum_column(ItemStatus), default=ItemStatus.AVAILABLE
    )
    # Globally unique across tenants even though resolution also checks the troop slug.
    qr_token: Mapped[str] = mapped_column(String, unique=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)


class Transaction(Base):
    __tablename__ = "transactions"
    __table_args__ = (
        ForeignKeyConstraint(
            ["item_id", "tenant_id"],
            ["items.id", "items.tenant_id"],
            ondelete="CASCADE",
            name="fk_transactions_item_tenant",
        ),
        # Per-item gap-free ordering; a second writer for the same slot fails loudly.
        UniqueConstraint("item_id", "sequence", name="uq_transactions_item_sequence"),
        Index("ix_transactions_tenant_occurred_at", "tenant_id", "occurred_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True)
    tenant_id: Mapped[str] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    item_id: Mapped[str] = mapped_column(String, index=True)
    # Nullable for walk-up borrowers without an account.
    principal_id: Mapped[str | None] = mapped_column(
        String, ForeignKey("principals.id", ondelete="SET NULL"), nullable=True
    )
    action: Mapped[TransactionAction] = mapped_column(_enum_column(TransactionAction))
    performed_by_label: Mapped[str | None] = mapped_column(String, nullable=True)
    expected_return_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    sequence: Mapped[int] = mapped_column(Integer)


class IdempotencyRecord(Base):
    __tablename__ = "idempotency_records"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "actor_id",
            "method",
            "path",
            "idem_key",
            name="uq_idempotency_records_scope",
        ),
        Index("ix_idempotency_records_expires_at", "expires_at"),
    )

    # Store request/response snapshots to enable safe idempotent retries.
    id: Mapped[int] = mapped_column(_BIGINT_PK, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(
        String, ForeignKey("tenants.id", ondelete="CASCADE"), index=True
    )
    actor_id: Mapped[str] = mapped_column(String, index=True)
    method: Mapped[str] = mapped_column(String)
    path: Mapped[str] = mapped_column(String)
    idem_key: Mapped[str] = mapped_column(String)
    request_hash: Mapped[str] = mapped_column(String)
    response_status: Mapped[int] = mapped_column(Integer)
    response_body_json: Mapped[Any | None] = mapped_column(_JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utc_now)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
