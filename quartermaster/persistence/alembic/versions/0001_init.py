"""init troops, principals, items, ledger

Revision ID: 0001_init
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_init"
down_revision = None
branch_labels = None
depends_on = None

_JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
_BIGINT_PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "tenants",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_tenants_slug", "tenants", ["slug"], unique=True)

    op.create_table(
        "principals",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("username", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("credential_hash", sa.String(), nullable=False),
        # Enum values are stored as plain strings to keep migrations portable.
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("tenant_id", "email", name="uq_principals_tenant_email"),
    )
    op.create_index("ix_principals_tenant_id", "principals", ["tenant_id"], unique=False)
    op.create_index("ix_principals_email", "principals", ["email"], unique=False)

    op.create_table(
        "items",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("category", sa.String(length=32), nullable=False),
        sa.Column("location_side", sa.String(length=32), nullable=False),
        sa.Column("location_level", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("qr_token", sa.String(), nullable=False, unique=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("id", "tenant_id", name="uq_items_id_tenant"),
    )
    op.create_index("ix_items_tenant_id", "items", ["tenant_id"], unique=False)
    op.create_index("ix_items_tenant_status", "items", ["tenant_id", "status"], unique=False)
    op.create_index("ix_items_tenant_category", "items", ["tenant_id", "category"], unique=False)
    op.create_index("ix_items_location", "items", ["location_side", "location_level"], unique=False)

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(), primary_key=True),
        sa.Column(
            "tenant_id",
            sa.String(),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("item_id", sa.String(), nullable=False),
        sa.Column(
            "principal_id",
            sa.String(),
            sa.ForeignKey("principals.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("action", sa.String(length=32), nullable=False),
        sa.Column("performed_by_label", sa.String(), nullable=True),
        sa.Column("expected_return_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        # Composite FK keeps every ledger row inside its item's troop.
        sa.ForeignKeyConstraint(
            ["item_id", "tenant_id"],
            ["items.id", "items.tenant_id"],
            ondelete="CASCADE",
            name="fk_transactions_item_tenant",
        ),
        sa.UniqueConstraint("item_id", "sequence", name="uq_transactions_item_sequence"),
    )
    op.create_index("ix_transactions_tenant_id", "transactions", ["tenant_id"], unique=False)
    op.create_index("ix_transactions_item_id", "transactions", ["item_id"], unique=False)
    op.create_index(
        "ix_transactions_tenant_occurred_at",
        "transactions",
        ["tenant_id", "occurred_at"],
        unique=False,
    )

    # Store idempotency response snapshots for safe retries.
    op.create_table(
        "idempotency_records",
        sa.Column("id", _BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column(
            "tenant_id",
            sa.String(),
            sa.ForeignKey("tenants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("actor_id", sa.String(), nullable=False),
        sa.Column("method", sa.String(), nullable=False),
        sa.Column("path", sa.String(), nullable=False),
        sa.Column("idem_key", sa.String(), nullable=False),
        sa.Column("request_hash", sa.String(), nullable=False),
        sa.Column("response_status", sa.Integer(), nullable=False),
        sa.Column("response_body_json", _JSON, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint(
            "tenant_id",
            "actor_id",
            "method",
            "path",
            "idem_key",
            name="uq_idempotency_records_scope",
        ),
    )
    op.create_index("ix_idempotency_records_expires_at", "idempotency_records", ["expires_at"], unique=False)
    op.create_index("ix_idempotency_records_tenant_id", "idempotency_records", ["tenant_id"], unique=False)
    op.create_index("ix_idempotency_records_actor_id", "idempotency_records", ["actor_id"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_idempotency_records_actor_id", table_name="idempotency_records")
    op.drop_index("ix_idempotency_records_tenant_id", table_name="idempotency_records")
    op.drop_index("ix_idempotency_records_expires_at", table_name="idempotency_records")
    op.drop_table("idempotency_records")
    op.drop_index("ix_transactions_tenant_occurred_at", table_name="transactions")
    op.drop_index("ix_transactions_item_id", table_name="transactions")
    op.drop_index("ix_transactions_tenant_id", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_items_location", table_name="items")
    op.drop_index("ix_items_tenant_category", table_name="items")
    op.drop_index("ix_items_tenant_status", table_name="items")
    op.drop_index("ix_items_tenant_id", table_name="items")
    op.drop_table("items")
    op.drop_index("ix_principals_email", table_name="principals")
    op.drop_index("ix_principals_tenant_id", table_name="principals")
    op.drop_table("principals")
    op.drop_index("ix_tenants_slug", table_name="tenants")
    op.drop_table("tenants")
