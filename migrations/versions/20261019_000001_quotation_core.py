"""Create quotation, lock, supplier, inventory and settings tables.

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01
"""

from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


QUOTATION_STATUSES = ("draft", "sent", "replied", "quoted", "confirmed", "delivered", "cancelled", "expired")


def upgrade() -> None:
    status_list = ",".join(f"'{status}'" for status in QUOTATION_STATUSES)
    op.create_table(
        "quotations",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("tenant_id", sa.Text(), nullable=False),
        sa.Column("supplier_id", sa.Text(), nullable=False),
        sa.Column("supplier_name", sa.Text(), nullable=True),
        sa.Column("supplier_email", sa.Text(), nullable=True),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'draft'")),
        sa.Column("items_json", sa.Text(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("quoted_items_json", sa.Text(), nullable=True),
        sa.Column("quoted_total", sa.Float(), nullable=True),
        sa.Column("sent_at", sa.Text(), nullable=True),
        sa.Column("replied_at", sa.Text(), nullable=True),
        sa.Column("analyzed_at", sa.Text(), nullable=True),
        sa.Column("confirmed_at", sa.Text(), nullable=True),
        sa.Column("delivered_at", sa.Text(), nullable=True),
        sa.Column("cancelled_at", sa.Text(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("history_json", sa.Text(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("created_by", sa.Text(), nullable=True),
        sa.Column("created_at", sa.Text(), nullable=False),
        sa.Column("updated_at", sa.Text(), nullable=False),
        sa.CheckConstraint(f"status IN ({status_list})", name="ck_quotations_status"),
    )
    op.create_index("ix_quotations_tenant_status", "quotations", ["tenant_id", "status"], unique=False)

    op.create_table(
        "processing_locks",
        sa.Column("tenant_id", sa.Text(), nullable=False),
        sa.Column("product_id", sa.Text(), nullable=False),
        sa.Column("acquired_at", sa.Float(), nullable=False),
        sa.Column("expires_at", sa.Float(), nullable=False),
        sa.Column("last_heartbeat", sa.Float(), nullable=True),
        sa.Column("acquired_by", sa.Text(), nullable=False),
        sa.PrimaryKeyConstraint("tenant_id", "product_id", name="pk_processing_locks"),
    )

    op.create_table(
        "suppliers",
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("tenant_id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("auto_order_enabled", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.PrimaryKeyConstraint("tenant_id", "id", name="pk_suppliers"),
    )

    op.create_table(
        "inventory_items",
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("tenant_id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("category", sa.Text(), nullable=True),
        sa.Column("current_stock", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("min_stock", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("max_stock", sa.Float(), nullable=False, server_default=sa.text("0")),
        sa.Column("unit", sa.Text(), nullable=False, server_default=sa.text("'un'")),
        sa.Column("supplier_id", sa.Text(), nullable=True),
        sa.Column("current_price", sa.Float(), nullable=True),
        sa.Column("enable_auto_quotation", sa.Integer(), nullable=True),
        sa.Column("updated_at", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("tenant_id", "id", name="pk_inventory_items"),
    )

    op.create_table(
        "settings",
        sa.Column("tenant_id", sa.Text(), nullable=False),
        sa.Column("key", sa.Text(), nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("tenant_id", "key", name="pk_settings"),
    )


def downgrade() -> None:
    op.drop_table("settings")
    op.drop_table("inventory_items")
    op.drop_table("suppliers")
    op.drop_table("processing_locks")
    op.drop_index("ix_quotations_tenant_status", table_name="quotations")
    op.drop_table("quotations")
