"""ECO chain schema: change orders, comments, audit entries, reference tables

Revision ID: a1e0c0001
Revises:
Create Date: 2026-10-16
"""

from alembic import op
import sqlalchemy as sa


revision = "a1e0c0001"
down_revision = None
branch_labels = None
depends_on = None


def _table_exists(inspector, table_name):
    return table_name in inspector.get_table_names()


def upgrade():
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    if not _table_exists(inspector, "products"):
        op.create_table(
            "products",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("sku", sa.String(length=50), nullable=False, unique=True),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("category", sa.String(length=100), nullable=True),
            sa.Column("cost", sa.Float(), nullable=True),
        )

    if not _table_exists(inspector, "boms"):
        op.create_table(
            "boms",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("product_id", sa.String(length=36), sa.ForeignKey("products.id", ondelete="CASCADE"), nullable=False),
            sa.Column("name", sa.String(length=200), nullable=False),
            sa.Column("version", sa.String(length=20), nullable=False, server_default="1.0"),
        )
        op.create_index("ix_boms_product_id", "boms", ["product_id"])

    if not _table_exists(inspector, "change_orders"):
        op.create_table(
            "change_orders",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("chain_root_id", sa.String(length=36), nullable=False),
            sa.Column("parent_id", sa.String(length=36), sa.ForeignKey("change_orders.id", ondelete="SET NULL"), nullable=True),
            sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("is_latest", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column("title", sa.String(length=200), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("reason", sa.Text(), nullable=True),
            sa.Column("change_type", sa.String(length=20), nullable=False, server_default="standard"),
            sa.Column("priority", sa.String(length=20), nullable=False, server_default="medium"),
            sa.Column("product_id", sa.String(length=36), sa.ForeignKey("products.id", ondelete="RESTRICT"), nullable=False),
            sa.Column("bom_id", sa.String(length=36), sa.ForeignKey("boms.id", ondelete="SET NULL"), nullable=True),
            sa.Column("proposed_changes", sa.Text(), nullable=True),
            sa.Column("impact_analysis", sa.Text(), nullable=True),
            sa.Column("compliance_checks", sa.Text(), nullable=True),
            sa.Column("effective_date", sa.Date(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=False, server_default="draft"),
            sa.Column("requested_by_id", sa.String(length=36), nullable=False),
            sa.Column("requested_by_name", sa.String(length=150), nullable=True),
            sa.Column("approved_by_id", sa.String(length=36), nullable=True),
            sa.Column("approved_by_name", sa.String(length=150), nullable=True),
            sa.Column("approval_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("executed_by_id", sa.String(length=36), nullable=True),
            sa.Column("executed_by_name", sa.String(length=150), nullable=True),
            sa.Column("executed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("risk_score", sa.Float(), nullable=True),
            sa.Column("predicted_delay", sa.Integer(), nullable=True),
            sa.Column("key_risks", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
            sa.UniqueConstraint("chain_root_id", "version", name="uq_eco_chain_version"),
        )
        op.create_index("ix_change_orders_chain_root_id", "change_orders", ["chain_root_id"])
        op.create_index("idx_eco_status_latest", "change_orders", ["status", "is_latest"])
        op.create_index("idx_eco_product", "change_orders", ["product_id"])
        # At most one latest row per chain
        op.create_index(
            "uq_eco_chain_latest", "change_orders", ["chain_root_id"],
            unique=True,
            sqlite_where=sa.text("is_latest = 1"),
            postgresql_where=sa.text("is_latest = true"),
        )

    if not _table_exists(inspector, "eco_comments"):
        op.create_table(
            "eco_comments",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("change_order_id", sa.String(length=36), sa.ForeignKey("change_orders.id", ondelete="CASCADE"), nullable=False),
            sa.Column("chain_root_id", sa.String(length=36), nullable=False),
            sa.Column("author_id", sa.String(length=36), nullable=False),
            sa.Column("author_name", sa.String(length=150), nullable=True),
            sa.Column("content", sa.Text(), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("ix_eco_comments_change_order_id", "eco_comments", ["change_order_id"])
        op.create_index("idx_eco_comment_chain", "eco_comments", ["chain_root_id", "created_at"])

    if not _table_exists(inspector, "eco_audit_entries"):
        op.create_table(
            "eco_audit_entries",
            sa.Column("id", sa.String(length=36), primary_key=True),
            sa.Column("change_order_id", sa.String(length=36), sa.ForeignKey("change_orders.id", ondelete="CASCADE"), nullable=False),
            sa.Column("chain_root_id", sa.String(length=36), nullable=False),
            sa.Column("action", sa.String(length=30), nullable=False),
            sa.Column("actor_id", sa.String(length=36), nullable=False),
            sa.Column("old_value", sa.String(length=100), nullable=True),
            sa.Column("new_value", sa.String(length=100), nullable=True),
            sa.Column("diff_json", sa.Text(), nullable=True, server_default="{}"),
            sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        )
        op.create_index("ix_eco_audit_entries_change_order_id", "eco_audit_entries", ["change_order_id"])
        op.create_index("idx_eco_audit_chain", "eco_audit_entries", ["chain_root_id", "timestamp"])
        op.create_index("idx_eco_audit_action", "eco_audit_entries", ["action"])


def downgrade():
    bind = op.get_bind()
    inspector = sa.inspect(bind)

    for table in ("eco_audit_entries", "eco_comments", "change_orders", "boms", "products"):
        if _table_exists(inspector, table):
            op.drop_table(table)
