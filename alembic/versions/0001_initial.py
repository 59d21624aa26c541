"""Initial schema: batches, blends, fiscal-year counters, audit log.

Revision ID: 0001
Revises: (none)
Create Date: 2026-10-18

Run with:
    alembic upgrade head
"""

revision = "0001"
down_revision = None
branch_labels = None
depends_on = None

from alembic import op
import sqlalchemy as sa


def _quality_columns() -> list[sa.Column]:
    return [
        sa.Column("bloom", sa.Float()),
        sa.Column("viscosity", sa.Float()),
        sa.Column("percentage", sa.Float()),
        sa.Column("ph", sa.Float()),
        sa.Column("conductivity", sa.Float()),
        sa.Column("moisture", sa.Float()),
        sa.Column("h2o2", sa.Float()),
        sa.Column("so2", sa.Float()),
        sa.Column("color", sa.String(50)),
        sa.Column("clarity", sa.String(50)),
        sa.Column("odour", sa.String(50)),
    ]


def upgrade() -> None:
    # ── Batches ──────────────────────────────────────────────

    op.create_table(
        "batches",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("batch_type", sa.String(20), nullable=False),
        sa.Column("batch_number", sa.Integer(), nullable=False),
        sa.Column("fiscal_year", sa.String(7), nullable=False),
        sa.Column("serial_number", sa.String(50)),
        *_quality_columns(),
        sa.Column("is_used", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("used_in_blend_id", sa.String(36)),
        sa.Column("used_in_ref", sa.String(100)),
        sa.Column("used_at", sa.DateTime()),
        sa.Column("is_on_hold", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("source_report", sa.String(255)),
        sa.Column("report_date", sa.Date()),
        sa.Column("notes", sa.Text()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "fiscal_year", "batch_type", "batch_number",
            name="uq_batches_fiscal_year_type_number",
        ),
    )
    op.create_index("ix_batches_batch_type", "batches", ["batch_type"])
    op.create_index("ix_batches_is_used", "batches", ["is_used"])
    op.create_index("ix_batches_used_in_blend_id", "batches", ["used_in_blend_id"])
    op.create_index("ix_batches_source_report", "batches", ["source_report"])
    op.create_index("ix_batches_created_at", "batches", ["created_at"])
    op.create_index("ix_batches_fiscal_year_active", "batches", ["fiscal_year", "is_active"])

    # ── Blends ───────────────────────────────────────────────

    op.create_table(
        "blends",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("fiscal_year", sa.String(7), nullable=False),
        sa.Column("lot_number", sa.String(50), nullable=False),
        sa.Column("serial_number", sa.Integer(), nullable=False),
        sa.Column("blend_date", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("target_bloom_min", sa.Float(), nullable=False),
        sa.Column("target_bloom_max", sa.Float(), nullable=False),
        sa.Column("target_mean_bloom", sa.Float()),
        sa.Column("bloom_selection_mode", sa.String(20), nullable=False,
                  server_default="random-average"),
        sa.Column("target_mesh", sa.Float()),
        sa.Column("target_viscosity", sa.Float()),
        sa.Column("target_percentage", sa.Float()),
        sa.Column("target_ph", sa.Float()),
        sa.Column("target_conductivity", sa.Float()),
        sa.Column("target_moisture", sa.Float()),
        sa.Column("target_h2o2", sa.Float()),
        sa.Column("target_so2", sa.Float()),
        sa.Column("target_color", sa.String(50)),
        sa.Column("target_clarity", sa.String(50)),
        sa.Column("target_odour", sa.String(50)),
        sa.Column("total_bags", sa.Integer(), nullable=False),
        sa.Column("total_weight_kg", sa.Float(), nullable=False),
        sa.Column("average_bloom", sa.Float()),
        sa.Column("average_viscosity", sa.Float()),
        sa.Column("average_percentage", sa.Float()),
        sa.Column("average_ph", sa.Float()),
        sa.Column("average_conductivity", sa.Float()),
        sa.Column("average_moisture", sa.Float()),
        sa.Column("average_h2o2", sa.Float()),
        sa.Column("average_so2", sa.Float()),
        sa.Column("status", sa.String(20), nullable=False, server_default="completed"),
        sa.Column("reviewed_by", sa.String(200)),
        sa.Column("reviewed_at", sa.DateTime()),
        sa.Column("notes", sa.Text()),
        sa.Column("created_by", sa.String(200)),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("fiscal_year", "lot_number", name="uq_blends_fiscal_year_lot"),
        sa.UniqueConstraint("fiscal_year", "serial_number", name="uq_blends_fiscal_year_serial"),
    )
    op.create_index("ix_blends_fiscal_year", "blends", ["fiscal_year"])
    op.create_index("ix_blends_lot_number", "blends", ["lot_number"])
    op.create_index("ix_blends_status", "blends", ["status"])
    op.create_index("ix_blends_created_at", "blends", ["created_at"])

    op.create_table(
        "blend_batches",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("blend_id", sa.String(36),
                  sa.ForeignKey("blends.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("batch_id", sa.String(36), nullable=False),
        sa.Column("batch_number", sa.Integer(), nullable=False),
        sa.Column("batch_type", sa.String(20), nullable=False),
        sa.Column("bags", sa.Integer(), nullable=False),
        *_quality_columns(),
        sa.UniqueConstraint("blend_id", "batch_id", name="uq_blend_batches_blend_batch"),
    )
    op.create_index("ix_blend_batches_blend_id", "blend_batches", ["blend_id"])
    op.create_index("ix_blend_batches_batch_id", "blend_batches", ["batch_id"])

    # ── Fiscal year ──────────────────────────────────────────

    op.create_table(
        "fiscal_year_counters",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("fiscal_year", sa.String(7), nullable=False),
        sa.Column("sequence", sa.String(20), nullable=False),
        sa.Column("next_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_frozen", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint("fiscal_year", "sequence", name="uq_counter_fiscal_year_sequence"),
    )
    op.create_index("ix_fiscal_year_counters_fiscal_year", "fiscal_year_counters", ["fiscal_year"])

    op.create_table(
        "fiscal_year_archives",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("old_fiscal_year", sa.String(7), nullable=False),
        sa.Column("new_fiscal_year", sa.String(7), nullable=False),
        sa.Column("batch_type", sa.String(20), nullable=False),
        sa.Column("max_batch_number", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("archived_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("new_year_start_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("notes", sa.Text()),
        sa.Column("archived_by", sa.String(200)),
        sa.Column("archived_at", sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint(
            "old_fiscal_year", "new_fiscal_year", "batch_type",
            name="uq_archive_old_new_type",
        ),
    )
    op.create_index("ix_fiscal_year_archives_old_fiscal_year", "fiscal_year_archives",
                    ["old_fiscal_year"])

    # ── Audit ────────────────────────────────────────────────

    op.create_table(
        "activity_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("actor", sa.String(200), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=False),
        sa.Column("entity_id", sa.String(36)),
        sa.Column("entity_code", sa.String(100)),
        sa.Column("summary", sa.Text()),
        sa.Column("details", sa.JSON()),
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_activity_logs_actor", "activity_logs", ["actor"])
    op.create_index("ix_activity_logs_action", "activity_logs", ["action"])
    op.create_index("ix_activity_logs_entity_type", "activity_logs", ["entity_type"])
    op.create_index("ix_activity_logs_created_at", "activity_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("activity_logs")
    op.drop_table("fiscal_year_archives")
    op.drop_table("fiscal_year_counters")
    op.drop_table("blend_batches")
    op.drop_table("blends")
    op.drop_table("batches")
