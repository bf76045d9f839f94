"""initial_ticket_tracker_schema

Create teams, projects, delivery_aggregations, work_items, movements,
escalations and scheduled_jobs.

Revision ID: 5e1f0a7c2b10
Revises:
Create Date: 2026-10-19 09:00:00.000000
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect as sa_inspect


# revision identifiers, used by Alembic.
revision = "5e1f0a7c2b10"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    existing_tables = set(sa_inspect(bind).get_table_names())

    if "teams" not in existing_tables:
        op.create_table(
            "teams",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=150), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("name"),
        )

    if "projects" not in existing_tables:
        op.create_table(
            "projects",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("source", sa.String(length=30), nullable=False),
            sa.Column("external_key", sa.String(length=100), nullable=False),
            sa.Column("name", sa.String(length=300), nullable=False),
            sa.Column("lead", sa.String(length=200), nullable=True),
            sa.Column("team_id", sa.Integer(), nullable=True),
            sa.Column("is_manual_team_map", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["team_id"], ["teams.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("source", "external_key", name="uq_projects_source_key"),
        )
        op.create_index("ix_projects_team_id", "projects", ["team_id"])

    if "delivery_aggregations" not in existing_tables:
        op.create_table(
            "delivery_aggregations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("project_id", sa.Integer(), nullable=False),
            sa.Column("total_delivery_points", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("completed_delivery_points", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("total_items", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("completed_items", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("rollback_count", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("efficiency_percentage", sa.Float(), nullable=False, server_default="0"),
            sa.Column("last_calculated", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("project_id"),
        )

    if "work_items" not in existing_tables:
        op.create_table(
            "work_items",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("source", sa.String(length=30), nullable=False),
            sa.Column("item_type", sa.String(length=30), nullable=False, server_default="ticket"),
            sa.Column("external_key", sa.String(length=100), nullable=False),
            sa.Column("title", sa.String(length=500), nullable=False, server_default=""),
            sa.Column("status", sa.String(length=40), nullable=False),
            sa.Column("priority", sa.String(length=20), nullable=False, server_default="Medium"),
            sa.Column("complexity", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("risk", sa.Integer(), nullable=False, server_default="1"),
            sa.Column("delivery_points", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("assignee", sa.String(length=200), nullable=True),
            sa.Column("support_level", sa.String(length=5), nullable=True),
            sa.Column("project_id", sa.Integer(), nullable=True),
            sa.Column("sla_due_date", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("source_updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["project_id"], ["projects.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("source", "external_key", name="uq_work_items_source_key"),
        )
        op.create_index("ix_work_items_source", "work_items", ["source"])
        op.create_index("ix_work_items_project_id", "work_items", ["project_id"])
        op.create_index("ix_work_items_project_status", "work_items", ["project_id", "status"])

    if "movements" not in existing_tables:
        op.create_table(
            "movements",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("work_item_id", sa.Integer(), nullable=False),
            sa.Column("from_status", sa.String(length=40), nullable=False),
            sa.Column("to_status", sa.String(length=40), nullable=False),
            sa.Column("from_level", sa.String(length=5), nullable=True),
            sa.Column("to_level", sa.String(length=5), nullable=True),
            sa.Column("transition", sa.String(length=20), nullable=False, server_default="forward"),
            sa.Column("is_rollback", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("actor", sa.String(length=200), nullable=False, server_default="system"),
            sa.Column("moved_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("points_at_move", sa.Integer(), nullable=True),
            sa.Column("justification", sa.Text(), nullable=True),
            sa.Column("justified_by", sa.String(length=200), nullable=True),
            sa.Column("justified_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["work_item_id"], ["work_items.id"], ondelete="CASCADE"),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_movements_work_item_id", "movements", ["work_item_id"])
        op.create_index("ix_movements_is_rollback", "movements", ["is_rollback"])
        op.create_index("ix_movements_item_moved_at", "movements", ["work_item_id", "moved_at"])

    if "escalations" not in existing_tables:
        op.create_table(
            "escalations",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("work_item_id", sa.Integer(), nullable=False),
            sa.Column("movement_id", sa.Integer(), nullable=True),
            sa.Column("from_level", sa.String(length=5), nullable=False),
            sa.Column("to_level", sa.String(length=5), nullable=False),
            sa.Column("escalated_at", sa.DateTime(timezone=True), nullable=False),
            sa.Column("escalated_by", sa.String(length=200), nullable=True),
            sa.Column("reason", sa.String(length=500), nullable=True),
            sa.Column("sla_breached", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(["work_item_id"], ["work_items.id"], ondelete="CASCADE"),
            sa.ForeignKeyConstraint(["movement_id"], ["movements.id"], ondelete="SET NULL"),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint(
                "work_item_id", "from_level", "to_level", "escalated_at",
                name="uq_escalations_item_levels_at",
            ),
        )
        op.create_index("ix_escalations_work_item_id", "escalations", ["work_item_id"])

    if "scheduled_jobs" not in existing_tables:
        op.create_table(
            "scheduled_jobs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=100), nullable=False),
            sa.Column("description", sa.String(length=500), nullable=True),
            sa.Column("schedule_type", sa.String(length=30), nullable=True),
            sa.Column("schedule_config", sa.JSON(), nullable=True),
            sa.Column("status", sa.String(length=20), nullable=True),
            sa.Column("is_enabled", sa.Boolean(), nullable=True),
            sa.Column("last_run_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("last_run_status", sa.String(length=20), nullable=True),
            sa.Column("last_run_duration_ms", sa.Integer(), nullable=True),
            sa.Column("last_run_result", sa.JSON(), nullable=True),
            sa.Column("run_count", sa.Integer(), nullable=True),
            sa.Column("error_count", sa.Integer(), nullable=True),
            sa.Column("last_error", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("job_name"),
        )


def downgrade():
    existing_tables = set(sa_inspect(op.get_bind()).get_table_names())
    for table in (
        "scheduled_jobs",
        "escalations",
        "movements",
        "work_items",
        "delivery_aggregations",
        "projects",
        "teams",
    ):
        if table in existing_tables:
            op.drop_table(table)
