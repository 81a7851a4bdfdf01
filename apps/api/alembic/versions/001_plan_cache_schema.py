"""plan_cache_schema

Revision ID: 001_plan_cache_schema
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect
from sqlalchemy.dialects.postgresql import JSONB


# revision identifiers, used by Alembic.
revision: str = '001_plan_cache_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


def _plan_columns():
    """Lifecycle columns shared by workout_plan and diet_plan."""
    return [
        sa.Column("id", sa.Uuid(), primary_key=True),
        sa.Column("external_plan_id", sa.Text(), nullable=True),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("app_user.id"), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("source", sa.Text(), nullable=False, server_default="external"),
        sa.Column("last_refreshed", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_refresh_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cache_expiry", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_refresh_attempt", sa.DateTime(timezone=True), nullable=True),
        sa.Column("user_context", JSONType, nullable=True),
        sa.Column("plan_name", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def _plan_indexes(table: str) -> None:
    op.create_index(f"ix_{table}_user_id_is_active", table, ["user_id", "is_active"])
    op.create_index(f"ix_{table}_next_refresh_date", table, ["next_refresh_date"])
    op.create_index(f"ix_{table}_cache_expiry", table, ["cache_expiry"])
    # At most one active plan per user
    op.create_index(
        f"uq_{table}_one_active_per_user",
        table,
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("is_active"),
        sqlite_where=sa.text("is_active = 1"),
    )


def upgrade() -> None:
    """
    Create the user slice and the two plan tables.

    Idempotent: tables that already exist are left alone.
    """
    bind = op.get_bind()
    inspector = inspect(bind)
    tables = set(inspector.get_table_names())

    if "app_user" not in tables:
        op.create_table(
            "app_user",
            sa.Column("id", sa.Uuid(), primary_key=True),
            sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
            sa.Column("email", sa.Text(), nullable=True, unique=True),
            sa.Column("display_name", sa.Text(), nullable=True),
            sa.Column("age", sa.Integer(), nullable=True),
            sa.Column("height_cm", sa.Float(), nullable=True),
            sa.Column("weight_kg", sa.Float(), nullable=True),
            sa.Column("target_weight_kg", sa.Float(), nullable=True),
            sa.Column("gender", sa.Text(), nullable=True),
            sa.Column("activity_level", sa.Text(), nullable=True),
            sa.Column("fitness_level", sa.Text(), nullable=True),
            sa.Column("goal", sa.Text(), nullable=True),
            sa.Column("health_conditions", JSONType, nullable=False, server_default="[]"),
            sa.Column("allergies", JSONType, nullable=False, server_default="[]"),
            sa.Column("diet_preferences", JSONType, nullable=True),
            sa.Column("active_workout_plan_id", sa.Uuid(), nullable=True),
            sa.Column("active_diet_plan_id", sa.Uuid(), nullable=True),
            sa.Column("current_macros", JSONType, nullable=True),
        )

    if "workout_plan" not in tables:
        op.create_table(
            "workout_plan",
            *_plan_columns(),
            sa.Column("workout_days", JSONType, nullable=False, server_default="[]"),
            sa.Column("weekly_schedule", sa.Integer(), nullable=False, server_default="3"),
            sa.Column("plan_duration", sa.Integer(), nullable=True),
            sa.Column("difficulty_level", sa.Text(), nullable=True),
        )
        _plan_indexes("workout_plan")

    if "diet_plan" not in tables:
        op.create_table(
            "diet_plan",
            *_plan_columns(),
            sa.Column("target_weight_kg", sa.Float(), nullable=False),
            sa.Column("total_macros", JSONType, nullable=False),
            sa.Column("meal_plan", JSONType, nullable=False, server_default="[]"),
        )
        _plan_indexes("diet_plan")


def downgrade() -> None:
    bind = op.get_bind()
    inspector = inspect(bind)
    tables = set(inspector.get_table_names())

    for table in ("diet_plan", "workout_plan", "app_user"):
        if table in tables:
            op.drop_table(table)
