from sqlalchemy import Column, Integer, Boolean, Float, DateTime, ForeignKey, Text, Index, JSON, Uuid, text
from sqlalchemy.orm import declared_attr
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func
from core.database import Base
import uuid

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


class User(Base):
    """
    The slice of the user record the plan services read and write.

    Profile fields feed plan generation. The active-plan pointers and
    `current_macros` are denormalized copies owned by PlanCacheCoordinator:
    nothing else may write them, and they are only written in the same
    transaction that flips plan `is_active` flags.
    """
    __tablename__ = "app_user"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    email = Column(Text, unique=True, nullable=True)
    display_name = Column(Text, nullable=True)

    # --- DEMOGRAPHICS ---
    age = Column(Integer, nullable=True)
    height_cm = Column(Float, nullable=True)
    weight_kg = Column(Float, nullable=True)
    target_weight_kg = Column(Float, nullable=True)
    gender = Column(Text, nullable=True)  # 'Male', 'Female', 'Other'
    activity_level = Column(Text, nullable=True)  # 'sedentary' ... 'extremely_active'

    # --- FITNESS PROFILE ---
    fitness_level = Column(Text, nullable=True)  # 'beginner', 'intermediate', 'advanced'
    goal = Column(Text, nullable=True)  # 'weight_loss', 'weight_gain', 'muscle_building', 'maintenance'
    health_conditions = Column(JSONType, nullable=False, default=list)
    allergies = Column(JSONType, nullable=False, default=list)

    # {"cuisine_preferences": {"Indian": ["Vegetarian"], ...}}
    diet_preferences = Column(JSONType, nullable=True)

    # --- ACTIVE PLAN POINTERS (coordinator-owned) ---
    active_workout_plan_id = Column(Uuid, nullable=True)
    active_diet_plan_id = Column(Uuid, nullable=True)

    # Macro snapshot of the active diet plan:
    # {"calories", "carbs", "protein", "fat", "fiber", "valid_till"}
    current_macros = Column(JSONType, nullable=True)


class PlanColumnsMixin:
    """
    Lifecycle columns shared by every plan type.

    Plans are never deleted: superseding or deactivating a plan flips
    `is_active` to False. At most one row per user may be active, which the
    partial unique index on each table backs up at the database level.
    """

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    external_plan_id = Column(Text, nullable=True)  # Provider-assigned id, not unique

    @declared_attr
    def user_id(cls):
        return Column(Uuid, ForeignKey("app_user.id"), nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    source = Column(Text, default="external", nullable=False)  # 'external', 'manual'

    # Caching and refresh metadata
    last_refreshed = Column(DateTime(timezone=True), nullable=False)  # Last successful regeneration
    next_refresh_date = Column(DateTime(timezone=True), nullable=False)  # Sweep eligibility
    cache_expiry = Column(DateTime(timezone=True), nullable=False)  # Staleness for reuse
    last_refresh_attempt = Column(DateTime(timezone=True), nullable=True)  # Last failed sweep attempt

    # Profile snapshot used to generate this plan
    user_context = Column(JSONType, nullable=True)

    plan_name = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class WorkoutPlan(PlanColumnsMixin, Base):
    """Externally generated workout plan (weekly split of exercise days)."""
    __tablename__ = "workout_plan"

    # [{"day_name", "muscle_group", "estimated_duration", "is_rest_day",
    #   "exercises": [{"exercise_id", "name", "sets", "reps", ...}]}]
    workout_days = Column(JSONType, nullable=False, default=list)
    weekly_schedule = Column(Integer, nullable=False, default=3)  # Workout days per week
    plan_duration = Column(Integer, nullable=True)  # Weeks
    difficulty_level = Column(Text, nullable=True)

    __table_args__ = (
        Index("ix_workout_plan_user_id_is_active", "user_id", "is_active"),
        Index("ix_workout_plan_next_refresh_date", "next_refresh_date"),
        Index("ix_workout_plan_cache_expiry", "cache_expiry"),
        Index(
            "uq_workout_plan_one_active_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )


class DietPlan(PlanColumnsMixin, Base):
    """Externally generated weekly diet plan with macro targets."""
    __tablename__ = "diet_plan"

    target_weight_kg = Column(Float, nullable=False)
    # {"calories", "carbs", "protein", "fat", "fiber"} as provider strings
    total_macros = Column(JSONType, nullable=False)
    # [{"day", "day_name", "meals": [{"meal_type", "meal_description",
    #   "short_name", "calories", "meal_order"}]}]
    meal_plan = Column(JSONType, nullable=False, default=list)

    __table_args__ = (
        Index("ix_diet_plan_user_id_is_active", "user_id", "is_active"),
        Index("ix_diet_plan_next_refresh_date", "next_refresh_date"),
        Index("ix_diet_plan_cache_expiry", "cache_expiry"),
        Index(
            "uq_diet_plan_one_active_per_user",
            "user_id",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )
