"""
Plan Kinds and Freshness Rules

One PlanKind per externally generated plan type (workout, diet). A kind
bundles everything the coordinator needs to treat the two types uniformly:
ORM model, user pointer column, cache namespace, required profile fields
and the provider payload normalizer.

Freshness is expressed as free functions over either an ORM row or a
cached snapshot dict, so the same rule answers for both:

    is_expired(plan, now)      now >= cache_expiry
    needs_refresh(plan, now)   now >= next_refresh_date
    is_reusable(plan, now)     active and neither of the above
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from models import DietPlan, User, WorkoutPlan

logger = logging.getLogger(__name__)


class PlanType(str, Enum):
    WORKOUT = "workout"
    DIET = "diet"


DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

# Provider meal keys and their display order within a day
MEAL_ORDER = {
    "Breakfast": 1,
    "Snack 1": 2,
    "Lunch": 3,
    "Snack 2": 4,
    "Dinner": 5,
}

MACRO_KEYS = {
    "calories": "Total Calories",
    "carbs": "Total Carbs",
    "protein": "Total Protein",
    "fat": "Total Fat",
    "fiber": "Total Fiber",
}

WORKOUT_REQUIRED_FIELDS = ("fitness_level", "goal", "age", "height_cm", "weight_kg")
DIET_REQUIRED_FIELDS = ("goal", "age", "height_cm", "weight_kg", "gender")


class PlanPayloadError(ValueError):
    """Provider payload is missing fields or has the wrong shape."""


@dataclass(frozen=True)
class PlanKind:
    """Static description of one plan type."""
    plan_type: PlanType
    model: type
    pointer_attr: str  # User column holding the active plan id
    cache_prefix: str
    required_fields: Tuple[str, ...]
    payload_fields: Tuple[str, ...]  # Type-specific columns copied into snapshots
    normalize: Callable[[Dict[str, Any], Dict[str, Any]], Dict[str, Any]]
    writes_macros: bool = False

    @property
    def name(self) -> str:
        return self.plan_type.value


# ---------------------------------------------------------------------------
# Freshness
# ---------------------------------------------------------------------------

def as_utc(value: Any) -> Optional[datetime]:
    """Coerce a stored timestamp (datetime or ISO string) to aware UTC."""
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if value.tzinfo is None:
        # SQLite drops tzinfo; everything is stored in UTC
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _field(plan: Any, name: str) -> Any:
    if isinstance(plan, dict):
        return plan.get(name)
    return getattr(plan, name, None)


def is_expired(plan: Any, now: datetime) -> bool:
    expiry = as_utc(_field(plan, "cache_expiry"))
    return expiry is None or now >= expiry


def needs_refresh(plan: Any, now: datetime) -> bool:
    due = as_utc(_field(plan, "next_refresh_date"))
    return due is None or now >= due


def is_reusable(plan: Any, now: datetime) -> bool:
    """A plan may be returned as-is when it is active, unexpired and not due."""
    if plan is None or not _field(plan, "is_active"):
        return False
    return not is_expired(plan, now) and not needs_refresh(plan, now)


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------

def missing_profile_fields(kind: PlanKind, profile: Dict[str, Any]) -> List[str]:
    """Required fields that are absent, None or empty in `profile`."""
    return [
        field for field in kind.required_fields
        if profile.get(field) in (None, "")
    ]


def build_profile(kind: PlanKind, user: User, plan: Any = None) -> Dict[str, Any]:
    """
    Build the provider profile from the current user record.

    `plan` is the user's current plan of this kind, if any; the workout
    profile carries its weekly schedule forward.
    """
    if kind.plan_type == PlanType.WORKOUT:
        return {
            "fitness_level": user.fitness_level,
            "goal": user.goal,
            "age": user.age,
            "height_cm": user.height_cm,
            "weight_kg": user.weight_kg,
            "activity_level": user.activity_level or "moderate",
            "weekly_workout_days": _field(plan, "weekly_schedule") or 3,
            "health_conditions": list(user.health_conditions or []),
        }

    return {
        "goal": user.goal,
        "age": user.age,
        "height_cm": user.height_cm,
        "weight_kg": user.weight_kg,
        "target_weight_kg": user.target_weight_kg or user.weight_kg,
        "gender": user.gender,
        "activity_level": user.activity_level or "sedentary",
        "allergies": list(user.allergies or []),
        "health_conditions": list(user.health_conditions or []),
    }


def build_preferences(kind: PlanKind, user: User) -> Optional[Dict[str, Any]]:
    """Diet cuisine preferences stored on the user, None for other kinds."""
    if kind.plan_type != PlanType.DIET:
        return None
    cuisines = (user.diet_preferences or {}).get("cuisine_preferences")
    if not cuisines:
        return None
    return {"cuisine_preferences": cuisines}


# ---------------------------------------------------------------------------
# Provider payload normalization
# ---------------------------------------------------------------------------

def _normalize_exercise(exercise: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "exercise_id": exercise.get("exerciseId"),
        "name": exercise.get("name"),
        "description": exercise.get("description"),
        "sets": exercise.get("sets"),
        "reps": exercise.get("reps"),
        "rest_time": exercise.get("restTime"),
        "muscle_group": exercise.get("muscleGroup"),
        "equipment": exercise.get("equipment"),
        "difficulty": exercise.get("difficulty"),
    }


def normalize_workout_payload(payload: Dict[str, Any], profile: Dict[str, Any]) -> Dict[str, Any]:
    """Map a workout provider response onto WorkoutPlan columns."""
    try:
        days = payload["workoutDays"]
        plan_name = payload["planName"]
    except (KeyError, TypeError) as e:
        raise PlanPayloadError(f"workout payload missing {e}") from e
    if not isinstance(days, list) or not days:
        raise PlanPayloadError("workout payload has no workoutDays")

    workout_days = [
        {
            "day_name": day.get("dayName"),
            "muscle_group": day.get("muscleGroup"),
            "estimated_duration": day.get("estimatedDuration"),
            "is_rest_day": bool(day.get("isRestDay", False)),
            "exercises": [_normalize_exercise(e) for e in day.get("exercises") or []],
        }
        for day in days
    ]

    weekly_schedule = payload.get("weeklySchedule") or profile.get("weekly_workout_days") or 3
    return {
        "external_plan_id": payload.get("planId"),
        "plan_name": plan_name,
        "workout_days": workout_days,
        "weekly_schedule": max(1, min(7, int(weekly_schedule))),
        "plan_duration": payload.get("planDuration"),
        "difficulty_level": payload.get("difficultyLevel") or profile.get("fitness_level"),
    }


def normalize_diet_payload(payload: Dict[str, Any], profile: Dict[str, Any]) -> Dict[str, Any]:
    """Map a diet provider response onto DietPlan columns."""
    try:
        macros = payload["macros"]
        total_macros = {key: macros[source] for key, source in MACRO_KEYS.items()}
        target_weight = float(payload["target_weight"])
        days = payload["meal_plan"]
    except (KeyError, TypeError, ValueError) as e:
        raise PlanPayloadError(f"diet payload invalid: {e}") from e
    if not isinstance(days, list) or not 1 <= len(days) <= 7:
        raise PlanPayloadError("diet payload must contain 1-7 meal plan days")

    meal_plan = []
    for day in days:
        day_number = int(day.get("day", 0))
        if not 1 <= day_number <= 7:
            raise PlanPayloadError(f"diet payload day out of range: {day_number}")
        meals_by_type = day.get("meals") or {}
        calories_by_type = day.get("calories") or {}
        names_by_type = day.get("short_names") or {}
        meals = [
            {
                "meal_type": meal_type,
                "meal_description": meals_by_type.get(meal_type) or "",
                "short_name": names_by_type.get(meal_type) or "",
                "calories": calories_by_type.get(meal_type) or 0,
                "meal_order": order,
            }
            for meal_type, order in MEAL_ORDER.items()
        ]
        meal_plan.append({
            "day": day_number,
            "day_name": DAY_NAMES[day_number - 1],
            "meals": [m for m in meals if m["meal_description"]],
        })

    goal = (profile.get("goal") or "").replace("_", " ")
    return {
        "external_plan_id": payload.get("planId"),
        "plan_name": f"Personalized Diet Plan - {goal}",
        "target_weight_kg": target_weight,
        "total_macros": total_macros,
        "meal_plan": meal_plan,
    }


# ---------------------------------------------------------------------------
# Snapshot readers
# ---------------------------------------------------------------------------

def day_meals(plan: Dict[str, Any], day: int) -> Optional[Dict[str, Any]]:
    """One day of a diet plan snapshot, meals in serving order."""
    for entry in plan.get("meal_plan") or []:
        if entry.get("day") == day:
            meals = sorted(entry.get("meals") or [], key=lambda m: m.get("meal_order", 0))
            return {
                "day": entry["day"],
                "day_name": entry.get("day_name"),
                "meals": meals,
                "total_calories": sum(m.get("calories") or 0 for m in meals),
            }
    return None


def workout_day(plan: Dict[str, Any], muscle_group: str) -> Optional[Dict[str, Any]]:
    wanted = muscle_group.strip().lower()
    for entry in plan.get("workout_days") or []:
        if (entry.get("muscle_group") or "").lower() == wanted:
            return entry
    return None


WORKOUT = PlanKind(
    plan_type=PlanType.WORKOUT,
    model=WorkoutPlan,
    pointer_attr="active_workout_plan_id",
    cache_prefix="cache:workout-plans:user",
    required_fields=WORKOUT_REQUIRED_FIELDS,
    payload_fields=("workout_days", "weekly_schedule", "plan_duration", "difficulty_level"),
    normalize=normalize_workout_payload,
)

DIET = PlanKind(
    plan_type=PlanType.DIET,
    model=DietPlan,
    pointer_attr="active_diet_plan_id",
    cache_prefix="cache:diet-plans:user",
    required_fields=DIET_REQUIRED_FIELDS,
    payload_fields=("target_weight_kg", "total_macros", "meal_plan"),
    normalize=normalize_diet_payload,
    writes_macros=True,
)

PLAN_KINDS = {kind.name: kind for kind in (WORKOUT, DIET)}


def get_plan_kind(name: str) -> PlanKind:
    try:
        return PLAN_KINDS[PlanType(name).value]
    except ValueError:
        raise KeyError(name) from None
