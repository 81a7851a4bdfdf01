"""
Tests for plan kinds, freshness rules and provider payload normalization.
"""
from datetime import timedelta

import pytest

from conftest import T0
from models import User
from services.plan_providers import DietPlanningProvider, WorkoutPlanningProvider
from services.plan_types import (
    DIET,
    WORKOUT,
    PlanPayloadError,
    build_preferences,
    build_profile,
    day_meals,
    get_plan_kind,
    is_expired,
    is_reusable,
    missing_profile_fields,
    needs_refresh,
    normalize_diet_payload,
    normalize_workout_payload,
    workout_day,
)


def _plan(**overrides):
    plan = {
        "is_active": True,
        "cache_expiry": (T0 + timedelta(hours=24)).isoformat(),
        "next_refresh_date": (T0 + timedelta(days=14)).isoformat(),
    }
    plan.update(overrides)
    return plan


class TestFreshness:

    def test_fresh_plan_is_reusable(self):
        assert is_reusable(_plan(), T0)

    def test_expiry_boundary_is_expired(self):
        plan = _plan(cache_expiry=T0.isoformat())
        assert is_expired(plan, T0)
        assert not is_expired(plan, T0 - timedelta(seconds=1))
        assert not is_reusable(plan, T0)

    def test_refresh_boundary_is_due(self):
        plan = _plan(next_refresh_date=T0.isoformat())
        assert needs_refresh(plan, T0)
        assert not is_reusable(plan, T0)

    def test_inactive_plan_is_never_reusable(self):
        assert not is_reusable(_plan(is_active=False), T0)

    def test_missing_plan_is_not_reusable(self):
        assert not is_reusable(None, T0)

    def test_naive_datetimes_are_treated_as_utc(self):
        plan = _plan(cache_expiry=(T0 + timedelta(hours=1)).replace(tzinfo=None))
        assert not is_expired(plan, T0)
        assert is_expired(plan, T0 + timedelta(hours=1))


class TestProfiles:

    def test_missing_fields_workout(self):
        profile = {"fitness_level": "beginner", "goal": None, "age": 30, "height_cm": 170}
        assert missing_profile_fields(WORKOUT, profile) == ["goal", "weight_kg"]

    def test_missing_fields_diet_requires_gender(self):
        profile = {"goal": "weight_loss", "age": 30, "height_cm": 170, "weight_kg": 70, "gender": ""}
        assert missing_profile_fields(DIET, profile) == ["gender"]

    def test_workout_profile_defaults(self):
        user = User(goal="maintenance", age=40, height_cm=180, weight_kg=90, fitness_level="advanced")
        profile = build_profile(WORKOUT, user)
        assert profile["activity_level"] == "moderate"
        assert profile["weekly_workout_days"] == 3
        assert profile["health_conditions"] == []

    def test_workout_profile_carries_weekly_schedule(self):
        user = User(goal="maintenance", age=40, height_cm=180, weight_kg=90, fitness_level="advanced")
        profile = build_profile(WORKOUT, user, {"weekly_schedule": 5})
        assert profile["weekly_workout_days"] == 5

    def test_diet_profile_defaults(self):
        user = User(goal="weight_gain", age=25, height_cm=165, weight_kg=55, gender="Female")
        profile = build_profile(DIET, user)
        assert profile["activity_level"] == "sedentary"
        assert profile["target_weight_kg"] == 55
        assert profile["allergies"] == []

    def test_preferences_only_for_diet(self):
        user = User(diet_preferences={"cuisine_preferences": {"Thai": ["Vegan"]}})
        assert build_preferences(DIET, user) == {"cuisine_preferences": {"Thai": ["Vegan"]}}
        assert build_preferences(WORKOUT, user) is None
        assert build_preferences(DIET, User()) is None


class TestNormalization:

    def test_workout_payload(self):
        payload = WorkoutPlanningProvider.mock_plan({"fitness_level": "beginner", "goal": "maintenance"})
        columns = normalize_workout_payload(payload, {"fitness_level": "beginner"})
        assert columns["external_plan_id"] == "mock-plan-12345"
        assert columns["weekly_schedule"] == 3
        assert [d["muscle_group"] for d in columns["workout_days"]] == ["Push", "Pull", "Legs"]
        assert columns["workout_days"][0]["exercises"][0]["exercise_id"] == "ex-001"

    def test_workout_payload_without_days_is_rejected(self):
        with pytest.raises(PlanPayloadError):
            normalize_workout_payload({"planName": "x", "workoutDays": []}, {})

    def test_diet_payload(self):
        payload = DietPlanningProvider.mock_plan({"goal": "weight_loss", "gender": "Male", "target_weight_kg": 75})
        payload["meal_plan"][0]["meals"]["Snack 2"] = ""
        columns = normalize_diet_payload(payload, {"goal": "weight_loss"})

        assert columns["plan_name"] == "Personalized Diet Plan - weight loss"
        assert columns["target_weight_kg"] == 75.0
        assert columns["total_macros"]["calories"] == "1486"
        assert len(columns["meal_plan"]) == 7
        assert columns["meal_plan"][6]["day_name"] == "Sunday"
        monday = columns["meal_plan"][0]
        assert [m["meal_type"] for m in monday["meals"]] == ["Breakfast", "Snack 1", "Lunch", "Dinner"]

    def test_diet_payload_missing_macros_is_rejected(self):
        with pytest.raises(PlanPayloadError):
            normalize_diet_payload({"target_weight": "70", "meal_plan": []}, {"goal": "maintenance"})

    def test_diet_payload_day_out_of_range_is_rejected(self):
        payload = DietPlanningProvider.mock_plan({"goal": "maintenance"})
        payload["meal_plan"][0]["day"] = 8
        with pytest.raises(PlanPayloadError):
            normalize_diet_payload(payload, {"goal": "maintenance"})


class TestSnapshotReaders:

    def test_day_meals_sorted_with_total(self):
        plan = {
            "meal_plan": [
                {
                    "day": 2,
                    "day_name": "Tuesday",
                    "meals": [
                        {"meal_type": "Dinner", "calories": 600, "meal_order": 5},
                        {"meal_type": "Breakfast", "calories": 300, "meal_order": 1},
                    ],
                }
            ]
        }
        result = day_meals(plan, 2)
        assert [m["meal_type"] for m in result["meals"]] == ["Breakfast", "Dinner"]
        assert result["total_calories"] == 900
        assert day_meals(plan, 3) is None

    def test_workout_day_case_insensitive(self):
        plan = {"workout_days": [{"muscle_group": "Legs", "day_name": "Day 3 - Legs"}]}
        assert workout_day(plan, "legs")["day_name"] == "Day 3 - Legs"
        assert workout_day(plan, "arms") is None


def test_get_plan_kind():
    assert get_plan_kind("diet") is DIET
    with pytest.raises(KeyError):
        get_plan_kind("sleep")
