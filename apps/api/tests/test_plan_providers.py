"""
Tests for the workout and diet planning service clients.

HTTP is mocked at requests.post; no network access.
"""
import hashlib
import hmac
import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from core.exceptions import PlanProviderError
from services.plan_providers import (
    DietPlanningProvider,
    WorkoutPlanningProvider,
    build_diet_provider,
    build_workout_provider,
    format_input_text,
)

DIET_PROFILE = {
    "goal": "weight_loss",
    "age": 30,
    "height_cm": 175.0,
    "weight_kg": 80.0,
    "target_weight_kg": 75.0,
    "gender": "Male",
    "activity_level": "moderately_active",
    "allergies": ["peanuts"],
    "health_conditions": [],
}

WORKOUT_PROFILE = {
    "fitness_level": "intermediate",
    "goal": "muscle_building",
    "age": 28,
    "height_cm": 180.0,
    "weight_kg": 78.0,
    "activity_level": "moderate",
    "weekly_workout_days": 5,
    "health_conditions": [],
}


def _response(payload=None, status=200):
    response = MagicMock()
    response.status_code = status
    response.json.return_value = payload
    if status >= 400:
        response.raise_for_status.side_effect = requests.exceptions.HTTPError(response=response)
    return response


class TestMockMode:

    @patch("services.plan_providers.requests.post")
    def test_mock_mode_makes_no_requests(self, mock_post):
        provider = WorkoutPlanningProvider("http://workouts", mock_mode=True)

        plan = provider.generate("user-1", WORKOUT_PROFILE)

        mock_post.assert_not_called()
        assert plan["planName"] == "Push Pull Legs - intermediate"
        assert plan["difficultyLevel"] == "intermediate"
        assert plan["weeklySchedule"] == 5

    def test_weight_loss_workout_gets_four_days(self):
        plan = WorkoutPlanningProvider.mock_plan({"goal": "weight_loss"})
        assert plan["weeklySchedule"] == 4
        assert plan["planName"] == "Push Pull Legs - beginner"

    def test_mock_plan_is_not_shared(self):
        first = WorkoutPlanningProvider.mock_plan({})
        first["workoutDays"].clear()
        assert WorkoutPlanningProvider.mock_plan({})["workoutDays"]

    @pytest.mark.parametrize(
        "goal,gender,calories",
        [
            ("maintenance", "Male", "1857"),
            ("weight_loss", "Male", "1486"),
            ("weight_gain", "Male", "2228"),
            ("weight_loss", "Female", "1337"),
        ],
    )
    def test_diet_calories_follow_goal_and_gender(self, goal, gender, calories):
        plan = DietPlanningProvider.mock_plan({"goal": goal, "gender": gender})
        assert plan["macros"]["Total Calories"] == calories

    def test_diet_mock_covers_the_week(self):
        plan = DietPlanningProvider.mock_plan({"goal": "maintenance", "target_weight_kg": 68})
        assert [d["day"] for d in plan["meal_plan"]] == [1, 2, 3, 4, 5, 6, 7]
        assert plan["meal_plan"][3]["meals"] == plan["meal_plan"][0]["meals"]
        assert plan["target_weight"] == "68"
        assert DietPlanningProvider.mock_plan({})["target_weight"] == "74.27"


class TestWorkoutProvider:

    @patch("services.plan_providers.requests.post")
    def test_request_shape(self, mock_post):
        mock_post.return_value = _response({"planId": "w-1", "planName": "Split", "workoutDays": []})
        provider = WorkoutPlanningProvider("http://workouts/", api_key="secret", timeout_s=12)

        result = provider.generate("user-1", WORKOUT_PROFILE)

        assert result["planId"] == "w-1"
        args, kwargs = mock_post.call_args
        assert args[0] == "http://workouts/workout-plans"
        assert kwargs["timeout"] == 12
        assert kwargs["headers"]["Authorization"] == "Bearer secret"
        body = json.loads(kwargs["data"])
        assert body["userProfile"]["fitnessLevel"] == "intermediate"
        assert body["userProfile"]["heightCm"] == 180.0
        assert body["preferences"] == {"workoutDaysPerWeek": 5}

    @patch("services.plan_providers.requests.post")
    def test_http_error(self, mock_post):
        mock_post.return_value = _response(status=500)
        provider = WorkoutPlanningProvider("http://workouts")

        with pytest.raises(PlanProviderError) as exc_info:
            provider.generate("user-1", WORKOUT_PROFILE)

        assert "HTTP 500" in exc_info.value.detail
        assert exc_info.value.status_code == 502

    @patch("services.plan_providers.requests.post")
    def test_network_timeout(self, mock_post):
        mock_post.side_effect = requests.exceptions.Timeout("read timed out")
        provider = WorkoutPlanningProvider("http://workouts")

        with pytest.raises(PlanProviderError):
            provider.generate("user-1", WORKOUT_PROFILE)

    @patch("services.plan_providers.requests.post")
    def test_invalid_json(self, mock_post):
        response = _response()
        response.json.side_effect = ValueError("Expecting value")
        mock_post.return_value = response
        provider = WorkoutPlanningProvider("http://workouts")

        with pytest.raises(PlanProviderError) as exc_info:
            provider.generate("user-1", WORKOUT_PROFILE)

        assert "not valid JSON" in exc_info.value.detail

    @patch("services.plan_providers.requests.post")
    def test_non_object_response(self, mock_post):
        mock_post.return_value = _response(["not", "a", "plan"])
        provider = WorkoutPlanningProvider("http://workouts")

        with pytest.raises(PlanProviderError):
            provider.generate("user-1", WORKOUT_PROFILE)


class TestDietProvider:

    @patch("services.plan_providers.requests.post")
    def test_request_is_signed(self, mock_post):
        mock_post.return_value = _response({"target_weight": "75", "macros": {}, "meal_plan": []})
        provider = DietPlanningProvider("http://diets", api_key="key-1", hmac_secret="s3cret")

        provider.generate("user-1", DIET_PROFILE, {"cuisine_preferences": {"Thai": ["Vegan"]}})

        args, kwargs = mock_post.call_args
        assert args[0] == "http://diets/diet-plans"
        raw = kwargs["data"]
        expected = hmac.new(b"s3cret", raw.encode("utf-8"), hashlib.sha256).hexdigest()
        assert kwargs["headers"]["X-Signature"] == expected
        assert kwargs["headers"]["X-API-Key"] == "key-1"
        assert "cuisine: {Thai: [Vegan]}" in json.loads(raw)["input_text"]

    def test_sign_is_deterministic(self):
        provider = DietPlanningProvider("http://diets", hmac_secret="abc")
        assert provider.sign('{"a": 1}') == provider.sign('{"a": 1}')
        assert provider.sign('{"a": 1}') != provider.sign('{"a": 2}')


def test_format_input_text():
    text = format_input_text(DIET_PROFILE, {"cuisine_preferences": {"Indian": ["Vegetarian", "Vegan"]}})

    assert text == (
        "fitness goal: weight loss, age: 30, current weight: 80.0kg, "
        "target weight: 75.0kg, BMI: 26.12, allergies: peanuts, "
        "health conditions: None, gender: Male, "
        "cuisine: {Indian: [Vegetarian, Vegan]}, "
        "activity level: 4 - 6 hours a day"
    )


def test_format_input_text_defaults():
    profile = dict(DIET_PROFILE, activity_level=None, allergies=[], target_weight_kg=None)
    text = format_input_text(profile)

    assert "allergies: None" in text
    assert "target weight: 80.0kg" in text
    assert text.endswith("activity level: 0 - 2 hours a day")


def test_builders_use_settings():
    workout = build_workout_provider()
    diet = build_diet_provider()
    assert workout.mock_mode is True
    assert diet.mock_mode is True
    assert isinstance(diet, DietPlanningProvider)
