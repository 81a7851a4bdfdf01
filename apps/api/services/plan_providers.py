"""
External Plan Providers

HTTP clients for the workout and diet planning services. Each provider
exposes one call:

    provider.generate(user_id, profile, preferences=None) -> dict

and returns the provider's raw payload; mapping onto our columns happens
in services.plan_types. Providers never retry: the caller decides (the
refresh sweep reschedules, HTTP callers surface the error).

With PLAN_PROVIDER_MOCK_MODE enabled the clients return deterministic
canned plans shaped from the profile and make no network calls.
"""

import copy
import hashlib
import hmac
import json
import logging
from typing import Any, Dict, Optional

import requests

from core.config import settings
from core.exceptions import PlanProviderError
from core.logging import log_fields

logger = logging.getLogger(__name__)

# Activity level -> hours-per-day phrasing the diet service understands
ACTIVITY_DESCRIPTIONS = {
    "sedentary": "0 - 2 hours a day",
    "lightly_active": "2 - 4 hours a day",
    "moderately_active": "4 - 6 hours a day",
    "very_active": "6 - 8 hours a day",
    "extremely_active": "8+ hours a day",
}


def _exercise(exercise_id, name, description, reps, rest, muscle, equipment):
    return {
        "exerciseId": exercise_id,
        "name": name,
        "description": description,
        "sets": 3,
        "reps": reps,
        "restTime": rest,
        "muscleGroup": muscle,
        "equipment": equipment,
        "difficulty": "beginner",
    }


MOCK_WORKOUT_PLAN = {
    "planId": "mock-plan-12345",
    "planName": "Push Pull Legs",
    "weeklySchedule": 3,
    "difficultyLevel": "beginner",
    "planDuration": 8,
    "workoutDays": [
        {
            "dayName": "Day 1 - Push",
            "muscleGroup": "Push",
            "estimatedDuration": 60,
            "isRestDay": False,
            "exercises": [
                _exercise("ex-001", "Bench Press", "Chest compound movement", "8-12", 90, "Chest", "Barbell"),
                _exercise("ex-002", "Overhead Press", "Shoulder compound movement", "8-12", 90, "Shoulders", "Barbell"),
                _exercise("ex-003", "Tricep Dips", "Tricep isolation movement", "10-15", 60, "Triceps", "Bodyweight"),
            ],
        },
        {
            "dayName": "Day 2 - Pull",
            "muscleGroup": "Pull",
            "estimatedDuration": 60,
            "isRestDay": False,
            "exercises": [
                _exercise("ex-004", "Pull-ups", "Back compound movement", "5-10", 90, "Back", "Bodyweight"),
                _exercise("ex-005", "Barbell Rows", "Back compound movement", "8-12", 90, "Back", "Barbell"),
                _exercise("ex-006", "Bicep Curls", "Bicep isolation movement", "12-15", 60, "Biceps", "Dumbbell"),
            ],
        },
        {
            "dayName": "Day 3 - Legs",
            "muscleGroup": "Legs",
            "estimatedDuration": 75,
            "isRestDay": False,
            "exercises": [
                _exercise("ex-007", "Squats", "Leg compound movement", "8-12", 120, "Quadriceps", "Barbell"),
                _exercise("ex-008", "Romanian Deadlifts", "Hamstring compound movement", "8-12", 90, "Hamstrings", "Barbell"),
                _exercise("ex-009", "Calf Raises", "Calf isolation movement", "15-20", 45, "Calves", "Bodyweight"),
            ],
        },
    ],
}

# Three canned days, rotated across the week
MOCK_DIET_DAYS = [
    {
        "meals": {
            "Breakfast": "150g Rava Dosa with 100ml Tomato Chutney",
            "Snack 1": "100g Mixed berries (blueberries, strawberries, raspberries)",
            "Lunch": "150g Kaima Rice with 150g Vegetable Curry",
            "Snack 2": "80g Apple slices with 20g Peanut Butter",
            "Dinner": "2 pieces Appam with 150g Egg Roast",
        },
        "calories": {"Breakfast": 350, "Snack 1": 50, "Lunch": 550, "Snack 2": 250, "Dinner": 657},
        "short_names": {
            "Breakfast": "Rava Dosa, Tomato Chutney",
            "Snack 1": "Mixed berries",
            "Lunch": "Kaima Rice, Vegetable Curry",
            "Snack 2": "Apple slices, Peanut Butter",
            "Dinner": "Appam, Egg Roast",
        },
    },
    {
        "meals": {
            "Breakfast": "150g Jackfruit Upma",
            "Snack 1": "100g Watermelon cubes with 20g Feta and 5g Mint",
            "Lunch": "140g Fried Rice with 100g Veg Manchurian",
            "Snack 2": "30g Walnuts with 80g Apple slices",
            "Dinner": "150g Kappa with 100g Chammanthi",
        },
        "calories": {"Breakfast": 360, "Snack 1": 60, "Lunch": 560, "Snack 2": 260, "Dinner": 617},
        "short_names": {
            "Breakfast": "Jackfruit Upma",
            "Snack 1": "Watermelon cubes, Feta, Mint",
            "Lunch": "Fried Rice, Veg Manchurian",
            "Snack 2": "Walnuts, Apple slices",
            "Dinner": "Kappa, Chammanthi",
        },
    },
    {
        "meals": {
            "Breakfast": "150g Vattayappam",
            "Snack 1": "100g Skyr (Icelandic yogurt) with 50g Berries",
            "Lunch": "150g Sardine Curry with 150g Kaima Rice",
            "Snack 2": "2 pieces Rice cakes with 20g Tahini and 10g Honey",
            "Dinner": "150g Puttu with 150g Kadala Curry",
        },
        "calories": {"Breakfast": 350, "Snack 1": 90, "Lunch": 560, "Snack 2": 250, "Dinner": 607},
        "short_names": {
            "Breakfast": "Vattayappam",
            "Snack 1": "Skyr, Berries",
            "Lunch": "Sardine Curry, Kaima Rice",
            "Snack 2": "Rice cakes, Tahini, Honey",
            "Dinner": "Puttu, Kadala Curry",
        },
    },
]

MOCK_DIET_MACROS = {
    "Total Calories": "1857",
    "Total Carbs": "223g",
    "Total Protein": "119g",
    "Total Fat": "58g",
    "Total Fiber": "26g",
}


class PlanProvider:
    """Base class for external plan generators."""

    name = "plan-provider"

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout_s: float = 30.0,
        mock_mode: bool = False,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.mock_mode = mock_mode

    def generate(
        self,
        user_id: str,
        profile: Dict[str, Any],
        preferences: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def _post(self, path: str, body: Dict[str, Any], headers: Dict[str, str]) -> Dict[str, Any]:
        """POST a JSON body and return the decoded JSON object."""
        url = f"{self.base_url}{path}"
        logger.info(
            f"{self.name} request POST {url}",
            extra=log_fields("api-request-start", service=self.name, timeout_s=self.timeout_s),
        )
        try:
            r = requests.post(url, data=json.dumps(body), headers=headers, timeout=self.timeout_s)
            r.raise_for_status()
            data = r.json()
        except requests.exceptions.HTTPError as e:
            status = e.response.status_code if e.response is not None else None
            logger.error(
                f"{self.name} returned HTTP {status}",
                extra=log_fields("api-request-failure", service=self.name, status=status),
            )
            raise PlanProviderError(self.name, f"HTTP {status}") from e
        except requests.exceptions.RequestException as e:
            logger.error(
                f"{self.name} request failed: {e}",
                extra=log_fields("api-request-failure", service=self.name),
            )
            raise PlanProviderError(self.name, str(e)) from e
        except ValueError as e:
            raise PlanProviderError(self.name, "response is not valid JSON") from e

        if not isinstance(data, dict):
            raise PlanProviderError(self.name, "response is not a JSON object")

        logger.info(
            f"{self.name} request successful",
            extra=log_fields("api-request-success", service=self.name, status=r.status_code),
        )
        return data


class WorkoutPlanningProvider(PlanProvider):
    """Client for the workout planning service (bearer token auth)."""

    name = "workout-planning-service"

    def generate(self, user_id, profile, preferences=None):
        if self.mock_mode:
            logger.info(
                "Using mock workout plan response",
                extra=log_fields("mock-response-used", service=self.name, user_id=str(user_id)),
            )
            return self.mock_plan(profile)

        body = {
            "userProfile": {
                "fitnessLevel": profile.get("fitness_level"),
                "goal": profile.get("goal"),
                "age": profile.get("age"),
                "heightCm": profile.get("height_cm"),
                "weightKg": profile.get("weight_kg"),
                "activityLevel": profile.get("activity_level"),
                "weeklyWorkoutDays": profile.get("weekly_workout_days"),
                "healthConditions": profile.get("health_conditions") or [],
            },
            "preferences": {
                "workoutDaysPerWeek": profile.get("weekly_workout_days") or 3,
            },
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key or ''}",
        }
        return self._post("/workout-plans", body, headers)

    @staticmethod
    def mock_plan(profile: Dict[str, Any]) -> Dict[str, Any]:
        plan = copy.deepcopy(MOCK_WORKOUT_PLAN)
        fitness_level = profile.get("fitness_level") or "beginner"
        plan["difficultyLevel"] = fitness_level
        plan["planName"] = f"{plan['planName']} - {fitness_level}"

        days = profile.get("weekly_workout_days")
        if profile.get("goal") == "weight_loss":
            plan["weeklySchedule"] = max(4, days or 4)
        elif profile.get("goal") == "muscle_building":
            plan["weeklySchedule"] = max(3, days or 3)
        return plan


class DietPlanningProvider(PlanProvider):
    """Client for the diet planning service (API key + HMAC body signature)."""

    name = "diet-planning-service"

    def __init__(self, base_url, api_key=None, hmac_secret="", timeout_s=30.0, mock_mode=False):
        super().__init__(base_url, api_key=api_key, timeout_s=timeout_s, mock_mode=mock_mode)
        self.hmac_secret = hmac_secret

    def generate(self, user_id, profile, preferences=None):
        if self.mock_mode:
            logger.info(
                "Using mock diet plan response",
                extra=log_fields("mock-response-used", service=self.name, user_id=str(user_id)),
            )
            return self.mock_plan(profile)

        body = {"input_text": format_input_text(profile, preferences)}
        headers = {
            "Content-Type": "application/json",
            "X-API-Key": self.api_key or "",
            "X-Signature": self.sign(json.dumps(body)),
        }
        return self._post("/diet-plans", body, headers)

    def sign(self, raw_body: str) -> str:
        """HMAC-SHA256 hex digest of the exact request body."""
        return hmac.new(
            (self.hmac_secret or "").encode("utf-8"),
            raw_body.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    @staticmethod
    def mock_plan(profile: Dict[str, Any]) -> Dict[str, Any]:
        macros = dict(MOCK_DIET_MACROS)

        adjustment = 1.0
        if profile.get("goal") == "weight_loss":
            adjustment = 0.8
        elif profile.get("goal") == "weight_gain":
            adjustment = 1.2
        if profile.get("gender") == "Female":
            adjustment *= 0.9
        macros["Total Calories"] = str(round(int(macros["Total Calories"]) * adjustment))

        target = profile.get("target_weight_kg") or 74.27
        meal_plan = []
        for day in range(1, 8):
            entry = copy.deepcopy(MOCK_DIET_DAYS[(day - 1) % len(MOCK_DIET_DAYS)])
            entry["day"] = day
            meal_plan.append(entry)

        return {
            "target_weight": str(target),
            "macros": macros,
            "meal_plan": meal_plan,
        }


def format_input_text(profile: Dict[str, Any], preferences: Optional[Dict[str, Any]] = None) -> str:
    """Render a diet profile as the free-text prompt the diet service expects."""
    weight = profile["weight_kg"]
    height_m = profile["height_cm"] / 100
    bmi = weight / (height_m * height_m)

    allergies = profile.get("allergies") or []
    conditions = profile.get("health_conditions") or []

    cuisine_text = ""
    cuisines = (preferences or {}).get("cuisine_preferences")
    if cuisines:
        parts = ", ".join(f"{cuisine}: [{', '.join(kinds)}]" for cuisine, kinds in cuisines.items())
        cuisine_text = f"cuisine: {{{parts}}}"

    activity = ACTIVITY_DESCRIPTIONS.get(profile.get("activity_level"), ACTIVITY_DESCRIPTIONS["sedentary"])

    return (
        f"fitness goal: {profile['goal'].replace('_', ' ')}, "
        f"age: {profile['age']}, "
        f"current weight: {weight}kg, "
        f"target weight: {profile.get('target_weight_kg') or weight}kg, "
        f"BMI: {bmi:.2f}, "
        f"allergies: {', '.join(allergies) if allergies else 'None'}, "
        f"health conditions: {', '.join(conditions) if conditions else 'None'}, "
        f"gender: {profile['gender']}, "
        f"{cuisine_text}, "
        f"activity level: {activity}"
    )


def build_workout_provider() -> WorkoutPlanningProvider:
    return WorkoutPlanningProvider(
        settings.WORKOUT_PLAN_SERVICE_URL,
        api_key=settings.WORKOUT_PLAN_SERVICE_API_KEY,
        timeout_s=settings.PLAN_PROVIDER_TIMEOUT_S,
        mock_mode=settings.PLAN_PROVIDER_MOCK_MODE,
    )


def build_diet_provider() -> DietPlanningProvider:
    return DietPlanningProvider(
        settings.DIET_PLAN_SERVICE_URL,
        api_key=settings.DIET_PLAN_SERVICE_API_KEY,
        hmac_secret=settings.DIET_PLAN_SERVICE_HMAC_SECRET,
        timeout_s=settings.PLAN_PROVIDER_TIMEOUT_S,
        mock_mode=settings.PLAN_PROVIDER_MOCK_MODE,
    )
