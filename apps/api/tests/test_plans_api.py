"""
API tests for the plan endpoints.

The router's coordinator/job dependencies are overridden with instances
backed by the test database, FakeRedis and fake providers.
"""
from unittest.mock import MagicMock, patch
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from main import app
from routers import plans
from services.plan_refresh_job import PlanRefreshJob
from services.plan_types import PlanType


@pytest.fixture
def jobs(workout_coordinator, diet_coordinator, clock):
    return {
        PlanType.WORKOUT: PlanRefreshJob(workout_coordinator, sleep=lambda s: None, clock=clock),
        PlanType.DIET: PlanRefreshJob(diet_coordinator, sleep=lambda s: None, clock=clock, schedule="0 3 * * *"),
    }


@pytest.fixture
def client(workout_coordinator, diet_coordinator, jobs):
    coordinators = {PlanType.WORKOUT: workout_coordinator, PlanType.DIET: diet_coordinator}

    def override_coordinator(plan_type: PlanType):
        return coordinators[plan_type]

    def override_job(plan_type: PlanType):
        return jobs[plan_type]

    app.dependency_overrides[plans.plan_coordinator] = override_coordinator
    app.dependency_overrides[plans.plan_refresh_job] = override_job
    app.dependency_overrides[plans.workout_coordinator] = lambda: workout_coordinator
    app.dependency_overrides[plans.diet_coordinator] = lambda: diet_coordinator
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def user(make_user):
    return make_user()


class TestCreateOrRefresh:

    def test_creates_then_reuses(self, client, user, workout_provider):
        first = client.post(f"/v1/plans/workout/users/{user.id}")
        second = client.post(f"/v1/plans/workout/users/{user.id}", json={})

        assert first.status_code == 200
        assert first.json()["plan_type"] == "workout"
        assert second.json()["plan_id"] == first.json()["plan_id"]
        assert len(workout_provider.calls) == 1

    def test_force_refresh(self, client, user):
        first = client.post(f"/v1/plans/workout/users/{user.id}").json()
        second = client.post(f"/v1/plans/workout/users/{user.id}", json={"force_refresh": True}).json()

        assert second["plan_id"] != first["plan_id"]

    def test_diet_uses_stored_or_requested_preferences(self, client, user, diet_provider):
        client.post(f"/v1/plans/diet/users/{user.id}")
        client.post(
            f"/v1/plans/diet/users/{user.id}",
            json={"force_refresh": True, "preferences": {"cuisine_preferences": {"Thai": ["Vegan"]}}},
        )

        assert diet_provider.calls[0]["preferences"] == {"cuisine_preferences": {"Indian": ["Vegetarian"]}}
        assert diet_provider.calls[1]["preferences"] == {"cuisine_preferences": {"Thai": ["Vegan"]}}

    def test_incomplete_profile(self, client, make_user, workout_provider):
        user = make_user(goal=None)

        response = client.post(f"/v1/plans/workout/users/{user.id}")

        assert response.status_code == 422
        body = response.json()
        assert body["error_code"] == "INCOMPLETE_PROFILE"
        assert body["missing_fields"] == ["goal"]
        assert workout_provider.calls == []

    def test_unknown_user(self, client):
        response = client.post(f"/v1/plans/diet/users/{uuid4()}")
        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

    def test_provider_failure(self, client, user, diet_provider):
        diet_provider.error = RuntimeError("upstream 500")

        response = client.post(f"/v1/plans/diet/users/{user.id}")

        assert response.status_code == 502
        assert response.json()["error_code"] == "PLAN_PROVIDER_ERROR"

    def test_unknown_plan_type_and_bad_ids(self, client, user):
        assert client.post(f"/v1/plans/sleep/users/{user.id}").status_code == 422
        assert client.post("/v1/plans/diet/users/not-a-uuid").status_code == 422


class TestReadAndDeactivate:

    def test_get_active_plan(self, client, user):
        assert client.get(f"/v1/plans/diet/users/{user.id}").status_code == 404

        created = client.post(f"/v1/plans/diet/users/{user.id}").json()
        response = client.get(f"/v1/plans/diet/users/{user.id}")

        assert response.status_code == 200
        assert response.json()["plan_id"] == created["plan_id"]
        assert response.json()["total_macros"]["calories"] == "1486"

    def test_deactivate(self, client, user):
        plan_id = client.post(f"/v1/plans/workout/users/{user.id}").json()["plan_id"]

        assert client.delete(f"/v1/plans/workout/users/{user.id}/{plan_id}").status_code == 204
        assert client.delete(f"/v1/plans/workout/users/{user.id}/{plan_id}").status_code == 404
        assert client.get(f"/v1/plans/workout/users/{user.id}").status_code == 404

    def test_day_meals(self, client, user):
        assert client.get(f"/v1/plans/diet/users/{user.id}/days/1").status_code == 404
        client.post(f"/v1/plans/diet/users/{user.id}")

        response = client.get(f"/v1/plans/diet/users/{user.id}/days/1")

        assert response.status_code == 200
        body = response.json()
        assert body["day_name"] == "Monday"
        assert [m["meal_type"] for m in body["meals"]] == ["Breakfast", "Snack 1", "Lunch", "Snack 2", "Dinner"]
        assert body["total_calories"] == 1857
        assert client.get(f"/v1/plans/diet/users/{user.id}/days/8").status_code == 404

    def test_workout_day(self, client, user):
        client.post(f"/v1/plans/workout/users/{user.id}")

        response = client.get(f"/v1/plans/workout/users/{user.id}/days/PULL")

        assert response.status_code == 200
        assert response.json()["muscle_group"] == "Pull"
        assert client.get(f"/v1/plans/workout/users/{user.id}/days/arms").status_code == 404


class TestRefreshJobEndpoints:

    def test_run_now(self, client, user, clock):
        client.post(f"/v1/plans/workout/users/{user.id}")
        clock.advance(days=14)

        response = client.post("/v1/plans/workout/refresh-job/run")

        assert response.status_code == 200
        assert response.json()["plans_refreshed"] == 1

    def test_run_while_running_conflicts(self, client):
        busy = MagicMock()
        busy.is_job_running.return_value = True
        app.dependency_overrides[plans.plan_refresh_job] = lambda: busy

        response = client.post("/v1/plans/diet/refresh-job/run")

        assert response.status_code == 409
        busy.trigger_manual_refresh.assert_not_called()

    def test_status(self, client):
        response = client.get("/v1/plans/diet/refresh-job")

        assert response.status_code == 200
        body = response.json()
        assert body["plan_type"] == "diet"
        assert body["schedule"] == "0 3 * * *"
        assert body["is_running"] is False
        assert body["last_run"]["plans_checked"] == 0


def test_goal_changed_queues_task(client):
    user_id = uuid4()
    with patch("tasks.plan_refresh_tasks.refresh_plans_for_goal_change_task.delay") as delay:
        delay.return_value = MagicMock(id="task-123")
        response = client.post(f"/v1/plans/users/{user_id}/goal-changed")

    assert response.status_code == 202
    assert response.json() == {"user_id": str(user_id), "task_id": "task-123", "status": "queued"}
    delay.assert_called_once_with(str(user_id))


def test_health_endpoints(client):
    assert client.get("/ping").json() == {"pong": True}
    assert client.get("/health").json()["status"] == "healthy"
