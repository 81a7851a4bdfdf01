"""
Plan API Endpoints

Thin HTTP surface over PlanCacheCoordinator and PlanRefreshJob.
`{plan_type}` is `workout` or `diet`. Service errors (incomplete profile,
provider failures, persistence failures) are APIExceptions and propagate
to the app's handler with their own status codes.
"""
from fastapi import APIRouter, Depends, Response, status
from typing import Optional
from uuid import UUID

from core.exceptions import ConflictError, NotFoundError
from schemas import (
    DayMealsResponse,
    GoalChangeResponse,
    PlanRequest,
    RefreshJobStatsResponse,
    RefreshJobStatusResponse,
)
from services.plan_coordinator import PlanCacheCoordinator
from services.plan_refresh_job import PlanRefreshJob
from services.plan_registry import get_coordinator, get_refresh_job
from services.plan_types import PlanType, day_meals, workout_day

router = APIRouter(prefix="/v1/plans", tags=["plans"])


def plan_coordinator(plan_type: PlanType) -> PlanCacheCoordinator:
    return get_coordinator(plan_type.value)


def plan_refresh_job(plan_type: PlanType) -> PlanRefreshJob:
    return get_refresh_job(plan_type.value)


def diet_coordinator() -> PlanCacheCoordinator:
    return get_coordinator(PlanType.DIET.value)


def workout_coordinator() -> PlanCacheCoordinator:
    return get_coordinator(PlanType.WORKOUT.value)


@router.post("/users/{user_id}/goal-changed", response_model=GoalChangeResponse, status_code=202)
def goal_changed(user_id: UUID):
    """
    Queue regeneration of the user's active plans after a goal edit.

    Runs in the worker; both plan kinds are refreshed independently.
    """
    from tasks.plan_refresh_tasks import refresh_plans_for_goal_change_task

    result = refresh_plans_for_goal_change_task.delay(str(user_id))
    return GoalChangeResponse(user_id=str(user_id), task_id=getattr(result, "id", None))


@router.get("/diet/users/{user_id}/days/{day}", response_model=DayMealsResponse)
def get_day_meals(
    user_id: UUID,
    day: int,
    coordinator: PlanCacheCoordinator = Depends(diet_coordinator),
):
    """Meals for day 1-7 of the user's active diet plan, in serving order."""
    plan = coordinator.get_user_active_plan(user_id)
    if plan is None:
        raise NotFoundError("Active diet plan", str(user_id))
    meals = day_meals(plan, day)
    if meals is None:
        raise NotFoundError("Diet plan day", str(day))
    return meals


@router.get("/workout/users/{user_id}/days/{muscle_group}")
def get_workout_day(
    user_id: UUID,
    muscle_group: str,
    coordinator: PlanCacheCoordinator = Depends(workout_coordinator),
):
    plan = coordinator.get_user_active_plan(user_id)
    if plan is None:
        raise NotFoundError("Active workout plan", str(user_id))
    entry = workout_day(plan, muscle_group)
    if entry is None:
        raise NotFoundError("Workout day", muscle_group)
    return entry


@router.get("/{plan_type}/users/{user_id}")
def get_active_plan(
    plan_type: PlanType,
    user_id: UUID,
    coordinator: PlanCacheCoordinator = Depends(plan_coordinator),
):
    plan = coordinator.get_user_active_plan(user_id)
    if plan is None:
        raise NotFoundError(f"Active {plan_type.value} plan", str(user_id))
    return plan


@router.post("/{plan_type}/users/{user_id}")
def create_or_refresh_plan(
    plan_type: PlanType,
    user_id: UUID,
    request: Optional[PlanRequest] = None,
    coordinator: PlanCacheCoordinator = Depends(plan_coordinator),
):
    """
    Return the user's active plan, generating a new one if it is missing,
    stale or `force_refresh` is set.

    The profile is read from the stored user record.
    """
    request = request or PlanRequest()
    profile, stored_preferences = coordinator.profile_for_user(user_id)
    return coordinator.create_or_refresh(
        user_id,
        profile,
        request.preferences if request.preferences is not None else stored_preferences,
        force_refresh=request.force_refresh,
    )


@router.delete("/{plan_type}/users/{user_id}/{plan_id}", status_code=204)
def deactivate_plan(
    plan_type: PlanType,
    user_id: UUID,
    plan_id: UUID,
    coordinator: PlanCacheCoordinator = Depends(plan_coordinator),
):
    if not coordinator.deactivate(user_id, plan_id):
        raise NotFoundError(f"Active {plan_type.value} plan", str(plan_id))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{plan_type}/refresh-job/run", response_model=RefreshJobStatsResponse)
def run_refresh_job(
    plan_type: PlanType,
    job: PlanRefreshJob = Depends(plan_refresh_job),
):
    """Run the refresh sweep now, in-request. 409 if a sweep is already running."""
    if job.is_job_running():
        raise ConflictError(f"{plan_type.value} plan refresh job is already running")
    stats = job.trigger_manual_refresh()
    if stats is None:
        raise ConflictError(f"{plan_type.value} plan refresh job is already running")
    return stats.to_dict()


@router.get("/{plan_type}/refresh-job", response_model=RefreshJobStatusResponse)
def get_refresh_job_status(
    plan_type: PlanType,
    job: PlanRefreshJob = Depends(plan_refresh_job),
):
    info = job.get_next_run_info()
    return {
        "plan_type": plan_type.value,
        "is_running": info["is_running"],
        "schedule": info["schedule"],
        "next_run": info["next_run"],
        "last_run": job.get_job_stats().to_dict(),
    }
