"""
Plan refresh Celery tasks.

Beat runs one sweep per plan kind (see celerybeat_schedule). A Redis latch
keeps a sweep single-flight across worker processes; the job's own lock
covers a single process. The latch fails open when Redis is down.
"""

import logging
from typing import Dict

from tasks import celery_app
from core.cache import acquire_lock, cache_key, release_lock
from core.config import settings
from core.logging import log_fields
from services.plan_registry import get_refresh_job

logger = logging.getLogger(__name__)

PLAN_TYPES = ("workout", "diet")


def _lock_key(plan_type: str) -> str:
    return cache_key("lock:plan-refresh", plan_type)


def run_refresh_sweep(plan_type: str) -> Dict:
    """Run one sweep of `plan_type` unless another worker holds the latch."""
    key = _lock_key(plan_type)
    token = acquire_lock(key, settings.PLAN_REFRESH_LOCK_TTL_S)
    if token is None:
        logger.info(
            f"{plan_type} plan refresh already running on another worker",
            extra=log_fields("plan-refresh-already-running", plan_type=plan_type),
        )
        return {"status": "skipped", "plan_type": plan_type}

    try:
        stats = get_refresh_job(plan_type).execute_refresh_job()
    finally:
        release_lock(key, token)

    if stats is None:
        return {"status": "skipped", "plan_type": plan_type}
    return {"status": "completed", "plan_type": plan_type, **stats.to_dict()}


@celery_app.task(name="tasks.refresh_workout_plans")
def refresh_workout_plans_task() -> Dict:
    """Scheduled sweep of due workout plans."""
    return run_refresh_sweep("workout")


@celery_app.task(name="tasks.refresh_diet_plans")
def refresh_diet_plans_task() -> Dict:
    """Scheduled sweep of due diet plans."""
    return run_refresh_sweep("diet")


@celery_app.task(name="tasks.refresh_plans_for_goal_change")
def refresh_plans_for_goal_change_task(user_id: str) -> Dict:
    """
    Regenerate a user's active plans after a goal edit.

    Each plan kind is refreshed independently; one failing does not stop
    the other.
    """
    results = {}
    for plan_type in PLAN_TYPES:
        try:
            plan = get_refresh_job(plan_type).refresh_plans_for_goal_change(user_id)
            results[plan_type] = {
                "status": "refreshed" if plan else "skipped",
                "plan_id": plan["plan_id"] if plan else None,
            }
        except Exception as e:
            logger.error(
                f"Goal-change {plan_type} refresh failed for user {user_id}: {e}",
                extra=log_fields("goal-change-refresh-error", plan_type=plan_type, user_id=user_id),
            )
            results[plan_type] = {"status": "error", "error": str(e)}
    return {"user_id": user_id, "results": results}
