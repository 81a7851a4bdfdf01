"""
Process-wide plan service wiring.

Builds one coordinator and one refresh job per plan kind, lazily, from
settings: SessionLocal for the store, Redis (or the in-process fallback)
for the look-aside cache, and the HTTP providers.
"""

import threading
from typing import Dict

from core.cache import get_redis_client
from core.config import settings
from core.database import SessionLocal
from services.plan_cache import PlanCache
from services.plan_coordinator import PlanCacheCoordinator
from services.plan_providers import build_diet_provider, build_workout_provider
from services.plan_refresh_job import PlanRefreshJob
from services.plan_types import PlanType, get_plan_kind

# Production crons (UTC); development runs the sweeps every half hour
REFRESH_SCHEDULES = {
    PlanType.WORKOUT: "0 2 * * *",
    PlanType.DIET: "0 3 * * *",
}
DEV_REFRESH_SCHEDULES = {
    PlanType.WORKOUT: "*/30 * * * *",
    PlanType.DIET: "*/35 * * * *",
}

_lock = threading.Lock()
_coordinators: Dict[str, PlanCacheCoordinator] = {}
_jobs: Dict[str, PlanRefreshJob] = {}


def refresh_schedule(plan_type: str) -> str:
    schedules = DEV_REFRESH_SCHEDULES if settings.ENVIRONMENT == "development" else REFRESH_SCHEDULES
    return schedules[PlanType(plan_type)]


def _build_coordinator(plan_type: str) -> PlanCacheCoordinator:
    kind = get_plan_kind(plan_type)
    if kind.plan_type == PlanType.WORKOUT:
        provider = build_workout_provider()
        ttl_s = settings.CACHE_TTL_WORKOUT_PLANS
    else:
        provider = build_diet_provider()
        ttl_s = settings.CACHE_TTL_DIET_PLANS

    return PlanCacheCoordinator(
        kind,
        SessionLocal,
        PlanCache(kind.cache_prefix, ttl_s, redis=get_redis_client()),
        provider,
        provider_timeout_s=settings.PLAN_PROVIDER_TIMEOUT_S,
        refresh_interval_days=settings.PLAN_REFRESH_INTERVAL_DAYS,
        cache_expiry_hours=settings.PLAN_CACHE_EXPIRY_HOURS,
    )


def get_coordinator(plan_type: str) -> PlanCacheCoordinator:
    with _lock:
        if plan_type not in _coordinators:
            _coordinators[plan_type] = _build_coordinator(plan_type)
        return _coordinators[plan_type]


def get_refresh_job(plan_type: str) -> PlanRefreshJob:
    coordinator = get_coordinator(plan_type)
    with _lock:
        if plan_type not in _jobs:
            pacing = (
                settings.WORKOUT_REFRESH_PACING_S
                if plan_type == PlanType.WORKOUT.value
                else settings.DIET_REFRESH_PACING_S
            )
            _jobs[plan_type] = PlanRefreshJob(
                coordinator,
                pacing_interval_s=pacing,
                retry_days=settings.PLAN_REFRESH_RETRY_DAYS,
                schedule=refresh_schedule(plan_type),
            )
        return _jobs[plan_type]


def reset_registry() -> None:
    """Drop cached instances (tests, settings reload)."""
    with _lock:
        _coordinators.clear()
        _jobs.clear()
