"""
Plan Refresh Sweep

Periodically regenerates every active plan whose `next_refresh_date` has
passed. One job instance per plan kind; the Celery beat entries in
celerybeat_schedule drive `execute_refresh_job()`.

Per run:
- due plans are processed one at a time, with a pacing sleep between
  plans to stay under provider rate limits
- a plan whose owner's profile is incomplete is skipped untouched
- a provider or store failure for one plan is counted, that plan is
  rescheduled `retry_days` out, and the sweep moves on
- only one run may be in flight per instance; an overlapping trigger is
  a logged no-op
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass, replace
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from celery.schedules import crontab

from core.exceptions import IncompleteProfileError
from core.logging import log_fields
from services.plan_coordinator import PlanCacheCoordinator, utcnow
from services.plan_types import build_preferences, build_profile, missing_profile_fields

logger = logging.getLogger(__name__)

REFRESHED = "refreshed"
SKIPPED = "skipped"
FAILED = "failed"


def parse_cron(expr: str, nowfun: Optional[Callable[[], datetime]] = None) -> crontab:
    """Build a Celery crontab from a five-field cron expression."""
    fields = expr.split()
    if len(fields) != 5:
        raise ValueError(f"Invalid cron expression: {expr!r}")
    minute, hour, day_of_month, month_of_year, day_of_week = fields
    return crontab(
        minute=minute,
        hour=hour,
        day_of_month=day_of_month,
        month_of_year=month_of_year,
        day_of_week=day_of_week,
        nowfun=nowfun,
    )


@dataclass
class RefreshJobStats:
    """Counters for one sweep run."""
    plans_checked: int = 0
    plans_refreshed: int = 0
    plans_skipped: int = 0
    errors: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_ms: Optional[int] = None
    last_error: Optional[str] = None  # Set when the due-plan query itself failed

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for key in ("start_time", "end_time"):
            if data[key] is not None:
                data[key] = data[key].isoformat()
        return data


class PlanRefreshJob:
    """Serial, paced, failure-isolating refresh sweep for one plan kind."""

    def __init__(
        self,
        coordinator: PlanCacheCoordinator,
        *,
        pacing_interval_s: float = 1.0,
        retry_days: int = 7,
        schedule: str = "0 2 * * *",
        sleep: Callable[[float], None] = time.sleep,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.coordinator = coordinator
        self.kind = coordinator.kind
        self.pacing_interval_s = pacing_interval_s
        self.retry_days = retry_days
        self.schedule = schedule
        self.sleep = sleep
        self.clock = clock or utcnow
        self.crontab = parse_cron(schedule, nowfun=self.clock)
        self._run_lock = threading.Lock()
        self._stats = RefreshJobStats()

    def execute_refresh_job(self) -> Optional[RefreshJobStats]:
        """
        Run one sweep. Returns the run's stats, or None when a run is
        already in progress (nothing is touched in that case).
        """
        if not self._run_lock.acquire(blocking=False):
            logger.warning(
                f"{self.kind.name.capitalize()} plan refresh already running, skipping",
                extra=log_fields("plan-refresh-already-running", plan_type=self.kind.name),
            )
            return None

        stats = RefreshJobStats(start_time=self.clock())
        self._stats = stats
        try:
            logger.info(
                f"Starting {self.kind.name} plan refresh job",
                extra=log_fields("plan-refresh-job-start", plan_type=self.kind.name),
            )
            try:
                due = self.coordinator.find_plans_needing_refresh()
            except Exception as e:
                logger.error(
                    f"Failed to load {self.kind.name} plans needing refresh: {e}",
                    exc_info=True,
                    extra=log_fields("find-refresh-plans-error", plan_type=self.kind.name),
                )
                stats.last_error = str(e)
                due = []

            for index, (plan, user) in enumerate(due):
                if index:
                    self.sleep(self.pacing_interval_s)
                stats.plans_checked += 1
                outcome = self._refresh_plan(plan, user)
                if outcome == REFRESHED:
                    stats.plans_refreshed += 1
                elif outcome == SKIPPED:
                    stats.plans_skipped += 1
                else:
                    stats.errors += 1
        finally:
            stats.end_time = self.clock()
            stats.duration_ms = int((stats.end_time - stats.start_time).total_seconds() * 1000)
            self._run_lock.release()

        logger.info(
            f"{self.kind.name.capitalize()} plan refresh job completed",
            extra=log_fields("plan-refresh-job-complete", plan_type=self.kind.name, **stats.to_dict()),
        )
        return replace(stats)

    def trigger_manual_refresh(self) -> Optional[RefreshJobStats]:
        logger.info(
            f"Manual {self.kind.name} plan refresh triggered",
            extra=log_fields("manual-refresh-triggered", plan_type=self.kind.name),
        )
        return self.execute_refresh_job()

    def get_job_stats(self) -> RefreshJobStats:
        """Copy of the most recent run's stats."""
        return replace(self._stats)

    def is_job_running(self) -> bool:
        return self._run_lock.locked()

    def get_next_run_info(self) -> Dict[str, Any]:
        now = self.clock()
        return {
            "next_run": now + self.crontab.remaining_estimate(now),
            "is_running": self.is_job_running(),
            "schedule": self.schedule,
        }

    def refresh_plans_for_goal_change(self, user_id) -> Optional[Dict[str, Any]]:
        """
        Regenerate the user's active plan right away after a goal edit.

        Returns the new plan snapshot, or None when the user has no active
        plan of this kind or their profile is incomplete. Provider and
        store failures reschedule the plan and propagate.
        """
        found = self.coordinator.find_active_plan_with_user(user_id)
        if found is None:
            logger.info(
                f"No active {self.kind.name} plan to refresh for user {user_id}",
                extra=log_fields("goal-change-no-plan", plan_type=self.kind.name, user_id=str(user_id)),
            )
            return None

        plan, user = found
        profile = build_profile(self.kind, user, plan)
        missing = missing_profile_fields(self.kind, profile)
        if missing:
            self._log_skip(plan, user, missing)
            return None

        try:
            return self.coordinator.create_or_refresh(
                user.id,
                profile,
                build_preferences(self.kind, user),
                force_refresh=True,
            )
        except IncompleteProfileError as e:
            self._log_skip(plan, user, e.missing_fields)
            return None
        except Exception as e:
            self._log_failure(plan, user, e)
            self._reschedule(plan)
            raise

    # ========== Internal Methods ==========

    def _refresh_plan(self, plan, user) -> str:
        profile = build_profile(self.kind, user, plan)
        missing = missing_profile_fields(self.kind, profile)
        if missing:
            self._log_skip(plan, user, missing)
            return SKIPPED

        try:
            self.coordinator.create_or_refresh(
                user.id,
                profile,
                build_preferences(self.kind, user),
                force_refresh=True,
            )
        except IncompleteProfileError as e:
            self._log_skip(plan, user, e.missing_fields)
            return SKIPPED
        except Exception as e:
            self._log_failure(plan, user, e)
            self._reschedule(plan)
            return FAILED

        logger.info(
            f"Refreshed {self.kind.name} plan for user {user.id}",
            extra=log_fields(
                "plan-refresh-success",
                plan_type=self.kind.name,
                user_id=str(user.id),
                previous_plan_id=str(plan.id),
            ),
        )
        return REFRESHED

    def _reschedule(self, plan) -> None:
        try:
            self.coordinator.reschedule_after_failure(plan.id, self.retry_days)
        except Exception as e:
            logger.error(
                f"Failed to reschedule {self.kind.name} plan {plan.id}: {e}",
                extra=log_fields("plan-reschedule-error", plan_type=self.kind.name, plan_id=str(plan.id)),
            )

    def _log_skip(self, plan, user, missing) -> None:
        logger.warning(
            f"Skipping {self.kind.name} plan refresh for user {user.id}: incomplete profile",
            extra=log_fields(
                "plan-refresh-skip-incomplete-profile",
                plan_type=self.kind.name,
                user_id=str(user.id),
                plan_id=str(plan.id),
                missing_fields=list(missing),
            ),
        )

    def _log_failure(self, plan, user, error: Exception) -> None:
        logger.error(
            f"Failed to refresh {self.kind.name} plan for user {user.id}: {error}",
            extra=log_fields(
                "plan-refresh-error",
                plan_type=self.kind.name,
                user_id=str(user.id),
                plan_id=str(plan.id),
                error=str(error),
            ),
        )
