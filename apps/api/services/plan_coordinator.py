"""
Plan Cache Coordinator

Owns the lifecycle of a user's externally generated plan of one kind:

1. Reuse vs. regenerate: an existing plan is returned as-is while it is
   active, before `cache_expiry` and before `next_refresh_date`.
2. Single active plan: generating a plan deactivates every other plan of
   the kind for the user, inserts the new one and moves the user pointer,
   all in one transaction.
3. Look-aside cache: snapshots are cached after commit and evicted when
   stale. The cache never decides correctness.

The provider call happens outside any transaction and is bounded by
`provider_timeout_s`. Writes for one user are serialized in-process by a
per-user lock and across processes by `SELECT ... FOR UPDATE` on the user
row; a partial unique index on (user_id) WHERE is_active backs both. Cache
writes and evictions for a user happen while holding that user's lock, so
the cache always ends on the last committed state.
"""

import logging
import threading
import weakref
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeout
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError

from core.exceptions import (
    IncompleteProfileError,
    NotFoundError,
    PlanPersistenceError,
    PlanProviderError,
    PlanProviderTimeoutError,
)
from core.logging import log_fields
from models import User
from services.plan_types import (
    PlanKind,
    PlanPayloadError,
    as_utc,
    build_preferences,
    build_profile,
    is_expired,
    is_reusable,
    missing_profile_fields,
)

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def _as_uuid(value: Any) -> UUID:
    return value if isinstance(value, UUID) else UUID(str(value))


class _UserLock:
    """Mutex for one user's decide-then-write section."""

    def __init__(self):
        self._lock = threading.Lock()

    def __enter__(self):
        self._lock.acquire()
        return self

    def __exit__(self, *exc_info):
        self._lock.release()


class PlanCacheCoordinator:
    """Create, reuse, read and retire the single active plan of one kind."""

    def __init__(
        self,
        kind: PlanKind,
        session_factory: Callable,
        cache,
        provider,
        *,
        provider_timeout_s: float = 30.0,
        refresh_interval_days: int = 14,
        cache_expiry_hours: int = 24,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.kind = kind
        self.session_factory = session_factory
        self.cache = cache
        self.provider = provider
        self.provider_timeout_s = provider_timeout_s
        self.refresh_interval = timedelta(days=refresh_interval_days)
        self.cache_expiry = timedelta(hours=cache_expiry_hours)
        self.clock = clock or utcnow
        # user_id -> _UserLock; an entry lives only while some caller holds it
        self._locks: "weakref.WeakValueDictionary[UUID, _UserLock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    @property
    def provider_name(self) -> str:
        return getattr(self.provider, "name", f"{self.kind.name}-planning-service")

    # ========== Public operations ==========

    def create_or_refresh(
        self,
        user_id,
        user_profile: Dict[str, Any],
        preferences: Optional[Dict[str, Any]] = None,
        force_refresh: bool = False,
    ) -> Dict[str, Any]:
        """
        Return the user's active plan, generating a new one when needed.

        Raises:
            IncompleteProfileError: required profile fields are missing
            NotFoundError: the user does not exist
            PlanProviderError / PlanProviderTimeoutError: generation failed,
                nothing was written
            PlanPersistenceError: the write transaction was rolled back
        """
        user_id = _as_uuid(user_id)
        missing = missing_profile_fields(self.kind, user_profile)
        if missing:
            logger.warning(
                f"Incomplete profile for {self.kind.name} plan, user {user_id}",
                extra=log_fields(
                    "create-plan-incomplete-profile",
                    plan_type=self.kind.name,
                    user_id=str(user_id),
                    missing_fields=missing,
                ),
            )
            raise IncompleteProfileError(self.kind.name, missing)

        logger.info(
            f"Creating/refreshing {self.kind.name} plan for user {user_id}",
            extra=log_fields(
                "create-plan-start",
                plan_type=self.kind.name,
                user_id=str(user_id),
                force_refresh=force_refresh,
            ),
        )

        with self._user_lock(user_id):
            existing = self._find_reusable(user_id, force_refresh)
            if existing is not None:
                logger.info(
                    f"Returning existing active {self.kind.name} plan for user {user_id}",
                    extra=log_fields(
                        "existing-plan-returned",
                        plan_type=self.kind.name,
                        user_id=str(user_id),
                        plan_id=existing["plan_id"],
                    ),
                )
                return existing

            columns = self._generate(user_id, user_profile, preferences)
            snapshot = self._activate(user_id, user_profile, columns)
            self._cache_set(user_id, snapshot)

        logger.info(
            f"{self.kind.name.capitalize()} plan created for user {user_id}",
            extra=log_fields(
                "create-plan-success",
                plan_type=self.kind.name,
                user_id=str(user_id),
                plan_id=snapshot["plan_id"],
                plan_name=snapshot["plan_name"],
            ),
        )
        return snapshot

    def get_user_active_plan(self, user_id) -> Optional[Dict[str, Any]]:
        """Active plan snapshot for the user, or None."""
        user_id = _as_uuid(user_id)
        now = self.clock()

        cached = self._cache_get(user_id)
        if cached is not None:
            if cached.get("is_active") and not is_expired(cached, now):
                logger.debug(
                    f"Cache hit for {self.kind.name} plan, user {user_id}",
                    extra=log_fields("redis-cache-hit", plan_type=self.kind.name, user_id=str(user_id)),
                )
                return cached

        with self._user_lock(user_id):
            if cached is not None:
                self._cache_invalidate(user_id)
            with self._session() as session:
                plan = self._load_active(session, user_id)
                if plan is None:
                    logger.info(
                        f"No active {self.kind.name} plan for user {user_id}",
                        extra=log_fields("no-active-plan", plan_type=self.kind.name, user_id=str(user_id)),
                    )
                    return None
                snapshot = self.snapshot(plan)
            self._cache_set(user_id, snapshot)
        return snapshot

    def deactivate(self, user_id, plan_id) -> bool:
        """
        Retire the user's active plan `plan_id`.

        Returns False when the user has no such active plan.
        """
        try:
            user_id = _as_uuid(user_id)
            plan_id = _as_uuid(plan_id)
        except ValueError:
            return False

        model = self.kind.model
        with self._user_lock(user_id):
            with self._session() as session:
                try:
                    user = self._lock_user(session, user_id)
                    plan = session.get(model, plan_id)
                    if user is None or plan is None or plan.user_id != user_id or not plan.is_active:
                        session.rollback()
                        return False

                    plan.is_active = False
                    plan.updated_at = self.clock()
                    if getattr(user, self.kind.pointer_attr) == plan.id:
                        setattr(user, self.kind.pointer_attr, None)
                        if self.kind.writes_macros:
                            user.current_macros = None
                    session.commit()
                except SQLAlchemyError as e:
                    session.rollback()
                    logger.error(
                        f"Failed to deactivate {self.kind.name} plan {plan_id}: {e}",
                        extra=log_fields("deactivate-plan-error", plan_type=self.kind.name, plan_id=str(plan_id)),
                    )
                    raise PlanPersistenceError(f"Could not deactivate {self.kind.name} plan") from e
            self._cache_invalidate(user_id)

        logger.info(
            f"Deactivated {self.kind.name} plan {plan_id} for user {user_id}",
            extra=log_fields(
                "plan-deactivated",
                plan_type=self.kind.name,
                user_id=str(user_id),
                plan_id=str(plan_id),
            ),
        )
        return True

    def reschedule_after_failure(self, plan_id, retry_days: int = 7) -> None:
        """Push a plan's next refresh out by `retry_days` after a failed attempt."""
        plan_id = _as_uuid(plan_id)
        now = self.clock()

        with self._session() as session:
            plan = session.get(self.kind.model, plan_id)
            user_id = plan.user_id if plan is not None else None
        if user_id is None:
            logger.warning(f"Cannot reschedule missing {self.kind.name} plan {plan_id}")
            return

        with self._user_lock(user_id):
            with self._session() as session:
                try:
                    plan = session.get(self.kind.model, plan_id)
                    plan.next_refresh_date = now + timedelta(days=retry_days)
                    plan.last_refresh_attempt = now
                    session.commit()
                except SQLAlchemyError as e:
                    session.rollback()
                    raise PlanPersistenceError(f"Could not reschedule {self.kind.name} plan") from e
            # Cached copy still carries the old refresh date
            self._cache_invalidate(user_id)

        logger.info(
            f"Rescheduled {self.kind.name} plan {plan_id} in {retry_days} days",
            extra=log_fields(
                "plan-refresh-rescheduled",
                plan_type=self.kind.name,
                plan_id=str(plan_id),
                retry_days=retry_days,
            ),
        )

    def find_plans_needing_refresh(self) -> List[Tuple[Any, User]]:
        """Active plans whose refresh date has passed, paired with their owner."""
        model = self.kind.model
        now = self.clock()
        with self._session() as session:
            rows = session.execute(
                select(model, User)
                .join(User, User.id == model.user_id)
                .where(model.is_active.is_(True), model.next_refresh_date <= now)
                .order_by(model.next_refresh_date)
            ).all()
        plans = [(plan, user) for plan, user in rows]
        logger.info(
            f"Found {len(plans)} {self.kind.name} plans needing refresh",
            extra=log_fields("plans-needing-refresh", plan_type=self.kind.name, plan_count=len(plans)),
        )
        return plans

    def find_active_plan_with_user(self, user_id) -> Optional[Tuple[Any, User]]:
        """The user's active plan row and user row, or None."""
        user_id = _as_uuid(user_id)
        model = self.kind.model
        with self._session() as session:
            row = session.execute(
                select(model, User)
                .join(User, User.id == model.user_id)
                .where(model.user_id == user_id, model.is_active.is_(True))
            ).first()
        return (row[0], row[1]) if row else None

    def profile_for_user(self, user_id) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
        """Provider profile and preferences built from the stored user."""
        user_id = _as_uuid(user_id)
        with self._session() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("User", str(user_id))
            plan = self._load_active(session, user_id)
            return build_profile(self.kind, user, plan), build_preferences(self.kind, user)

    def count_user_plans(self, user_id) -> int:
        """All plans of this kind ever generated for the user."""
        model = self.kind.model
        with self._session() as session:
            return session.execute(
                select(func.count()).select_from(model).where(model.user_id == _as_uuid(user_id))
            ).scalar_one()

    def snapshot(self, plan) -> Dict[str, Any]:
        """JSON-safe view of a plan row, the shape cached and returned to callers."""
        data = {
            "plan_id": str(plan.id),
            "user_id": str(plan.user_id),
            "plan_type": self.kind.name,
            "external_plan_id": plan.external_plan_id,
            "plan_name": plan.plan_name,
            "is_active": bool(plan.is_active),
            "source": plan.source,
            "last_refreshed": _iso(plan.last_refreshed),
            "next_refresh_date": _iso(plan.next_refresh_date),
            "cache_expiry": _iso(plan.cache_expiry),
            "last_refresh_attempt": _iso(plan.last_refresh_attempt),
            "user_context": plan.user_context,
        }
        for field in self.kind.payload_fields:
            data[field] = getattr(plan, field)
        return data

    # ========== Internal Methods ==========

    @contextmanager
    def _session(self):
        session = self.session_factory()
        try:
            yield session
        finally:
            session.close()

    def _user_lock(self, user_id: UUID) -> "_UserLock":
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = _UserLock()
                self._locks[user_id] = lock
            return lock

    def _lock_user(self, session, user_id: UUID) -> Optional[User]:
        return session.execute(
            select(User).where(User.id == user_id).with_for_update()
        ).scalar_one_or_none()

    def _load_active(self, session, user_id: UUID):
        user = session.get(User, user_id)
        if user is None:
            return None
        pointer = getattr(user, self.kind.pointer_attr)
        if pointer is None:
            return None
        plan = session.get(self.kind.model, pointer)
        if plan is None or not plan.is_active:
            logger.warning(
                f"Active {self.kind.name} plan pointer for user {user_id} is stale",
                extra=log_fields("plan-not-found", plan_type=self.kind.name, plan_id=str(pointer)),
            )
            return None
        return plan

    def _find_reusable(self, user_id: UUID, force_refresh: bool) -> Optional[Dict[str, Any]]:
        """Existing plan snapshot if it can be reused; confirms the user exists."""
        now = self.clock()
        if not force_refresh:
            cached = self._cache_get(user_id)
            if cached is not None and is_reusable(cached, now):
                return cached

        try:
            with self._session() as session:
                if session.get(User, user_id) is None:
                    raise NotFoundError("User", str(user_id))
                if force_refresh:
                    return None
                plan = self._load_active(session, user_id)
                if plan is None or not is_reusable(plan, now):
                    return None
                snapshot = self.snapshot(plan)
        except SQLAlchemyError as e:
            raise PlanPersistenceError(f"Could not load {self.kind.name} plan") from e

        self._cache_set(user_id, snapshot)
        return snapshot

    def _generate(self, user_id: UUID, profile: Dict[str, Any], preferences) -> Dict[str, Any]:
        """Call the provider with a bounded wait and normalize its payload."""
        pool = ThreadPoolExecutor(max_workers=1)
        future = pool.submit(self.provider.generate, str(user_id), profile, preferences)
        try:
            payload = future.result(timeout=self.provider_timeout_s)
        except FuturesTimeout:
            logger.error(
                f"{self.provider_name} timed out after {self.provider_timeout_s}s for user {user_id}",
                extra=log_fields(
                    "provider-timeout",
                    plan_type=self.kind.name,
                    user_id=str(user_id),
                    timeout_s=self.provider_timeout_s,
                ),
            )
            future.cancel()
            raise PlanProviderTimeoutError(self.provider_name, self.provider_timeout_s) from None
        except PlanProviderError:
            raise
        except Exception as e:
            logger.error(
                f"{self.provider_name} failed for user {user_id}: {e}",
                extra=log_fields("create-plan-error", plan_type=self.kind.name, user_id=str(user_id)),
            )
            raise PlanProviderError(self.provider_name, str(e)) from e
        finally:
            pool.shutdown(wait=False)

        try:
            return self.kind.normalize(payload, profile)
        except PlanPayloadError as e:
            raise PlanProviderError(self.provider_name, str(e)) from e

    def _activate(self, user_id: UUID, profile: Dict[str, Any], columns: Dict[str, Any]) -> Dict[str, Any]:
        """Deactivate old plans, insert the new one and move the pointer atomically."""
        model = self.kind.model
        now = self.clock()

        with self._session() as session:
            try:
                user = self._lock_user(session, user_id)
                if user is None:
                    raise NotFoundError("User", str(user_id))

                session.execute(
                    update(model)
                    .where(model.user_id == user_id, model.is_active.is_(True))
                    .values(is_active=False, updated_at=now)
                )

                plan = model(
                    user_id=user_id,
                    is_active=True,
                    source="external",
                    last_refreshed=now,
                    next_refresh_date=now + self.refresh_interval,
                    cache_expiry=now + self.cache_expiry,
                    user_context=profile,
                    **columns,
                )
                session.add(plan)
                session.flush()

                setattr(user, self.kind.pointer_attr, plan.id)
                if self.kind.writes_macros:
                    user.current_macros = {
                        **plan.total_macros,
                        "valid_till": _iso(plan.cache_expiry),
                    }
                session.commit()
            except NotFoundError:
                session.rollback()
                raise
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(
                    f"Failed to persist {self.kind.name} plan for user {user_id}: {e}",
                    extra=log_fields("create-plan-error", plan_type=self.kind.name, user_id=str(user_id)),
                )
                raise PlanPersistenceError(f"Could not save {self.kind.name} plan") from e

            return self.snapshot(plan)

    def _cache_get(self, user_id: UUID) -> Optional[Dict[str, Any]]:
        try:
            return self.cache.get(user_id)
        except Exception as e:
            logger.warning(f"Plan cache read failed for user {user_id}: {e}")
            return None

    def _cache_set(self, user_id: UUID, snapshot: Dict[str, Any]) -> None:
        try:
            self.cache.set(user_id, snapshot)
        except Exception as e:
            logger.warning(f"Plan cache write failed for user {user_id}: {e}")

    def _cache_invalidate(self, user_id: Optional[UUID]) -> None:
        if user_id is None:
            return
        try:
            self.cache.invalidate(user_id)
        except Exception as e:
            logger.warning(f"Plan cache evict failed for user {user_id}: {e}")
