"""Admission gate: burst limiting and monthly quotas.

Every pipeline call passes through ``AdmissionGate.admit`` before any
context or provider work:

1. Burst check: process-local sliding window per subject (cheap, never
   touches the database).
2. Quota check: per owner, per calendar month (UTC), against a total
   ceiling across categories and a ceiling per category. Each counter is
   consumed by a conditional upsert inside one transaction, so concurrent
   calls cannot push either count past the plan ceiling.

If the database cannot be reached the quota check fails closed with
``StoreUnavailableError``. A consumed unit is never refunded.

ERROR LOGGING REQUIREMENTS:
- Log burst and quota denials at WARNING with subject and category
- Log store failures at ERROR
- Log successful debits at INFO
"""

import asyncio
import math
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.config import get_settings
from app.core.database import session_scope
from app.core.logging import gate_logger, get_logger
from app.repositories.usage import SubjectPlanRepository, UsageCounterRepository
from app.schemas.subject import Subject
from app.services.record_store import STORE_ERRORS, StoreUnavailableError

logger = get_logger(__name__)

DEFAULT_PLAN = "free"

# Counter row holding every debit of the month, whatever the category
TOTAL_KEY = "total"

QUOTA_CATEGORIES = (
    "content",
    "audit",
    "dm_comment",
    "bio_profile",
    "suggestion",
    "import",
    "adaptation",
)

# None means the tier is unlimited
PLAN_LIMITS: dict[str, dict[str, int] | None] = {
    "free": {
        TOTAL_KEY: 10,
        "content": 3,
        "audit": 1,
        "dm_comment": 3,
        "bio_profile": 1,
        "suggestion": 0,
        "import": 0,
        "adaptation": 0,
    },
    "outil": {
        TOTAL_KEY: 100,
        "content": 50,
        "audit": 5,
        "dm_comment": 25,
        "bio_profile": 5,
        "suggestion": 10,
        "import": 3,
        "adaptation": 10,
    },
    "studio": {
        TOTAL_KEY: 300,
        "content": 150,
        "audit": 15,
        "dm_comment": 60,
        "bio_profile": 15,
        "suggestion": 30,
        "import": 10,
        "adaptation": 30,
    },
    "now_pilot": {
        TOTAL_KEY: 300,
        "content": 150,
        "audit": 15,
        "dm_comment": 50,
        "bio_profile": 15,
        "suggestion": 30,
        "import": 10,
        "adaptation": 30,
    },
    "pilot": None,
}

CATEGORY_LABELS = {
    "content": "content generations",
    "audit": "audits",
    "dm_comment": "DMs and comments",
    "bio_profile": "bios and profiles",
    "suggestion": "suggestions",
    "import": "imports",
    "adaptation": "adaptations",
}

# Cheapest tier unlocking a category a plan lacks
UPGRADE_TIER = {"free": "outil", "outil": "studio", "studio": "pilot", "now_pilot": "pilot"}


class AdmissionError(Exception):
    """Base exception for admission failures."""

    pass


class UnknownQuotaCategoryError(AdmissionError):
    """Raised when asked to check a category no plan defines."""

    def __init__(self, category: str):
        self.category = category
        super().__init__(f"Unknown quota category: {category}")


class AdmissionDenied(AdmissionError):
    """Base class for expected denials (not bugs)."""

    pass


class BurstLimitExceeded(AdmissionDenied):
    """Raised when the subject sent too many requests in the window."""

    def __init__(self, retry_after: int, max_requests: int, window_seconds: float):
        self.retry_after = retry_after
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        super().__init__(
            f"Too many requests. Try again in {retry_after} second(s)."
        )


class QuotaExceeded(AdmissionDenied):
    """Raised when a monthly ceiling (category or total) is reached."""

    def __init__(
        self,
        message: str,
        category: str,
        plan: str,
        reason: str,
        used: int | None = None,
        limit: int | None = None,
        remaining_total: int | None = None,
    ):
        self.message = message
        self.category = category
        self.plan = plan
        self.reason = reason
        self.used = used
        self.limit = limit
        self.remaining_total = remaining_total
        super().__init__(message)


def current_period(now: datetime) -> str:
    """Calendar month key (UTC) for usage counters."""
    return now.astimezone(UTC).strftime("%Y-%m")


def next_renewal(now: datetime) -> datetime:
    """First day of the month after ``now`` (UTC)."""
    now = now.astimezone(UTC)
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=UTC)
    return datetime(now.year, now.month + 1, 1, tzinfo=UTC)


def _plan_limits(plan: str) -> dict[str, int] | None:
    return PLAN_LIMITS.get(plan, PLAN_LIMITS[DEFAULT_PLAN])


def limit_for(plan: str, category: str) -> int | None:
    """Ceiling of ``category`` on ``plan`` (None = unlimited)."""
    if category not in QUOTA_CATEGORIES:
        raise UnknownQuotaCategoryError(category)
    limits = _plan_limits(plan)
    if limits is None:
        return None
    return limits.get(category, 0)


def total_limit_for(plan: str) -> int | None:
    """Monthly ceiling across all categories (None = no total ceiling)."""
    limits = _plan_limits(plan)
    if limits is None:
        return None
    return limits.get(TOTAL_KEY)


# =============================================================================
# BURST LIMITER
# =============================================================================


@dataclass
class BurstDecision:
    allowed: bool
    retry_after: int = 0
    remaining: int = 0


class BurstLimiter:
    """Sliding-window request limiter, one window per subject key.

    State is process-local and resets on restart. Once per window length,
    keys whose timestamps have all expired are dropped along with their
    locks, so idle subjects do not accumulate.
    """

    def __init__(
        self,
        max_requests: int = 20,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: dict[str, deque[float]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._longest_window = window_seconds
        self._last_sweep = clock()

    @property
    def tracked_keys(self) -> int:
        """Number of keys currently holding state."""
        return len(self._locks)

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self._longest_window:
            return
        self._last_sweep = now
        cutoff = now - self._longest_window
        stale = [
            key
            for key, lock in self._locks.items()
            if not lock.locked()
            and not any(ts > cutoff for ts in self._windows.get(key, ()))
        ]
        for key in stale:
            self._locks.pop(key, None)
            self._windows.pop(key, None)
        if stale:
            logger.debug(
                "Burst windows swept",
                extra={"dropped": len(stale), "remaining": len(self._locks)},
            )

    async def check(
        self,
        key: str,
        max_requests: int | None = None,
        window_seconds: float | None = None,
    ) -> BurstDecision:
        """Record a request for ``key`` if the window has room.

        A ceiling of 0 denies every request.
        """
        limit = self.max_requests if max_requests is None else max_requests
        window = self.window_seconds if window_seconds is None else window_seconds
        self._longest_window = max(self._longest_window, window)
        self._sweep(self._clock())

        async with self._lock_for(key):
            now = self._clock()
            timestamps = self._windows.setdefault(key, deque())
            cutoff = now - window
            while timestamps and timestamps[0] <= cutoff:
                timestamps.popleft()

            if len(timestamps) >= limit:
                wait = timestamps[0] + window - now if timestamps else window
                retry_after = max(1, math.ceil(wait))
                return BurstDecision(allowed=False, retry_after=retry_after)

            timestamps.append(now)
            return BurstDecision(allowed=True, remaining=limit - len(timestamps))

    def reset(self, key: str | None = None) -> None:
        if key is None:
            self._windows.clear()
            self._locks.clear()
        else:
            self._windows.pop(key, None)
            self._locks.pop(key, None)


# =============================================================================
# MONTHLY QUOTA
# =============================================================================


@dataclass
class Consumption:
    """Outcome of one debit attempt against the monthly counters.

    ``count`` is the category count after the debit (None when denied).
    ``total`` is the all-category count once the attempt settles, or None
    when the plan has no total ceiling.
    """

    count: int | None
    total: int | None
    denied_by: str | None = None


class UsageStore(Protocol):
    """Durable plan and usage storage."""

    async def get_plan(self, owner_id: str) -> str | None: ...

    async def consume(
        self,
        owner_id: str,
        category: str,
        period: str,
        limit: int,
        total_limit: int | None,
    ) -> Consumption: ...

    async def get_counts(self, owner_id: str, period: str) -> dict[str, int]: ...


class SqlUsageStore:
    """UsageStore backed by SQLAlchemy; one session per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_plan(self, owner_id: str) -> str | None:
        async with session_scope(
            self._session_factory, table=SubjectPlanRepository.TABLE_NAME
        ) as session:
            return await SubjectPlanRepository(session).get_plan(owner_id)

    async def consume(
        self,
        owner_id: str,
        category: str,
        period: str,
        limit: int,
        total_limit: int | None,
    ) -> Consumption:
        """Debit the total and category counters in one transaction.

        The total row is incremented first, so concurrent debits of one
        owner queue on it. A category refusal rolls the total back.
        """
        async with session_scope(
            self._session_factory, table=UsageCounterRepository.TABLE_NAME
        ) as session:
            repo = UsageCounterRepository(session)
            total: int | None = None
            if total_limit is not None:
                total = await repo.increment_if_below(
                    owner_id, TOTAL_KEY, period, total_limit
                )
                if total is None:
                    return Consumption(count=None, total=total_limit, denied_by=TOTAL_KEY)

            count = await repo.increment_if_below(owner_id, category, period, limit)
            if count is None:
                await session.rollback()
                return Consumption(
                    count=None,
                    total=None if total is None else total - 1,
                    denied_by="category",
                )
            return Consumption(count=count, total=total)

    async def get_counts(self, owner_id: str, period: str) -> dict[str, int]:
        async with session_scope(
            self._session_factory, table=UsageCounterRepository.TABLE_NAME
        ) as session:
            return await UsageCounterRepository(session).get_counts(owner_id, period)


@dataclass
class QuotaDecision:
    allowed: bool
    plan: str
    category: str
    remaining: int | None = None
    used: int | None = None
    limit: int | None = None
    remaining_total: int | None = None
    reason: str | None = None
    message: str | None = None


@dataclass
class CategoryUsage:
    used: int
    limit: int | None


@dataclass
class UsageSummary:
    plan: str
    period: str
    renews_on: datetime
    total: CategoryUsage
    categories: dict[str, CategoryUsage]


class QuotaService:
    """Monthly quota checks with a short-lived plan cache.

    Expired cache entries and idle per-owner locks are swept once per TTL.
    """

    def __init__(
        self,
        store: UsageStore,
        plan_cache_ttl: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._store = store
        self._plan_cache_ttl = plan_cache_ttl
        self._clock = clock
        self._now = now
        self._plan_cache: dict[str, tuple[str, float]] = {}
        self._plan_locks: dict[str, asyncio.Lock] = {}
        self._sweep_interval = plan_cache_ttl if plan_cache_ttl > 0 else 60.0
        self._last_sweep = clock()

    @property
    def tracked_owners(self) -> int:
        """Number of owners with a cached plan or a lock."""
        return len(self._plan_cache.keys() | self._plan_locks.keys())

    def _lock_for(self, owner_id: str) -> asyncio.Lock:
        lock = self._plan_locks.get(owner_id)
        if lock is None:
            lock = self._plan_locks[owner_id] = asyncio.Lock()
        return lock

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self._sweep_interval:
            return
        self._last_sweep = now
        for owner_id in [o for o, (_, expires) in self._plan_cache.items() if expires <= now]:
            del self._plan_cache[owner_id]
        for owner_id in [
            o
            for o, lock in self._plan_locks.items()
            if not lock.locked() and o not in self._plan_cache
        ]:
            del self._plan_locks[owner_id]

    def invalidate_plan(self, owner_id: str) -> None:
        self._plan_cache.pop(owner_id, None)

    async def get_plan(self, owner_id: str) -> str:
        """Plan tier of an owner; missing or unknown plans read as free.

        Raises:
            StoreUnavailableError: If the plan cannot be read
        """
        self._sweep(self._clock())
        async with self._lock_for(owner_id):
            cached = self._plan_cache.get(owner_id)
            if cached is not None and cached[1] > self._clock():
                return cached[0]

            try:
                plan = await self._store.get_plan(owner_id)
            except STORE_ERRORS as e:
                raise StoreUnavailableError("plan lookup", e) from e

            if plan not in PLAN_LIMITS:
                if plan is not None:
                    logger.warning(
                        "Unknown plan tier, treating as free",
                        extra={"owner_id": owner_id, "plan": plan},
                    )
                plan = DEFAULT_PLAN

            if self._plan_cache_ttl > 0:
                self._plan_cache[owner_id] = (plan, self._clock() + self._plan_cache_ttl)
            return plan

    def _renewal_text(self, now: datetime) -> str:
        renewal = next_renewal(now)
        return f"Your credits renew on {renewal:%B} {renewal.day}."

    def _exhausted_message(self, category: str, limit: int, now: datetime) -> str:
        label = CATEGORY_LABELS.get(category, category)
        return (
            f"You have used your {limit} {label} this month. "
            f"{self._renewal_text(now)}"
        )

    def _total_exhausted_message(self, total_limit: int, now: datetime) -> str:
        return (
            f"You have used your {total_limit} AI generations this month. "
            f"{self._renewal_text(now)}"
        )

    async def check_quota(self, subject: Subject, category: str) -> QuotaDecision:
        """Consume one unit of ``category`` if the plan allows it.

        The total monthly ceiling is checked before the category ceiling;
        both counters move together or not at all.

        Raises:
            UnknownQuotaCategoryError: If ``category`` is not a quota category
            StoreUnavailableError: If plan or usage storage fails
        """
        if category not in QUOTA_CATEGORIES:
            raise UnknownQuotaCategoryError(category)

        owner_id = subject.quota_owner
        try:
            plan = await self.get_plan(owner_id)
            limit = limit_for(plan, category)

            if limit is None:
                return QuotaDecision(allowed=True, plan=plan, category=category)

            if limit == 0:
                upgrade = UPGRADE_TIER.get(plan, "outil")
                gate_logger.quota_denied(owner_id, category, plan, "not_available")
                return QuotaDecision(
                    allowed=False,
                    plan=plan,
                    category=category,
                    remaining=0,
                    used=0,
                    limit=0,
                    reason="not_available",
                    message=f"This feature is available from the {upgrade} plan.",
                )

            total_limit = total_limit_for(plan)
            now = self._now()
            outcome = await self._store.consume(
                owner_id, category, current_period(now), limit, total_limit
            )
        except STORE_ERRORS as e:
            gate_logger.store_unavailable(owner_id, category, e)
            raise StoreUnavailableError("quota check", e) from e
        except StoreUnavailableError as e:
            gate_logger.store_unavailable(owner_id, category, e.cause or e)
            raise

        remaining_total = (
            None
            if total_limit is None or outcome.total is None
            else max(total_limit - outcome.total, 0)
        )

        if outcome.denied_by == TOTAL_KEY:
            gate_logger.quota_denied(owner_id, category, plan, "total")
            return QuotaDecision(
                allowed=False,
                plan=plan,
                category=category,
                remaining=0,
                limit=limit,
                remaining_total=0,
                reason="total",
                message=self._total_exhausted_message(total_limit or 0, now),
            )

        if outcome.count is None:
            gate_logger.quota_denied(owner_id, category, plan, "category")
            return QuotaDecision(
                allowed=False,
                plan=plan,
                category=category,
                remaining=0,
                used=limit,
                limit=limit,
                remaining_total=remaining_total,
                reason="category",
                message=self._exhausted_message(category, limit, now),
            )

        gate_logger.quota_debited(owner_id, category, plan, outcome.count, limit)
        return QuotaDecision(
            allowed=True,
            plan=plan,
            category=category,
            remaining=limit - outcome.count,
            used=outcome.count,
            limit=limit,
            remaining_total=remaining_total,
        )

    async def get_usage(self, subject: Subject) -> UsageSummary:
        """Plan, total and per-category usage for the current month.

        Raises:
            StoreUnavailableError: If plan or usage storage fails
        """
        owner_id = subject.quota_owner
        now = self._now()
        period = current_period(now)
        try:
            plan = await self.get_plan(owner_id)
            counts = await self._store.get_counts(owner_id, period)
        except STORE_ERRORS as e:
            raise StoreUnavailableError("usage summary", e) from e

        return UsageSummary(
            plan=plan,
            period=period,
            renews_on=next_renewal(now),
            total=CategoryUsage(used=counts.get(TOTAL_KEY, 0), limit=total_limit_for(plan)),
            categories={
                category: CategoryUsage(
                    used=counts.get(category, 0), limit=limit_for(plan, category)
                )
                for category in QUOTA_CATEGORIES
            },
        )


# =============================================================================
# GATE
# =============================================================================


class AdmissionGate:
    """Burst check first, then monthly quota."""

    def __init__(self, burst: BurstLimiter, quota: QuotaService) -> None:
        self.burst = burst
        self.quota = quota

    async def admit(
        self,
        subject: Subject,
        category: str | None,
        max_requests: int | None = None,
        window_seconds: float | None = None,
    ) -> QuotaDecision | None:
        """Admit one request or raise why not.

        Args:
            subject: Requesting subject
            category: Quota category to debit, or None for burst-only steps
            max_requests: Per-call burst ceiling override
            window_seconds: Per-call burst window override

        Returns:
            The quota decision, or None for burst-only steps

        Raises:
            BurstLimitExceeded: Too many recent requests
            QuotaExceeded: Monthly ceiling reached or category not on plan
            StoreUnavailableError: Quota storage failed (fail closed)
        """
        burst = await self.burst.check(subject.key, max_requests, window_seconds)
        if not burst.allowed:
            limit = self.burst.max_requests if max_requests is None else max_requests
            window = self.burst.window_seconds if window_seconds is None else window_seconds
            gate_logger.burst_denied(subject.key, limit, window, burst.retry_after)
            raise BurstLimitExceeded(burst.retry_after, limit, window)

        if category is None:
            return None

        decision = await self.quota.check_quota(subject, category)
        if not decision.allowed:
            raise QuotaExceeded(
                decision.message or "Monthly quota reached.",
                category=category,
                plan=decision.plan,
                reason=decision.reason or "category",
                used=decision.used,
                limit=decision.limit,
                remaining_total=decision.remaining_total,
            )
        return decision


def create_admission_gate(session_factory: async_sessionmaker[AsyncSession]) -> AdmissionGate:
    """Build the gate from settings."""
    settings = get_settings()
    return AdmissionGate(
        burst=BurstLimiter(
            max_requests=settings.burst_max_requests,
            window_seconds=settings.burst_window_seconds,
        ),
        quota=QuotaService(
            SqlUsageStore(session_factory),
            plan_cache_ttl=settings.plan_cache_ttl_seconds,
        ),
    )
