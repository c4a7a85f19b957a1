"""Tests for the admission gate: burst limiter, monthly quotas and the gate.

Quota tests run against the SQLite test database so the conditional
upsert is exercised for real. The concurrency test uses a file-backed
database so several connections can race on the same counters.
"""

import asyncio
from datetime import UTC, datetime
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.models.usage_counter import UsageCounter
from app.schemas.subject import Subject
from app.services.admission import (
    PLAN_LIMITS,
    TOTAL_KEY,
    AdmissionGate,
    BurstLimiter,
    BurstLimitExceeded,
    Consumption,
    QuotaExceeded,
    QuotaService,
    SqlUsageStore,
    UnknownQuotaCategoryError,
    current_period,
    limit_for,
    next_renewal,
    total_limit_for,
)
from app.services.record_store import StoreUnavailableError

# ---------------------------------------------------------------------------
# Period helpers
# ---------------------------------------------------------------------------


class TestPeriods:
    def test_current_period_is_utc_month(self) -> None:
        assert current_period(datetime(2026, 10, 19, tzinfo=UTC)) == "2026-10"

    def test_next_renewal_mid_year(self) -> None:
        assert next_renewal(datetime(2026, 10, 19, tzinfo=UTC)) == datetime(
            2026, 11, 1, tzinfo=UTC
        )

    def test_next_renewal_rolls_year(self) -> None:
        assert next_renewal(datetime(2026, 12, 31, 23, 59, tzinfo=UTC)) == datetime(
            2027, 1, 1, tzinfo=UTC
        )

    def test_limit_for_unknown_plan_reads_free(self) -> None:
        assert limit_for("platinum", "content") == PLAN_LIMITS["free"]["content"]

    def test_limit_for_unlimited_plan(self) -> None:
        assert limit_for("pilot", "content") is None

    def test_limit_for_unknown_category(self) -> None:
        with pytest.raises(UnknownQuotaCategoryError):
            limit_for("free", "teleportation")

    def test_total_limit_for_tiers(self) -> None:
        assert total_limit_for("free") == 10
        assert total_limit_for("studio") == 300
        assert total_limit_for("pilot") is None
        assert total_limit_for("platinum") == total_limit_for("free")

    def test_free_tier_has_no_adaptations(self) -> None:
        assert limit_for("free", "adaptation") == 0
        assert limit_for("outil", "adaptation") == 10


# ---------------------------------------------------------------------------
# Burst limiter
# ---------------------------------------------------------------------------


class TestBurstLimiter:
    async def test_allows_up_to_max_requests(self, clock) -> None:
        limiter = BurstLimiter(max_requests=20, window_seconds=60.0, clock=clock)

        for i in range(20):
            decision = await limiter.check("user-1")
            assert decision.allowed is True
            assert decision.remaining == 19 - i

    async def test_denies_request_over_limit(self, clock) -> None:
        limiter = BurstLimiter(max_requests=20, window_seconds=60.0, clock=clock)
        for _ in range(20):
            await limiter.check("user-1")

        decision = await limiter.check("user-1")

        assert decision.allowed is False
        assert 1 <= decision.retry_after <= 60

    async def test_retry_after_counts_down(self, clock) -> None:
        limiter = BurstLimiter(max_requests=2, window_seconds=60.0, clock=clock)
        await limiter.check("user-1")
        await limiter.check("user-1")

        clock.advance(45.5)
        decision = await limiter.check("user-1")

        assert decision.allowed is False
        assert decision.retry_after == 15

    async def test_window_slides(self, clock) -> None:
        limiter = BurstLimiter(max_requests=2, window_seconds=60.0, clock=clock)
        await limiter.check("user-1")
        clock.advance(30)
        await limiter.check("user-1")

        clock.advance(31)
        decision = await limiter.check("user-1")

        assert decision.allowed is True

    async def test_keys_are_independent(self, clock) -> None:
        limiter = BurstLimiter(max_requests=1, window_seconds=60.0, clock=clock)
        await limiter.check("user-1")

        assert (await limiter.check("user-2")).allowed is True
        assert (await limiter.check("user-1")).allowed is False

    async def test_per_call_override(self, clock) -> None:
        limiter = BurstLimiter(max_requests=20, window_seconds=60.0, clock=clock)
        await limiter.check("user-1", max_requests=1, window_seconds=10.0)

        denied = await limiter.check("user-1", max_requests=1, window_seconds=10.0)
        assert denied.allowed is False
        assert denied.retry_after == 10

        clock.advance(11)
        assert (await limiter.check("user-1", max_requests=1, window_seconds=10.0)).allowed

    async def test_denied_request_not_recorded(self, clock) -> None:
        limiter = BurstLimiter(max_requests=1, window_seconds=60.0, clock=clock)
        await limiter.check("user-1")
        clock.advance(30)
        await limiter.check("user-1")

        clock.advance(31)
        assert (await limiter.check("user-1")).allowed is True

    async def test_reset(self, clock) -> None:
        limiter = BurstLimiter(max_requests=1, window_seconds=60.0, clock=clock)
        await limiter.check("user-1")

        limiter.reset("user-1")

        assert (await limiter.check("user-1")).allowed is True

    async def test_reset_all_drops_every_key(self, clock) -> None:
        limiter = BurstLimiter(max_requests=1, window_seconds=60.0, clock=clock)
        for i in range(5):
            await limiter.check(f"user-{i}")

        limiter.reset()

        assert limiter.tracked_keys == 0

    async def test_zero_ceiling_denies(self, clock) -> None:
        limiter = BurstLimiter(max_requests=20, window_seconds=30.0, clock=clock)

        decision = await limiter.check("user-1", max_requests=0)

        assert decision.allowed is False
        assert decision.retry_after == 30

    async def test_idle_keys_are_dropped(self, clock) -> None:
        limiter = BurstLimiter(max_requests=5, window_seconds=60.0, clock=clock)
        for i in range(500):
            await limiter.check(f"user-{i}")
        assert limiter.tracked_keys == 500

        clock.advance(61)
        await limiter.check("user-new")

        assert limiter.tracked_keys == 1

    async def test_active_keys_survive_sweep(self, clock) -> None:
        limiter = BurstLimiter(max_requests=2, window_seconds=60.0, clock=clock)
        await limiter.check("idle")
        clock.advance(30)
        await limiter.check("busy")

        clock.advance(31)
        await limiter.check("other")

        assert limiter.tracked_keys == 2
        await limiter.check("busy")
        assert (await limiter.check("busy")).allowed is False

    async def test_sweep_respects_longer_override_window(self, clock) -> None:
        limiter = BurstLimiter(max_requests=5, window_seconds=10.0, clock=clock)
        await limiter.check("user-0")
        clock.advance(100)
        await limiter.check("user-1", max_requests=1, window_seconds=120.0)

        clock.advance(21)
        await limiter.check("user-2")

        assert limiter.tracked_keys == 2
        denied = await limiter.check("user-1", max_requests=1, window_seconds=120.0)
        assert denied.allowed is False
        assert denied.retry_after == 99


# ---------------------------------------------------------------------------
# Monthly quota
# ---------------------------------------------------------------------------


class TestQuotaService:
    async def test_free_tier_allows_three_generations(
        self, quota_service: QuotaService, subject: Subject
    ) -> None:
        decisions = [await quota_service.check_quota(subject, "content") for _ in range(3)]

        assert all(d.allowed for d in decisions)
        assert [d.remaining for d in decisions] == [2, 1, 0]
        assert decisions[-1].used == 3
        assert decisions[-1].plan == "free"

    async def test_fourth_generation_denied_with_renewal_date(
        self, quota_service: QuotaService, subject: Subject
    ) -> None:
        for _ in range(3):
            await quota_service.check_quota(subject, "content")

        decision = await quota_service.check_quota(subject, "content")

        assert decision.allowed is False
        assert decision.reason == "category"
        assert decision.used == 3
        assert decision.limit == 3
        assert decision.message == (
            "You have used your 3 content generations this month. "
            "Your credits renew on November 1."
        )

    async def test_categories_are_counted_separately(
        self, quota_service: QuotaService, subject: Subject
    ) -> None:
        await quota_service.check_quota(subject, "audit")

        assert (await quota_service.check_quota(subject, "audit")).allowed is False
        assert (await quota_service.check_quota(subject, "content")).allowed is True

    async def test_category_not_on_plan(
        self, quota_service: QuotaService, subject: Subject
    ) -> None:
        decision = await quota_service.check_quota(subject, "suggestion")

        assert decision.allowed is False
        assert decision.reason == "not_available"
        assert decision.message == "This feature is available from the outil plan."

    async def test_unlimited_plan(
        self, quota_service: QuotaService, subject: Subject, seed_plan
    ) -> None:
        await seed_plan("user-1", "pilot")

        decisions = [await quota_service.check_quota(subject, "content") for _ in range(10)]

        assert all(d.allowed for d in decisions)
        assert decisions[-1].remaining is None

    async def test_unknown_plan_reads_as_free(
        self, quota_service: QuotaService, subject: Subject, seed_plan
    ) -> None:
        await seed_plan("user-1", "legacy-gold")

        decision = await quota_service.check_quota(subject, "content")

        assert decision.plan == "free"
        assert decision.limit == 3

    async def test_workspace_owns_quota(
        self,
        quota_service: QuotaService,
        workspace_subject: Subject,
        subject: Subject,
        seed_plan,
    ) -> None:
        await seed_plan("ws-1", "outil")

        decision = await quota_service.check_quota(workspace_subject, "content")
        personal = await quota_service.get_usage(subject)

        assert decision.plan == "outil"
        assert decision.limit == 50
        assert personal.categories["content"].used == 0

    async def test_plan_is_cached(
        self, quota_service: QuotaService, subject: Subject, seed_plan, clock
    ) -> None:
        assert await quota_service.get_plan("user-1") == "free"
        await seed_plan("user-1", "studio")

        assert await quota_service.get_plan("user-1") == "free"

        clock.advance(61)
        assert await quota_service.get_plan("user-1") == "studio"

    async def test_invalidate_plan(
        self, quota_service: QuotaService, seed_plan
    ) -> None:
        await quota_service.get_plan("user-1")
        await seed_plan("user-1", "studio")

        quota_service.invalidate_plan("user-1")

        assert await quota_service.get_plan("user-1") == "studio"

    async def test_unknown_category_rejected(
        self, quota_service: QuotaService, subject: Subject
    ) -> None:
        with pytest.raises(UnknownQuotaCategoryError):
            await quota_service.check_quota(subject, "nope")

    async def test_store_failure_fails_closed(self, subject: Subject, clock) -> None:
        store = AsyncMock()
        store.get_plan.side_effect = SQLAlchemyError("connection refused")
        service = QuotaService(store, clock=clock)

        with pytest.raises(StoreUnavailableError):
            await service.check_quota(subject, "content")
        store.consume.assert_not_called()

    async def test_increment_failure_fails_closed(self, subject: Subject, clock) -> None:
        store = AsyncMock()
        store.get_plan.return_value = "free"
        store.consume.side_effect = SQLAlchemyError("deadlock")
        service = QuotaService(store, clock=clock)

        with pytest.raises(StoreUnavailableError):
            await service.check_quota(subject, "content")

    async def test_get_usage(
        self, quota_service: QuotaService, subject: Subject
    ) -> None:
        await quota_service.check_quota(subject, "content")
        await quota_service.check_quota(subject, "content")

        usage = await quota_service.get_usage(subject)

        assert usage.plan == "free"
        assert usage.period == "2026-10"
        assert usage.renews_on == datetime(2026, 11, 1, tzinfo=UTC)
        assert usage.categories["content"].used == 2
        assert usage.categories["content"].limit == 3
        assert usage.categories["audit"].used == 0

    async def test_get_usage_reports_total(
        self, quota_service: QuotaService, subject: Subject
    ) -> None:
        await quota_service.check_quota(subject, "content")
        await quota_service.check_quota(subject, "audit")

        usage = await quota_service.get_usage(subject)

        assert usage.total.used == 2
        assert usage.total.limit == 10
        assert TOTAL_KEY not in usage.categories

    async def test_decision_reports_remaining_total(
        self, quota_service: QuotaService, subject: Subject
    ) -> None:
        first = await quota_service.check_quota(subject, "content")
        second = await quota_service.check_quota(subject, "dm_comment")

        assert first.remaining_total == 9
        assert second.remaining_total == 8
        assert second.remaining == 2

    async def test_total_ceiling_denies_any_category(
        self, quota_service: QuotaService, subject: Subject, seed_usage
    ) -> None:
        await seed_usage("user-1", TOTAL_KEY, 10)

        decision = await quota_service.check_quota(subject, "content")

        assert decision.allowed is False
        assert decision.reason == "total"
        assert decision.remaining_total == 0
        assert decision.message == (
            "You have used your 10 AI generations this month. "
            "Your credits renew on November 1."
        )
        usage = await quota_service.get_usage(subject)
        assert usage.categories["content"].used == 0
        assert usage.total.used == 10

    async def test_category_refusal_leaves_total_untouched(
        self, quota_service: QuotaService, subject: Subject
    ) -> None:
        await quota_service.check_quota(subject, "audit")

        denied = await quota_service.check_quota(subject, "audit")

        assert denied.reason == "category"
        assert denied.remaining_total == 9
        usage = await quota_service.get_usage(subject)
        assert usage.total.used == 1

    async def test_unlimited_plan_skips_total(
        self, quota_service: QuotaService, subject: Subject, seed_plan, seed_usage
    ) -> None:
        await seed_plan("user-1", "pilot")
        await seed_usage("user-1", TOTAL_KEY, 500)

        decision = await quota_service.check_quota(subject, "content")

        assert decision.allowed is True
        assert decision.remaining_total is None

    async def test_plan_cache_swept_after_ttl(
        self, quota_service: QuotaService, clock
    ) -> None:
        for i in range(50):
            await quota_service.get_plan(f"owner-{i}")
        assert quota_service.tracked_owners == 50

        clock.advance(61)
        await quota_service.get_plan("owner-new")

        assert quota_service.tracked_owners == 1


class AtomicMemoryStore:
    """UsageStore whose debit yields mid-operation like a real round trip."""

    def __init__(self) -> None:
        self.counts: dict[tuple[str, str, str], int] = {}

    async def get_plan(self, owner_id: str) -> str | None:
        await asyncio.sleep(0)
        return None

    async def consume(
        self,
        owner_id: str,
        category: str,
        period: str,
        limit: int,
        total_limit: int | None,
    ) -> Consumption:
        await asyncio.sleep(0)
        total_key = (owner_id, TOTAL_KEY, period)
        key = (owner_id, category, period)
        total = self.counts.get(total_key, 0)
        if total_limit is not None and total >= total_limit:
            return Consumption(count=None, total=total, denied_by=TOTAL_KEY)
        current = self.counts.get(key, 0)
        if current >= limit:
            return Consumption(count=None, total=total, denied_by="category")
        self.counts[key] = current + 1
        self.counts[total_key] = total + 1
        return Consumption(count=current + 1, total=total + 1)

    async def get_counts(self, owner_id: str, period: str) -> dict[str, int]:
        return {c: n for (o, c, p), n in self.counts.items() if o == owner_id and p == period}


class TestQuotaConcurrency:
    async def test_concurrent_checks_never_overshoot(self, subject: Subject, clock) -> None:
        store = AtomicMemoryStore()
        service = QuotaService(store, clock=clock)

        decisions = await asyncio.gather(
            *(service.check_quota(subject, "content") for _ in range(10))
        )

        assert sum(d.allowed for d in decisions) == 3
        assert store.counts[("user-1", "content", current_period(datetime.now(UTC)))] == 3

    async def test_concurrent_sql_debits_never_overshoot(
        self,
        file_session_factory: async_sessionmaker[AsyncSession],
        subject: Subject,
        clock,
    ) -> None:
        period = current_period(datetime.now(UTC))
        service = QuotaService(SqlUsageStore(file_session_factory), clock=clock)
        # Warm the plan cache so every task goes straight to the counters
        await service.get_plan(subject.quota_owner)

        decisions = await asyncio.gather(
            *(service.check_quota(subject, "content") for _ in range(10))
        )

        assert sum(d.allowed for d in decisions) == 3
        assert sorted(d.used for d in decisions if d.allowed) == [1, 2, 3]
        async with file_session_factory() as session:
            rows = await session.execute(
                select(UsageCounter.category, UsageCounter.count).where(
                    UsageCounter.owner_id == "user-1", UsageCounter.period == period
                )
            )
            counts = dict(rows.all())
        assert counts == {"content": 3, TOTAL_KEY: 3}

    async def test_concurrent_sql_debits_respect_total(
        self,
        file_session_factory: async_sessionmaker[AsyncSession],
        subject: Subject,
        clock,
    ) -> None:
        period = current_period(datetime.now(UTC))
        async with file_session_factory() as session:
            session.add(UsageCounter(owner_id="user-1", category=TOTAL_KEY, period=period, count=7))
            await session.commit()
        service = QuotaService(SqlUsageStore(file_session_factory), clock=clock)
        await service.get_plan(subject.quota_owner)
        categories = ["content", "dm_comment"] * 5

        decisions = await asyncio.gather(
            *(service.check_quota(subject, category) for category in categories)
        )

        assert sum(d.allowed for d in decisions) == 3
        assert {d.reason for d in decisions if not d.allowed} == {"total"}
        usage = await service.get_usage(subject)
        assert usage.total.used == 10
        assert sum(c.used for c in usage.categories.values()) == 3


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------


class TestAdmissionGate:
    async def test_burst_only_step(
        self, admission_gate: AdmissionGate, subject: Subject
    ) -> None:
        assert await admission_gate.admit(subject, None) is None

    async def test_debits_quota(
        self, admission_gate: AdmissionGate, subject: Subject
    ) -> None:
        decision = await admission_gate.admit(subject, "content")

        assert decision is not None
        assert decision.remaining == 2

    async def test_raises_quota_exceeded(
        self, admission_gate: AdmissionGate, subject: Subject
    ) -> None:
        await admission_gate.admit(subject, "audit")

        with pytest.raises(QuotaExceeded) as exc_info:
            await admission_gate.admit(subject, "audit")

        assert exc_info.value.reason == "category"
        assert exc_info.value.plan == "free"
        assert exc_info.value.used == 1

    async def test_total_ceiling_raises(
        self, admission_gate: AdmissionGate, subject: Subject, seed_usage
    ) -> None:
        await seed_usage("user-1", TOTAL_KEY, 10)

        with pytest.raises(QuotaExceeded) as exc_info:
            await admission_gate.admit(subject, "content")

        assert exc_info.value.reason == "total"
        assert exc_info.value.remaining_total == 0

    async def test_zero_burst_ceiling_is_honoured(
        self, admission_gate: AdmissionGate, subject: Subject
    ) -> None:
        with pytest.raises(BurstLimitExceeded):
            await admission_gate.admit(subject, None, max_requests=0)

    async def test_not_available_raises(
        self, admission_gate: AdmissionGate, subject: Subject
    ) -> None:
        with pytest.raises(QuotaExceeded) as exc_info:
            await admission_gate.admit(subject, "import")

        assert exc_info.value.reason == "not_available"

    async def test_burst_checked_before_quota(
        self, admission_gate: AdmissionGate, subject: Subject
    ) -> None:
        await admission_gate.admit(subject, "content", max_requests=1)

        with pytest.raises(BurstLimitExceeded) as exc_info:
            await admission_gate.admit(subject, "content", max_requests=1)

        assert exc_info.value.retry_after >= 1
        usage = await admission_gate.quota.get_usage(subject)
        assert usage.categories["content"].used == 1

    async def test_burst_uses_subject_key(
        self, admission_gate: AdmissionGate, subject: Subject, workspace_subject: Subject
    ) -> None:
        await admission_gate.admit(subject, None, max_requests=1)

        assert await admission_gate.admit(workspace_subject, None, max_requests=1) is None
