"""Fake collaborators shared by the test modules."""

import asyncio
from datetime import datetime, timedelta, timezone

from models import LedgerDay, LedgerModelBreakdown, RateLimitSnapshot, RateLimitWindow, SessionBlock

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCredentials:
    def __init__(self, token: str | None = "test-token"):
        self.token = token
        self.calls = 0

    def get_token(self) -> str | None:
        self.calls += 1
        return self.token


class FakeRateLimits:
    """Stands in for RateLimitClient inside the aggregator."""

    def __init__(self, snapshot: RateLimitSnapshot | None = None, error: Exception | None = None):
        self.snapshot = snapshot
        self.error = error
        self.calls = 0
        self.cleared = 0

    async def get_usage_data(self) -> RateLimitSnapshot | None:
        self.calls += 1
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        return self.snapshot

    def clear_cache(self) -> None:
        self.cleared += 1


class FakeLedger:
    def __init__(
        self,
        days: list[LedgerDay] | None = None,
        blocks: list[SessionBlock] | None = None,
        error: Exception | None = None,
    ):
        self.days = days or []
        self.blocks = blocks or []
        self.error = error
        self.daily_calls = 0
        self.block_calls = 0

    async def load_daily_usage(self) -> list[LedgerDay]:
        self.daily_calls += 1
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        return self.days

    async def load_session_blocks(self, session_duration_hours: int = 5) -> list[SessionBlock]:
        self.block_calls += 1
        await asyncio.sleep(0)
        if self.error:
            raise self.error
        return self.blocks


class FakeNotifier:
    def __init__(self, error: Exception | None = None):
        self.sent: list[tuple[str, str]] = []
        self.error = error

    def send(self, title: str, body: str) -> None:
        if self.error:
            raise self.error
        self.sent.append((title, body))


def rate_limit_snapshot(five_hour: float = 42.0, seven_day: float = 10.0) -> RateLimitSnapshot:
    return RateLimitSnapshot(
        five_hour=RateLimitWindow(utilization=five_hour, resets_at=NOW + timedelta(minutes=90)),
        seven_day=RateLimitWindow(utilization=seven_day, resets_at=NOW + timedelta(hours=30)),
    )


def ledger_day(date: str, cost: float = 1.5) -> LedgerDay:
    return LedgerDay(
        date=date,
        input_tokens=100,
        output_tokens=200,
        cache_creation_tokens=30,
        cache_read_tokens=4,
        total_cost=cost,
        model_breakdowns=[
            LedgerModelBreakdown(
                model_name="claude-sonnet-4-5", input_tokens=100, output_tokens=200,
                cache_creation_tokens=30, cache_read_tokens=4, cost=cost,
            ),
            LedgerModelBreakdown(model_name="<synthetic>"),
        ],
    )


