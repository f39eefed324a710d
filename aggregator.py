import asyncio
import logging
import math
import time
from datetime import date, datetime, timedelta, timezone, tzinfo
from typing import Any, Awaitable, Callable, TypeVar

from collectors.claude import RateLimitClient, format_time_until_reset
from collectors.ledger import SESSION_DURATION_HOURS, UsageLedgerPort
from config import Configuration, NotificationThresholds
from models import (
    DailyUsage,
    LedgerDay,
    MenuBarSnapshot,
    ModelUsage,
    SessionBlock,
    UsageSnapshot,
    UsageStatus,
)

log = logging.getLogger(__name__)

T = TypeVar("T")

SNAPSHOT_TTL_SECONDS = 3.0
SESSION_WINDOW = timedelta(hours=SESSION_DURATION_HOURS)
WEEK_DAYS = 7

# Internal placeholder model the ledger records for non-billable turns
SYNTHETIC_MODEL = "<synthetic>"

_RESET_LABEL_WINDOWS = ("five_hour", "seven_day", "seven_day_sonnet", "seven_day_opus")


def status_for(
    percentage_used: float, thresholds: NotificationThresholds | None = None
) -> UsageStatus:
    thresholds = thresholds or NotificationThresholds()
    if percentage_used >= thresholds.critical:
        return UsageStatus.CRITICAL
    if percentage_used >= thresholds.warning:
        return UsageStatus.WARNING
    return UsageStatus.SAFE


def process_daily_data(days: list[LedgerDay]) -> list[DailyUsage]:
    return [
        DailyUsage(
            date=day.date,
            total_tokens=(
                day.input_tokens + day.output_tokens
                + day.cache_creation_tokens + day.cache_read_tokens
            ),
            total_cost=day.total_cost,
            models={
                mb.model_name: ModelUsage(
                    tokens=(
                        mb.input_tokens + mb.output_tokens
                        + mb.cache_creation_tokens + mb.cache_read_tokens
                    ),
                    cost=mb.cost,
                )
                for mb in day.model_breakdowns
                if mb.model_name != SYNTHETIC_MODEL
            },
        )
        for day in days
    ]


def session_window_cost(blocks: list[SessionBlock], now: datetime) -> float:
    """Cost of the non-gap blocks that started within the last five hours."""
    window_start = now - SESSION_WINDOW
    return sum(
        block.cost_usd
        for block in blocks
        if not block.is_gap and block.start_time >= window_start
    )


class UsageAggregator:
    """Merges live rate limits with the local ledger into one cached snapshot.

    Snapshots live for three seconds. Callers that miss the cache at the same
    time share a single in-flight aggregation.
    """

    def __init__(
        self,
        rate_limits: RateLimitClient,
        ledger: UsageLedgerPort,
        config: Configuration | None = None,
        cache_ttl: float = SNAPSHOT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
        tz: tzinfo | None = None,
    ):
        self.rate_limits = rate_limits
        self.ledger = ledger
        self.config = config or Configuration()
        self.cache_ttl = cache_ttl
        self.tz = tz
        self._clock = clock
        self._now = now
        self._cached: UsageSnapshot | None = None
        self._last_update = 0.0
        self._inflight: asyncio.Future[UsageSnapshot] | None = None
        self._session_blocks: list[SessionBlock] = []

    def update_configuration(self, **changes: Any) -> Configuration:
        changes = {k: v for k, v in changes.items() if v is not None}
        self.config = Configuration.model_validate({**self.config.model_dump(), **changes})
        self.clear_cache()
        return self.config

    def clear_cache(self) -> None:
        self._cached = None
        self._last_update = 0.0

    async def get_snapshot(self) -> UsageSnapshot:
        if self._cached is not None and self._clock() - self._last_update < self.cache_ttl:
            return self._cached

        task = self._inflight
        if task is None:
            task = self._inflight = asyncio.ensure_future(self._refresh())
        try:
            return await asyncio.shield(task)
        except Exception:
            log.exception("Error fetching usage stats")
            return self._empty_snapshot()

    async def _refresh(self) -> UsageSnapshot:
        started = self._clock()
        try:
            blocks, daily, oauth = await asyncio.gather(
                _settle(
                    "session blocks",
                    self.ledger.load_session_blocks(session_duration_hours=SESSION_DURATION_HOURS),
                    [],
                ),
                _settle("daily usage", self.ledger.load_daily_usage(), []),
                _settle("rate limits", self.rate_limits.get_usage_data(), None),
            )

            processed = process_daily_data(daily or [])
            today = self._today()
            week_start = today - timedelta(days=WEEK_DAYS - 1)
            snapshot = UsageSnapshot(
                today=next(
                    (d for d in processed if d.date == today.isoformat()),
                    self._empty_day(),
                ),
                this_week=[d for d in processed if date.fromisoformat(d.date) >= week_start],
                oauth_utilization=oauth,
            )
        finally:
            self._inflight = None

        self._session_blocks = blocks or []
        self._cached = snapshot
        self._last_update = started
        return snapshot

    async def get_menu_bar_snapshot(self) -> MenuBarSnapshot:
        stats = await self.get_snapshot()
        oauth = stats.oauth_utilization

        percentage_used = 0.0
        if oauth is not None and oauth.is_available:
            percentage_used = min(max(oauth.five_hour.utilization, 0.0), 100.0)

        if self.config.menu_bar_cost_source == "sessionWindow":
            cost = self.session_window_cost()
        else:
            cost = stats.today.total_cost

        return MenuBarSnapshot(
            percentage_used=percentage_used,
            cost=cost,
            status=status_for(percentage_used, self.config.notification_thresholds),
            oauth_utilization=oauth,
            reset_labels=self._reset_labels(stats),
        )

    def session_window_cost(self) -> float:
        return session_window_cost(self._session_blocks, self._now())

    def menu_bar_title(self, snapshot: MenuBarSnapshot) -> str:
        percentage = f"{math.floor(snapshot.percentage_used + 0.5)}%"
        cost = f"${snapshot.cost:.2f}"
        mode = self.config.menu_bar_display_mode
        if mode == "percentage":
            return percentage
        if mode == "cost":
            return cost
        return f"{percentage} · {cost}"

    def _reset_labels(self, stats: UsageSnapshot) -> dict[str, str]:
        oauth = stats.oauth_utilization
        if oauth is None or not oauth.is_available:
            return {}
        now = self._now()
        labels = {}
        for name in _RESET_LABEL_WINDOWS:
            window = getattr(oauth, name)
            if window is not None and window.resets_at is not None:
                labels[name] = format_time_until_reset(window.resets_at, now)
        return labels

    def _today(self) -> date:
        return self._now().astimezone(self.tz).date()

    def _empty_day(self) -> DailyUsage:
        return DailyUsage(date=self._today().isoformat())

    def _empty_snapshot(self) -> UsageSnapshot:
        return UsageSnapshot(today=self._empty_day())


async def _settle(label: str, pending: Awaitable[T], default: T) -> T:
    try:
        return await pending
    except Exception as exc:
        log.warning("Failed to load %s: %s", label, exc)
        return default
