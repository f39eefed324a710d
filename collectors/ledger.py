"""Local usage ledger built from Claude Code session transcripts.

Every assistant turn in ``~/.claude/projects/**/*.jsonl`` carries a ``usage``
block. Turns are de-duplicated (a streamed reply is logged once per content
block), priced from the token counts, and rolled up two ways: per calendar
day with a per-model breakdown, and into fixed-length session blocks.
"""

import asyncio
import json
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone, tzinfo
from pathlib import Path
from typing import Callable, Protocol

from errors import LedgerReadFailed
from models import LedgerDay, LedgerModelBreakdown, SessionBlock

log = logging.getLogger(__name__)

PROJECTS_DIR = Path.home() / ".claude" / "projects"
SESSION_DURATION_HOURS = 5

# USD per 1M tokens
MODEL_COSTS: dict[str, dict[str, float]] = {
    "claude-opus-4-5":   {"input": 5.00,  "output": 25.00, "cache_read": 0.50, "cache_create": 6.25},
    "claude-opus-4":     {"input": 15.00, "output": 75.00, "cache_read": 1.50, "cache_create": 18.75},
    "claude-sonnet-4":   {"input": 3.00,  "output": 15.00, "cache_read": 0.30, "cache_create": 3.75},
    "claude-haiku-4-5":  {"input": 1.00,  "output": 5.00,  "cache_read": 0.10, "cache_create": 1.25},
    "claude-3-5-haiku":  {"input": 0.80,  "output": 4.00,  "cache_read": 0.08, "cache_create": 1.00},
    "claude-3-7-sonnet": {"input": 3.00,  "output": 15.00, "cache_read": 0.30, "cache_create": 3.75},
}


class UsageLedgerPort(Protocol):
    async def load_daily_usage(self) -> list[LedgerDay]: ...

    async def load_session_blocks(
        self, session_duration_hours: int = SESSION_DURATION_HOURS
    ) -> list[SessionBlock]: ...


@dataclass
class UsageEntry:
    timestamp: datetime
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens + self.output_tokens
            + self.cache_creation_tokens + self.cache_read_tokens
        )

    @property
    def cost(self) -> float:
        return calculate_cost(
            self.input_tokens, self.output_tokens,
            self.cache_read_tokens, self.cache_creation_tokens, self.model,
        )


def calculate_cost(
    input_tokens: int,
    output_tokens: int,
    cache_read_tokens: int,
    cache_creation_tokens: int,
    model: str,
) -> float:
    """Cost in USD for the given token counts; unknown models cost nothing."""
    # Longest prefix wins so "claude-opus-4-5" is not priced as "claude-opus-4"
    matches = [p for p in MODEL_COSTS if model.startswith(p)]
    if not matches:
        return 0.0
    costs = MODEL_COSTS[max(matches, key=len)]
    return (
        input_tokens * costs["input"]
        + output_tokens * costs["output"]
        + cache_read_tokens * costs["cache_read"]
        + cache_creation_tokens * costs["cache_create"]
    ) / 1_000_000


def _parse_line(line: str) -> tuple[str | None, UsageEntry] | None:
    data = json.loads(line)
    if data.get("type") != "assistant":
        return None
    message = data.get("message") or {}
    usage = message.get("usage")
    ts_str = data.get("timestamp")
    if not usage or not ts_str:
        return None

    msg_id, req_id = message.get("id"), data.get("requestId")
    key = f"{msg_id}:{req_id}" if msg_id and req_id else None
    ts = datetime.fromisoformat(ts_str.replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    entry = UsageEntry(
        timestamp=ts,
        model=str(message.get("model") or "unknown"),
        input_tokens=int(usage.get("input_tokens") or 0),
        output_tokens=int(usage.get("output_tokens") or 0),
        cache_creation_tokens=int(usage.get("cache_creation_input_tokens") or 0),
        cache_read_tokens=int(usage.get("cache_read_input_tokens") or 0),
    )
    return key, entry


class JsonlLedger:
    """UsageLedgerPort over the session transcripts on local disk."""

    def __init__(
        self,
        projects_dir: Path = PROJECTS_DIR,
        tz: tzinfo | None = None,
        now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.projects_dir = projects_dir
        self.tz = tz
        self._now = now

    async def load_daily_usage(self) -> list[LedgerDay]:
        return await asyncio.to_thread(self.daily_usage)

    async def load_session_blocks(
        self, session_duration_hours: int = SESSION_DURATION_HOURS
    ) -> list[SessionBlock]:
        return await asyncio.to_thread(self.session_blocks, session_duration_hours)

    def read_entries(self) -> list[UsageEntry]:
        if not self.projects_dir.exists():
            return []
        try:
            files = sorted(self.projects_dir.rglob("*.jsonl"))
        except OSError as exc:
            raise LedgerReadFailed(
                f"Cannot list {self.projects_dir}", details={"error": str(exc)}
            ) from exc

        seen: set[str] = set()
        entries: list[UsageEntry] = []
        for fp in files:
            if "tool-results" in str(fp):
                continue
            try:
                lines = fp.read_text(errors="replace").splitlines()
            except OSError as exc:
                log.debug("Skipping unreadable transcript %s: %s", fp, exc)
                continue
            for line in lines:
                if '"assistant"' not in line:
                    continue
                try:
                    parsed = _parse_line(line)
                except (ValueError, TypeError, AttributeError):
                    continue
                if parsed is None:
                    continue
                key, entry = parsed
                if key is not None:
                    if key in seen:
                        continue
                    seen.add(key)
                entries.append(entry)

        entries.sort(key=lambda e: e.timestamp)
        return entries

    def daily_usage(self) -> list[LedgerDay]:
        by_day: dict[str, list[UsageEntry]] = defaultdict(list)
        for entry in self.read_entries():
            by_day[entry.timestamp.astimezone(self.tz).date().isoformat()].append(entry)

        days: list[LedgerDay] = []
        for date in sorted(by_day):
            day_entries = by_day[date]
            per_model: dict[str, LedgerModelBreakdown] = {}
            for e in day_entries:
                mb = per_model.setdefault(e.model, LedgerModelBreakdown(model_name=e.model))
                mb.input_tokens += e.input_tokens
                mb.output_tokens += e.output_tokens
                mb.cache_creation_tokens += e.cache_creation_tokens
                mb.cache_read_tokens += e.cache_read_tokens
                mb.cost += e.cost
            days.append(LedgerDay(
                date=date,
                input_tokens=sum(e.input_tokens for e in day_entries),
                output_tokens=sum(e.output_tokens for e in day_entries),
                cache_creation_tokens=sum(e.cache_creation_tokens for e in day_entries),
                cache_read_tokens=sum(e.cache_read_tokens for e in day_entries),
                total_cost=sum(mb.cost for mb in per_model.values()),
                model_breakdowns=sorted(per_model.values(), key=lambda m: m.cost, reverse=True),
            ))
        return days

    def session_blocks(self, session_duration_hours: int = SESSION_DURATION_HOURS) -> list[SessionBlock]:
        return build_session_blocks(
            self.read_entries(), timedelta(hours=session_duration_hours), self._now()
        )


def _floor_hour(ts: datetime) -> datetime:
    return ts.astimezone(timezone.utc).replace(minute=0, second=0, microsecond=0)


def _close_block(entries: list[UsageEntry], start: datetime, duration: timedelta, now: datetime) -> SessionBlock:
    end = start + duration
    last = entries[-1].timestamp
    models: list[str] = []
    for e in entries:
        if e.model not in models:
            models.append(e.model)
    return SessionBlock(
        id=start.isoformat(),
        start_time=start,
        end_time=end,
        actual_end_time=last,
        is_active=now - last < duration and now < end,
        cost_usd=sum(e.cost for e in entries),
        total_tokens=sum(e.total_tokens for e in entries),
        models=models,
    )


def build_session_blocks(
    entries: list[UsageEntry], duration: timedelta, now: datetime
) -> list[SessionBlock]:
    """Group time-ordered entries into blocks of ``duration``.

    A block starts on the hour of its first entry. An entry past the block end,
    or after an idle stretch longer than ``duration``, opens the next block;
    idle stretches longer than ``duration`` are reported as gap blocks.
    """
    blocks: list[SessionBlock] = []
    current: list[UsageEntry] = []
    start: datetime | None = None

    for entry in entries:
        if start is None:
            start, current = _floor_hour(entry.timestamp), [entry]
            continue
        last = current[-1].timestamp
        if entry.timestamp - start > duration or entry.timestamp - last > duration:
            blocks.append(_close_block(current, start, duration, now))
            gap_start = last + duration
            if entry.timestamp - last > duration and entry.timestamp > gap_start:
                blocks.append(SessionBlock(
                    id=f"gap-{gap_start.isoformat()}",
                    start_time=gap_start,
                    end_time=entry.timestamp,
                    is_gap=True,
                ))
            start, current = _floor_hour(entry.timestamp), [entry]
        else:
            current.append(entry)

    if start is not None:
        blocks.append(_close_block(current, start, duration, now))
    return blocks
