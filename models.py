from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class UsageStatus(str, Enum):
    SAFE = "safe"
    WARNING = "warning"
    CRITICAL = "critical"


class RateLimitWindow(BaseModel):
    utilization: float = 0.0  # percent of the window's quota, 0-100
    resets_at: datetime | None = None


class ExtraUsage(BaseModel):
    is_enabled: bool = False
    monthly_limit: float | None = None
    used_credits: float | None = None
    utilization: float | None = None


class RateLimitSnapshot(BaseModel):
    five_hour: RateLimitWindow
    seven_day: RateLimitWindow
    seven_day_sonnet: RateLimitWindow | None = None
    seven_day_opus: RateLimitWindow | None = None
    seven_day_oauth_apps: RateLimitWindow | None = None
    extra_usage: ExtraUsage | None = None
    is_available: bool = True


class ModelUsage(BaseModel):
    tokens: int = 0
    cost: float = 0.0


class DailyUsage(BaseModel):
    date: str  # YYYY-MM-DD
    total_tokens: int = Field(default=0, ge=0)
    total_cost: float = Field(default=0.0, ge=0)
    models: dict[str, ModelUsage] = {}


class LedgerModelBreakdown(BaseModel):
    model_name: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    cost: float = 0.0


class LedgerDay(BaseModel):
    """One day of the local usage ledger, as the ledger reports it."""

    date: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: int = 0
    cache_read_tokens: int = 0
    total_cost: float = 0.0
    model_breakdowns: list[LedgerModelBreakdown] = []


class SessionBlock(BaseModel):
    id: str
    start_time: datetime
    end_time: datetime
    actual_end_time: datetime | None = None
    is_active: bool = False
    is_gap: bool = False
    cost_usd: float = 0.0
    total_tokens: int = 0
    models: list[str] = []


class UsageSnapshot(BaseModel):
    today: DailyUsage
    this_week: list[DailyUsage] = []
    oauth_utilization: RateLimitSnapshot | None = None


class MenuBarSnapshot(BaseModel):
    percentage_used: float = Field(default=0.0, ge=0, le=100)
    cost: float = Field(default=0.0, ge=0)
    status: UsageStatus = UsageStatus.SAFE
    oauth_utilization: RateLimitSnapshot | None = None
    reset_labels: dict[str, str] = {}  # window name -> "2h 30m"


class NotificationState(BaseModel):
    last_fire_time: float = 0.0
    last_level: UsageStatus = UsageStatus.SAFE
    last_data_identifier: str = ""
    in_progress: bool = False
