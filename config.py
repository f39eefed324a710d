import json
import logging
import sys
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

log = logging.getLogger(__name__)

SETTINGS_DIR = Path.home() / ".claude-meter"
SETTINGS_PATH = SETTINGS_DIR / "settings.json"

POLL_INTERVAL_SECONDS = 30
FIRST_POLL_DELAY_SECONDS = 1

CostSource = Literal["today", "sessionWindow"]
DisplayMode = Literal["both", "percentage", "cost"]


class NotificationThresholds(BaseModel):
    warning: int = Field(default=70, ge=0, le=100)
    critical: int = Field(default=90, ge=0, le=100)

    @model_validator(mode="after")
    def _ordered(self) -> "NotificationThresholds":
        if self.warning >= self.critical:
            raise ValueError("warning threshold must be below critical threshold")
        return self


class Configuration(BaseModel):
    """User-facing settings. Field aliases match the settings file keys."""

    model_config = ConfigDict(populate_by_name=True)

    menu_bar_cost_source: CostSource = Field(default="today", alias="menuBarCostSource")
    menu_bar_display_mode: DisplayMode = Field(default="both", alias="menuBarDisplayMode")
    notification_thresholds: NotificationThresholds = Field(
        default_factory=NotificationThresholds, alias="notificationThresholds"
    )


def _migrate(raw: dict[str, Any]) -> dict[str, Any]:
    settings: dict[str, Any] = {}
    # 'alternate' was folded into 'both'
    mode = raw.get("menuBarDisplayMode")
    settings["menuBarDisplayMode"] = "both" if mode in (None, "alternate") else mode
    if raw.get("menuBarCostSource"):
        settings["menuBarCostSource"] = raw["menuBarCostSource"]
    if raw.get("notificationThresholds"):
        settings["notificationThresholds"] = raw["notificationThresholds"]
    return settings


class SettingsStore:
    """JSON settings file under the user's home directory."""

    def __init__(self, path: Path = SETTINGS_PATH):
        self.path = path

    def load(self) -> Configuration:
        if not self.path.exists():
            return Configuration()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
            return Configuration.model_validate(_migrate(raw))
        except (OSError, json.JSONDecodeError, ValidationError) as exc:
            log.warning("Error loading settings from %s: %s", self.path, exc)
            return Configuration()

    def save(self, update: dict[str, Any]) -> Configuration:
        """Merge ``update`` (settings-file keys) over the stored settings and write."""
        current = self.load().model_dump(by_alias=True)
        merged = Configuration.model_validate({**current, **update})
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(
            json.dumps(merged.model_dump(by_alias=True), indent=2), encoding="utf-8"
        )
        return merged


def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """Send log records from every module to stdout."""
    logger = logging.getLogger()
    logger.setLevel(level)
    logger.handlers.clear()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    logger.addHandler(handler)
    return logger
