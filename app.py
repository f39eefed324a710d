import asyncio
import logging
from typing import Any

from fastapi import Body, FastAPI, HTTPException
from pydantic import ValidationError

from aggregator import UsageAggregator
from collectors.claude import ClaudeCredentials, RateLimitClient
from collectors.ledger import JsonlLedger
from config import (
    FIRST_POLL_DELAY_SECONDS,
    POLL_INTERVAL_SECONDS,
    Configuration,
    SettingsStore,
    setup_logging,
)
from models import MenuBarSnapshot, UsageSnapshot
from notifications import NotificationGate, SystemNotifier

log = logging.getLogger(__name__)


class MenuBarResponse(MenuBarSnapshot):
    title: str


def create_app(
    aggregator: UsageAggregator | None = None,
    gate: NotificationGate | None = None,
    settings: SettingsStore | None = None,
    poll_interval: float = POLL_INTERVAL_SECONDS,
    start_poller: bool = True,
    configure_logging: bool = False,
) -> FastAPI:
    settings = settings or SettingsStore()
    if aggregator is None:
        rate_limits = RateLimitClient(ClaudeCredentials())
        aggregator = UsageAggregator(rate_limits, JsonlLedger())
    gate = gate or NotificationGate(SystemNotifier())

    app = FastAPI(title="Claude Meter")
    app.state.aggregator = aggregator
    app.state.gate = gate
    app.state.settings = settings

    async def update_menu_bar(trigger: str = "auto") -> MenuBarResponse:
        snapshot = await aggregator.get_menu_bar_snapshot()
        title = aggregator.menu_bar_title(snapshot)
        log.info("Menu bar: %s (%s)", title, snapshot.status.value)
        gate.check_and_notify(snapshot, trigger)
        return MenuBarResponse(**snapshot.model_dump(), title=title)

    async def poll():
        await asyncio.sleep(FIRST_POLL_DELAY_SECONDS)
        while True:
            try:
                await update_menu_bar()
            except Exception:
                log.exception("Error updating menu bar")
            await asyncio.sleep(poll_interval)

    @app.on_event("startup")
    async def startup():
        if configure_logging:
            setup_logging()
        aggregator.update_configuration(**settings.load().model_dump())
        if start_poller:
            app.state.poller = asyncio.create_task(poll())

    @app.on_event("shutdown")
    async def shutdown():
        poller = getattr(app.state, "poller", None)
        if poller is not None:
            poller.cancel()

    @app.get("/api/snapshot", response_model=UsageSnapshot)
    async def snapshot():
        return await aggregator.get_snapshot()

    @app.get("/api/menubar", response_model=MenuBarResponse)
    async def menubar():
        snapshot = await aggregator.get_menu_bar_snapshot()
        return MenuBarResponse(**snapshot.model_dump(), title=aggregator.menu_bar_title(snapshot))

    @app.post("/api/refresh", response_model=MenuBarResponse)
    async def refresh():
        aggregator.rate_limits.clear_cache()
        aggregator.clear_cache()
        return await update_menu_bar("manual")

    @app.get("/api/settings", response_model=Configuration, response_model_by_alias=True)
    async def get_settings():
        return settings.load()

    @app.put("/api/settings", response_model=Configuration, response_model_by_alias=True)
    async def save_settings(update: dict[str, Any] = Body(...)):
        try:
            saved = settings.save(update)
        except ValidationError as exc:
            raise HTTPException(422, exc.errors(include_url=False, include_context=False))
        aggregator.update_configuration(**saved.model_dump())
        return saved

    @app.post("/api/summary")
    async def summary():
        stats = await aggregator.get_snapshot()
        gate.send_daily_summary(stats.today.total_tokens, stats.today.total_cost)
        return {"tokens": stats.today.total_tokens, "cost": stats.today.total_cost}

    return app


app = create_app(configure_logging=True)
