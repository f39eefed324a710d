import asyncio
import http.client
import json
import logging
import subprocess
import sys
import time
import urllib.error
import urllib.request
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Protocol

from pydantic import ValidationError

from errors import CredentialUnavailable, RemoteFetchFailed
from models import RateLimitSnapshot, RateLimitWindow

log = logging.getLogger(__name__)

USAGE_API_URL = "https://api.anthropic.com/api/oauth/usage"
KEYCHAIN_SERVICE = "Claude Code-credentials"
CREDENTIALS_PATH = Path.home() / ".claude" / ".credentials.json"

CACHE_TTL_SECONDS = 30.0
REQUEST_TIMEOUT_SECONDS = 10

# A response missing either window is treated as a failed call
_REQUIRED_WINDOWS = ("five_hour", "seven_day")


class CredentialSource(Protocol):
    def get_token(self) -> str | None: ...


class ClaudeCredentials:
    """OAuth token lookup: macOS keychain first, then the credentials file."""

    def __init__(self, credentials_path: Path = CREDENTIALS_PATH):
        self.credentials_path = credentials_path

    def get_token(self) -> str | None:
        for reader in (self._from_keychain, self._from_file):
            try:
                return reader()
            except CredentialUnavailable as exc:
                log.debug("%s", exc)
        return None

    def _from_keychain(self) -> str:
        if sys.platform != "darwin":
            raise CredentialUnavailable("Keychain lookup skipped on non-macOS host")
        try:
            raw = subprocess.run(
                ["security", "find-generic-password", "-s", KEYCHAIN_SERVICE, "-w"],
                capture_output=True, text=True, timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise CredentialUnavailable(f"Keychain lookup failed: {exc}") from exc
        if raw.returncode != 0:
            raise CredentialUnavailable(f"Keychain lookup failed: {raw.stderr.strip()}")
        return _access_token(raw.stdout)

    def _from_file(self) -> str:
        try:
            text = self.credentials_path.read_text(encoding="utf-8")
        except OSError as exc:
            raise CredentialUnavailable(f"No credentials file: {exc}") from exc
        return _access_token(text)


def _access_token(raw: str) -> str:
    try:
        creds = json.loads(raw.strip())
    except json.JSONDecodeError as exc:
        raise CredentialUnavailable("Credentials are not valid JSON") from exc
    oauth = creds.get("claudeAiOauth") if isinstance(creds, dict) else None
    if not isinstance(oauth, dict):
        raise CredentialUnavailable("No claudeAiOauth object in credentials")
    token = oauth.get("accessToken")
    if not token:
        raise CredentialUnavailable("No accessToken in credentials")
    return token


def format_time_until_reset(resets_at: datetime, now: datetime | None = None) -> str:
    """Render the time left until ``resets_at``, e.g. ``"1d 6h"`` or ``"45m"``."""
    now = now or datetime.now(timezone.utc)
    if resets_at.tzinfo is None:
        resets_at = resets_at.replace(tzinfo=timezone.utc)
    remaining = (resets_at - now).total_seconds()
    if remaining <= 0:
        return "Resetting..."

    hours = int(remaining // 3600)
    minutes = int((remaining % 3600) // 60)
    if hours > 24:
        return f"{hours // 24}d {hours % 24}h"
    if hours > 0:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


class RateLimitClient:
    """Live utilization from Claude's OAuth usage API, cached for 30 seconds."""

    def __init__(
        self,
        credentials: CredentialSource,
        url: str = USAGE_API_URL,
        cache_ttl: float = CACHE_TTL_SECONDS,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.credentials = credentials
        self.url = url
        self.cache_ttl = cache_ttl
        self.timeout = timeout
        self._clock = clock
        self._cached: RateLimitSnapshot | None = None
        self._last_fetch = 0.0

    async def get_usage_data(self) -> RateLimitSnapshot | None:
        now = self._clock()
        if self._cached is not None and now - self._last_fetch < self.cache_ttl:
            return self._cached

        try:
            token = await asyncio.to_thread(self.credentials.get_token)
        except Exception:
            log.warning("Credential lookup failed", exc_info=True)
            return None
        if not token:
            log.debug("No OAuth credentials; skipping usage API call")
            return None

        try:
            body = await asyncio.to_thread(self._request, token)
            snapshot = _parse_snapshot(body)
        except RemoteFetchFailed as exc:
            log.warning("Usage API call failed: %s %s", exc, exc.details or "")
            return None

        self._cached = snapshot
        self._last_fetch = now
        return snapshot

    def _request(self, token: str) -> object:
        req = urllib.request.Request(
            self.url,
            headers={
                "Accept": "application/json",
                "Content-Type": "application/json",
                "Authorization": f"Bearer {token}",
                "anthropic-beta": "oauth-2025-04-20",
            },
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                return json.loads(resp.read())
        except urllib.error.HTTPError as exc:
            raise RemoteFetchFailed(
                f"Usage API returned {exc.code}: {exc.reason}", status=exc.code
            ) from exc
        except (urllib.error.URLError, http.client.HTTPException, OSError) as exc:
            raise RemoteFetchFailed(f"Usage API unreachable: {exc}") from exc
        except ValueError as exc:
            raise RemoteFetchFailed("Usage API returned malformed JSON") from exc

    async def has_credentials(self) -> bool:
        return await asyncio.to_thread(self.credentials.get_token) is not None

    async def get_five_hour_utilization(self) -> RateLimitWindow | None:
        data = await self.get_usage_data()
        if data is None or data.five_hour.resets_at is None:
            return None
        return data.five_hour

    async def get_seven_day_utilization(self) -> RateLimitWindow | None:
        data = await self.get_usage_data()
        if data is None or data.seven_day.resets_at is None:
            return None
        return data.seven_day

    def format_time_until_reset(self, resets_at: datetime) -> str:
        return format_time_until_reset(resets_at)

    def clear_cache(self) -> None:
        self._cached = None
        self._last_fetch = 0.0


def _parse_snapshot(body: object) -> RateLimitSnapshot:
    if not isinstance(body, dict):
        raise RemoteFetchFailed("Usage API body is not an object")
    missing = [key for key in _REQUIRED_WINDOWS if not body.get(key)]
    if missing:
        raise RemoteFetchFailed(
            "Invalid usage data structure", details={"missing": missing}
        )
    try:
        return RateLimitSnapshot.model_validate({**body, "is_available": True})
    except ValidationError as exc:
        raise RemoteFetchFailed(
            "Invalid usage data structure", details={"errors": exc.error_count()}
        ) from exc
