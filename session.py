# session.py
"""
Anti-bot clearance cookies for Animepahe.

The site sits behind DDoS-Guard. A headless browser solves the check once,
the resulting cookies are written to a single JSON file and replayed by the
plain HTTP transport until they age out (14 days by default). A day before
that, callers trigger a background refresh and keep using the old cookies.
Only one refresh runs at a time.
"""
import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Dict, List, Optional

from config import Settings
from errors import InvalidRequest, UpstreamUnavailable

logger = logging.getLogger(__name__)

ONE_DAY = 24 * 60 * 60

Harvester = Callable[[str], Awaitable[List[Dict[str, str]]]]


@dataclass
class CredentialBundle:
    cookies: List[Dict[str, str]] = field(default_factory=list)
    captured_at: float = 0.0

    def cookie_header(self) -> str:
        return "; ".join(f"{cookie['name']}={cookie['value']}" for cookie in self.cookies)

    def age(self, now: float) -> float:
        return now - self.captured_at

    def to_json(self) -> str:
        # Timestamp is stored in milliseconds
        return json.dumps({"timestamp": int(self.captured_at * 1000), "cookies": self.cookies}, indent=2)

    @classmethod
    def from_json(cls, text: str) -> "CredentialBundle":
        data = json.loads(text)
        if not isinstance(data, dict) or not data.get("timestamp") or not isinstance(data.get("cookies"), list):
            raise ValueError("Malformed credential bundle")
        cookies = [
            {"name": c["name"], "value": c["value"], "domain": c.get("domain", "")}
            for c in data["cookies"]
        ]
        return cls(cookies=cookies, captured_at=data["timestamp"] / 1000)


class SessionManager:
    def __init__(
        self,
        settings: Settings,
        harvester: Harvester,
        clock: Callable[[], float] = time.time,
    ):
        self.settings = settings
        self.path = settings.cookies_path
        self.harvester = harvester
        self.clock = clock
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def refresh_interval(self) -> float:
        return self.settings.refresh_interval

    @property
    def is_refreshing(self) -> bool:
        return self._refresh_task is not None and not self._refresh_task.done()

    def load(self) -> Optional[CredentialBundle]:
        """Read the stored bundle; a missing or corrupt file counts as no bundle."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return CredentialBundle.from_json(f.read())
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable cookie file {self.path}: {e}")
            return None

    def save(self, bundle: CredentialBundle) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            f.write(bundle.to_json())

    async def ensure_fresh(self, user_cookies: Optional[str] = None) -> str:
        """Return a cookie header, refreshing first when there is nothing usable."""
        if user_cookies is not None:
            if not isinstance(user_cookies, str) or not user_cookies.strip():
                raise InvalidRequest("Invalid user-provided cookies format")
            logger.info("Using user-provided cookies")
            return user_cookies.strip()

        bundle = self.load()
        now = self.clock()
        if bundle is None or bundle.age(now) >= self.refresh_interval:
            logger.info("No valid cookies on disk, refreshing before continuing")
            await self.force_refresh()
            bundle = self.load()
            if bundle is None:
                raise UpstreamUnavailable("Failed to refresh cookies: no cookie file written")
        elif bundle.age(now) >= self.refresh_interval - ONE_DAY:
            self.schedule_refresh()

        return bundle.cookie_header()

    def schedule_refresh(self) -> bool:
        """Start a background refresh unless one is already running."""
        if self.is_refreshing:
            return False
        logger.info("Cookies are close to expiry, refreshing in the background")
        self._refresh_task = asyncio.create_task(self._refresh())
        self._refresh_task.add_done_callback(_log_background_failure)
        return True

    async def refresh(self) -> None:
        """Refresh the cookies. Returns at once if another refresh is in flight."""
        if self.is_refreshing:
            return
        self._refresh_task = asyncio.create_task(self._refresh())
        await self._refresh_task

    async def force_refresh(self) -> None:
        """Wait for a refresh to finish, joining the one in flight if any."""
        if not self.is_refreshing:
            self._refresh_task = asyncio.create_task(self._refresh())
        await asyncio.shield(self._refresh_task)

    async def _refresh(self) -> CredentialBundle:
        home_url = self.settings.get_url("home")
        try:
            cookies = await self.harvester(home_url)
            if not cookies:
                raise UpstreamUnavailable("No cookies found after page load")
            bundle = CredentialBundle(cookies=list(cookies), captured_at=self.clock())
            self.save(bundle)
        except UpstreamUnavailable as e:
            logger.error(f"Cookie refresh error: {e.detail}")
            raise UpstreamUnavailable(f"Failed to refresh cookies: {e.detail}")
        except Exception as e:
            logger.error(f"Cookie refresh error: {e}")
            raise UpstreamUnavailable(f"Failed to refresh cookies: {e}")
        logger.info(f"Cookies refreshed successfully ({len(bundle.cookies)} cookies)")
        return bundle


def _log_background_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error(f"Background cookie refresh failed: {error}")
