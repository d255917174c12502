# transport.py
"""
HTTP transports used to talk to Animepahe and its embed host.

PlainTransport is an httpx client that replays the cached credential cookies
with a browser-like header set. ChallengeTransport wraps a cloudscraper
session, which can clear the JavaScript check in front of the embed host on
its own. Both return FetchResponse objects; redirects are returned as data
when follow_redirect is False.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional

import cloudscraper
import requests
from cloudscraper.exceptions import CloudflareException
from httpx import AsyncClient, AsyncHTTPTransport, RequestError, TimeoutException

from config import Settings
from errors import NotFound, UpstreamBlocked, UpstreamUnavailable

logger = logging.getLogger(__name__)


@dataclass
class FetchResponse:
    status_code: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""
    url: Optional[str] = None

    @property
    def location(self) -> Optional[str]:
        for key, value in self.headers.items():
            if key.lower() == "location":
                return value
        return None


def detect_block(status_code: int, body: str, markers: Iterable[str]) -> bool:
    """True when the response is an anti-bot page or a credential rejection."""
    if status_code in (401, 403):
        return True
    text = (body or "").lower()
    return any(marker.lower() in text for marker in markers)


def browser_headers(settings: Settings, referer: Optional[str] = None, xhr: bool = False) -> Dict[str, str]:
    headers = {
        "User-Agent": settings.user_agent,
        "Accept": "application/json, text/javascript, */*; q=0.01" if xhr
        else "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,image/apng,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Referer": referer or settings.get_url("home"),
        "DNT": "1",
        "sec-ch-ua": '"Not A(Brand";v="99", "Microsoft Edge";v="121", "Chromium";v="121"',
        "sec-ch-ua-mobile": "?0",
        "sec-ch-ua-platform": '"Windows"',
        "sec-fetch-dest": "empty" if xhr else "document",
        "sec-fetch-mode": "cors" if xhr else "navigate",
        "sec-fetch-site": "same-origin",
    }
    if xhr:
        headers["X-Requested-With"] = "XMLHttpRequest"
    else:
        headers["Upgrade-Insecure-Requests"] = "1"
    return headers


class PlainTransport:
    """Cookie-aware httpx transport."""

    def __init__(self, settings: Settings, client: Optional[AsyncClient] = None):
        self.settings = settings
        self._client = client
        # One pooled client per proxy; the proxy is drawn per request
        self._clients: Dict[Optional[str], AsyncClient] = {}

    def _get_client(self) -> AsyncClient:
        if self._client is not None:
            return self._client
        proxy = self.settings.get_random_proxy()
        if proxy not in self._clients:
            transport = AsyncHTTPTransport(retries=self.settings.max_retries, proxy=proxy)
            self._clients[proxy] = AsyncClient(
                transport=transport,
                headers={"User-Agent": self.settings.user_agent},
                timeout=self.settings.request_timeout,
            )
        if proxy:
            logger.debug(f"Using proxy: {proxy}")
        return self._clients[proxy]

    async def aclose(self) -> None:
        for client in self._clients.values():
            await client.aclose()
        self._clients.clear()

    async def request(
        self,
        method: str,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        cookie: Optional[str] = None,
        headers: Optional[Dict[str, str]] = None,
        follow_redirect: bool = True,
    ) -> FetchResponse:
        request_headers = dict(headers or browser_headers(self.settings))
        if cookie:
            request_headers["Cookie"] = cookie
        try:
            response = await self._get_client().request(
                method,
                url,
                params=params,
                data=data,
                headers=request_headers,
                follow_redirects=follow_redirect,
            )
        except TimeoutException as e:
            logger.error(f"Timeout while fetching {url}: {e}")
            raise UpstreamUnavailable(f"Timeout: {url}")
        except RequestError as e:
            logger.error(f"Network error while fetching {url}: {e}")
            raise UpstreamUnavailable(f"Network error: {str(e)}")
        return FetchResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=response.text,
            url=str(response.url),
        )

    async def get(self, url: str, **kwargs) -> FetchResponse:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> FetchResponse:
        return await self.request("POST", url, **kwargs)

    def check(self, response: FetchResponse, url: str) -> FetchResponse:
        """Map an upstream response onto the error taxonomy."""
        if detect_block(response.status_code, response.body, self.settings.challenge_markers):
            logger.warning(f"Anti-bot page or rejected cookies for {url} (HTTP {response.status_code})")
            raise UpstreamBlocked("DDoS-Guard authentication required, valid cookies required")
        if response.status_code == 404:
            raise NotFound("Resource not found")
        if response.status_code >= 400:
            raise UpstreamUnavailable(f"HTTP {response.status_code} from {url}")
        return response

    async def fetch_page(self, url: str, cookie: str, params: Optional[Dict[str, Any]] = None) -> str:
        if not cookie:
            raise UpstreamBlocked("DDoS-Guard authentication required")
        response = await self.get(url, params=params, cookie=cookie)
        return self.check(response, url).body

    async def fetch_api(self, url: str, cookie: str, params: Optional[Dict[str, Any]] = None) -> Any:
        if not cookie:
            raise UpstreamBlocked("DDoS-Guard authentication required")
        response = await self.get(
            url,
            params=params,
            cookie=cookie,
            headers=browser_headers(self.settings, xhr=True),
        )
        self.check(response, url)
        try:
            return json.loads(response.body)
        except ValueError as e:
            raise UpstreamUnavailable(f"Failed to parse JSON from {url}: {e}")


class ChallengeTransport:
    """cloudscraper-backed transport; blocking calls run in a worker thread."""

    def __init__(self, settings: Settings, scraper: Optional[requests.Session] = None):
        self.settings = settings
        self._scraper = scraper

    def _get_scraper(self) -> requests.Session:
        if self._scraper is None:
            self._scraper = cloudscraper.create_scraper(
                browser={"browser": "chrome", "platform": "windows", "desktop": True},
            )
            self._scraper.headers.update({"User-Agent": self.settings.user_agent})
        return self._scraper

    def _request(self, method: str, url: str, data, headers, cookie, follow_redirect) -> FetchResponse:
        request_headers = dict(headers or {})
        if cookie:
            request_headers["Cookie"] = cookie
        proxy = self.settings.get_random_proxy()
        response = self._get_scraper().request(
            method,
            url,
            data=data,
            headers=request_headers,
            proxies={"http": proxy, "https": proxy} if proxy else None,
            allow_redirects=follow_redirect,
            timeout=self.settings.request_timeout,
        )
        return FetchResponse(
            status_code=response.status_code,
            headers=dict(response.headers),
            body=response.text,
            url=response.url,
        )

    async def request(
        self,
        method: str,
        url: str,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        cookie: Optional[str] = None,
        follow_redirect: bool = True,
    ) -> FetchResponse:
        try:
            return await asyncio.to_thread(self._request, method, url, data, headers, cookie, follow_redirect)
        except requests.Timeout as e:
            logger.error(f"Timeout while fetching {url}: {e}")
            raise UpstreamUnavailable(f"Timeout: {url}")
        except (requests.RequestException, CloudflareException) as e:
            logger.error(f"Challenge transport failed for {url}: {e}")
            raise UpstreamUnavailable(f"Network error: {str(e)}")

    async def get(self, url: str, **kwargs) -> FetchResponse:
        return await self.request("GET", url, **kwargs)

    async def post(self, url: str, **kwargs) -> FetchResponse:
        return await self.request("POST", url, **kwargs)
