# scraper.py
"""
Scraper for animepahe episode pages and their kwik embeds.

The flow for one episode:
- fetch the play page with the stored DDoS-Guard cookies (one refresh + retry on a block)
- parse session/provider tokens, resolution buttons and download buttons
- resolve every unique embed URL in small concurrent batches, trying each
  fetch strategy in order until the sandbox finds a manifest
- attach direct download URLs to the download buttons that match a source

A failing embed only loses its own sources; the episode is still returned.
"""
import asyncio
import json
import logging
import re
import time
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlencode, urljoin

from bs4 import BeautifulSoup

from browser import BrowserService
from config import Settings, get_settings
from errors import ExtractionFailed, InvalidRequest, NotFound, ScraperError, UpstreamBlocked, UpstreamUnavailable
from models import DirectDownload, DownloadLink, PlayInfo, ResolutionDescriptor, SourceResult
from page_parser import PlayPage, parse_play_page
from sandbox import ScriptSandbox
from session import SessionManager
from transport import ChallengeTransport, PlainTransport, browser_headers, detect_block
from url_converter import build_download_url

logger = logging.getLogger(__name__)

MIN_EMBED_LENGTH = 100


class ResolveState(Enum):
    FETCH_PAGE = "fetch_page"
    PARSE = "parse"
    RESOLVE_SOURCES = "resolve_sources"
    HYDRATE_DOWNLOADS = "hydrate_downloads"
    DONE = "done"
    FAILED = "failed"


class EmbedCookieCache:
    """Cookies captured by a browser embed fetch, reused for a short while."""

    def __init__(self, ttl: float, clock=time.time):
        self.ttl = ttl
        self.clock = clock
        self._header: Optional[str] = None
        self._captured_at = 0.0

    def store(self, cookies: List[Dict[str, str]]) -> None:
        header = "; ".join(f"{c['name']}={c['value']}" for c in cookies if c.get("name"))
        if header:
            self._header = header
            self._captured_at = self.clock()

    def get(self) -> Optional[str]:
        if self._header is None:
            return None
        if self.clock() - self._captured_at >= self.ttl:
            logger.info("Cached embed cookies expired, discarding")
            self._header = None
            return None
        return self._header

    @property
    def is_fresh(self) -> bool:
        return self.get() is not None


# Embed fetch strategies, tried in order by Animepahe.resolve_embed

class FetchStrategy:
    name = "base"

    def available(self) -> bool:
        return True

    async def fetch(self, url: str) -> str:
        raise NotImplementedError


class CachedCookieStrategy(FetchStrategy):
    """Plain request replaying the cookies of an earlier browser embed fetch."""
    name = "cached-cookies"

    def __init__(self, transport: PlainTransport, cache: EmbedCookieCache, referer: str):
        self.transport = transport
        self.cache = cache
        self.referer = referer

    def available(self) -> bool:
        return self.cache.is_fresh

    async def fetch(self, url: str) -> str:
        response = await self.transport.get(
            url, cookie=self.cache.get(), headers=browser_headers(self.transport.settings, referer=self.referer)
        )
        return response.body


class PlainStrategy(FetchStrategy):
    name = "plain"

    def __init__(self, transport: PlainTransport, referer: str):
        self.transport = transport
        self.referer = referer

    async def fetch(self, url: str) -> str:
        response = await self.transport.get(url, headers=browser_headers(self.transport.settings, referer=self.referer))
        return response.body


class ChallengeStrategy(FetchStrategy):
    name = "challenge"

    def __init__(self, transport: ChallengeTransport, referer: str):
        self.transport = transport
        self.referer = referer

    async def fetch(self, url: str) -> str:
        response = await self.transport.get(url, headers=browser_headers(self.transport.settings, referer=self.referer))
        return response.body


class BrowserStrategy(FetchStrategy):
    """Last resort: render the embed in Chromium and keep its cookies."""
    name = "browser"

    def __init__(self, browser: BrowserService, cache: EmbedCookieCache, referer: str):
        self.browser = browser
        self.cache = cache
        self.referer = referer

    async def fetch(self, url: str) -> str:
        html, cookies = await self.browser.fetch_embed(url, referer=self.referer)
        self.cache.store(cookies)
        return html


def dedupe_resolutions(resolutions: List[ResolutionDescriptor]) -> List[ResolutionDescriptor]:
    """Keep the first descriptor per embed URL."""
    seen = set()
    unique = []
    for descriptor in resolutions:
        if descriptor.url in seen:
            logger.info(f"Skipping duplicate URL: {descriptor.url}")
            continue
        seen.add(descriptor.url)
        unique.append(descriptor)
    return unique


def _normalize(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def source_key(resolution: Optional[str], fansub: Optional[str], is_dub: bool) -> Tuple[str, str, bool]:
    return (re.sub(r"\D", "", resolution or ""), _normalize(fansub), bool(is_dub))


def hydrate_downloads(downloads: List[DownloadLink], sources: List[SourceResult]) -> List[DownloadLink]:
    """Fill in direct URLs from already-resolved sources; unmatched entries stay None."""
    by_key = {}
    for source in sources:
        if source.download_url:
            by_key.setdefault(source_key(source.resolution, source.fansub, source.is_dub), source.download_url)
    hydrated = []
    for link in downloads:
        direct = by_key.get(source_key(link.resolution, link.fansub, link.is_dub))
        hydrated.append(link.model_copy(update={"download": direct}) if direct else link)
    return hydrated


def find_kwik_link(body: str, kwik_domain: str) -> Optional[str]:
    """Locate the file-host link on a download redirect page."""
    domain = re.escape(kwik_domain)
    patterns = [
        r'href\s*:\s*["\']([^"\']*' + domain + r'[^"\']*)["\']',
        r'href["\']\s*,\s*["\']([^"\']*' + domain + r'[^"\']*)["\']',
        r'href\s*=\s*["\']([^"\']*' + domain + r'[^"\']*)["\']',
        r'["\'](https?://[^"\']*' + domain + r'[^"\']*)["\']',
    ]
    for pattern in patterns:
        match = re.search(pattern, body, re.IGNORECASE)
        if match:
            link = match.group(1)
            if link.startswith("//"):
                link = "https:" + link
            elif not link.startswith("http"):
                link = f"https://{kwik_domain}/{link.lstrip('/')}"
            return link
    return None


def find_redirect(body: str) -> Optional[str]:
    meta_match = re.search(r'<meta[^>]*http-equiv=["\']refresh["\'][^>]*content=["\'][^"\']*url=([^"\']+)["\']', body, re.IGNORECASE)
    if meta_match:
        return meta_match.group(1)
    js_match = re.search(r'window\.location(?:\.href)?\s*=\s*["\']([^"\']+)["\']', body, re.IGNORECASE)
    if js_match:
        return js_match.group(1)
    return None


def parse_json_document(html: str) -> Any:
    """JSON payload of a browser-rendered API response."""
    soup = BeautifulSoup(html, "html.parser")
    container = soup.find("pre") or soup.find("body")
    text = container.get_text() if container else html
    try:
        return json.loads(text.strip())
    except ValueError as e:
        raise UpstreamUnavailable(f"Failed to parse JSON: {e}")


class Animepahe:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        plain: Optional[PlainTransport] = None,
        challenge: Optional[ChallengeTransport] = None,
        browser: Optional[BrowserService] = None,
        sandbox: Optional[ScriptSandbox] = None,
        session: Optional[SessionManager] = None,
        strategies: Optional[List[FetchStrategy]] = None,
        clock=time.time,
    ):
        self.settings = settings or get_settings()
        self.plain = plain or PlainTransport(self.settings)
        self.challenge = challenge or ChallengeTransport(self.settings)
        self.browser = browser or BrowserService(self.settings)
        self.sandbox = sandbox or ScriptSandbox(self.settings.sandbox_timeout_ms)
        self.session = session or SessionManager(self.settings, self.browser.harvest_cookies, clock=clock)
        self.embed_cookies = EmbedCookieCache(self.settings.embed_cookie_ttl, clock=clock)
        self.form_submit_delay = 2.0

        referer = self.settings.get_url("home")
        self.strategies = strategies if strategies is not None else [
            CachedCookieStrategy(self.plain, self.embed_cookies, referer),
            PlainStrategy(self.plain, referer),
            ChallengeStrategy(self.challenge, referer),
            BrowserStrategy(self.browser, self.embed_cookies, referer),
        ]

    async def stop(self) -> None:
        await self.plain.aclose()
        await self.browser.stop()

    # Animepahe pages and API

    async def fetch_with_session(
        self,
        url: str,
        params: Optional[Dict[str, Any]] = None,
        user_cookies: Optional[str] = None,
        as_json: bool = False,
    ) -> Any:
        """Fetch with stored cookies; on a block refresh them once and retry once."""
        user_cookies = user_cookies if user_cookies is not None else self.settings.cookies
        cookie = await self.session.ensure_fresh(user_cookies)
        fetch = self.plain.fetch_api if as_json else self.plain.fetch_page
        try:
            return await fetch(url, cookie, params=params)
        except UpstreamBlocked:
            if user_cookies:
                raise
            logger.info(f"Blocked fetching {url}, refreshing cookies and retrying once")

        await self.session.force_refresh()
        cookie = await self.session.ensure_fresh()
        try:
            return await fetch(url, cookie, params=params)
        except UpstreamBlocked as e:
            logger.error(f"Still blocked after cookie refresh: {url}")
            raise UpstreamUnavailable(f"Blocked after cookie refresh: {e.detail}")

    async def fetch_api_data(self, params: Dict[str, Any], user_cookies: Optional[str] = None) -> Any:
        url = self.settings.get_url("api")
        try:
            return await self.fetch_with_session(url, params=params, user_cookies=user_cookies, as_json=True)
        except UpstreamUnavailable as e:
            logger.warning(f"API fetch failed ({e.detail}), falling back to browser")
        html = await self.browser.fetch_rendered_html(f"{url}?{urlencode(params)}", wait="json")
        return parse_json_document(html)

    async def get_airing(self, page: int = 1, user_cookies: Optional[str] = None) -> Any:
        return await self.fetch_api_data({"m": "airing", "page": page}, user_cookies)

    async def search(self, query: str, page: int = 1, user_cookies: Optional[str] = None) -> Any:
        if not query or not query.strip():
            raise InvalidRequest("Search query is required")
        return await self.fetch_api_data({"m": "search", "q": query.strip(), "page": page}, user_cookies)

    async def get_queue(self, user_cookies: Optional[str] = None) -> Any:
        return await self.fetch_api_data({"m": "queue"}, user_cookies)

    async def get_releases(self, anime_id: str, sort: str = "episode_desc", page: int = 1,
                           user_cookies: Optional[str] = None) -> Any:
        if not anime_id:
            raise InvalidRequest("Anime ID is required")
        return await self.fetch_api_data({"m": "release", "id": anime_id, "sort": sort, "page": page}, user_cookies)

    async def fetch_play_page(self, anime_id: str, episode_id: str) -> str:
        url = self.settings.get_url("play", anime_id, episode_id)
        try:
            return await self.fetch_with_session(url)
        except NotFound:
            raise NotFound("Anime or episode not found")
        except UpstreamUnavailable as e:
            logger.warning(f"Play page fetch failed ({e.detail}), trying browser")
        try:
            html = await self.browser.fetch_rendered_html(url, selector="#resolutionMenu")
        except UpstreamUnavailable:
            raise UpstreamUnavailable("Failed to fetch play page")
        if detect_block(200, html, self.settings.challenge_markers):
            raise UpstreamUnavailable("Failed to fetch play page: still blocked")
        return html

    # Embed resolution

    def _is_usable_embed(self, html: Optional[str]) -> bool:
        if not html or len(html) <= MIN_EMBED_LENGTH:
            return False
        return not detect_block(200, html, self.settings.challenge_markers)

    async def resolve_embed(self, descriptor: ResolutionDescriptor, page: Optional[PlayPage] = None) -> List[SourceResult]:
        """Try each fetch strategy in order until the sandbox finds a manifest."""
        for strategy in self.strategies:
            if not strategy.available():
                continue
            try:
                html = await strategy.fetch(descriptor.url)
            except ScraperError as e:
                logger.warning(f"Strategy {strategy.name} failed for {descriptor.url}: {e.detail}")
                continue
            if not self._is_usable_embed(html):
                logger.info(f"Strategy {strategy.name} returned a blocked or empty page for {descriptor.url}")
                continue
            manifest = self.sandbox.find_manifest(html)
            if not manifest:
                logger.info(f"Strategy {strategy.name} page held no manifest for {descriptor.url}")
                continue
            logger.info(f"Strategy {strategy.name} succeeded for {descriptor.resolution}p")
            return [self._source_result(manifest, descriptor, page)]
        raise ExtractionFailed(f"All embed strategies failed for {descriptor.url}")

    def _source_result(self, manifest: str, descriptor: ResolutionDescriptor, page: Optional[PlayPage]) -> SourceResult:
        download_url = build_download_url(
            manifest,
            self.settings.kwik_domain,
            anime_title=page.title if page else None,
            episode=page.episode if page else None,
            resolution=descriptor.resolution,
            fansub=descriptor.fansub,
            is_dub=descriptor.is_dub,
            is_bd=page.is_bd if page else False,
        )
        return SourceResult(
            url=manifest,
            is_m3u8=".m3u8" in manifest,
            resolution=descriptor.resolution,
            is_dub=descriptor.is_dub,
            fansub=descriptor.fansub,
            download_url=download_url,
        )

    async def _resolve_safely(self, descriptor: ResolutionDescriptor, page: Optional[PlayPage]) -> List[SourceResult]:
        try:
            return await self.resolve_embed(descriptor, page)
        except Exception as e:
            logger.error(f"Failed to scrape iframe for {descriptor.url}: {e}")
            return []

    async def resolve_sources(
        self, resolutions: List[ResolutionDescriptor], page: Optional[PlayPage] = None
    ) -> List[List[SourceResult]]:
        """One result list per unique embed URL; failed embeds give an empty list."""
        unique = dedupe_resolutions(resolutions)
        batch_size = max(1, self.settings.batch_size)
        logger.info(f"Processing {len(unique)} unique embeds in batches of {batch_size}")

        results: List[List[SourceResult]] = []
        for start in range(0, len(unique), batch_size):
            batch = unique[start:start + batch_size]
            results.extend(await asyncio.gather(*[self._resolve_safely(item, page) for item in batch]))
            if start + batch_size < len(unique):
                delay = self.settings.batch_delay / 2 if self.embed_cookies.is_fresh else self.settings.batch_delay
                await asyncio.sleep(delay)

        logger.info(f"Processed {sum(1 for r in results if r)}/{len(results)} resolution sources")
        return results

    async def get_streaming_links(self, anime_id: str, episode_id: str, include_downloads: bool = True) -> PlayInfo:
        if not anime_id or not episode_id:
            raise InvalidRequest("Both id and episodeId are required")

        tag = f"{anime_id}/{episode_id}"
        state = ResolveState.FETCH_PAGE
        try:
            logger.info(f"[{tag}] {state.name}")
            html = await self.fetch_play_page(anime_id, episode_id)
            state = ResolveState.PARSE
            logger.info(f"[{tag}] {state.name}")
            page = parse_play_page(html)
        except ScraperError as e:
            logger.error(f"[{tag}] {ResolveState.FAILED.name}({state.name}): {e.detail}")
            raise

        state = ResolveState.RESOLVE_SOURCES
        logger.info(f"[{tag}] {state.name}: {len(page.resolutions)} resolutions")
        per_item = await self.resolve_sources(page.resolutions, page)
        sources = [source for item in per_item for source in item]

        download_links: List[DownloadLink] = []
        if include_downloads:
            state = ResolveState.HYDRATE_DOWNLOADS
            logger.info(f"[{tag}] {state.name}: {len(page.download_links)} download links")
            download_links = hydrate_downloads(page.download_links, sources)

        logger.info(f"[{tag}] {ResolveState.DONE.name}: {len(sources)} sources")
        return PlayInfo(
            ids=page.ids,
            title=page.title,
            session=page.session,
            provider=page.provider,
            episode=page.episode,
            sources=sources,
            download_links=download_links,
        )

    # Download buttons

    async def get_download_link(self, url: str) -> DirectDownload:
        """Follow a download button (pahe.win) through kwik's form to the file URL."""
        if not url:
            raise InvalidRequest("Url is required")
        referer = self.settings.get_url("home")
        headers = browser_headers(self.settings, referer=referer)

        landing = await self.challenge.get(url, headers=headers)
        kwik_url = find_kwik_link(landing.body, self.settings.kwik_domain)
        if kwik_url:
            logger.info(f"Found kwik URL: {kwik_url}")
        else:
            logger.info("No kwik URL on download page, using it directly")
        target = kwik_url or url

        page = landing if target == url else await self.challenge.get(target, headers=headers)
        form = self.sandbox.extract_download_form(page.body)
        if not form:
            raise ExtractionFailed("Could not extract form action or token")
        action, token = form
        action = urljoin(target, action)
        logger.info(f"Extracted download form action: {action}")

        await asyncio.sleep(self.form_submit_delay)
        post_headers = dict(headers)
        post_headers.update({
            "Content-Type": "application/x-www-form-urlencoded",
            "Origin": f"https://{self.settings.kwik_domain}",
            "Referer": target,
        })
        response = await self.challenge.post(action, data={"_token": token}, headers=post_headers, follow_redirect=False)

        if response.status_code in (301, 302, 303, 307, 308) and response.location:
            download_url = response.location
        elif response.status_code == 200:
            download_url = find_redirect(response.body)
        else:
            download_url = None
        if not download_url:
            logger.error(f"Download form returned HTTP {response.status_code} without a redirect")
            raise UpstreamUnavailable("Could not extract download URL")

        return DirectDownload(url=url, download_url=download_url, resolved_url=kwik_url)
