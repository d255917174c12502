# config.py
"""
Runtime configuration for the Animepahe scraper API.

Values are read from environment variables (a local .env file is loaded first)
and exposed through a single Settings object. Serverless deployments get
shorter timeouts and sequential embed resolution.
"""
import os
import random
import logging
import tempfile
from functools import lru_cache
from typing import List, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"

# Phrases that identify an anti-bot interstitial in a response body
DEFAULT_CHALLENGE_MARKERS = [
    "ddos-guard",
    "checking your browser",
    "just a moment",
    "ddos protection",
]

# DOM selectors checked by the browser while a challenge is running
DEFAULT_CHALLENGE_SELECTORS = [
    "#ddg-cookie",
    "#cf-challenge-running",
    ".cf-challenge-form",
    "[id*='challenge']",
]

SERVERLESS_ENV_VARS = ("VERCEL", "NETLIFY", "AWS_LAMBDA_FUNCTION_NAME")


def _split_list(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def is_valid_cookie_header(value: str) -> bool:
    """A cookie header looks like `a=b` or `a=b; c=d`."""
    if not value or "=" not in value:
        return False
    return all("=" in part for part in value.split(";") if part.strip())


def is_valid_proxy(proxy: str) -> bool:
    candidate = proxy if proxy.startswith("http") else f"http://{proxy}"
    try:
        parsed = urlparse(candidate)
        return bool(parsed.hostname) and parsed.port is not None
    except ValueError:
        return False


class Settings(BaseModel):
    base_url: str = Field("https://animepahe.si", description="Target site root")
    user_agent: str = Field(DEFAULT_USER_AGENT, description="User-Agent sent by every transport")
    kwik_domain: str = Field("kwik.cx", description="File host used for direct mp4 links")
    cookies: Optional[str] = Field(None, description="Manual cookie override")
    proxies: List[str] = Field(default_factory=list, description="host:port proxies")
    proxy_enabled: bool = Field(False, description="Route requests through a random proxy")
    cookies_path: str = Field(os.path.join(tempfile.gettempdir(), "cookies.json"), description="Credential bundle file")
    cookie_refresh_days: float = Field(14, description="Credential bundle lifetime in days")
    is_serverless: bool = Field(False, description="Running on a serverless platform")
    request_timeout: float = Field(30.0, description="HTTP timeout in seconds")
    challenge_timeout: float = Field(30.0, description="Bounded wait for a challenge to clear, seconds")
    navigation_timeout: float = Field(60.0, description="Browser navigation timeout, seconds")
    max_retries: int = Field(3, description="Transport-level connection retries")
    batch_size: int = Field(3, description="Embed pages resolved concurrently")
    batch_delay: float = Field(0.5, description="Pause between embed batches, seconds")
    sandbox_timeout_ms: int = Field(2000, description="Script sandbox wall-clock budget")
    embed_cookie_ttl: float = Field(30 * 60, description="Lifetime of cookies captured from a browser embed fetch")
    challenge_markers: List[str] = Field(default_factory=lambda: list(DEFAULT_CHALLENGE_MARKERS))
    challenge_selectors: List[str] = Field(default_factory=lambda: list(DEFAULT_CHALLENGE_SELECTORS))
    allowed_origins: List[str] = Field(default_factory=lambda: ["*"])

    @property
    def refresh_interval(self) -> float:
        return self.cookie_refresh_days * 24 * 60 * 60

    def get_url(self, section: str, primary: str = "", secondary: str = "") -> str:
        paths = {
            "home": "/",
            "api": "/api",
            "queue": "/queue",
            "anime_info": f"/anime/{primary}",
            "anime_list": f"/anime/{primary}/{secondary}" if primary and secondary else "/anime",
            "play": f"/play/{primary}/{secondary}",
        }
        if section not in paths:
            raise ValueError(f"Invalid section: {section}")
        return f"{self.base_url.rstrip('/')}{paths[section]}"

    def get_random_proxy(self) -> Optional[str]:
        if not self.proxy_enabled or not self.proxies:
            return None
        proxy = random.choice(self.proxies)
        return proxy if proxy.startswith("http") else f"http://{proxy}"


def load_settings(env_file: Optional[str] = None) -> Settings:
    """Build Settings from the environment."""
    load_dotenv(env_file)
    env = os.environ
    serverless = any(env.get(name) for name in SERVERLESS_ENV_VARS)

    values = {
        "is_serverless": serverless,
        "request_timeout": 10.0 if serverless else 30.0,
        "challenge_timeout": 10.0 if serverless else 30.0,
        "navigation_timeout": 30.0 if serverless else 60.0,
        "max_retries": 1 if serverless else 3,
        # One embed at a time on serverless, with a longer pause between them
        "batch_size": 1 if serverless else 3,
        "batch_delay": 2.0 if serverless else 0.5,
    }

    if env.get("BASE_URL"):
        values["base_url"] = env["BASE_URL"].rstrip("/")
    if env.get("USER_AGENT"):
        values["user_agent"] = env["USER_AGENT"]
    if env.get("KWIK_DOMAIN"):
        values["kwik_domain"] = env["KWIK_DOMAIN"]
    if env.get("COOKIES_PATH"):
        values["cookies_path"] = env["COOKIES_PATH"]
    if env.get("COOKIE_REFRESH_DAYS"):
        try:
            values["cookie_refresh_days"] = float(env["COOKIE_REFRESH_DAYS"])
        except ValueError:
            logger.warning(f"Ignoring invalid COOKIE_REFRESH_DAYS: {env['COOKIE_REFRESH_DAYS']}")

    cookies = env.get("COOKIES", "").strip()
    if cookies:
        if is_valid_cookie_header(cookies):
            logger.info("Using cookies from environment variables")
            values["cookies"] = cookies
        else:
            logger.warning("Invalid cookie format in environment variables")

    proxies = _split_list(env.get("PROXIES"))
    valid_proxies = [proxy for proxy in proxies if is_valid_proxy(proxy)]
    if proxies and not valid_proxies:
        logger.warning("No valid proxies found in environment variables")
    values["proxies"] = valid_proxies
    values["proxy_enabled"] = env.get("USE_PROXY", "").lower() == "true"
    if values["proxy_enabled"] and not valid_proxies:
        logger.warning("Proxy usage is enabled but no valid proxies are configured")

    markers = _split_list(env.get("CHALLENGE_MARKERS"))
    if markers:
        values["challenge_markers"] = [marker.lower() for marker in markers]
    selectors = _split_list(env.get("CHALLENGE_SELECTORS"))
    if selectors:
        values["challenge_selectors"] = selectors
    origins = _split_list(env.get("ALLOWED_ORIGINS"))
    if origins:
        values["allowed_origins"] = origins

    return Settings(**values)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = load_settings()
    logger.info(f"Configuration loaded for {settings.base_url} (serverless={settings.is_serverless})")
    return settings
