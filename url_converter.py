# url_converter.py
"""
Turn kwik HLS manifest URLs into direct mp4 download URLs.

    https://vault-14.owocdn.top/stream/14/04/<hash>/uwu.m3u8
        -> https://vault-14.kwik.cx/mp4/14/04/<hash>?file=AnimePahe_..._1080p_SubsPlease.mp4
"""
import logging
import re
from typing import Optional
from urllib.parse import quote, urlsplit, urlunsplit

logger = logging.getLogger(__name__)

SHARD_PREFIX = "vault-"


def get_mp4_url(m3u8_url: str, kwik_domain: str) -> Optional[str]:
    """Rewrite a /stream/.../*.m3u8 URL onto the file host. Anything else gives None."""
    if not m3u8_url or not kwik_domain or '/stream/' not in m3u8_url:
        return None
    try:
        parts = urlsplit(m3u8_url)
        if parts.scheme not in ('http', 'https') or not parts.hostname:
            return None
        path = parts.path
        if not path.startswith('/stream/') or not path.endswith('.m3u8'):
            return None
        # Drop the manifest filename (usually uwu.m3u8), keep the directory
        rest = path[len('/stream/'):].rpartition('/')[0].rstrip('/')
        if not rest:
            return None
        path = '/mp4/' + rest

        shard = parts.hostname.split('.')[0]
        host = f"{shard}.{kwik_domain}" if shard.startswith(SHARD_PREFIX) else kwik_domain
        return urlunsplit((parts.scheme, host, path, '', ''))
    except ValueError as e:
        logger.error(f"Error converting stream URL {m3u8_url}: {e}")
        return None


def get_filename(
    anime_title: Optional[str],
    episode: Optional[str],
    resolution: Optional[str],
    fansub: Optional[str],
    is_dub: bool = False,
    is_bd: bool = False,
) -> str:
    """Format: AnimePahe_{Title}[_Eng_Dub]_-_{Episode}[_BD][_{Resolution}p][_{Fansub}].mp4"""
    if not anime_title:
        return 'video.mp4'

    safe_title = re.sub(r'[^a-z0-9]+', '_', anime_title, flags=re.IGNORECASE)
    dub_str = '_Eng_Dub' if is_dub else ''
    bd_str = '_BD' if is_bd else ''
    res_str = f"_{resolution}p" if resolution else ''
    fansub_str = f"_{fansub}" if fansub else ''
    ep_str = episode or '0'

    return f"AnimePahe_{safe_title}{dub_str}_-_{ep_str}{bd_str}{res_str}{fansub_str}.mp4"


def build_download_url(
    m3u8_url: str,
    kwik_domain: str,
    anime_title: Optional[str] = None,
    episode: Optional[str] = None,
    resolution: Optional[str] = None,
    fansub: Optional[str] = None,
    is_dub: bool = False,
    is_bd: bool = False,
) -> Optional[str]:
    mp4_url = get_mp4_url(m3u8_url, kwik_domain)
    if not mp4_url:
        return None
    filename = get_filename(anime_title, episode, resolution, fansub, is_dub, is_bd)
    return f"{mp4_url}?file={quote(filename)}"
