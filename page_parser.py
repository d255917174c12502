# page_parser.py
"""
Parsers for the Animepahe episode ("play") page.

Everything here is a pure function over HTML; no network access.
"""
import re
import logging
from typing import Dict, List, Optional

from bs4 import BeautifulSoup

from errors import NotFound
from models import DownloadLink, ExternalIds, ResolutionDescriptor

logger = logging.getLogger(__name__)

DOWNLOAD_SEPARATOR = '·'

# Meta tags carrying cross-reference ids: (model field, meta name, numeric)
EXTERNAL_ID_META = [
    ('animepahe_id', 'id', True),
    ('mal_id', 'anidb', True),
    ('anilist_id', 'anilist', True),
    ('anime_planet_id', 'anime-planet', True),
    ('ann_id', 'ann', True),
    ('anilist', 'anilist', False),
    ('anime_planet', 'anime-planet', False),
    ('ann', 'ann', False),
    ('kitsu', 'kitsu', False),
    ('myanimelist', 'myanimelist', False),
]


class PlayPage:
    """Parsed view of one fetched episode page."""

    def __init__(
        self,
        session: str,
        provider: str,
        title: Optional[str],
        episode: str,
        ids: ExternalIds,
        resolutions: List[ResolutionDescriptor],
        download_links: List[DownloadLink],
        is_bd: bool = False,
    ):
        self.session = session
        self.provider = provider
        self.title = title
        self.episode = episode
        self.ids = ids
        self.resolutions = resolutions
        self.download_links = download_links
        self.is_bd = is_bd


def get_js_variable(html: str, name: str) -> Optional[str]:
    """Value of an inline `var|let|const name = "..."` assignment."""
    if not html:
        return None
    pattern = r'(?:var|let|const)\s+' + re.escape(name) + r'\s*=\s*(["\'])(.*?)\1'
    match = re.search(pattern, html)
    if match:
        return match.group(2) or None
    return None


def parse_resolutions(soup: BeautifulSoup) -> List[ResolutionDescriptor]:
    resolutions = []
    for button in soup.select('#resolutionMenu button'):
        link = button.get('data-src')
        if not link:
            continue
        audio = button.get('data-audio') or ''
        resolutions.append(ResolutionDescriptor(
            url=link,
            resolution=button.get('data-resolution') or None,
            is_dub=audio.lower() == 'eng',
            fansub=button.get('data-fansub') or None,
        ))
    return resolutions


def parse_download_text(text: str) -> Dict[str, Optional[str]]:
    """
    Split a download button label into its parts.

    'SubsPlease · 1080p (350MB) eng' -> fansub SubsPlease, 1080p, 350MB, dub
    '720p (200MB)'                   -> no fansub, 720p, 200MB, sub
    Unparseable labels keep the whole text as the quality.
    """
    full_text = ' '.join(text.split())
    fansub = None
    rest = full_text
    if DOWNLOAD_SEPARATOR in full_text:
        head, _, rest = full_text.partition(DOWNLOAD_SEPARATOR)
        fansub = head.strip() or None
        rest = rest.strip()

    resolution_match = re.search(r'\b(\d{3,4})p\b', rest, re.IGNORECASE)
    size_match = re.search(r'\((\d+(?:\.\d+)?\s*[KMG]B)\)', rest, re.IGNORECASE)
    dub_match = re.search(r'\beng\b', rest, re.IGNORECASE)

    resolution = resolution_match.group(1) if resolution_match else None
    return {
        'fansub': fansub,
        'resolution': resolution,
        'quality': f"{resolution}p" if resolution else full_text,
        'filesize': size_match.group(1).replace(' ', '') if size_match else None,
        'is_dub': bool(dub_match),
    }


def parse_download_links(soup: BeautifulSoup) -> List[DownloadLink]:
    links = []
    for anchor in soup.select('#pickDownload a'):
        href = anchor.get('href')
        if not href:
            continue
        text = anchor.get_text(' ', strip=True)
        links.append(DownloadLink(url=href, text=text, **parse_download_text(text)))
    return links


def _meta_content(soup: BeautifulSoup, name: str) -> Optional[str]:
    tag = soup.find('meta', attrs={'name': name})
    if tag is None:
        return None
    content = (tag.get('content') or '').strip()
    return content or None


def _leading_int(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    match = re.match(r'\s*(\d+)', value)
    return int(match.group(1)) if match else None


def parse_external_ids(soup: BeautifulSoup) -> ExternalIds:
    values = {}
    for field, meta_name, numeric in EXTERNAL_ID_META:
        content = _meta_content(soup, meta_name)
        values[field] = _leading_int(content) if numeric else content
    return ExternalIds(**values)


def parse_title(soup: BeautifulSoup) -> Optional[str]:
    link = soup.select_one('.theatre-info h1 a')
    if link:
        title = link.get('title') or link.get_text(strip=True)
        if title:
            return title.strip()
    title_tag = soup.find('title')
    if title_tag and title_tag.text:
        # "<Title> Ep. 5 :: animepahe"
        return re.split(r'\s+Ep\.?\s*\d+|\s*::', title_tag.text.strip())[0].strip() or None
    return None


def parse_episode_number(soup: BeautifulSoup) -> str:
    menu = soup.select_one('.episode-menu #episodeMenu')
    if not menu:
        return ''
    return re.sub(r'\D', '', menu.get_text(strip=True))


def parse_play_page(html: str) -> PlayPage:
    session = get_js_variable(html, 'session')
    provider = get_js_variable(html, 'provider')
    if not session or not provider:
        logger.warning("Play page is missing session/provider tokens")
        raise NotFound("Episode not found")

    soup = BeautifulSoup(html, 'html.parser')
    is_bd = bool(soup.select_one('#resolutionMenu button[data-bluray="1"]'))
    page = PlayPage(
        session=session,
        provider=provider,
        title=parse_title(soup),
        episode=parse_episode_number(soup),
        ids=parse_external_ids(soup),
        resolutions=parse_resolutions(soup),
        download_links=parse_download_links(soup),
        is_bd=is_bd,
    )
    logger.debug(f"Parsed play page: {len(page.resolutions)} resolutions, {len(page.download_links)} downloads")
    return page
