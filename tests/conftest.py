import os
import sys

import pytest

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Settings

PLAY_PAGE_HTML = """
<html>
<head>
<title>Sousou no Frieren Ep. 5 :: animepahe</title>
<meta name="id" content="5648">
<meta name="anidb" content="17617">
<meta name="anilist" content="154587">
<meta name="anime-planet" content="frieren-beyond-journeys-end">
<meta name="ann" content="27101">
<meta name="kitsu" content="46474">
<meta name="myanimelist" content="52991">
</head>
<body>
<div class="theatre-info"><h1><a href="/anime/frieren" title="Sousou no Frieren">Sousou no Frieren</a></h1></div>
<div class="episode-menu"><button id="episodeMenu">Episode 5</button></div>
<div id="resolutionMenu">
  <button data-src="https://kwik.cx/e/aaa" data-resolution="360" data-audio="jpn" data-fansub="SubsPlease">SubsPlease · 360p</button>
  <button data-src="https://kwik.cx/e/bbb" data-resolution="1080" data-audio="jpn" data-fansub="SubsPlease">SubsPlease · 1080p</button>
  <button data-src="https://kwik.cx/e/ccc" data-resolution="1080" data-audio="eng" data-fansub="Yameii">Yameii · 1080p eng</button>
</div>
<div id="pickDownload">
  <a href="https://pahe.win/a1">SubsPlease · 360p (52MB)</a>
  <a href="https://pahe.win/b2">SubsPlease · 1080p (350MB)</a>
  <a href="https://pahe.win/c3">Yameii · 1080p (340MB) <span>eng</span></a>
</div>
<script>let session = "ep-session-123"; let provider = "kwik";</script>
</body>
</html>
"""


def embed_html(manifest: str) -> str:
    """A kwik embed page with the manifest in a plain script literal."""
    return (
        "<!DOCTYPE html><html><head><title>kwik</title></head><body>"
        "<video id='player' controls></video>"
        f"<script>const source='{manifest}';</script>"
        "</body></html>"
    )


@pytest.fixture
def settings(tmp_path):
    return Settings(
        cookies_path=str(tmp_path / "cookies.json"),
        batch_delay=0,
        challenge_timeout=1,
        navigation_timeout=1,
    )


@pytest.fixture
def play_page_html():
    return PLAY_PAGE_HTML
