"""Tests for the play page parser."""
import pytest
from bs4 import BeautifulSoup

from errors import NotFound
from page_parser import (
    get_js_variable,
    parse_download_text,
    parse_play_page,
    parse_resolutions,
)


class TestJsVariables:
    def test_reads_let_var_and_const(self):
        html = "<script>var a = 'x'; let b = \"y\"; const c='z';</script>"
        assert get_js_variable(html, 'a') == 'x'
        assert get_js_variable(html, 'b') == 'y'
        assert get_js_variable(html, 'c') == 'z'

    def test_missing_variable(self):
        assert get_js_variable("<script>let other = 'x';</script>", 'session') is None
        assert get_js_variable('', 'session') is None


class TestDownloadText:
    def test_full_label(self):
        parsed = parse_download_text('SubsPlease · 1080p (350MB) eng')
        assert parsed == {
            'fansub': 'SubsPlease',
            'resolution': '1080',
            'quality': '1080p',
            'filesize': '350MB',
            'is_dub': True,
        }

    def test_label_without_fansub(self):
        parsed = parse_download_text('720p (200 MB)')
        assert parsed['fansub'] is None
        assert parsed['resolution'] == '720'
        assert parsed['filesize'] == '200MB'
        assert parsed['is_dub'] is False

    def test_unparseable_label_keeps_text(self):
        parsed = parse_download_text('Download  now')
        assert parsed['resolution'] is None
        assert parsed['quality'] == 'Download now'
        assert parsed['filesize'] is None


class TestPlayPage:
    def test_parses_tokens_and_metadata(self, play_page_html):
        page = parse_play_page(play_page_html)

        assert page.session == 'ep-session-123'
        assert page.provider == 'kwik'
        assert page.title == 'Sousou no Frieren'
        assert page.episode == '5'
        assert page.is_bd is False

    def test_external_ids(self, play_page_html):
        ids = parse_play_page(play_page_html).ids

        assert ids.animepahe_id == 5648
        assert ids.mal_id == 17617
        assert ids.anilist_id == 154587
        assert ids.anime_planet_id is None
        assert ids.anime_planet == 'frieren-beyond-journeys-end'
        assert ids.kitsu == '46474'
        assert ids.myanimelist == '52991'

    def test_resolutions(self, play_page_html):
        resolutions = parse_play_page(play_page_html).resolutions

        assert [r.url for r in resolutions] == [
            'https://kwik.cx/e/aaa', 'https://kwik.cx/e/bbb', 'https://kwik.cx/e/ccc'
        ]
        assert resolutions[1].resolution == '1080'
        assert resolutions[1].fansub == 'SubsPlease'
        assert resolutions[1].is_dub is False
        assert resolutions[2].is_dub is True

    def test_download_links(self, play_page_html):
        links = parse_play_page(play_page_html).download_links

        assert len(links) == 3
        assert links[0].url == 'https://pahe.win/a1'
        assert links[0].quality == '360p'
        assert links[0].filesize == '52MB'
        assert links[2].fansub == 'Yameii'
        assert links[2].is_dub is True
        assert all(link.download is None for link in links)

    def test_buttons_without_src_are_skipped(self):
        soup = BeautifulSoup(
            '<div id="resolutionMenu"><button data-resolution="720">x</button>'
            '<button data-src="https://kwik.cx/e/1" data-resolution="720">y</button></div>',
            'html.parser',
        )
        assert [r.url for r in parse_resolutions(soup)] == ['https://kwik.cx/e/1']

    def test_missing_tokens_is_not_found(self):
        with pytest.raises(NotFound):
            parse_play_page('<html><body><div id="resolutionMenu"></div></body></html>')

    def test_title_falls_back_to_title_tag(self):
        html = '<title>Dandadan Ep. 3 :: animepahe</title><script>var session="s"; var provider="kwik";</script>'
        assert parse_play_page(html).title == 'Dandadan'

    def test_bluray_flag(self):
        html = (
            '<script>var session="s"; var provider="kwik";</script>'
            '<div id="resolutionMenu"><button data-src="https://kwik.cx/e/1" data-bluray="1"></button></div>'
        )
        assert parse_play_page(html).is_bd is True
