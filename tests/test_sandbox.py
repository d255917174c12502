"""Tests for manifest and download-form extraction from embed scripts."""
from unittest.mock import MagicMock, patch

import sandbox
from sandbox import ScriptSandbox, find_manifest_in_text, inline_scripts

MANIFEST = "https://vault-12.owocdn.top/stream/12/03/deadbeef/uwu.m3u8"

# Builds the manifest from fragments so no literal URL appears in the page
OBFUSCATED_HLS = """
eval("var a='https://vault-12.owocdn.top/stream/12/03/'; var b='deadbeef/uwu.'; var c='m3u8';"
     + "var hls = new Hls(); hls.loadSource(a + b + c); hls.attachMedia(document.querySelector('video'));")
"""

OBFUSCATED_PLYR = """
eval(function () {
    var parts = ['https:', '', 'vault-12.owocdn.top', 'stream', '12', '03', 'deadbeef', 'uwu.' + 'm3u8'];
    return "new Plyr(document.getElementById('player'), {sources: [{src: '" + parts.join('/') + "', type: 'application/x-mpegURL'}]});";
}())
"""

OBFUSCATED_VIDEO_SRC = """
eval("document.querySelector('video').src = ['https://vault-12.owocdn.top', 'stream/12/03/deadbeef', 'uwu.m3u8'].join('/');")
"""


def page(*scripts, extra=""):
    blocks = "".join(f"<script>{script}</script>" for script in scripts)
    return f"<html><body><video id='player'></video>{extra}{blocks}</body></html>"


class TestHelpers:
    def test_find_manifest_in_text(self):
        assert find_manifest_in_text(f"const source='{MANIFEST}';") == MANIFEST
        assert find_manifest_in_text("nothing here") is None
        assert find_manifest_in_text(None) is None

    def test_inline_scripts_skip_external(self):
        html = "<script src='/plyr.js'></script><script>var a = 1;</script>"
        assert inline_scripts(html) == ["var a = 1;"]


class TestFindManifest:
    def test_plain_literal(self):
        assert ScriptSandbox().find_manifest(page(f"const source='{MANIFEST}';")) == MANIFEST

    def test_hls_loader_is_captured(self):
        assert ScriptSandbox().find_manifest(page(OBFUSCATED_HLS)) == MANIFEST

    def test_plyr_sources_are_captured(self):
        assert ScriptSandbox().find_manifest(page(OBFUSCATED_PLYR)) == MANIFEST

    def test_video_src_assignment(self):
        assert ScriptSandbox().find_manifest(page(OBFUSCATED_VIDEO_SRC)) == MANIFEST

    def test_throwing_block_does_not_stop_later_blocks(self):
        html = page("eval(notDefinedAnywhere())", OBFUSCATED_HLS)
        assert ScriptSandbox().find_manifest(html) == MANIFEST

    def test_runaway_script_is_cut_off(self):
        html = page("eval('while (true) {}')", OBFUSCATED_HLS)
        assert ScriptSandbox(timeout_ms=200).find_manifest(html) == MANIFEST

    def test_data_src_fallback(self):
        html = page("var player = 1;", extra=f'<div id="x" data-src="{MANIFEST}"></div>')
        assert ScriptSandbox().find_manifest(html) == MANIFEST

    def test_nothing_found(self):
        assert ScriptSandbox().find_manifest(page("eval('var x = 1 + 1;')", "var y = 2;")) is None
        assert ScriptSandbox().find_manifest("") is None


class TestDownloadForm:
    def test_form_written_by_script(self):
        script = """
var t = 'tok' + '123';
$('#download').html('<form action="https://kwik.cx/d/' + 'abc" method="POST">'
    + '<input type="hidden" name="_token" value="' + t + '"></form>');
"""
        assert ScriptSandbox().extract_download_form(page(script)) == ("https://kwik.cx/d/abc", "tok123")

    def test_static_form(self):
        html = (
            '<form action="https://kwik.cx/d/xyz" method="POST">'
            '<input type="hidden" name="_token" value="static-token"></form>'
        )
        assert ScriptSandbox().extract_download_form(html) == ("https://kwik.cx/d/xyz", "static-token")

    def test_no_form(self):
        assert ScriptSandbox().extract_download_form(page("var a = 1;")) is None


class TestIsolateLifecycle:
    def track_isolates(self):
        created = []
        real_mini_racer = sandbox.MiniRacer

        def make():
            ctx = MagicMock(wraps=real_mini_racer())
            created.append(ctx)
            return ctx

        return created, make

    def test_every_isolate_is_closed(self):
        created, make = self.track_isolates()
        html = page("eval(notDefinedAnywhere())", OBFUSCATED_HLS)

        with patch("sandbox.MiniRacer", side_effect=make):
            assert ScriptSandbox().find_manifest(html) == MANIFEST

        assert len(created) == 2
        for ctx in created:
            ctx.close.assert_called_once()

    def test_timed_out_isolate_is_closed(self):
        created, make = self.track_isolates()

        with patch("sandbox.MiniRacer", side_effect=make):
            assert ScriptSandbox(timeout_ms=200).evaluate_script("eval('while (true) {}')") is None

        created[0].close.assert_called_once()

    def test_form_isolates_are_closed(self):
        created, make = self.track_isolates()
        script = "var padding = '" + "x" * 120 + "'; $('#download').html('<p>nothing</p>');"

        with patch("sandbox.MiniRacer", side_effect=make):
            assert ScriptSandbox().extract_download_form(page(script)) is None

        assert len(created) == 1
        created[0].close.assert_called_once()
