# sandbox.py
"""
Run the obfuscated scripts of kwik embed pages without a browser.

Each candidate <script> block gets its own V8 isolate (mini-racer) with no
filesystem or network access and a hard time limit. A small prelude stands in
for the browser: a document holding one <video> element, Plyr and Hls
stubs that record any manifest URL handed to them, a jQuery-like `$` that
records HTML written into the page, and no-op timers, storage and network
objects. Script errors are expected (the stubs are far from a real DOM) and
only end the attempt for that block.
"""
import json
import logging
import re
from typing import List, Optional, Tuple

from bs4 import BeautifulSoup
from py_mini_racer import JSEvalException, JSTimeoutException, MiniRacer

logger = logging.getLogger(__name__)

MANIFEST_PATTERN = re.compile(r'https?://[^"\'<>\s\\]+\.m3u8[^\s"\'<>\\]*', re.IGNORECASE)
DATA_SRC_PATTERN = re.compile(r'data-src="([^"]+\.m3u8[^"]*)"', re.IGNORECASE)
FORM_ACTION_PATTERN = re.compile(r'action=["\']([^"\']+)["\']', re.IGNORECASE)
FORM_TOKEN_PATTERN = re.compile(r'name=["\']_token["\'][^>]*value=["\']([^"\']+)["\']', re.IGNORECASE)

MIN_FORM_SCRIPT_LENGTH = 100

PRELUDE = r"""
var window = this;
var self = this;
var __captured = [];
var __html = [];
function __noop() {}
function __record(src) {
    if (typeof src === 'string' && src.indexOf('.m3u8') !== -1 && __captured.indexOf(src) === -1) {
        __captured.push(src);
    }
}
function __element(tag) {
    var el = {
        tagName: String(tag || 'div').toUpperCase(),
        style: {}, dataset: {}, attributes: {}, children: [], innerHTML: '', textContent: '',
        setAttribute: function (n, v) { this.attributes[n] = String(v); },
        getAttribute: function (n) { return this.attributes[n] === undefined ? null : this.attributes[n]; },
        appendChild: function (c) { this.children.push(c); return c; },
        addEventListener: __noop, removeEventListener: __noop,
        querySelector: function () { return __element('div'); },
        querySelectorAll: function () { return []; },
        remove: __noop, click: __noop, focus: __noop
    };
    return el;
}
var __video = __element('video');
__video.id = 'player';
__video._src = '';
__video.play = function () { return { then: __noop, catch: __noop }; };
__video.pause = __noop;
__video.load = __noop;
__video.canPlayType = function () { return 'maybe'; };
__video.setAttribute = function (n, v) {
    this.attributes[n] = String(v);
    if (n === 'src') { this._src = String(v); }
};
Object.defineProperty(__video, 'src', {
    get: function () { return this._src; },
    set: function (v) { this._src = String(v); },
    enumerable: true
});
function __isVideo(sel) { return /video|player/i.test(String(sel)); }
var document = {
    readyState: 'complete', cookie: '', title: '', referrer: '',
    body: __element('body'), head: __element('head'), documentElement: __element('html'),
    querySelector: function (sel) { return __isVideo(sel) ? __video : __element('div'); },
    querySelectorAll: function (sel) { return __isVideo(sel) ? [__video] : []; },
    getElementById: function (id) { return __isVideo(id) ? __video : __element('div'); },
    getElementsByTagName: function (tag) { return String(tag).toLowerCase() === 'video' ? [__video] : []; },
    getElementsByClassName: function () { return []; },
    createElement: function (tag) { return String(tag).toLowerCase() === 'video' ? __video : __element(tag); },
    addEventListener: function (evt, fn) {
        if (typeof fn === 'function' && /DOMContentLoaded|load/.test(String(evt))) {
            try { fn(); } catch (e) {}
        }
    },
    removeEventListener: __noop
};
var navigator = { userAgent: 'Mozilla/5.0', language: 'en-US', languages: ['en-US', 'en'], platform: 'Win32' };
var location = { href: '', hostname: '', protocol: 'https:', reload: __noop, replace: __noop };
var __storage = { getItem: function () { return null; }, setItem: __noop, removeItem: __noop, clear: __noop };
var localStorage = __storage;
var sessionStorage = __storage;
var console = { log: __noop, warn: __noop, error: __noop, info: __noop, debug: __noop };
function setTimeout() { return 0; }
function clearTimeout() {}
function setInterval() { return 0; }
function clearInterval() {}
function requestAnimationFrame() { return 0; }
function fetch() { return { then: function () { return this; }, catch: function () { return this; } }; }
function XMLHttpRequest() {
    this.open = __noop; this.send = __noop; this.setRequestHeader = __noop; this.abort = __noop;
}
function MutationObserver() { this.observe = __noop; this.disconnect = __noop; }
window.addEventListener = document.addEventListener;
window.removeEventListener = __noop;

var __b64 = 'ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789+/=';
function atob(input) {
    var str = String(input).replace(/[=]+$/, ''), output = '';
    for (var bc = 0, bs = 0, buffer, i = 0; (buffer = str.charAt(i++));
         ~buffer && (bs = bc % 4 ? bs * 64 + buffer : buffer, bc++ % 4)
            ? (output += String.fromCharCode(255 & bs >> (-2 * bc & 6))) : 0) {
        buffer = __b64.indexOf(buffer);
    }
    return output;
}
function btoa(input) {
    var str = String(input), output = '';
    for (var block, charCode, idx = 0, map = __b64;
         str.charAt(idx | 0) || (map = '=', idx % 1);
         output += map.charAt(63 & block >> 8 - idx % 1 * 8)) {
        charCode = str.charCodeAt(idx += 3 / 4);
        block = block << 8 | charCode;
    }
    return output;
}

function Plyr(el, opts) {
    try {
        if (opts && opts.sources && opts.sources.length) {
            for (var i = 0; i < opts.sources.length; i++) {
                if (opts.sources[i]) { __record(opts.sources[i].src); }
            }
        }
    } catch (e) {}
    this.on = __noop;
    this.source = {};
    this.play = __noop;
}
function Hls(cfg) {
    this.loadSource = function (src) { __record(src); };
    this.attachMedia = function (m) { if (m && m.src) { __record(m.src); } };
    this.on = __noop;
    this.destroy = __noop;
}
Hls.isSupported = function () { return true; };
Hls.Events = { MANIFEST_PARSED: 'hlsManifestParsed', ERROR: 'hlsError', MEDIA_ATTACHED: 'hlsMediaAttached' };

function __jq(sel) {
    if (typeof sel === 'function') {
        try { sel.call(window); } catch (e) {}
        return __jq;
    }
    var api = {
        length: 1,
        html: function (v) {
            if (v !== undefined) { __html.push(String(v)); return api; }
            return '';
        },
        append: function (v) { if (v !== undefined) { __html.push(String(v)); } return api; },
        attr: function (n, v) { return v !== undefined ? api : ''; },
        val: function () { return ''; },
        click: function (fn) { if (typeof fn === 'function') { try { fn.call(api); } catch (e) {} } return api; },
        ready: function (fn) { if (typeof fn === 'function') { try { fn(); } catch (e) {} } return api; },
        on: function () { return api; },
        remove: function () { return api; },
        hide: function () { return api; },
        show: function () { return api; },
        submit: function () { return api; }
    };
    return api;
}
__jq.ajax = __noop;
var $ = __jq;
var jQuery = __jq;
"""

# Serialises every non-function global, skipping cycles
GLOBALS_DUMP = r"""
(function () {
    var seen = [], out = {};
    Object.getOwnPropertyNames(this).forEach(function (k) {
        try {
            var v = this[k];
            if (typeof v !== 'function') { out[k] = v; }
        } catch (e) {}
    }, this);
    try {
        return JSON.stringify(out, function (key, value) {
            if (typeof value === 'object' && value !== null) {
                if (seen.indexOf(value) !== -1) { return undefined; }
                seen.push(value);
            }
            return value;
        }) || '';
    } catch (e) {
        return '';
    }
}).call(this)
"""


def find_manifest_in_text(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = MANIFEST_PATTERN.search(text)
    return match.group(0) if match else None


def inline_scripts(html: str) -> List[str]:
    soup = BeautifulSoup(html, 'html.parser')
    return [script.string or script.get_text() for script in soup.find_all('script') if not script.get('src')]


class ScriptSandbox:
    def __init__(self, timeout_ms: int = 2000):
        self.timeout_ms = timeout_ms

    def _run(self, script: str) -> Optional[MiniRacer]:
        """Evaluate one block in a fresh isolate; None if the prelude failed or the block timed out."""
        ctx = MiniRacer()
        try:
            ctx.eval(PRELUDE, timeout=self.timeout_ms)
        except JSEvalException as e:
            logger.error(f"Sandbox prelude failed: {e}")
            ctx.close()
            return None
        try:
            ctx.eval(script, timeout=self.timeout_ms)
        except JSTimeoutException:
            logger.warning(f"Sandboxed script exceeded {self.timeout_ms}ms, skipping block")
            ctx.close()
            return None
        except JSEvalException as e:
            logger.debug(f"Sandboxed script raised: {e}")
        return ctx

    def _read_string(self, ctx: MiniRacer, expression: str) -> str:
        try:
            value = ctx.eval(expression, timeout=self.timeout_ms)
        except JSEvalException as e:
            logger.debug(f"Sandbox read failed: {e}")
            return ''
        return value if isinstance(value, str) else ''

    def evaluate_script(self, script: str) -> Optional[str]:
        """Execute one obfuscated block and look for the manifest it produces."""
        ctx = self._run(script)
        if ctx is None:
            return None
        try:
            return self._search_manifest(ctx, script)
        finally:
            ctx.close()

    def _search_manifest(self, ctx: MiniRacer, script: str) -> Optional[str]:
        captured = self._read_string(ctx, 'JSON.stringify(__captured)')
        if captured:
            try:
                urls = json.loads(captured)
            except ValueError:
                urls = []
            if urls:
                logger.info(f"Resolved m3u8 (captured): {urls[0]}")
                return urls[0]

        found = find_manifest_in_text(self._read_string(ctx, "__video.src || __video.getAttribute('src') || ''"))
        if found:
            logger.info(f"Resolved m3u8 (video.src): {found}")
            return found

        found = find_manifest_in_text(self._read_string(ctx, GLOBALS_DUMP).replace('\\/', '/'))
        if found:
            logger.info(f"Resolved m3u8 (sandbox globals): {found}")
            return found

        found = find_manifest_in_text(script.replace('\\/', '/'))
        if found:
            logger.info(f"Resolved m3u8 (script literal): {found}")
            return found
        return None

    def find_manifest(self, html: str) -> Optional[str]:
        """Manifest URL hidden in an embed page, or None when nothing turns up."""
        if not html:
            return None
        scripts = inline_scripts(html)
        logger.debug(f"Found {len(scripts)} inline script blocks")

        for script in scripts:
            found = find_manifest_in_text(script)
            if found:
                logger.info(f"Resolved m3u8 (plain script): {found}")
                return found
            if 'eval(' not in script:
                continue
            found = self.evaluate_script(script)
            if found:
                return found

        fallback = DATA_SRC_PATTERN.search(html)
        if fallback:
            logger.info(f"Found data-src m3u8 (fallback): {fallback.group(1)}")
            return fallback.group(1)

        logger.info("Could not resolve m3u8 from any embed script")
        return None

    def extract_download_form(self, html: str) -> Optional[Tuple[str, str]]:
        """(action, _token) of the download form that the page's scripts write out."""
        if not html:
            return None
        for script in inline_scripts(html):
            if len(script) <= MIN_FORM_SCRIPT_LENGTH:
                continue
            ctx = self._run(script)
            if ctx is None:
                continue
            try:
                written = self._read_string(ctx, "__html.join('\\n')")
            finally:
                ctx.close()
            form = _form_fields(written)
            if form:
                return form
        return _form_fields(html)


def _form_fields(markup: str) -> Optional[Tuple[str, str]]:
    if not markup:
        return None
    action = FORM_ACTION_PATTERN.search(markup)
    token = FORM_TOKEN_PATTERN.search(markup)
    if action and token:
        return action.group(1), token.group(1)
    return None
