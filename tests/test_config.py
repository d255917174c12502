"""Tests for environment-driven settings."""
import pytest

from config import Settings, is_valid_cookie_header, is_valid_proxy, load_settings

ENV_VARS = [
    "VERCEL", "NETLIFY", "AWS_LAMBDA_FUNCTION_NAME", "BASE_URL", "COOKIES", "PROXIES", "USE_PROXY",
    "CHALLENGE_MARKERS", "COOKIE_REFRESH_DAYS", "KWIK_DOMAIN",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


class TestLoadSettings:
    def test_local_defaults(self, clean_env):
        settings = load_settings()
        assert settings.is_serverless is False
        assert settings.batch_size == 3
        assert settings.batch_delay == 0.5
        assert settings.refresh_interval == 14 * 24 * 60 * 60

    def test_serverless_mode(self, clean_env):
        clean_env.setenv("VERCEL", "1")
        settings = load_settings()
        assert settings.is_serverless is True
        assert settings.batch_size == 1
        assert settings.batch_delay == 2.0
        assert settings.request_timeout == 10.0

    def test_overrides(self, clean_env):
        clean_env.setenv("BASE_URL", "https://animepahe.ru/")
        clean_env.setenv("COOKIES", "__ddg2_=abc; res=1080")
        clean_env.setenv("PROXIES", "10.0.0.1:8080, not a proxy")
        clean_env.setenv("USE_PROXY", "true")
        clean_env.setenv("CHALLENGE_MARKERS", "Attention Required, Access denied")
        settings = load_settings()

        assert settings.get_url("play", "a", "b") == "https://animepahe.ru/play/a/b"
        assert settings.cookies == "__ddg2_=abc; res=1080"
        assert settings.proxies == ["10.0.0.1:8080"]
        assert settings.get_random_proxy() == "http://10.0.0.1:8080"
        assert settings.challenge_markers == ["attention required", "access denied"]

    def test_invalid_cookies_are_ignored(self, clean_env):
        clean_env.setenv("COOKIES", "garbage")
        assert load_settings().cookies is None


class TestHelpers:
    def test_cookie_header_format(self):
        assert is_valid_cookie_header("a=1; b=2")
        assert not is_valid_cookie_header("a=1; b")
        assert not is_valid_cookie_header("")

    def test_proxy_format(self):
        assert is_valid_proxy("127.0.0.1:3128")
        assert is_valid_proxy("http://proxy.local:8080")
        assert not is_valid_proxy("proxy.local")

    def test_get_url_sections(self):
        settings = Settings()
        assert settings.get_url("home") == "https://animepahe.si/"
        assert settings.get_url("api") == "https://animepahe.si/api"
        assert settings.get_url("anime_info", "abc") == "https://animepahe.si/anime/abc"
        with pytest.raises(ValueError):
            settings.get_url("nope")

    def test_proxy_disabled(self):
        assert Settings(proxies=["1.2.3.4:80"]).get_random_proxy() is None
