"""Tests for credential freshness and refresh coordination."""
import asyncio
import json

import pytest

from errors import InvalidRequest, UpstreamUnavailable
from session import ONE_DAY, CredentialBundle, SessionManager

NOW = 1_700_000_000.0

OLD_COOKIES = [{"name": "__ddg1_", "value": "old", "domain": ".animepahe.si"}]
NEW_COOKIES = [{"name": "__ddg1_", "value": "new", "domain": ".animepahe.si"}]


class FakeHarvester:
    """Stands in for the browser; counts calls and can be held open."""

    def __init__(self, cookies=None, gate=None):
        self.cookies = NEW_COOKIES if cookies is None else cookies
        self.gate = gate
        self.calls = 0

    async def __call__(self, home_url):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        await asyncio.sleep(0)
        return self.cookies


def make_manager(settings, harvester, age_days=None):
    manager = SessionManager(settings, harvester, clock=lambda: NOW)
    if age_days is not None:
        manager.save(CredentialBundle(cookies=OLD_COOKIES, captured_at=NOW - age_days * ONE_DAY))
    return manager


class TestCredentialBundle:
    def test_file_format_uses_millisecond_timestamp(self):
        data = json.loads(CredentialBundle(cookies=OLD_COOKIES, captured_at=NOW).to_json())
        assert data["timestamp"] == int(NOW * 1000)
        assert data["cookies"] == OLD_COOKIES

    def test_cookie_header(self):
        bundle = CredentialBundle(cookies=OLD_COOKIES + [{"name": "b", "value": "2"}])
        assert bundle.cookie_header() == "__ddg1_=old; b=2"

    def test_malformed_json_is_rejected(self):
        with pytest.raises(ValueError):
            CredentialBundle.from_json('{"cookies": []}')


class TestEnsureFresh:
    def test_fresh_bundle_is_used_without_refresh(self, settings):
        harvester = FakeHarvester()
        manager = make_manager(settings, harvester, age_days=2)

        header = asyncio.run(manager.ensure_fresh())

        assert header == "__ddg1_=old"
        assert harvester.calls == 0

    def test_missing_file_blocks_on_refresh(self, settings):
        harvester = FakeHarvester()
        manager = make_manager(settings, harvester)

        header = asyncio.run(manager.ensure_fresh())

        assert header == "__ddg1_=new"
        assert harvester.calls == 1
        with open(settings.cookies_path) as f:
            assert json.load(f)["timestamp"] == int(NOW * 1000)

    def test_expired_bundle_blocks_on_refresh(self, settings):
        harvester = FakeHarvester()
        manager = make_manager(settings, harvester, age_days=15)

        assert asyncio.run(manager.ensure_fresh()) == "__ddg1_=new"
        assert harvester.calls == 1

    def test_corrupt_file_counts_as_missing(self, settings):
        with open(settings.cookies_path, "w") as f:
            f.write("{not json")
        harvester = FakeHarvester()
        manager = make_manager(settings, harvester)

        assert asyncio.run(manager.ensure_fresh()) == "__ddg1_=new"
        assert harvester.calls == 1

    def test_near_expiry_refreshes_once_in_background(self, settings):
        harvester = FakeHarvester()
        manager = make_manager(settings, harvester, age_days=13.5)

        async def run():
            harvester.gate = asyncio.Event()
            first = await manager.ensure_fresh()
            second = await manager.ensure_fresh()
            assert manager.is_refreshing
            harvester.gate.set()
            await manager._refresh_task
            return first, second

        first, second = asyncio.run(run())

        # Both callers keep the old cookies while the refresh runs
        assert first == second == "__ddg1_=old"
        assert harvester.calls == 1
        assert manager.load().cookie_header() == "__ddg1_=new"

    def test_concurrent_callers_share_one_refresh(self, settings):
        harvester = FakeHarvester()
        manager = make_manager(settings, harvester)

        async def run():
            return await asyncio.gather(*[manager.ensure_fresh() for _ in range(4)])

        headers = asyncio.run(run())

        assert headers == ["__ddg1_=new"] * 4
        assert harvester.calls == 1

    def test_user_cookies_bypass_the_store(self, settings):
        harvester = FakeHarvester()
        manager = make_manager(settings, harvester)

        assert asyncio.run(manager.ensure_fresh("  a=1; b=2 ")) == "a=1; b=2"
        assert harvester.calls == 0

    def test_blank_user_cookies_are_rejected(self, settings):
        manager = make_manager(settings, FakeHarvester())
        with pytest.raises(InvalidRequest):
            asyncio.run(manager.ensure_fresh("   "))


class TestRefresh:
    def test_empty_harvest_is_an_error(self, settings):
        manager = make_manager(settings, FakeHarvester(cookies=[]))

        with pytest.raises(UpstreamUnavailable) as exc_info:
            asyncio.run(manager.ensure_fresh())
        assert "No cookies found" in exc_info.value.detail

    def test_harvester_errors_are_wrapped(self, settings):
        async def broken(home_url):
            raise RuntimeError("browser crashed")

        manager = make_manager(settings, broken)

        with pytest.raises(UpstreamUnavailable) as exc_info:
            asyncio.run(manager.force_refresh())
        assert "browser crashed" in exc_info.value.detail

    def test_refresh_returns_immediately_while_one_is_in_flight(self, settings):
        harvester = FakeHarvester()
        manager = make_manager(settings, harvester)

        async def run():
            harvester.gate = asyncio.Event()
            manager.schedule_refresh()
            await asyncio.sleep(0)
            await manager.refresh()
            in_flight = manager.is_refreshing
            harvester.gate.set()
            await manager._refresh_task
            return in_flight

        assert asyncio.run(run()) is True
        assert harvester.calls == 1

    def test_harvests_from_home_page(self, settings):
        seen = []

        async def harvester(home_url):
            seen.append(home_url)
            return NEW_COOKIES

        asyncio.run(make_manager(settings, harvester).refresh())
        assert seen == ["https://animepahe.si/"]
