from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from browser.instance import FIREFOX_PREFS, BrowserManager
from core.proxy_manager import ProxySession

SESSION = ProxySession(pool_index=15, host="gw.example.net", port=9000,
                       username="user-15", password="secret")


def make_camoufox(context):
    camoufox = MagicMock()
    camoufox.__aenter__ = AsyncMock(return_value=context)
    camoufox.__aexit__ = AsyncMock(return_value=False)
    return camoufox


@pytest.fixture
def context():
    ctx = MagicMock()
    ctx.pages = []
    ctx.new_page = AsyncMock(return_value=MagicMock(name="page"))
    return ctx


class TestLaunch:

    @pytest.mark.asyncio
    async def test_persistent_context_with_proxy(self, tmp_path, context):
        profile = tmp_path / "profile_15_1"
        with patch("browser.instance.AsyncCamoufox", return_value=make_camoufox(context)) as mock_cls:
            manager = await BrowserManager(str(profile), proxy=SESSION, timeout=1234).launch()

        kwargs = mock_cls.call_args[1]
        assert kwargs["persistent_context"] is True
        assert kwargs["user_data_dir"] == str(profile)
        assert kwargs["main_world_eval"] is True
        assert kwargs["proxy"] == {
            "server": "http://gw.example.net:9000",
            "username": "user-15",
            "password": "secret",
        }
        assert kwargs["firefox_user_prefs"] == FIREFOX_PREFS
        assert profile.is_dir()
        assert manager.context is context
        context.set_default_timeout.assert_called_once_with(1234)

    @pytest.mark.asyncio
    async def test_direct_connection_has_no_proxy(self, tmp_path, context):
        with patch("browser.instance.AsyncCamoufox", return_value=make_camoufox(context)) as mock_cls:
            await BrowserManager(str(tmp_path / "p"), headless=False).launch()

        kwargs = mock_cls.call_args[1]
        assert "proxy" not in kwargs
        assert "screen" not in kwargs
        assert kwargs["headless"] is False

    @pytest.mark.asyncio
    async def test_geoip_failure_retries_without_geoip(self, tmp_path, context):
        broken = MagicMock()
        broken.__aenter__ = AsyncMock(side_effect=RuntimeError("GeoLite2-City.mmdb missing"))
        with patch(
            "browser.instance.AsyncCamoufox",
            side_effect=[broken, make_camoufox(context)],
        ) as mock_cls:
            manager = await BrowserManager(str(tmp_path / "p"), proxy=SESSION).launch()

        assert mock_cls.call_count == 2
        assert mock_cls.call_args[1]["geoip"] is False
        assert manager.context is context

    @pytest.mark.asyncio
    async def test_other_launch_errors_propagate(self, tmp_path):
        broken = MagicMock()
        broken.__aenter__ = AsyncMock(side_effect=RuntimeError("no display"))
        with patch("browser.instance.AsyncCamoufox", return_value=broken):
            with pytest.raises(RuntimeError):
                await BrowserManager(str(tmp_path / "p"), proxy=SESSION).launch()


class TestPagesAndClose:

    @pytest.mark.asyncio
    async def test_new_page_reuses_initial_tab(self, tmp_path, context):
        first = MagicMock(name="first")
        context.pages = [first]
        with patch("browser.instance.AsyncCamoufox", return_value=make_camoufox(context)):
            manager = await BrowserManager(str(tmp_path / "p")).launch()
            assert await manager.new_page() is first
        context.new_page.assert_not_called()

    @pytest.mark.asyncio
    async def test_close_removes_profile(self, tmp_path, context):
        profile = tmp_path / "profile_1_2"
        camoufox = make_camoufox(context)
        with patch("browser.instance.AsyncCamoufox", return_value=camoufox):
            async with BrowserManager(str(profile)) as manager:
                (profile / "lock").write_text("x")
                page = await manager.new_page()
                assert page is context.new_page.return_value

        camoufox.__aexit__.assert_awaited_once()
        assert not profile.exists()
        assert manager.context is None
