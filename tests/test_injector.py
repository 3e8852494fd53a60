from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from browser.challenge_scripts import INJECT_TOKEN_SCRIPT, main_world
from solvers.injector import InjectionResult, TokenInjector, wait_for_navigation


@pytest.fixture
def mock_page():
    page = AsyncMock()
    page.url = "https://example.org/book/1"
    page.main_frame = MagicMock()
    return page


class TestInject:

    @pytest.mark.asyncio
    async def test_passes_token_and_user_agent(self, mock_page):
        mock_page.evaluate.return_value = {
            "submitted": True, "fieldFound": True, "callbackInvoked": True,
        }

        result = await TokenInjector().inject(mock_page, "tok", "Mozilla/5.0 Solver")

        assert result == InjectionResult(True, True, True)
        mock_page.evaluate.assert_awaited_once_with(
            main_world(INJECT_TOKEN_SCRIPT), ["tok", "Mozilla/5.0 Solver"],
        )

    @pytest.mark.asyncio
    async def test_no_field_and_no_form(self, mock_page):
        mock_page.evaluate.return_value = {
            "submitted": False, "fieldFound": False, "callbackInvoked": False,
        }

        result = await TokenInjector().inject(mock_page, "tok")

        assert result.submitted is False
        assert result.field_found is False
        assert mock_page.evaluate.call_args[0][1] == ["tok", None]

    @pytest.mark.asyncio
    async def test_unexpected_payload_treated_as_nothing_done(self, mock_page):
        mock_page.evaluate.return_value = None
        result = await TokenInjector().inject(mock_page, "tok")
        assert result == InjectionResult()


class TestNavigationWaits:

    @pytest.mark.asyncio
    async def test_navigation_observed(self, mock_page):
        assert await wait_for_navigation(mock_page, 1000) is True
        kwargs = mock_page.wait_for_event.call_args[1]
        assert mock_page.wait_for_event.call_args[0][0] == "framenavigated"
        assert kwargs["timeout"] == 1000
        assert kwargs["predicate"](mock_page.main_frame) is True
        assert kwargs["predicate"](MagicMock()) is False
        mock_page.wait_for_load_state.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_timeout_returns_false(self, mock_page):
        mock_page.wait_for_event.side_effect = PlaywrightTimeoutError("timeout")
        assert await wait_for_navigation(mock_page, 1000) is False

    @pytest.mark.asyncio
    async def test_other_errors_propagate(self, mock_page):
        mock_page.wait_for_event.side_effect = RuntimeError("browser crashed")
        with pytest.raises(RuntimeError):
            await wait_for_navigation(mock_page, 1000)

    @pytest.mark.asyncio
    async def test_verification_tolerates_missing_redirect(self, mock_page):
        mock_page.wait_for_event.side_effect = PlaywrightTimeoutError("timeout")
        with patch("solvers.injector.asyncio.sleep", AsyncMock()) as mock_sleep:
            navigated = await TokenInjector().wait_for_verification(mock_page)
        assert navigated is False
        mock_sleep.assert_awaited_once()
