from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from browser.challenge_scripts import CLICK_VERIFY_BUTTON_SCRIPT, DOCUMENT_COOKIE_SCRIPT
from core.config import BotSettings
from core.orchestrator import (
    MAX_SOLVE_ROUNDS,
    AttemptOutcome,
    ChallengeOrchestrator,
    ChallengeState,
)
from solvers.captcha import ChallengeParams, SolveTask
from solvers.detector import ChallengeKind, Detection

CLEAN = Detection()
CLOUDFLARE = Detection(has_challenge=True, kind=ChallengeKind.CLOUDFLARE, sitekey="0x4AAAAAAAkey")
DDOS_GUARD = Detection(has_challenge=True, kind=ChallengeKind.DDOS_GUARD, sitekey="ddg-key")


def solved_task(token="tok", user_agent=None):
    task = SolveTask(id="1", protocol="legacy")
    task.resolve(token, user_agent)
    return task


def make_page(button=None, doc_cookies=("",), jar=()):
    """Fake page; ``doc_cookies`` are returned by successive cookie reads."""
    page = AsyncMock()
    page.url = "https://example.org/book/1"
    cookie_reads = list(doc_cookies)

    async def _evaluate(script, *args):
        if script == CLICK_VERIFY_BUTTON_SCRIPT:
            return button
        if script == DOCUMENT_COOKIE_SCRIPT:
            return cookie_reads.pop(0) if len(cookie_reads) > 1 else cookie_reads[0]
        return None

    page.evaluate.side_effect = _evaluate
    page.context.cookies = AsyncMock(return_value=list(jar))
    return page


def make_orchestrator(detections, solver_enabled=True, params=ChallengeParams("0x4AAAAAAAkey"),
                      task=None, **kwargs):
    detector = MagicMock()
    detector.detect = AsyncMock(side_effect=list(detections))

    interceptor = MagicMock()
    interceptor.install = AsyncMock()
    interceptor.install_in_place = AsyncMock()
    interceptor.extract_params = AsyncMock(return_value=params)
    interceptor.last_sitekey = "0x4AAAAAAAkey"

    injector = MagicMock()
    injector.inject = AsyncMock()
    injector.wait_for_verification = AsyncMock(return_value=True)

    solver = None
    if solver_enabled:
        solver = MagicMock()
        solver.api_key = "key"
        solver.solve = AsyncMock(return_value=task or solved_task())
        solver.solve_standalone = AsyncMock(return_value=task or solved_task("h-tok"))

    kwargs.setdefault("settle_seconds", 0)
    return ChallengeOrchestrator(
        solver=solver, detector=detector, injector=injector,
        interceptor=interceptor, **kwargs,
    )


@pytest.fixture(autouse=True)
def instant_sleep():
    with patch("core.orchestrator.asyncio.sleep", AsyncMock()) as mock_sleep:
        yield mock_sleep


class TestNavigation:

    @pytest.mark.asyncio
    async def test_interceptor_installed_before_goto(self):
        calls = []
        page = make_page()
        page.goto.side_effect = lambda *a, **k: calls.append("goto")
        orchestrator = make_orchestrator([CLEAN])
        orchestrator.interceptor.install.side_effect = lambda *a: calls.append("install")

        await orchestrator.run(page, "https://example.org/book/1")

        assert calls == ["install", "goto"]
        assert page.goto.call_args[1]["wait_until"] == "domcontentloaded"
        assert page.goto.call_args[1]["timeout"] == 90000

    @pytest.mark.asyncio
    async def test_no_challenge(self):
        page = make_page()
        orchestrator = make_orchestrator([CLEAN])

        result = await orchestrator.run(page, "https://example.org/")

        assert result.state is ChallengeState.DONE
        assert result.cleared is True
        assert result.kind is ChallengeKind.NONE
        assert result.attempts == []
        page.context.cookies.assert_not_called()

    @pytest.mark.asyncio
    async def test_run_requires_url(self):
        with pytest.raises(ValueError):
            await make_orchestrator([CLEAN]).run(make_page(), "")

    @pytest.mark.asyncio
    async def test_from_settings(self):
        settings = BotSettings(_env_file=None, timeout=1234, known_sitekeys={"a.example": "k"})
        orchestrator = ChallengeOrchestrator.from_settings(settings)
        assert orchestrator.navigation_timeout_ms == 1234
        assert orchestrator.interceptor.known_sitekeys == {"a.example": "k"}
        assert orchestrator.solver_enabled is False


class TestCloudflareFlow:

    @pytest.mark.asyncio
    async def test_solved_in_one_round(self):
        page = make_page()
        orchestrator = make_orchestrator(
            [CLOUDFLARE, CLEAN], task=solved_task("tok", "Mozilla/5.0 Solver"),
        )

        result = await orchestrator.run(page, "https://example.org/")

        assert result.state is ChallengeState.DONE
        assert result.cleared is True
        assert result.kind is ChallengeKind.CLOUDFLARE
        assert [a.outcome for a in result.attempts] == [AttemptOutcome.SOLVED]
        assert result.solve_rounds == 1
        orchestrator.injector.inject.assert_awaited_once_with(page, "tok", "Mozilla/5.0 Solver")
        orchestrator.injector.wait_for_verification.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_chained_challenge_retries_in_place(self):
        orchestrator = make_orchestrator([CLOUDFLARE, CLOUDFLARE, CLEAN])

        result = await orchestrator.run(make_page(), "https://example.org/")

        assert result.state is ChallengeState.DONE
        assert [a.outcome for a in result.attempts] == [
            AttemptOutcome.CHALLENGE_PERSISTS, AttemptOutcome.SOLVED,
        ]
        assert orchestrator.solver.solve.await_count == 2
        orchestrator.interceptor.install_in_place.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_never_more_than_max_rounds(self):
        orchestrator = make_orchestrator([CLOUDFLARE] * 10)

        result = await orchestrator.run(make_page(), "https://example.org/")

        assert result.state is ChallengeState.GIVE_UP
        assert result.cleared is False
        assert orchestrator.solver.solve.await_count == MAX_SOLVE_ROUNDS == 3
        assert result.attempts[-1].outcome is AttemptOutcome.CHAIN_EXHAUSTED
        assert result.attempts[-1].cached_sitekey == "0x4AAAAAAAkey"
        assert orchestrator.interceptor.install_in_place.await_count == MAX_SOLVE_ROUNDS - 1

    @pytest.mark.asyncio
    async def test_no_credential_gives_up_without_raising(self):
        page = make_page()
        orchestrator = make_orchestrator([CLOUDFLARE], solver_enabled=False)

        result = await orchestrator.run(page, "https://example.org/")

        assert result.state is ChallengeState.GIVE_UP
        assert result.attempts[0].outcome is AttemptOutcome.NO_CREDENTIAL
        orchestrator.interceptor.install.assert_not_called()
        orchestrator.interceptor.extract_params.assert_not_called()
        page.context.cookies.assert_not_called()

    @pytest.mark.asyncio
    async def test_extraction_failure_gives_up(self):
        orchestrator = make_orchestrator([CLOUDFLARE], params=None)

        result = await orchestrator.run(make_page(), "https://example.org/")

        assert result.state is ChallengeState.GIVE_UP
        assert result.attempts[0].outcome is AttemptOutcome.NO_PARAMS
        orchestrator.solver.solve.assert_not_called()

    @pytest.mark.asyncio
    async def test_solver_failure_gives_up(self):
        orchestrator = make_orchestrator([CLOUDFLARE])
        orchestrator.solver.solve.return_value = None

        result = await orchestrator.run(make_page(), "https://example.org/")

        assert result.state is ChallengeState.GIVE_UP
        assert result.attempts[0].outcome is AttemptOutcome.SOLVE_FAILED
        orchestrator.injector.inject.assert_not_called()

    @pytest.mark.asyncio
    async def test_handle_current_page_skips_navigation(self):
        page = make_page()
        orchestrator = make_orchestrator([CLOUDFLARE, CLEAN])

        result = await orchestrator.handle_current_page(page)

        assert result.state is ChallengeState.DONE
        page.goto.assert_not_called()
        orchestrator.interceptor.install_in_place.assert_awaited_once_with(page)


class TestNonWidgetFlow:

    @pytest.mark.asyncio
    async def test_ddos_guard_solved_and_cookie_cleared(self):
        page = make_page(button="Verify", doc_cookies=("", "", "__ddg1_=abc"))
        orchestrator = make_orchestrator([DDOS_GUARD])

        with patch("core.orchestrator.wait_for_navigation", AsyncMock(return_value=True)):
            result = await orchestrator.run(page, "https://example.org/")

        assert result.state is ChallengeState.DONE
        assert result.cleared is True
        assert result.kind is ChallengeKind.DDOS_GUARD
        assert [a.outcome for a in result.attempts] == [AttemptOutcome.COOKIE_CLEARED]
        orchestrator.solver.solve_standalone.assert_awaited_once_with(
            "ddg-key", page.url, method="hcaptcha",
        )
        orchestrator.injector.inject.assert_awaited_once_with(page, "h-tok")
        orchestrator.solver.solve.assert_not_called()
        page.reload.assert_not_called()

    @pytest.mark.asyncio
    async def test_cookie_found_in_browser_jar(self):
        page = make_page(jar=[{"name": "__ddg2_", "value": "x"}])
        orchestrator = make_orchestrator([DDOS_GUARD], solver_enabled=False)

        with patch("core.orchestrator.wait_for_navigation", AsyncMock(return_value=False)):
            result = await orchestrator.run(page, "https://example.org/")

        assert result.cleared is True
        page.reload.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cookie_timeout_returns_normally(self):
        page = make_page(jar=[{"name": "session", "value": "x"}])
        orchestrator = make_orchestrator([DDOS_GUARD], clearance_timeout=0)

        result = await orchestrator.run(page, "https://example.org/")

        assert result.state is ChallengeState.DONE
        assert result.cleared is False
        assert result.attempts[-1].outcome is AttemptOutcome.COOKIE_TIMEOUT

    @pytest.mark.asyncio
    async def test_button_clicked_on_plain_page(self):
        page = make_page(button="Continue")
        orchestrator = make_orchestrator([CLEAN])

        with patch("core.orchestrator.wait_for_navigation", AsyncMock(return_value=True)) as nav:
            result = await orchestrator.run(page, "https://example.org/")

        assert result.cleared is True
        nav.assert_awaited_once()
        page.context.cookies.assert_not_called()

    @pytest.mark.asyncio
    async def test_cloudflare_never_enters_cookie_wait(self):
        page = make_page(button="Verify")
        orchestrator = make_orchestrator([CLOUDFLARE, CLEAN])

        await orchestrator.run(page, "https://example.org/")

        page.context.cookies.assert_not_called()
        orchestrator.solver.solve_standalone.assert_not_called()


class TestVerifyContent:

    @pytest.mark.asyncio
    async def test_selector_present(self):
        page = make_page()
        assert await make_orchestrator([]).verify_content(page, "#downloadLink", 500) is True
        page.wait_for_selector.assert_awaited_once_with("#downloadLink", timeout=500)

    @pytest.mark.asyncio
    async def test_selector_missing(self):
        page = make_page()
        page.wait_for_selector.side_effect = PlaywrightTimeoutError("timeout")
        assert await make_orchestrator([]).verify_content(page, "#downloadLink") is False
