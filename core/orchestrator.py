"""Per-navigation challenge orchestration.

Drives one page through an explicit state machine::

    NAVIGATING -> DETECTING -> NO_CHALLENGE -> DONE
                            -> SOLVING -> VERIFYING -> DONE
                                                    -> RETRY -> SOLVING
                                                    -> GIVE_UP

Cloudflare pages go through the solve loop (at most
:data:`MAX_SOLVE_ROUNDS` rounds, since solving one challenge can reveal
the next).  Everything else goes through the non-widget flow: click a
"verify" button if one is visible, solve a DDoS-Guard manual check if it
exposes a sitekey, then wait for the ``__ddg`` clearance cookie.  The
two flows never both run on one page load.

The orchestrator never raises for "not solved"; callers must re-check
the page (see :meth:`ChallengeOrchestrator.verify_content`).  Browser
failures from Playwright propagate unchanged.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from browser.challenge_scripts import (
    CLICK_VERIFY_BUTTON_SCRIPT,
    DOCUMENT_COOKIE_SCRIPT,
)
from browser.interceptor import WidgetInterceptor
from core.config import BotSettings
from solvers.captcha import ChallengeSolver
from solvers.detector import ChallengeDetector, ChallengeKind, Detection
from solvers.injector import TokenInjector, wait_for_navigation

logger = logging.getLogger(__name__)

MAX_SOLVE_ROUNDS = 3
NAVIGATION_TIMEOUT_MS = 90000
CLEARANCE_COOKIE_PREFIX = "__ddg"
CLEARANCE_TIMEOUT_SECONDS = 60
CLEARANCE_POLL_SECONDS = 0.5
REDIRECT_TIMEOUT_MS = 30000
SETTLE_SECONDS = 2


class ChallengeState(Enum):
    NAVIGATING = "navigating"
    DETECTING = "detecting"
    NO_CHALLENGE = "no_challenge"
    SOLVING = "solving"
    VERIFYING = "verifying"
    RETRY = "retry"
    DONE = "done"
    GIVE_UP = "give_up"


TERMINAL_STATES = (ChallengeState.DONE, ChallengeState.GIVE_UP)


class AttemptOutcome(Enum):
    """Result of one solve round or clearance wait."""

    SOLVED = "solved"
    CHALLENGE_PERSISTS = "challenge_persists"
    NO_PARAMS = "no_params"
    SOLVE_FAILED = "solve_failed"
    CHAIN_EXHAUSTED = "chain_exhausted"
    NO_CREDENTIAL = "no_credential"
    COOKIE_CLEARED = "cookie_cleared"
    COOKIE_TIMEOUT = "cookie_timeout"


@dataclass
class ChallengeAttempt:
    attempt_number: int
    outcome: AttemptOutcome
    cached_sitekey: Optional[str] = None


@dataclass
class OrchestrationResult:
    """What happened to one navigation.

    Attributes:
        state: Terminal state (``DONE`` or ``GIVE_UP``).
        kind: Challenge family seen on first detection.
        attempts: One entry per solve round / clearance wait.
        cleared: True when the page ended without a known challenge.
    """

    state: ChallengeState = ChallengeState.NAVIGATING
    kind: ChallengeKind = ChallengeKind.NONE
    attempts: List[ChallengeAttempt] = field(default_factory=list)
    cleared: bool = False

    @property
    def solve_rounds(self) -> int:
        return sum(
            1 for a in self.attempts
            if a.outcome not in (
                AttemptOutcome.COOKIE_CLEARED,
                AttemptOutcome.COOKIE_TIMEOUT,
                AttemptOutcome.CHAIN_EXHAUSTED,
                AttemptOutcome.NO_CREDENTIAL,
            )
        )


class ChallengeOrchestrator:
    """Sequence detection, solving and injection for one page.

    Args:
        solver: 2Captcha client; ``None`` or one without an API key
            disables solving.
        detector: Challenge detector.
        injector: Token injector.
        interceptor: Render interceptor; one per page lifecycle, since it
            caches the last sitekey.
        max_rounds: Upper bound on chained solve rounds.
    """

    def __init__(
        self,
        solver: Optional[ChallengeSolver] = None,
        detector: Optional[ChallengeDetector] = None,
        injector: Optional[TokenInjector] = None,
        interceptor: Optional[WidgetInterceptor] = None,
        known_sitekeys: Optional[Dict[str, str]] = None,
        navigation_timeout_ms: int = NAVIGATION_TIMEOUT_MS,
        max_rounds: int = MAX_SOLVE_ROUNDS,
        clearance_timeout: float = CLEARANCE_TIMEOUT_SECONDS,
        settle_seconds: float = SETTLE_SECONDS,
    ) -> None:
        self.solver = solver
        self.detector = detector or ChallengeDetector()
        self.injector = injector or TokenInjector()
        self.interceptor = interceptor or WidgetInterceptor(
            detector=self.detector, known_sitekeys=known_sitekeys,
        )
        self.navigation_timeout_ms = navigation_timeout_ms
        self.max_rounds = max_rounds
        self.clearance_timeout = clearance_timeout
        self.settle_seconds = settle_seconds

    @classmethod
    def from_settings(
        cls,
        settings: BotSettings,
        solver: Optional[ChallengeSolver] = None,
    ) -> "ChallengeOrchestrator":
        return cls(
            solver=solver,
            known_sitekeys=settings.known_sitekeys,
            navigation_timeout_ms=settings.timeout,
        )

    @property
    def solver_enabled(self) -> bool:
        return bool(self.solver and self.solver.api_key)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def run(self, page: Any, url: str) -> OrchestrationResult:
        """Navigate to *url* and clear whatever challenge it shows."""
        return await self._drive(page, url, ChallengeState.NAVIGATING)

    async def handle_current_page(
        self, page: Any,
    ) -> OrchestrationResult:
        """Run the machine on an already-loaded page (no navigation)."""
        if self.solver_enabled:
            await self.interceptor.install_in_place(page)
        return await self._drive(page, None, ChallengeState.DETECTING)

    async def _drive(
        self,
        page: Any,
        url: Optional[str],
        state: ChallengeState,
    ) -> OrchestrationResult:
        result = OrchestrationResult(state=state)
        detection = Detection()
        rounds = 0

        while state not in TERMINAL_STATES:
            logger.debug("Challenge state: %s", state.value)

            if state is ChallengeState.NAVIGATING:
                await self._navigate(page, url)
                state = ChallengeState.DETECTING

            elif state is ChallengeState.DETECTING:
                detection = await self.detector.detect(page)
                result.kind = detection.kind
                if detection.kind is ChallengeKind.CLOUDFLARE:
                    state = ChallengeState.SOLVING
                else:
                    state = ChallengeState.NO_CHALLENGE

            elif state is ChallengeState.NO_CHALLENGE:
                result.cleared = await self._run_non_widget_flow(
                    page, detection, result,
                )
                state = ChallengeState.DONE

            elif state is ChallengeState.SOLVING:
                if not self.solver_enabled:
                    logger.warning(
                        "Cloudflare challenge present but no 2Captcha "
                        "API key configured; leaving page as is"
                    )
                    result.attempts.append(ChallengeAttempt(
                        rounds, AttemptOutcome.NO_CREDENTIAL,
                    ))
                    state = ChallengeState.GIVE_UP
                    continue
                rounds += 1
                logger.info(
                    "Solving challenge round %d/%d",
                    rounds, self.max_rounds,
                )
                outcome = await self._solve_round(page)
                if outcome is AttemptOutcome.SOLVED:
                    state = ChallengeState.VERIFYING
                else:
                    result.attempts.append(ChallengeAttempt(
                        rounds, outcome, self.interceptor.last_sitekey,
                    ))
                    state = ChallengeState.GIVE_UP

            elif state is ChallengeState.VERIFYING:
                detection = await self.detector.detect(page)
                if detection.kind is not ChallengeKind.CLOUDFLARE:
                    result.attempts.append(ChallengeAttempt(
                        rounds, AttemptOutcome.SOLVED,
                        self.interceptor.last_sitekey,
                    ))
                    result.cleared = not detection.has_challenge
                    logger.info(
                        "Challenge cleared after %d round(s)", rounds,
                    )
                    state = ChallengeState.DONE
                elif rounds < self.max_rounds:
                    result.attempts.append(ChallengeAttempt(
                        rounds, AttemptOutcome.CHALLENGE_PERSISTS,
                        self.interceptor.last_sitekey,
                    ))
                    logger.info(
                        "Another challenge appeared (chained); retrying"
                    )
                    state = ChallengeState.RETRY
                else:
                    result.attempts.append(ChallengeAttempt(
                        rounds, AttemptOutcome.CHAIN_EXHAUSTED,
                        self.interceptor.last_sitekey,
                    ))
                    logger.error(
                        "Challenge still present after %d rounds; "
                        "giving up", rounds,
                    )
                    state = ChallengeState.GIVE_UP

            elif state is ChallengeState.RETRY:
                await self.interceptor.install_in_place(page)
                state = ChallengeState.SOLVING

        result.state = state
        return result

    async def _navigate(self, page: Any, url: Optional[str]) -> None:
        if not url:
            raise ValueError("Navigation requires a URL")
        # The hook must be registered before the document it observes
        if self.solver_enabled:
            await self.interceptor.install(page)
        logger.info("Navigating to: %s", url)
        await page.goto(
            url,
            wait_until="domcontentloaded",
            timeout=self.navigation_timeout_ms,
        )

    async def _solve_round(self, page: Any) -> AttemptOutcome:
        """Extract, solve and inject once."""
        params = await self.interceptor.extract_params(page)
        if params is None or not params.sitekey:
            return AttemptOutcome.NO_PARAMS

        task = await self.solver.solve(page, params)
        if task is None or not task.token:
            return AttemptOutcome.SOLVE_FAILED

        await self.injector.inject(page, task.token, task.user_agent)
        await self.injector.wait_for_verification(page)
        return AttemptOutcome.SOLVED

    # ------------------------------------------------------------------
    # Non-widget flow
    # ------------------------------------------------------------------

    async def _run_non_widget_flow(
        self,
        page: Any,
        detection: Detection,
        result: OrchestrationResult,
    ) -> bool:
        """Button heuristic, optional DDoS-Guard check, cookie wait.

        Returns:
            True if the page is considered clear.
        """
        clicked = await self.click_verify_button(page)

        if detection.kind is not ChallengeKind.DDOS_GUARD:
            if clicked:
                await wait_for_navigation(page, REDIRECT_TIMEOUT_MS // 3)
            return True

        if detection.sitekey and self.solver_enabled:
            await self._solve_ddos_guard_check(page, detection.sitekey)

        logger.info("Waiting for DDoS-Guard clearance cookies...")
        if not await self.wait_for_clearance_cookie(page):
            logger.warning(
                "Timed out waiting for %s cookies; page may need "
                "manual interaction", CLEARANCE_COOKIE_PREFIX,
            )
            result.attempts.append(ChallengeAttempt(
                len(result.attempts) + 1, AttemptOutcome.COOKIE_TIMEOUT,
            ))
            return False

        logger.info("Clearance cookie present; waiting for redirect...")
        result.attempts.append(ChallengeAttempt(
            len(result.attempts) + 1, AttemptOutcome.COOKIE_CLEARED,
        ))
        if not await wait_for_navigation(page, REDIRECT_TIMEOUT_MS):
            logger.info("No redirect after clearance; reloading")
            await page.reload(
                wait_until="domcontentloaded",
                timeout=self.navigation_timeout_ms,
            )
        await asyncio.sleep(self.settle_seconds)
        return True

    async def _solve_ddos_guard_check(
        self, page: Any, sitekey: str,
    ) -> bool:
        """Solve the hCaptcha behind a DDoS-Guard manual check."""
        logger.info("DDoS-Guard manual check found; solving hCaptcha")
        task = await self.solver.solve_standalone(
            sitekey, page.url, method="hcaptcha",
        )
        if task is None or not task.token:
            logger.warning("DDoS-Guard hCaptcha solve failed")
            return False
        await self.injector.inject(page, task.token)
        await asyncio.sleep(self.settle_seconds)
        return True

    async def click_verify_button(self, page: Any) -> bool:
        """Click the first visible verify/continue control, if any."""
        try:
            text = await page.evaluate(CLICK_VERIFY_BUTTON_SCRIPT)
        except PlaywrightError as e:
            logger.debug("Button click failed: %s", e)
            return False
        if text:
            logger.info("Clicked challenge button: %s", text)
            return True
        logger.debug("No challenge button found")
        return False

    async def wait_for_clearance_cookie(
        self,
        page: Any,
        timeout: Optional[float] = None,
        prefix: str = CLEARANCE_COOKIE_PREFIX,
    ) -> bool:
        """Poll both cookie views until one carries *prefix*.

        ``document.cookie`` and the browser jar can disagree behind a
        proxy, so both are checked every round.
        """
        timeout = self.clearance_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while True:
            try:
                doc_cookie = await page.evaluate(DOCUMENT_COOKIE_SCRIPT)
            except PlaywrightError as e:
                # The challenge may be redirecting mid-read
                logger.debug("document.cookie read failed: %s", e)
                doc_cookie = None
            if isinstance(doc_cookie, str) and prefix in doc_cookie:
                return True
            cookies = await page.context.cookies()
            if any(
                (c.get("name") or "").startswith(prefix)
                for c in cookies
            ):
                return True
            if time.monotonic() >= deadline:
                return False
            await asyncio.sleep(CLEARANCE_POLL_SECONDS)

    async def verify_content(
        self, page: Any, selector: str, timeout_ms: int = 15000,
    ) -> bool:
        """Check that *selector* appears, i.e. the real page loaded."""
        try:
            await page.wait_for_selector(selector, timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            logger.warning(
                "Expected content %s not found after challenge handling",
                selector,
            )
            return False
