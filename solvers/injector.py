"""Solved-token injection."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from browser.challenge_scripts import INJECT_TOKEN_SCRIPT, main_world

logger = logging.getLogger(__name__)

VERIFY_NAVIGATION_TIMEOUT_MS = 15000
SETTLE_SECONDS = 2


@dataclass
class InjectionResult:
    submitted: bool = False
    field_found: bool = False
    callback_invoked: bool = False


class TokenInjector:
    """Write a solved token into the page and submit it.

    Callback errors raised by the page are swallowed in-page; a missing
    response field or form is not an error.
    """

    async def inject(
        self,
        page: Any,
        token: str,
        user_agent: Optional[str] = None,
    ) -> InjectionResult:
        """Inject *token*; override the UA when the solver bound one."""
        data = await page.evaluate(
            main_world(INJECT_TOKEN_SCRIPT), [token, user_agent],
        )
        if not isinstance(data, dict):
            data = {}
        result = InjectionResult(
            submitted=bool(data.get("submitted")),
            field_found=bool(data.get("fieldFound")),
            callback_invoked=bool(data.get("callbackInvoked")),
        )
        logger.info(
            "Token injected (field: %s, callback: %s, form %s)",
            result.field_found,
            result.callback_invoked,
            "submitted" if result.submitted else "not found",
        )
        return result

    async def wait_for_verification(
        self,
        page: Any,
        timeout_ms: int = VERIFY_NAVIGATION_TIMEOUT_MS,
    ) -> bool:
        """Wait for the post-solve redirect.

        Some challenges clear in place, so a missing navigation is
        tolerated.

        Returns:
            True if a navigation was observed.
        """
        logger.info(
            "Waiting for verification redirect (up to %ds)...",
            timeout_ms // 1000,
        )
        navigated = await wait_for_navigation(page, timeout_ms)
        if navigated:
            logger.info("Page redirected after verification")
        else:
            logger.info("No redirect detected; checking in place")
        await asyncio.sleep(SETTLE_SECONDS)
        return navigated


async def wait_for_navigation(page: Any, timeout_ms: int) -> bool:
    """Wait for the next main-frame navigation to load its DOM.

    Returns ``False`` on timeout instead of raising.
    """
    try:
        await page.wait_for_event(
            "framenavigated",
            predicate=lambda frame: frame == page.main_frame,
            timeout=timeout_ms,
        )
        await page.wait_for_load_state(
            "domcontentloaded", timeout=timeout_ms,
        )
        return True
    except PlaywrightTimeoutError:
        return False
