"""Turnstile render interception.

The managed-challenge parameters (``action``, ``cData``,
``chlPageData``) never appear in static markup; they exist only as
arguments to the page's own ``turnstile.render`` call.  The interceptor
registers an init script that wraps ``render`` before the page's
scripts run, then reads the captured arguments back after navigation.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlparse

from browser.challenge_scripts import (
    CONSOLE_TAG,
    INTERCEPT_SCRIPT,
    READ_CAPTURED_SCRIPT,
    RESET_CAPTURED_SCRIPT,
    main_world,
)
from solvers.captcha import ChallengeParams
from solvers.detector import ChallengeDetector

logger = logging.getLogger(__name__)

CAPTURE_WAIT_SECONDS = 20
CAPTURE_POLL_SECONDS = 1.0


@dataclass
class CapturedWidget:
    """Arguments captured from the page's ``turnstile.render`` call."""

    params: ChallengeParams
    has_callback: bool = False


class WidgetInterceptor:
    """Capture widget parameters at render time, with fallbacks.

    One interceptor belongs to one page lifecycle: ``last_sitekey``
    carries the most recent sitekey across chained challenge rounds.

    Args:
        detector: Detector whose extraction chain is reused when the
            render call was not intercepted.
        known_sitekeys: Host to sitekey overrides used only after every
            other fallback failed.
        capture_wait: Seconds to wait for the captured state.
    """

    def __init__(
        self,
        detector: Optional[ChallengeDetector] = None,
        known_sitekeys: Optional[Dict[str, str]] = None,
        capture_wait: float = CAPTURE_WAIT_SECONDS,
    ) -> None:
        self.detector = detector or ChallengeDetector()
        self.known_sitekeys = dict(known_sitekeys or {})
        self.capture_wait = capture_wait
        self.last_sitekey: Optional[str] = None
        self._console_pages = weakref.WeakSet()

    async def install(self, page: Any) -> None:
        """Register the render hook for every following document load.

        Must be called before the navigation it is meant to observe.
        """
        self._attach_console(page)
        await page.add_init_script(INTERCEPT_SCRIPT)
        logger.debug("Render interceptor registered")

    async def install_in_place(self, page: Any) -> None:
        """Install the hook into the current document.

        Used between chained challenge rounds, where no navigation
        happens and an init script would never fire.
        """
        self._attach_console(page)
        await page.evaluate(main_world(RESET_CAPTURED_SCRIPT))
        await page.evaluate(main_world(INTERCEPT_SCRIPT))
        logger.debug("Render interceptor injected into current document")

    def _attach_console(self, page: Any) -> None:
        if page in self._console_pages:
            return
        self._console_pages.add(page)

        def _on_console(msg: Any) -> None:
            text = getattr(msg, "text", None)
            if isinstance(text, str) and CONSOLE_TAG in text:
                logger.debug("page: %s", text)

        page.on("console", _on_console)

    async def read_captured(self, page: Any) -> Optional[CapturedWidget]:
        """Return the captured render arguments, if any."""
        data = await page.evaluate(main_world(READ_CAPTURED_SCRIPT))
        if not isinstance(data, dict) or not data.get("sitekey"):
            return None
        return CapturedWidget(
            params=ChallengeParams.from_page_dict(data),
            has_callback=bool(data.get("hasCallback")),
        )

    async def wait_for_capture(
        self, page: Any,
    ) -> Optional[CapturedWidget]:
        """Poll for captured state for up to ``capture_wait`` seconds."""
        logger.info(
            "Waiting for Turnstile render call (up to %ds)...",
            self.capture_wait,
        )
        waited = 0.0
        while True:
            captured = await self.read_captured(page)
            if captured:
                return captured
            if waited >= self.capture_wait:
                return None
            await asyncio.sleep(CAPTURE_POLL_SECONDS)
            waited += CAPTURE_POLL_SECONDS

    async def extract_params(
        self, page: Any,
    ) -> Optional[ChallengeParams]:
        """Recover challenge parameters, falling back step by step.

        Order: intercepted render call, the detector's extraction
        chain, the sitekey cached from a previous round, then a
        host-scoped override.

        Returns:
            Parameters with a sitekey, or ``None`` if every fallback
            failed.
        """
        captured = await self.wait_for_capture(page)
        if captured:
            logger.info(
                "Turnstile parameters intercepted (managed: %s)",
                captured.params.is_managed,
            )
            self.last_sitekey = captured.params.sitekey
            return captured.params

        logger.info(
            "Render call not intercepted (widget may be pre-rendered). "
            "Extracting sitekey from page..."
        )
        sitekey = await self.detector.extract_sitekey(page)
        if sitekey:
            self.last_sitekey = sitekey
            return ChallengeParams(sitekey=sitekey)

        if self.last_sitekey:
            logger.info(
                "Reusing sitekey from previous challenge: %s",
                self.last_sitekey,
            )
            return ChallengeParams(sitekey=self.last_sitekey)

        override = self._known_sitekey_for(page.url)
        if override:
            logger.warning(
                "Degraded mode: using hardcoded sitekey %s for %s. "
                "This breaks silently if the site rotates its key.",
                override, urlparse(page.url).hostname,
            )
            self.last_sitekey = override
            return ChallengeParams(sitekey=override)

        logger.error("Could not extract Turnstile parameters")
        return None

    def _known_sitekey_for(self, url: str) -> Optional[str]:
        host = (urlparse(url).hostname or "").lower()
        if not host:
            return None
        for domain, sitekey in self.known_sitekeys.items():
            domain = domain.lower()
            if host == domain or host.endswith(f".{domain}"):
                return sitekey
        return None
