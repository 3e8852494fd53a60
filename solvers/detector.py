"""Challenge detection and sitekey extraction.

Classifies an already-loaded page as unchallenged, Cloudflare
(Turnstile / managed challenge) or DDoS-Guard, and tries to recover the
widget sitekey.  Detection is a pure read: it never navigates and never
mutates the page.

Sitekey extraction is an ordered chain of independent strategies.  The
first one that yields a non-empty value wins, so the order below is the
precedence contract:

    1. marked element attribute   (``[data-sitekey]`` and friends)
    2. vendor custom element       (``<cf-turnstile sitekey=...>``)
    3. challenge iframe ``src``    (``challenges.cloudflare.com`` / hCaptcha)
    4. inline ``<script>`` text    (assignment regexes)
    5. in-page global object       (``turnstile._render_parameters``)
    6. raw page source scan        (last resort)
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Iterable, List, Optional, Sequence

from browser.challenge_scripts import (
    CUSTOM_ELEMENT_SCRIPT,
    GLOBAL_OBJECT_SCRIPT,
    IFRAME_SRC_SCRIPT,
    INLINE_SCRIPTS_SCRIPT,
    MARKED_ELEMENT_SCRIPT,
    main_world,
)

logger = logging.getLogger(__name__)


class ChallengeKind(Enum):
    """Bot-mitigation family found on a page."""

    NONE = "none"
    CLOUDFLARE = "cloudflare"
    DDOS_GUARD = "ddos-guard"


CLOUDFLARE_TITLE_PHRASES = (
    "just a moment",
    "attention required",
    "checking your browser before",
)
CLOUDFLARE_MARKERS = (
    "cf-turnstile",
    "challenges.cloudflare.com",
    "cf-chl-",
    "_cf_chl_opt",
    # scripts/jsd/ under the same prefix is the beacon on ordinary pages
    "/cdn-cgi/challenge-platform/h/",
    "cf-challenge",
    "turnstile.render",
)
DDOS_GUARD_TITLE_PHRASES = (
    "ddos-guard",
)
DDOS_GUARD_MARKERS = (
    "ddg-captcha",
    "ddos-guard",
    "checking your browser",
    "complete the manual check",
    "__ddg",
)

SITEKEY_SCRIPT_PATTERNS = (
    re.compile(r"""sitekey["'\s]*[:=]\s*["']([^"']+)["']""", re.I),
    re.compile(r"""["']sitekey["']\s*:\s*["']([^"']+)["']""", re.I),
    re.compile(r"""site[-_]?key["']?\s*[:=]\s*["']([^"']+)["']""", re.I),
    re.compile(r"""data-sitekey=["']([^"']+)["']""", re.I),
    re.compile(r"""hcaptcha\.com/1/api\.js\?[^"']*sitekey=([^&"']+)""", re.I),
)
SITEKEY_SOURCE_PATTERNS = (
    re.compile(r"""data-sitekey=["']([^"']+)["']""", re.I),
    re.compile(r"""[?&]sitekey=([0-9A-Za-z_-]{10,})"""),
    re.compile(r"""\b(0x4[0-9A-Za-z_-]{18,})\b"""),
)


@dataclass
class Detection:
    """Outcome of :meth:`ChallengeDetector.detect`.

    ``has_challenge`` with ``sitekey=None`` means the challenge is
    present but cannot be solved automatically.
    """

    has_challenge: bool = False
    kind: ChallengeKind = ChallengeKind.NONE
    sitekey: Optional[str] = None


def _clean(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


def match_patterns(
    texts: Iterable[str], patterns: Sequence["re.Pattern[str]"],
) -> Optional[str]:
    """Return the first capture of the first matching pattern."""
    for text in texts:
        if not text:
            continue
        for pattern in patterns:
            m = pattern.search(text)
            if m:
                found = _clean(m.group(1))
                if found:
                    return found
    return None


class SitekeyStrategy:
    """One link in the sitekey extraction chain."""

    name = "base"

    async def try_extract(self, page: Any, html: str) -> Optional[str]:
        raise NotImplementedError


class EvaluateStrategy(SitekeyStrategy):
    """Runs a single in-page script returning a sitekey or ``null``."""

    def __init__(self, name: str, script: str) -> None:
        self.name = name
        self.script = script

    async def try_extract(self, page: Any, html: str) -> Optional[str]:
        return _clean(await page.evaluate(main_world(self.script)))


class InlineScriptStrategy(SitekeyStrategy):
    """Scans inline script bodies with the assignment regexes."""

    name = "inline-script"

    async def try_extract(self, page: Any, html: str) -> Optional[str]:
        bodies = await page.evaluate(main_world(INLINE_SCRIPTS_SCRIPT))
        if not isinstance(bodies, list):
            return None
        return match_patterns(
            (b for b in bodies if isinstance(b, str)),
            SITEKEY_SCRIPT_PATTERNS,
        )


class PageSourceStrategy(SitekeyStrategy):
    """Last resort: grep the serialized page source."""

    name = "page-source"

    async def try_extract(self, page: Any, html: str) -> Optional[str]:
        return match_patterns([html], SITEKEY_SOURCE_PATTERNS)


def default_strategies() -> List[SitekeyStrategy]:
    return [
        EvaluateStrategy("marked-element", MARKED_ELEMENT_SCRIPT),
        EvaluateStrategy("custom-element", CUSTOM_ELEMENT_SCRIPT),
        EvaluateStrategy("iframe-src", IFRAME_SRC_SCRIPT),
        InlineScriptStrategy(),
        EvaluateStrategy("global-object", GLOBAL_OBJECT_SCRIPT),
        PageSourceStrategy(),
    ]


def classify(title: str, html: str) -> ChallengeKind:
    """Classify a page from its title and serialized HTML.

    Cloudflare is checked first; a page showing both families is
    handled as Cloudflare.
    """
    title_l = (title or "").lower()
    html_l = (html or "").lower()

    if any(p in title_l for p in CLOUDFLARE_TITLE_PHRASES):
        # "checking your browser" on its own is DDoS-Guard wording
        if "ddos-guard" not in html_l or any(
            m in html_l for m in CLOUDFLARE_MARKERS
        ):
            return ChallengeKind.CLOUDFLARE
    if any(m in html_l for m in CLOUDFLARE_MARKERS):
        return ChallengeKind.CLOUDFLARE
    if any(p in title_l for p in DDOS_GUARD_TITLE_PHRASES):
        return ChallengeKind.DDOS_GUARD
    if any(m in html_l for m in DDOS_GUARD_MARKERS):
        return ChallengeKind.DDOS_GUARD
    return ChallengeKind.NONE


class ChallengeDetector:
    """Detect challenges and extract sitekeys from loaded pages.

    Args:
        strategies: Extraction chain, tried in order.  Defaults to
            :func:`default_strategies`.
    """

    def __init__(
        self, strategies: Optional[List[SitekeyStrategy]] = None,
    ) -> None:
        self.strategies = (
            strategies if strategies is not None
            else default_strategies()
        )

    async def detect(self, page: Any) -> Detection:
        """Classify *page* and try to find its sitekey."""
        title = await page.title()
        html = await page.content()
        kind = classify(title, html)
        if kind is ChallengeKind.NONE:
            logger.debug("No challenge markers on page")
            return Detection()

        sitekey = await self.extract_sitekey(page, html)
        if sitekey:
            logger.info(
                "%s challenge detected (sitekey: %s...)",
                kind.value, sitekey[:12],
            )
        else:
            logger.warning(
                "%s challenge detected but no sitekey found",
                kind.value,
            )
        return Detection(
            has_challenge=True, kind=kind, sitekey=sitekey,
        )

    async def extract_sitekey(
        self, page: Any, html: Optional[str] = None,
    ) -> Optional[str]:
        """Run the extraction chain; first non-empty result wins."""
        if html is None:
            html = await page.content()
        for strategy in self.strategies:
            try:
                sitekey = await strategy.try_extract(page, html)
            except Exception as e:
                logger.debug(
                    "Sitekey strategy %s failed: %s",
                    strategy.name, e,
                )
                continue
            if sitekey:
                logger.debug(
                    "Sitekey found via %s", strategy.name,
                )
                return sitekey
        return None
