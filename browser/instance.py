"""Browser instance management for fetchgate.

Provides :class:`BrowserManager` which wraps ``Camoufox`` (a hardened
Firefox fork) via Playwright.  Each manager owns:

* One persistent browser context backed by a fresh profile directory,
  removed again on :meth:`BrowserManager.close`.
* At most one sticky :class:`~core.proxy_manager.ProxySession`, passed
  to the browser at launch (credentials included, so no auth prompt).
* Main-world evaluation, required by the challenge scripts that read
  and patch page globals.
"""

from typing import Any, Dict, Optional

import asyncio
import logging
import os
import shutil

from browserforge.fingerprints import Screen
from camoufox.async_api import AsyncCamoufox
from playwright.async_api import BrowserContext, Page

from core.proxy_manager import ProxySession

logger = logging.getLogger(__name__)

# Fixed prefs only; everything fingerprint-related is left to Camoufox
FIREFOX_PREFS: Dict[str, Any] = {
    # Disable telemetry and crash reporting
    "toolkit.telemetry.enabled": False,
    "datareporting.policy.dataSubmissionEnabled": False,
    "datareporting.healthreport.uploadEnabled": False,
    "browser.crashReports.unsubmittedCheck.autoSubmit2": False,
    # Disable first-run annoyances
    "browser.shell.checkDefaultBrowser": False,
    "browser.startup.homepage_override.mstone": "ignore",
    # WebRTC must not leak the real IP around the proxy
    "media.peerconnection.ice.default_address_only": True,
    "media.peerconnection.ice.no_host": True,
    "media.peerconnection.ice.proxy_only": True,
    # Avoid DNS prefetch leaking real IP
    "network.dns.disablePrefetch": True,
    "network.prefetch-next": False,
    "network.proxy.socks_remote_dns": True,
    # Prevent speculative connections
    "network.http.speculative-parallel-limit": 0,
    "browser.urlbar.speculativeConnect.enabled": False,
}


class BrowserManager:
    """Manages the lifecycle of one Camoufox browser instance.

    Args:
        profile_dir: Directory for the persistent profile.  Created at
            launch, deleted at close.
        headless: Whether to run without a visible window.
        proxy: Sticky proxy session, or ``None`` for a direct
            connection.
        block_images: Whether Camoufox should skip image loads.
        timeout: Default Playwright timeout in milliseconds.
    """

    def __init__(
        self,
        profile_dir: str,
        headless: bool = True,
        proxy: Optional[ProxySession] = None,
        block_images: bool = False,
        timeout: int = 90000,
    ) -> None:
        self.profile_dir = profile_dir
        self.headless = headless
        self.proxy = proxy
        self.block_images = block_images
        self.timeout = timeout
        self.camoufox: Optional[AsyncCamoufox] = None
        self.context: Optional[BrowserContext] = None

    def _launch_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "headless": self.headless,
            "persistent_context": True,
            "user_data_dir": self.profile_dir,
            "main_world_eval": True,
            "humanize": True,
            "block_images": self.block_images,
            "firefox_user_prefs": dict(FIREFOX_PREFS),
        }
        if self.proxy:
            kwargs["proxy"] = self.proxy.to_playwright()
            # Align timezone / locale with the proxy exit
            kwargs["geoip"] = True
        # Avoid browserforge header generation failures with
        # low-resolution headless defaults (e.g. 1024x768).
        if self.headless:
            kwargs["screen"] = Screen(max_width=1920, max_height=1080)
        return kwargs

    async def launch(self) -> "BrowserManager":
        """Launch the browser with a persistent context.

        Returns:
            ``self`` for fluent chaining.

        Raises:
            Exception: If the browser fails to start.
        """
        os.makedirs(self.profile_dir, exist_ok=True)
        logger.info(
            "Launching Camoufox (Headless: %s, Proxy: %s)...",
            self.headless,
            self.proxy.masked() if self.proxy else "none",
        )
        kwargs = self._launch_kwargs()
        try:
            self.camoufox = AsyncCamoufox(**kwargs)
            self.context = await self.camoufox.__aenter__()
        except Exception as e:
            if not kwargs.get("geoip") or "GeoLite2" not in str(e):
                raise
            logger.warning(
                "GeoIP database invalid or missing."
                " Retrying launch with geoip disabled.",
            )
            kwargs["geoip"] = False
            self.camoufox = AsyncCamoufox(**kwargs)
            self.context = await self.camoufox.__aenter__()
        self.context.set_default_timeout(self.timeout)
        return self

    async def new_page(self) -> Page:
        """Return a page in the persistent context.

        The persistent context opens with one blank page; it is reused
        instead of leaving an idle tab behind.
        """
        if not self.context:
            await self.launch()
        if self.context.pages:
            return self.context.pages[0]
        return await self.context.new_page()

    async def close(self) -> None:
        """Shut down the browser and delete its profile directory."""
        if self.camoufox:
            try:
                await self.camoufox.__aexit__(None, None, None)
            except Exception as e:
                logger.debug("Error during browser exit: %s", e)
            self.camoufox = None
            self.context = None
            logger.info("Browser closed.")
        if os.path.isdir(self.profile_dir):
            # Firefox may still hold lock files for a moment
            await asyncio.to_thread(
                shutil.rmtree, self.profile_dir, ignore_errors=True,
            )
            logger.debug("Removed profile %s", self.profile_dir)

    async def __aenter__(self) -> "BrowserManager":
        return await self.launch()

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> bool:
        await self.close()
        return False
