"""Application configuration for fetchgate.

Central configuration module powered by Pydantic v2.  Settings are loaded from
environment variables (with ``.env`` file support).

Key exports:
    BotSettings: Root settings model (instantiate once per process).
    BASE_DIR / CONFIG_DIR / LOGS_DIR: Canonical project paths.
"""

# pylint: disable=no-member

import logging
from pathlib import Path
from typing import Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------------------------------------------------------------------------
# Base Paths
# ---------------------------------------------------------------------------
BASE_DIR: Path = Path(__file__).parent.parent
"""Project root directory (parent of ``core/``)."""

CONFIG_DIR: Path = BASE_DIR / "config"
"""Directory containing runtime state (browser profiles)."""

LOGS_DIR: Path = BASE_DIR / "logs"
"""Directory for log output files."""

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_PROXY_POOL_SIZE = 36


class BotSettings(BaseSettings):
    """Root configuration model for fetchgate.

    All fields can be set via environment variables or a ``.env`` file
    (``TWOCAPTCHA_API_KEY``, ``PROXY_URL``, ``PROXY_POOL_SIZE`` ...).

    Section overview:
        * **Core** -- log level, headless mode, global timeout.
        * **Solver** -- 2Captcha key and daily spend cap.  A missing key
          disables automatic solving; it is not an error.
        * **Proxy** -- sticky-session gateway credentials and pool size.
        * **Paths** -- browser profile and artifact directories.
        * **Degraded mode** -- per-host sitekey overrides used only when
          every extraction fallback failed.
    """

    # Core
    log_level: str = "INFO"
    headless: bool = True
    # Navigation timeout in ms (proxied challenge pages load slowly)
    timeout: int = 90000
    block_images: bool = False

    # Solver
    twocaptcha_api_key: Optional[str] = None
    captcha_daily_budget: float = 5.0

    # Proxy (sticky sessions: username gets a -<id> suffix per browser)
    enable_proxy: bool = False
    proxy_url: Optional[str] = None
    proxy_username: Optional[str] = None
    proxy_password: Optional[str] = None
    proxy_pool_size: int = DEFAULT_PROXY_POOL_SIZE

    # Paths
    profiles_dir: str = str(CONFIG_DIR / "profiles")
    artifacts_dir: str = "downloads"

    # Degraded mode
    known_sitekeys: Dict[str, str] = Field(
        default_factory=lambda: {
            "1lib.sk": "0x4AAAAAAADnPIDROrmt1Wwj",
        }
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def solver_enabled(self) -> bool:
        """Whether a 2Captcha credential is configured."""
        return bool(self.twocaptcha_api_key)

    @property
    def proxy_enabled(self) -> bool:
        """Whether a complete proxy configuration is present."""
        if not self.enable_proxy:
            return False
        if not (self.proxy_url and self.proxy_username):
            logger.warning(
                "ENABLE_PROXY is set but PROXY_URL / PROXY_USERNAME "
                "are missing. Running without proxy."
            )
            return False
        return True
