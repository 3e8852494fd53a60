"""Sticky-session proxy derivation for fetchgate.

Residential gateways pin a connection to one egress IP when the
username carries a session suffix (``user-15``).  A rotating username
(``user-rotate``) would hand every request a new IP, which breaks
challenge clearance cookies that are bound to the solving IP.

Key classes:
    ProxySession: Immutable identity handed to the browser at launch.
    ProxySessionManager: Draws a pool slot and builds the session.

Session lifecycle::

    derive (random slot) -> launch browser with session
    -> solve challenges on one IP -> close browser (profile removed)
"""

import logging
import os
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlparse

from core.config import BotSettings

logger = logging.getLogger(__name__)

ROTATE_MARKER = "-rotate"


@dataclass(frozen=True)
class ProxySession:
    """One sticky proxy identity, fixed for a browser's lifetime.

    Attributes:
        pool_index: Slot drawn from ``[1, pool_size]``.
        host: Gateway hostname.
        port: Gateway port.
        username: Session-suffixed username.
        password: Gateway password (may be empty).
    """

    pool_index: int
    host: str
    port: int
    username: str
    password: str = ""

    @property
    def server(self) -> str:
        """Gateway address without credentials, for the browser."""
        return f"http://{self.host}:{self.port}"

    def to_playwright(self) -> Dict[str, Any]:
        """Format the session as a Playwright ``proxy`` option."""
        proxy: Dict[str, Any] = {"server": self.server}
        if self.username:
            proxy["username"] = self.username
            proxy["password"] = self.password
        return proxy

    def masked(self) -> str:
        """Loggable form with the password hidden."""
        return f"{self.username}:***@{self.host}:{self.port}"


class ProxySessionManager:
    """Derive sticky proxy sessions from a rotating gateway account.

    Two sessions may draw the same slot and therefore share an egress
    IP.  That is accepted: slots are a pool, not a lease, and the
    gateway tolerates concurrent use of one session id.
    """

    def __init__(
        self,
        settings: Optional[BotSettings] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.settings = settings
        self._rng = rng or random.Random()

    def derive(
        self, base_username: str, pool_size: int,
    ) -> Tuple[str, int]:
        """Build a session-suffixed username.

        Args:
            base_username: Gateway username, optionally ending in
                ``-rotate``.
            pool_size: Number of sticky slots the gateway exposes.

        Returns:
            ``(username, session_id)`` where ``session_id`` is in
            ``[1, pool_size]``.

        Raises:
            ValueError: If ``pool_size`` is below 1.
        """
        if pool_size < 1:
            raise ValueError(
                f"pool_size must be >= 1, got {pool_size}"
            )
        session_id = self._rng.randint(1, pool_size)
        pure_username = base_username
        if pure_username.endswith(ROTATE_MARKER):
            pure_username = pure_username[: -len(ROTATE_MARKER)]
        return f"{pure_username}-{session_id}", session_id

    def create_session(
        self,
        proxy_url: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        pool_size: Optional[int] = None,
    ) -> ProxySession:
        """Create a :class:`ProxySession` for one browser launch.

        Missing arguments are taken from the settings passed to the
        constructor.

        Raises:
            ValueError: If the proxy URL has no host or no username is
                configured.
        """
        settings = self.settings
        proxy_url = proxy_url or (settings.proxy_url if settings else None)
        username = username or (
            settings.proxy_username if settings else None
        )
        if password is None:
            password = (
                settings.proxy_password if settings else None
            ) or ""
        if pool_size is None:
            pool_size = settings.proxy_pool_size if settings else 1

        if not proxy_url or not username:
            raise ValueError(
                "Proxy URL and username are required for a session"
            )
        host, port = self.parse_endpoint(proxy_url)
        session_username, session_id = self.derive(username, pool_size)

        session = ProxySession(
            pool_index=session_id,
            host=host,
            port=port,
            username=session_username,
            password=password,
        )
        logger.info(
            "Proxy session %d/%d (%s)",
            session_id, pool_size, session.masked(),
        )
        return session

    @staticmethod
    def parse_endpoint(proxy_url: str) -> Tuple[str, int]:
        """Split a proxy URL into host and port (default port 80)."""
        if "://" not in proxy_url:
            proxy_url = f"http://{proxy_url}"
        parsed = urlparse(proxy_url)
        if not parsed.hostname:
            raise ValueError(f"Invalid proxy URL: {proxy_url}")
        return parsed.hostname, parsed.port or 80

    def profile_dir_for(
        self, session: Optional[ProxySession], base_dir: str,
    ) -> str:
        """Return a browser profile path unique to this launch.

        The session id alone is not unique (slots can collide), so the
        millisecond launch time is appended.
        """
        slot = session.pool_index if session else 0
        stamp = int(time.time() * 1000)
        return os.path.join(base_dir, f"profile_{slot}_{stamp}")
