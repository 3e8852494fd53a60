"""2Captcha client for Cloudflare Turnstile and DDoS-Guard checks.

Two wire protocols are used, chosen by the shape of the captured
widget parameters:

    * **Legacy** (``in.php`` / ``res.php``) -- standalone widgets that
      only carry a sitekey.  Success is a bare ``OK|<token>``.
    * **Task API** (``createTask`` / ``getTaskResult``) -- full-page
      managed challenges that also carry ``action`` / ``cData`` /
      ``chlPageData``.  Success returns a token *and* the user agent the
      solve is bound to.

Both share one shape: submit once (no retry on rejection), then poll
every :data:`POLL_INTERVAL_SECONDS` for at most
:data:`MAX_POLL_ATTEMPTS` rounds.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Union

import aiohttp

logger = logging.getLogger(__name__)

LEGACY_SUBMIT_URL = "https://2captcha.com/in.php"
LEGACY_RESULT_URL = "https://2captcha.com/res.php"
TASK_API_BASE_URL = "https://api.2captcha.com"

POLL_INTERVAL_SECONDS = 5
MAX_POLL_ATTEMPTS = 60
NOT_READY = "CAPCHA_NOT_READY"
TURNSTILE_TASK_TYPE = "TurnstileTaskProxyless"
DEFAULT_DAILY_BUDGET_USD = 5.0
# 2Captcha list price per Turnstile / hCaptcha solve
DEFAULT_SOLVE_COST_USD = 0.00145
# Transport failures, client timeouts and non-JSON bodies (502 pages)
SERVICE_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ValueError)


@dataclass
class ChallengeParams:
    """Widget parameters recovered from a challenge page.

    Attributes:
        sitekey: Public widget key; required before solving.
        action: Managed-challenge action name.
        c_data: Managed-challenge ``cData`` blob.
        chl_page_data: Managed-challenge ``chlPageData`` blob.
    """

    sitekey: str
    action: Optional[str] = None
    c_data: Optional[str] = None
    chl_page_data: Optional[str] = None

    @property
    def is_managed(self) -> bool:
        """True when any managed-challenge field is present."""
        return bool(self.action or self.c_data or self.chl_page_data)

    @classmethod
    def from_page_dict(cls, data: Dict[str, Any]) -> "ChallengeParams":
        """Build from the camelCase dict captured in the page."""
        return cls(
            sitekey=data.get("sitekey") or "",
            action=data.get("action") or None,
            c_data=data.get("cData") or None,
            chl_page_data=data.get("chlPageData") or None,
        )


class TaskStatus(Enum):
    PENDING = "pending"
    READY = "ready"
    ERROR = "error"


@dataclass
class SolveTask:
    """A single submission to the solving service.

    Transitions exactly once, ``PENDING`` to ``READY`` or ``ERROR``.
    """

    id: str
    protocol: str
    status: TaskStatus = TaskStatus.PENDING
    token: Optional[str] = None
    user_agent: Optional[str] = None
    cost: float = 0.0
    error: Optional[str] = None

    def resolve(
        self,
        token: str,
        user_agent: Optional[str] = None,
        cost: float = 0.0,
    ) -> None:
        self._check_pending()
        self.status = TaskStatus.READY
        self.token = token
        self.user_agent = user_agent or None
        self.cost = cost

    def fail(self, error: str) -> None:
        self._check_pending()
        self.status = TaskStatus.ERROR
        self.error = error

    def _check_pending(self) -> None:
        if self.status is not TaskStatus.PENDING:
            raise RuntimeError(
                f"Solve task {self.id} already {self.status.value}"
            )


class ChallengeSolver:
    """Submit challenge parameters to 2Captcha and poll to completion.

    Attributes:
        api_key: 2Captcha API key.  ``None`` disables solving.
        daily_budget: Maximum spend per calendar day in USD.
        session: Shared ``aiohttp`` session, created lazily.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        daily_budget: float = DEFAULT_DAILY_BUDGET_USD,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        max_poll_attempts: int = MAX_POLL_ATTEMPTS,
    ) -> None:
        self.api_key = api_key
        self.daily_budget = daily_budget
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.session: Optional[aiohttp.ClientSession] = None
        self.total_cost: float = 0.0
        self.solve_count: int = 0
        self._daily_spend: float = 0.0
        self._budget_reset_date: str = time.strftime("%Y-%m-%d")
        if not self.api_key:
            logger.warning(
                "No 2Captcha API key configured. "
                "Challenges will not be solved automatically."
            )

    # ----- Session management -----

    async def _get_session(self) -> aiohttp.ClientSession:
        if not self.session or self.session.closed:
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=30),
            )
        return self.session

    async def __aenter__(self) -> "ChallengeSolver":
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type],
        exc_val: Optional[BaseException],
        exc_tb: Optional[Any],
    ) -> bool:
        await self.close()
        return False

    async def close(self) -> None:
        """Close the underlying aiohttp session."""
        if self.session and not self.session.closed:
            await self.session.close()
            self.session = None

    # ----- Budget -----

    def _check_and_reset_daily_budget(self) -> None:
        today = time.strftime("%Y-%m-%d")
        if today != self._budget_reset_date:
            logger.info(
                "New day. Resetting captcha budget. "
                "Yesterday: $%.4f",
                self._daily_spend,
            )
            self._daily_spend = 0.0
            self._budget_reset_date = today

    def can_afford_solve(self) -> bool:
        """Check whether another solve fits in today's budget."""
        self._check_and_reset_daily_budget()
        if self._daily_spend + DEFAULT_SOLVE_COST_USD > self.daily_budget:
            logger.warning(
                "Daily captcha budget exhausted ($%.4f/$%.2f)",
                self._daily_spend,
                self.daily_budget,
            )
            return False
        return True

    def _record_solve(self, task: SolveTask) -> None:
        cost = task.cost or DEFAULT_SOLVE_COST_USD
        self._daily_spend += cost
        self.total_cost += cost
        self.solve_count += 1
        logger.info(
            "Captcha cost: $%.5f (Today: $%.4f, Solves: %d)",
            cost, self._daily_spend, self.solve_count,
        )

    def get_budget_stats(self) -> Dict[str, Any]:
        """Return current spend statistics."""
        self._check_and_reset_daily_budget()
        return {
            "daily_budget": self.daily_budget,
            "spent_today": self._daily_spend,
            "remaining": self.daily_budget - self._daily_spend,
            "total_cost": self.total_cost,
            "solves": self.solve_count,
            "date": self._budget_reset_date,
        }

    # ----- Main entry points -----

    async def solve(
        self, page: Any, params: ChallengeParams,
    ) -> Optional[SolveTask]:
        """Solve *params* for the page's current URL.

        Args:
            page: Playwright page (only ``page.url`` is read).
            params: Captured widget parameters.

        Returns:
            The ``READY`` task, or ``None`` on rejection, error or
            timeout.
        """
        if not self.api_key:
            logger.warning("2Captcha API key not configured")
            return None
        if not params.sitekey:
            logger.error("Refusing to solve without a sitekey")
            return None
        if not self.can_afford_solve():
            return None

        url = page.url
        protocol = "task" if params.is_managed else "legacy"
        logger.info(
            "[LIFECYCLE] captcha_solve_start | protocol=%s"
            " | sitekey=%s... | timestamp=%.0f",
            protocol, params.sitekey[:12], time.time(),
        )
        start_time = time.time()

        if params.is_managed:
            task = await self.solve_managed(params, url)
        else:
            task = await self.solve_standalone(params.sitekey, url)

        success = task is not None and task.status is TaskStatus.READY
        logger.info(
            "[LIFECYCLE] captcha_solve | protocol=%s"
            " | duration=%.1fs | success=%s | timestamp=%.0f",
            protocol,
            time.time() - start_time,
            "true" if success else "false",
            time.time(),
        )
        if not success:
            return None
        self._record_solve(task)
        return task

    async def solve_token(
        self, page: Any, params: ChallengeParams,
    ) -> Union[str, bool]:
        """Like :meth:`solve` but returns the bare token or ``False``."""
        task = await self.solve(page, params)
        if task is None or not task.token:
            return False
        return task.token

    # ----- Legacy protocol -----

    async def solve_standalone(
        self, sitekey: str, url: str, method: str = "turnstile",
    ) -> Optional[SolveTask]:
        """Solve a standalone widget via ``in.php`` / ``res.php``.

        Args:
            sitekey: Widget sitekey.
            url: Page URL the widget lives on.
            method: 2Captcha method (``turnstile`` or ``hcaptcha``).
        """
        if not self.api_key:
            return None
        session = await self._get_session()
        params = {
            "key": self.api_key,
            "method": method,
            "sitekey": sitekey,
            "pageurl": url,
        }
        logger.info(
            "Submitting %s to 2Captcha (sitekey: %s...)",
            method, sitekey[:20],
        )
        try:
            async with session.get(
                LEGACY_SUBMIT_URL, params=params,
            ) as resp:
                text = (await resp.text()).strip()
        except SERVICE_ERRORS as e:
            logger.error("2Captcha submit failed: %r", e)
            return None

        if not text.startswith("OK|"):
            logger.error("2Captcha submission rejected: %s", text)
            return None

        task = SolveTask(id=text.split("|", 1)[1], protocol="legacy")
        logger.info("Waiting for solution (ID: %s)...", task.id)

        for attempt in range(1, self.max_poll_attempts + 1):
            await asyncio.sleep(self.poll_interval)
            try:
                async with session.get(
                    LEGACY_RESULT_URL,
                    params={
                        "key": self.api_key,
                        "action": "get",
                        "id": task.id,
                    },
                ) as resp:
                    text = (await resp.text()).strip()
            except SERVICE_ERRORS as e:
                logger.debug(
                    "Poll %d failed: %r", attempt, e,
                )
                continue

            if text == NOT_READY:
                if attempt % 6 == 0:
                    logger.info(
                        "Still waiting (ID: %s, %ds)...",
                        task.id, attempt * self.poll_interval,
                    )
                continue
            if text.startswith("OK|"):
                task.resolve(text.split("|", 1)[1])
                logger.info("%s solved (legacy API)", method)
                return task

            logger.error("2Captcha error: %s", text)
            task.fail(text)
            return None

        logger.error(
            "2Captcha timeout after %d polls (ID: %s)",
            self.max_poll_attempts, task.id,
        )
        task.fail("TIMEOUT")
        return None

    # ----- Task protocol -----

    async def solve_managed(
        self, params: ChallengeParams, url: str,
    ) -> Optional[SolveTask]:
        """Solve a managed challenge via ``createTask`` / ``getTaskResult``."""
        if not self.api_key:
            return None
        session = await self._get_session()
        payload: Dict[str, Any] = {
            "clientKey": self.api_key,
            "task": {
                "type": TURNSTILE_TASK_TYPE,
                "websiteURL": url,
                "websiteKey": params.sitekey,
                "action": params.action,
                "data": params.c_data,
                "pagedata": params.chl_page_data,
            },
        }
        logger.info(
            "Submitting managed challenge to 2Captcha Task API "
            "(sitekey: %s..., action: %s)",
            params.sitekey[:20], params.action,
        )
        try:
            async with session.post(
                f"{TASK_API_BASE_URL}/createTask", json=payload,
            ) as resp:
                data = await resp.json(content_type=None)
        except SERVICE_ERRORS as e:
            logger.error(
                "2Captcha Task API request failed: %r", e,
            )
            return None

        if not isinstance(data, dict):
            logger.error("2Captcha Task API returned %r", data)
            return None
        if data.get("errorId", 0) != 0 or not data.get("taskId"):
            logger.error(
                "2Captcha task creation failed: %s - %s",
                data.get("errorCode", "UNKNOWN"),
                data.get("errorDescription", ""),
            )
            return None

        task = SolveTask(id=str(data["taskId"]), protocol="task")
        logger.info("Waiting for solution (Task: %s)...", task.id)
        result_payload = {"clientKey": self.api_key, "taskId": data["taskId"]}

        for attempt in range(1, self.max_poll_attempts + 1):
            await asyncio.sleep(self.poll_interval)
            try:
                async with session.post(
                    f"{TASK_API_BASE_URL}/getTaskResult",
                    json=result_payload,
                ) as resp:
                    data = await resp.json(content_type=None)
            except SERVICE_ERRORS as e:
                logger.debug(
                    "Poll %d failed: %r", attempt, e,
                )
                continue

            if not isinstance(data, dict):
                continue
            if data.get("errorId", 0) != 0:
                error = data.get("errorCode") or data.get(
                    "errorDescription", "UNKNOWN"
                )
                logger.error("2Captcha task error: %s", error)
                task.fail(str(error))
                return None

            status = data.get("status")
            if status == "processing":
                if attempt % 6 == 0:
                    logger.info(
                        "Still waiting (Task: %s, %ds)...",
                        task.id, attempt * self.poll_interval,
                    )
                continue
            if status == "ready":
                solution = data.get("solution") or {}
                token = solution.get("token")
                if not token:
                    logger.error(
                        "2Captcha task ready but no token: %s",
                        list(solution.keys()),
                    )
                    task.fail("NO_TOKEN")
                    return None
                try:
                    cost = float(data.get("cost") or 0.0)
                except (TypeError, ValueError):
                    cost = 0.0
                task.resolve(token, solution.get("userAgent"), cost)
                logger.info(
                    "Managed challenge solved (cost: $%s)",
                    data.get("cost", "n/a"),
                )
                return task

            logger.error("Unexpected task status: %s", status)
            task.fail(f"UNEXPECTED_STATUS:{status}")
            return None

        logger.error(
            "2Captcha task timeout after %d polls (Task: %s)",
            self.max_poll_attempts, task.id,
        )
        task.fail("TIMEOUT")
        return None
