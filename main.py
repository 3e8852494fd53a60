"""
fetchgate - Main Entry Point

Fetches one URL through a stealth browser, clears any Cloudflare or
DDoS-Guard challenge in front of it, and saves what the page turned out
to be.

Usage:
    python main.py URL                      # Headless fetch
    python main.py URL --visible            # Watch the browser
    python main.py URL --output out/        # Artifact directory
    python main.py URL --wait-selector "#downloadLink"
"""
from dotenv import load_dotenv

# Load environment variables from .env file into os.environ
load_dotenv()

import asyncio
import argparse
import logging
import sys
from dataclasses import dataclass, field
from typing import List, Optional

from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from browser.instance import BrowserManager
from core.config import BotSettings
from core.extractor import PageArtifacts, PageExtractor
from core.logging_setup import setup_logging
from core.orchestrator import ChallengeOrchestrator, OrchestrationResult
from core.proxy_manager import ProxySession, ProxySessionManager
from solvers.captcha import ChallengeSolver

logger = logging.getLogger(__name__)


@dataclass
class FetchReport:
    url: str
    final_url: str = ""
    title: str = ""
    result: Optional[OrchestrationResult] = None
    content_verified: Optional[bool] = None
    still_challenged: bool = False
    artifacts: Optional[PageArtifacts] = None
    links: List[str] = field(default_factory=list)
    clearance_cookies: str = ""
    proxy: Optional[ProxySession] = None

    @property
    def success(self) -> bool:
        return bool(
            self.result
            and self.result.cleared
            and not self.still_challenged
            and self.content_verified is not False
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Fetch a page from behind a bot-mitigation challenge",
    )
    parser.add_argument("url", help="Page to fetch")
    parser.add_argument(
        "--visible", action="store_true", help="Show browser",
    )
    parser.add_argument(
        "--output", type=str, default=None,
        help="Artifact directory (default: ARTIFACTS_DIR)",
    )
    parser.add_argument(
        "--wait-selector", type=str, default=None,
        help="CSS selector that proves the real page loaded",
    )
    return parser


async def fetch(
    url: str,
    settings: BotSettings,
    output_dir: str,
    wait_selector: Optional[str] = None,
) -> FetchReport:
    """Run one browser session against *url* and collect the outcome."""
    report = FetchReport(url=url)

    proxy_manager = ProxySessionManager(settings)
    if settings.proxy_enabled:
        report.proxy = proxy_manager.create_session()
    profile_dir = proxy_manager.profile_dir_for(
        report.proxy, settings.profiles_dir,
    )

    browser_manager = BrowserManager(
        profile_dir=profile_dir,
        headless=settings.headless,
        proxy=report.proxy,
        block_images=settings.block_images,
        timeout=settings.timeout,
    )
    solver = (
        ChallengeSolver(
            settings.twocaptcha_api_key,
            daily_budget=settings.captcha_daily_budget,
        )
        if settings.solver_enabled else None
    )
    orchestrator = ChallengeOrchestrator.from_settings(settings, solver)

    try:
        await browser_manager.launch()
        page = await browser_manager.new_page()
        report.result = await orchestrator.run(page, url)

        if wait_selector:
            report.content_verified = await orchestrator.verify_content(
                page, wait_selector,
            )

        report.final_url = page.url
        report.title = await page.title()
        html = await page.content()
        report.still_challenged = PageExtractor.is_challenge_html(html)
        report.artifacts = PageExtractor.write_artifacts(
            report.title, html, output_dir,
        )
        report.links = PageExtractor.extract_links(html, page.url)
        report.clearance_cookies = PageExtractor.cookie_header(
            await page.context.cookies(), prefix="__ddg",
        )
    finally:
        logger.info("Cleaning up resources...")
        if solver:
            await solver.close()
        await browser_manager.close()

    return report


def render_summary(report: FetchReport, console: Console) -> None:
    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    result = report.result
    table.add_row("URL", report.url)
    table.add_row("Final URL", report.final_url or "-")
    table.add_row("Title", report.title or "-")
    if result:
        table.add_row("Challenge", result.kind.value)
        table.add_row("State", result.state.value)
        table.add_row("Solve rounds", str(result.solve_rounds))
    if report.proxy:
        table.add_row("Proxy", report.proxy.masked())
    if report.content_verified is not None:
        table.add_row("Content verified", str(report.content_verified))
    if report.artifacts:
        table.add_row("Saved", report.artifacts.page_path)
    if report.clearance_cookies:
        table.add_row("Clearance cookies", report.clearance_cookies)

    style = "green" if report.success else "red"
    status = "CLEARED" if report.success else "NOT CLEARED"
    console.print(Panel(
        table,
        title=f"[bold {style}]{status}[/bold {style}]",
        border_style=style,
    ))

    if report.links:
        epub_count = sum(1 for link in report.links if ".epub" in link.lower())
        console.print(
            f"[cyan]Found {len(report.links)} candidate links "
            f"({epub_count} epub, {len(report.links) - epub_count} pdf)"
            "[/cyan]"
        )
        for link in report.links:
            fmt = "EPUB" if ".epub" in link.lower() else "PDF"
            console.print(f"  [{fmt}] {link}", markup=False)
    elif report.still_challenged:
        console.print(
            "[yellow]Page still shows a challenge; "
            "try --visible to finish it manually[/yellow]"
        )


async def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, fetch, print the summary; return an exit code."""
    args = build_parser().parse_args(argv)

    settings = BotSettings()
    if args.visible:
        settings.headless = False

    setup_logging(settings.log_level)

    if not settings.solver_enabled:
        logger.warning(
            "TWOCAPTCHA_API_KEY not set. Cloudflare challenges will "
            "not be solved automatically."
        )

    output_dir = args.output or settings.artifacts_dir
    console = Console()
    try:
        report = await fetch(
            args.url, settings, output_dir, args.wait_selector,
        )
    except KeyboardInterrupt:
        logger.info("Stopping (KeyboardInterrupt)...")
        return 1

    render_summary(report, console)
    return 0 if report.success else 1


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
