"""Artifact and link extraction for cleared pages.

Provides standardised helpers the CLI runs once a page is past its
challenge: persist what was fetched, find downloadable documents, and
flag pages that are still interstitials.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Dict, Iterable, List
from urllib.parse import urljoin

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 300

DOCUMENT_HREF_RE = re.compile(
    r"""href=["']([^"']+\.(?:pdf|epub)(?:\?[^"']*)?)["']""", re.I,
)
DOCUMENT_URL_RE = re.compile(
    r"""https?://[^\s"'<>]+\.(?:pdf|epub)(?:\?[^\s"'<>]*)?""", re.I,
)
DOCUMENT_DATA_RE = re.compile(
    r"""data-[^=\s]*=["']([^"']+\.(?:pdf|epub)(?:\?[^"']*)?)["']""", re.I,
)
INTERSTITIAL_RES = (
    re.compile(r"checking your browser", re.I),
    re.compile(r"ddg-captcha", re.I),
    re.compile(r"complete the manual check", re.I),
)


@dataclass
class PageArtifacts:
    page_path: str
    title_path: str
    preview_path: str


class PageExtractor:
    """Utility class for persisting and mining fetched pages.

    Examples:
        >>> PageExtractor.extract_links(
        ...     '<a href="/b.pdf">x</a><a href="/b.epub">y</a>',
        ...     "https://example.org/book/1",
        ... )
        ['https://example.org/b.epub', 'https://example.org/b.pdf']
        >>> PageExtractor.is_challenge_html("<p>Checking your browser</p>")
        True
    """

    @staticmethod
    def write_artifacts(
        title: str, html: str, out_dir: str,
    ) -> PageArtifacts:
        """Write ``page.html``, ``page.title.txt`` and ``page.preview.txt``.

        The preview is the HTML with whitespace collapsed, cut to
        ``PREVIEW_LENGTH`` characters with a trailing ``...`` when cut.
        """
        os.makedirs(out_dir, exist_ok=True)
        artifacts = PageArtifacts(
            page_path=os.path.join(out_dir, "page.html"),
            title_path=os.path.join(out_dir, "page.title.txt"),
            preview_path=os.path.join(out_dir, "page.preview.txt"),
        )
        html = html or ""
        collapsed = re.sub(r"\s+", " ", html)
        preview = collapsed[:PREVIEW_LENGTH]
        if len(html) > PREVIEW_LENGTH:
            preview += "..."

        with open(artifacts.page_path, "w", encoding="utf-8") as f:
            f.write(html)
        with open(artifacts.title_path, "w", encoding="utf-8") as f:
            f.write((title or "").strip() + "\n")
        with open(artifacts.preview_path, "w", encoding="utf-8") as f:
            f.write(preview + "\n")

        logger.info("Saved page artifacts to %s", out_dir)
        return artifacts

    @staticmethod
    def extract_links(html: str, base_url: str) -> List[str]:
        """Find EPUB and PDF links, EPUB first, without duplicates.

        Scans ``href`` attributes and ``data-*`` attributes (resolved
        against *base_url*) plus bare absolute URLs in the markup.
        """
        epub: Dict[str, None] = {}
        pdf: Dict[str, None] = {}

        def _add(links: Iterable[str]) -> None:
            for link in links:
                lower = link.lower()
                if ".epub" in lower:
                    epub.setdefault(link, None)
                elif ".pdf" in lower:
                    pdf.setdefault(link, None)

        html = html or ""
        _add(urljoin(base_url, m) for m in DOCUMENT_HREF_RE.findall(html))
        _add(m.group(0) for m in DOCUMENT_URL_RE.finditer(html))
        _add(urljoin(base_url, m) for m in DOCUMENT_DATA_RE.findall(html))
        return list(epub) + list(pdf)

    @staticmethod
    def is_challenge_html(html: str) -> bool:
        """True when *html* still looks like a DDoS-Guard interstitial."""
        return any(r.search(html or "") for r in INTERSTITIAL_RES)

    @staticmethod
    def cookie_header(cookies: Iterable[Dict], prefix: str = "") -> str:
        """Build a ``Cookie`` header from Playwright cookie dicts.

        Lets a cleared session be replayed outside the browser.
        """
        return "; ".join(
            f"{c['name']}={c.get('value', '')}"
            for c in cookies
            if c.get("name") and c["name"].startswith(prefix)
        )
