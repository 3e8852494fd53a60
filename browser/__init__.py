"""
Browser module for fetchgate.

Stealth browser automation built on top of Camoufox (a hardened Firefox
fork) and Playwright, plus the in-page side of challenge handling.

Submodules:
    instance: ``BrowserManager`` lifecycle for one persistent-profile
        browser bound to one sticky proxy session.
    interceptor: ``WidgetInterceptor`` capturing Turnstile render
        parameters before the page's own scripts run.
    challenge_scripts: Raw JS payloads evaluated in challenge pages.
"""

from .instance import BrowserManager

__all__ = ["BrowserManager"]
