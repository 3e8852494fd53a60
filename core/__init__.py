"""
Core module for fetchgate.

Submodules:
    config: Application settings (``BotSettings``) via Pydantic.
    orchestrator: ``ChallengeOrchestrator`` state machine driving one
        page from navigation to a cleared (or abandoned) challenge.
    proxy_manager: Sticky-session derivation for rotating gateways.
    extractor: ``PageExtractor`` for artifacts and download links.
    logging_setup: Compressed rotating file + safe console logging.
"""
