"""Main entry point - runs the swap API server."""

import logging

import uvicorn

from lnbridge.api.app import create_app
from lnbridge.config import get_settings

logger = logging.getLogger(__name__)


def main():
    """Main entry point."""
    settings = get_settings()

    # Configure logging
    log_level = logging.DEBUG if settings.debug else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    logger.info("Starting lnbridge...")
    logger.info(f"Environment: {settings.environment}")
    logger.info(
        f"Network: {settings.lightning_network}, lightning={settings.lightning_backend}, "
        f"settlement={settings.settlement_backend}, store={settings.swap_store}"
    )

    app = create_app(settings)
    logger.info(f"Starting API server on {settings.api_host}:{settings.api_port}")
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()
