"""Chat server entry point."""

import logging

from aiohttp import web

from src.config import settings

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)


def main() -> None:
    """Start the HTTP server on the configured host and port."""
    from src.server.app import create_app

    if not settings.llm_api_key:
        logger.warning("LLM_API_KEY is empty; chat requests will fail with a configuration error")

    logger.info(
        "Starting chat server on %s:%d with model %s...",
        settings.server_host,
        settings.server_port,
        settings.default_chat_model,
    )
    web.run_app(create_app(), host=settings.server_host, port=settings.server_port)


if __name__ == "__main__":
    main()
