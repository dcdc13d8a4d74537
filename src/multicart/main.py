"""Entry point for the multi-retailer shopping agent service.

Configures logging, builds the service container and the FastAPI
application, and starts the uvicorn server.
"""

from __future__ import annotations

import structlog
import uvicorn
from fastapi import FastAPI

from common import setup_logging

from multicart.api import create_app
from multicart.config import Settings, get_settings
from multicart.container import build_container

logger = structlog.get_logger(__name__)


def build_app(settings: Settings | None = None) -> FastAPI:
    """Construct the fully-configured application.

    The bundled retailer catalogs are seeded into the record store on
    startup when ``settings.seed_catalog`` is set.
    """
    settings = settings or get_settings()
    setup_logging(settings.log_level)

    container = build_container(settings)
    app = create_app(settings, container)

    logger.info(
        "application_ready",
        service=settings.service_name,
        version=settings.service_version,
        environment=settings.environment,
        adapters=container.registry.ids(),
        docs_url=f"http://localhost:{settings.port}/docs",
    )
    return app


def main() -> None:
    """Launch the shopping agent server."""
    settings = get_settings()
    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
