"""
alertflow - Main Entry Point

Configures structured logging and serves the HTTP API, which owns the
orchestrator and any configured Kafka sources.
"""

from __future__ import annotations

import logging
import sys

import structlog

from alertflow.config import Settings, get_settings


def configure_logging(settings: Settings) -> None:
    """Structured logging: console renderer on a TTY, JSON otherwise."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer() if sys.stderr.isatty() else structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    """Run the API server."""
    import uvicorn

    from alertflow.api.main import create_app

    settings = get_settings()
    configure_logging(settings)

    structlog.get_logger().info(
        "Starting alertflow",
        environment=settings.environment,
        host=settings.api.host,
        port=settings.api.port,
    )
    uvicorn.run(
        create_app(settings),
        host=settings.api.host,
        port=settings.api.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
