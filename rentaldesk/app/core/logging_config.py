import logging

import structlog

from rentaldesk.app.core.config import settings


def _processors() -> list:
    return [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def build_formatter(json: bool | None = None) -> structlog.stdlib.ProcessorFormatter:
    """Render stdlib records, ``extra`` fields included, through structlog."""
    use_json = settings.LOG_JSON if json is None else json
    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.processors.KeyValueRenderer(
            key_order=["timestamp", "level", "logger", "event"], drop_missing=True
        )
    )
    return structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=[structlog.stdlib.ExtraAdder(), *_processors()],
    )


def configure_logging(level: str | None = None, json: bool | None = None) -> None:
    """Route the ``rentaldesk`` logger tree through a structlog formatter."""
    structlog.configure(
        processors=[*_processors(), structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logger = logging.getLogger("rentaldesk")
    logger.setLevel((level or settings.LOG_LEVEL).upper())

    if any(getattr(handler, "_rentaldesk", False) for handler in logger.handlers):
        return

    handler = logging.StreamHandler()
    handler.setFormatter(build_formatter(json))
    handler._rentaldesk = True
    logger.addHandler(handler)
