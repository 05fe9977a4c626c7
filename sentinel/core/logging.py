"""Structured logging setup using structlog."""

from __future__ import annotations

import logging
import re
import sys
from typing import Any, TextIO

import structlog

from sentinel.core.config import OutputConfig

# Library loggers that are chatty at INFO; kept at WARNING unless debugging.
_NOISY = ("httpx", "httpcore", "aiohttp.access")

_SECRET_KEYS = frozenset({"auth_key", "authkey", "url", "webhook_url"})
_AUTH_KEY = re.compile(r"tskey-[A-Za-z0-9-]+")
_URL_TAIL = re.compile(r"(https?://[^/\s]+)/\S+")
_MASK = "***"


def _mask(value: str) -> str:
    value = _AUTH_KEY.sub("tskey-" + _MASK, value)
    return _URL_TAIL.sub(r"\1/" + _MASK, value)


def redact_secrets(
    _logger: Any, _method: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Mask tailnet auth keys and webhook paths before rendering.

    Webhook URLs carry their token in the path, so only scheme and host
    survive.
    """
    for key, value in event_dict.items():
        if not isinstance(value, str):
            continue
        if key in _SECRET_KEYS or "tskey-" in value:
            event_dict[key] = _mask(value)
    return event_dict


def _renderer(log_format: str, colors: bool) -> structlog.types.Processor:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=colors)


def setup_logging(config: OutputConfig | None = None, stream: TextIO | None = None) -> None:
    """Route structlog and stdlib logging through one stderr handler.

    Args:
        config: Output settings (level, ``pretty``/``json`` and colour).
            Defaults are used if None.
        stream: Destination, ``sys.stderr`` unless given. Stdout stays free
            for command output.
    """
    cfg = config or OutputConfig()
    log_level = getattr(logging, cfg.log_level.upper(), logging.INFO)
    stream = stream or sys.stderr

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        redact_secrets,
    ]

    structlog.configure(
        processors=[
            *pre_chain,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(stream)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _renderer(cfg.log_format.lower(), colors=not cfg.no_color),
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(log_level)

    for name in _NOISY:
        logging.getLogger(name).setLevel(
            logging.DEBUG if log_level <= logging.DEBUG else logging.WARNING
        )
