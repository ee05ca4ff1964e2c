"""Logging setup utilities for cmdrelay.

Configures logging for the entire application based on the logging
configuration settings, and renders relay protocol events as log
records with their fields attached.
"""

from __future__ import annotations

import logging
import sys

from cmdrelay.config.settings import LoggingConfig
from cmdrelay.domain.models import RelayEvent, RelayEventKind

# Event kinds that indicate something went wrong on a connection.
_WARNING_KINDS = {RelayEventKind.ERROR, RelayEventKind.TIMEOUT}


def setup_logging(config: LoggingConfig | None = None) -> None:
    """Attach handlers to the ``cmdrelay`` logger.

    Records go to stderr and, when ``config.file`` is set, to that file
    too. Handlers installed by an earlier call are closed and replaced,
    so calling this again reconfigures instead of duplicating output.
    """
    config = config or LoggingConfig()
    formatter = logging.Formatter(config.format)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if config.file:
        handlers.append(logging.FileHandler(config.file, encoding="utf-8"))

    package_logger = logging.getLogger("cmdrelay")
    for old in list(package_logger.handlers):
        package_logger.removeHandler(old)
        old.close()
    for handler in handlers:
        handler.setFormatter(formatter)
        package_logger.addHandler(handler)
    package_logger.setLevel(getattr(logging, config.level.upper(), logging.INFO))
    package_logger.debug("Logging configured: level=%s file=%s", config.level, config.file)


def log_event(logger: logging.Logger, event: RelayEvent) -> None:
    """Log a relay event as ``kind [listener#id] key=value ...``.

    The event fields are also attached to the record as ``extra`` so
    structured handlers can pick them up without parsing the message.
    """
    level = logging.WARNING if event.kind in _WARNING_KINDS else logging.INFO
    if event.kind == RelayEventKind.COMMAND_RECEIVED:
        level = logging.DEBUG

    parts = [f"{k}={v!r}" for k, v in event.detail.items()]
    if event.duration_ms is not None:
        parts.append(f"duration_ms={event.duration_ms:.1f}")
    target = event.listener or "relay"
    if event.connection_id is not None:
        target = f"{target}#{event.connection_id}"

    logger.log(
        level,
        "%s [%s] %s",
        event.kind.value,
        target,
        " ".join(parts),
        extra={
            "event_kind": event.kind.value,
            "listener": event.listener,
            "connection_id": event.connection_id,
            "duration_ms": event.duration_ms,
        },
    )
