"""Log output for the relay: NDJSON for aggregators, text for humans.

Most interesting log lines are about one device and one command, so
call sites attach that context through ``extra``::

    logger.info("Sent command", extra=device_context(token, kind))

:class:`JsonFormatter` lifts those attributes into top-level JSON keys,
which lets a log query follow a single camera across publish, reply and
timeout without regex over the message text.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import Any

from camrelay._settings import LoggingSettings

_MB = 1024 * 1024

_TEXT_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

#: LogRecord attributes copied into JSON output when a call site sets them.
CONTEXT_FIELDS: tuple[str, ...] = ("device", "command", "topic")


def device_context(
    token: str,
    kind: str | None = None,
    topic: str | None = None,
) -> dict[str, str]:
    """Build an ``extra`` mapping naming the device (and command) involved."""
    context = {"device": token}
    if kind is not None:
        context["command"] = str(kind)
    if topic is not None:
        context["topic"] = topic
    return context


class JsonFormatter(logging.Formatter):
    """One JSON object per record.

    Always present: ``timestamp`` (ISO 8601, UTC), ``level``, ``logger``,
    ``message``, ``service``.  Present when available: ``version``, the
    :data:`CONTEXT_FIELDS`, ``exception``, ``stack_info``.
    """

    def __init__(self, *, service: str = "", version: str = "") -> None:
        super().__init__()
        self._static: dict[str, str] = {"service": service}
        if version:
            self._static["version"] = version

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **self._static,
        }
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)
        # json.dumps escapes newlines in tracebacks, keeping one line per record.
        return json.dumps(entry, default=str)


def _build_formatter(settings: LoggingSettings, service: str, version: str) -> logging.Formatter:
    if settings.format == "json":
        return JsonFormatter(service=service, version=version)
    return logging.Formatter(_TEXT_FORMAT)


def _build_handlers(settings: LoggingSettings) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stderr)]
    if settings.file is not None:
        handlers.append(
            RotatingFileHandler(
                settings.file,
                maxBytes=settings.max_file_size_mb * _MB,
                backupCount=settings.backup_count,
            )
        )
    return handlers


def configure_logging(
    settings: LoggingSettings,
    *,
    service: str,
    version: str = "",
) -> None:
    """Replace the root logger's handlers according to *settings*.

    Installs a stderr handler and, when ``settings.file`` is set, a
    rotating file handler.  Both share one formatter.
    """
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    formatter = _build_formatter(settings, service, version)
    for handler in _build_handlers(settings):
        handler.setFormatter(formatter)
        root.addHandler(handler)
    root.setLevel(settings.level)

    # aiomqtt is chatty at DEBUG.
    if settings.level == "DEBUG":
        logging.getLogger("aiomqtt").setLevel(logging.INFO)
