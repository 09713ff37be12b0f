"""structlog setup shared by the client, the migration tools and the CLI.

Every event passes through `_redact_connection_strings`, so a connection string
that reaches a log record through a driver error message still has its password
masked. `redact_uri` is the same masking for error messages built by hand.

Configuration comes from ``LOG_*`` environment variables::

    LOG_LEVEL=DEBUG LOG_FORMAT=json catalogdb db:migrate
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Callable
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import TYPE_CHECKING, Final, Literal, cast

import structlog
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from structlog.processors import CallsiteParameter

if TYPE_CHECKING:
    from structlog.types import EventDict, Processor, WrappedLogger

type BoundLogger = structlog.stdlib.BoundLogger
type LogLevel = Literal["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG", "NOTSET"]
type LogFormat = Literal["console", "json", "logfmt"]

_URI_PASSWORD: Final = re.compile(r"(://[^:/@\s]*:)[^@/\s]*@")

_RENDERERS: Final[dict[str, Callable[[], Processor]]] = {
    "console": lambda: structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
    "json": structlog.processors.JSONRenderer,
    "logfmt": lambda: structlog.processors.LogfmtRenderer(key_order=["timestamp", "level", "event"]),
}


def redact_uri(text: str) -> str:
    """Mask the password of every connection string in ``text``."""
    return _URI_PASSWORD.sub(r"\1***@", text)


class LoggingConfig(BaseSettings):
    """Where log records go and how they are rendered."""

    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore", frozen=True)

    level: LogLevel = Field(default="INFO")
    format: LogFormat = Field(default="console", description="Renderer for every record")
    service_name: str = Field(default="catalogdb", description="Bound as `service` on every record")
    file_path: Path | None = Field(default=None, description="Rotating log file; stderr when unset")
    max_bytes: int = Field(default=10_000_000, ge=1024)
    backup_count: int = Field(default=5, ge=0)
    # driver loggers are chatty at DEBUG; statement events come from QueryLogger instead
    library_log_levels: dict[str, LogLevel] = Field(
        default_factory=lambda: {"asyncpg": "WARNING", "aiomysql": "WARNING", "testcontainers": "WARNING"}
    )
    enable_otel: bool = Field(default=False, description="Attach trace_id/span_id of the active span")


def _redact_connection_strings(
    _logger: WrappedLogger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    for key, value in event_dict.items():
        if isinstance(value, str) and "://" in value:
            event_dict[key] = redact_uri(value)
    return event_dict


def _attach_span_ids(
    _logger: WrappedLogger,
    _method_name: str,
    event_dict: EventDict,
) -> EventDict:
    # opentelemetry is an optional extra; without it records carry no span ids
    try:
        from opentelemetry import trace
    except ImportError:
        return event_dict

    span = trace.get_current_span()
    if span.is_recording():
        context = span.get_span_context()
        event_dict["trace_id"] = f"{context.trace_id:032x}"
        event_dict["span_id"] = f"{context.span_id:016x}"
    return event_dict


def build_processors(config: LoggingConfig) -> list[Processor]:
    """Processor chain for ``config``, ending in its renderer."""
    chain: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=config.format != "console"),
        structlog.processors.CallsiteParameterAdder(
            parameters=[CallsiteParameter.MODULE, CallsiteParameter.FUNC_NAME, CallsiteParameter.LINENO]
        ),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        _redact_connection_strings,
    ]
    if config.enable_otel:
        chain.append(_attach_span_ids)
    chain.append(_RENDERERS[config.format]())
    return chain


def _build_handler(config: LoggingConfig) -> logging.Handler:
    if config.file_path is None:
        handler: logging.Handler = logging.StreamHandler(sys.stderr)
    else:
        config.file_path.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            config.file_path,
            maxBytes=config.max_bytes,
            backupCount=config.backup_count,
            encoding="utf-8",
        )
    handler.setLevel(config.level)
    handler.setFormatter(logging.Formatter("%(message)s"))
    return handler


def configure_logging(config: LoggingConfig | None = None) -> None:
    """Route structlog through stdlib logging with the configured renderer and output.

    Logs go to stderr (or a rotating file) so command output on stdout stays
    clean. Calling it again replaces the root handlers.
    """
    config = config or LoggingConfig()

    structlog.configure(
        processors=build_processors(config),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root = logging.getLogger()
    root.handlers = [_build_handler(config)]
    root.setLevel(config.level)
    for name, level in config.library_log_levels.items():
        logging.getLogger(name).setLevel(level)

    structlog.contextvars.bind_contextvars(service=config.service_name)


def get_logger(name: str | None = None) -> BoundLogger:
    return cast(BoundLogger, structlog.get_logger(name))


def bind_context(**values: str | int | None) -> None:
    """Attach ``values`` to every record logged from the current context."""
    structlog.contextvars.bind_contextvars(**values)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
