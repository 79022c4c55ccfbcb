"""Logging setup for the calendar MCP server.

All stdlib ``logging.getLogger(__name__)`` call sites are rendered through
structlog's ProcessorFormatter.  Console output always goes to **stderr**:
stdout carries the MCP stdio transport and a stray write there corrupts the
protocol stream.  MCP clients often hide the server's stderr, so an optional
log file receives the same records as JSON lines.

Every record passes through :func:`redact_secrets` before rendering, so an
OAuth token or client secret that ends up in an exception message is never
written out.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog

from calguard.calendar import redact_credential_values

LOG_FORMATS = ("text", "json")

# Lowest level each library may log at.  The auth callback server and the
# Google HTTP client are chatty at INFO and add nothing to calguard's own
# records; the MCP session layer logs every request it dispatches.
_LIBRARY_FLOORS: dict[str, int] = {
    "uvicorn": logging.WARNING,
    "uvicorn.error": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "mcp": logging.WARNING,
}


def redact_secrets(
    logger: object, method_name: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Mask credential values in the message and any string fields."""
    for key, value in event_dict.items():
        if isinstance(value, str):
            event_dict[key] = redact_credential_values(value)
    return event_dict


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(
    renderer: structlog.types.Processor, time_fmt: str
) -> structlog.stdlib.ProcessorFormatter:
    # The console renderer formats tracebacks itself; JSON needs them as text.
    extra: list[structlog.types.Processor] = []
    if not isinstance(renderer, structlog.dev.ConsoleRenderer):
        extra.append(structlog.processors.format_exc_info)
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            *extra,
            redact_secrets,
            renderer,
        ],
        foreign_pre_chain=_pre_chain(time_fmt),
    )


def _quiet_libraries(root_level: int) -> None:
    for name, floor in _LIBRARY_FLOORS.items():
        logging.getLogger(name).setLevel(max(floor, root_level))


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_file: Path | None = None,
) -> None:
    """Route all logging to stderr (and optionally *log_file*) through structlog.

    Parameters
    ----------
    level:
        Root log level name; unknown names fall back to INFO.
    fmt:
        ``"text"`` for the console renderer or ``"json"`` for JSON lines.
    log_file:
        Optional path that additionally receives every record as JSON.
        Parent directories are created.
    """
    root_level = logging.getLevelName(level.upper())
    if not isinstance(root_level, int):
        root_level = logging.INFO

    if fmt == "json":
        time_fmt = "iso"
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        time_fmt = "%H:%M:%S"
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, time_fmt))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter):
            handler.close()
    root.addHandler(console)
    root.setLevel(root_level)

    if log_file is not None:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), "iso"))
        root.addHandler(file_handler)

    _quiet_libraries(root_level)

    structlog.configure(
        processors=[
            *_pre_chain(time_fmt),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
