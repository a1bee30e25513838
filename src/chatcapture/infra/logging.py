"""Root logger setup for the capture pipeline.

Every module logs through ``logging.getLogger(__name__)``; this module only
decides where those records go.  Two renderings are supported:

* ``json_output=True``  one JSON object per line, keyed for log shippers
  (``timestamp``, ``level``, ``logger``, ``message``, ``trace_id``,
  ``span_id``).
* ``json_output=False`` short coloured lines for a developer terminal.

Records emitted while a span is active carry its ids, so a flush failure
can be joined with the ``batch.flush`` span that produced it.
"""

from __future__ import annotations

import logging
import sys

from opentelemetry import trace

from chatcapture.configs.system import LoggingConfig

_JSON_FIELDS = "%(asctime)s %(levelname)s %(name)s %(message)s %(trace_id)s %(span_id)s"
_JSON_RENAMES = {"asctime": "timestamp", "levelname": "level", "name": "logger"}

_CONSOLE_FORMAT = "%(levelprefix)s %(asctime)s [%(name)s] %(message)s"
_CONSOLE_DATEFMT = "%H:%M:%S"

# Loggers that own the process output alongside ours.
_SERVER_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")

# httpx logs one INFO line per request, which includes every host call
# the interceptor observes.
_NOISY_LOGGERS = ("httpx", "httpcore", "opentelemetry")


def _attach_span_ids(record: logging.LogRecord) -> bool:
    ctx = trace.get_current_span().get_span_context()
    valid = ctx is not None and ctx.is_valid
    record.trace_id = format(ctx.trace_id, "032x") if valid else ""  # type: ignore[attr-defined]
    record.span_id = format(ctx.span_id, "016x") if valid else ""  # type: ignore[attr-defined]
    return True


def _build_formatter(json_output: bool) -> logging.Formatter:
    if json_output:
        from pythonjsonlogger.json import JsonFormatter

        return JsonFormatter(
            fmt=_JSON_FIELDS,
            rename_fields=_JSON_RENAMES,
            defaults={"trace_id": "", "span_id": ""},
        )

    from uvicorn.logging import DefaultFormatter

    return DefaultFormatter(
        fmt=_CONSOLE_FORMAT, datefmt=_CONSOLE_DATEFMT, use_colors=True
    )


def setup_logging(config: LoggingConfig | None = None) -> logging.Handler:
    """Install a single stdout handler on the root and uvicorn loggers.

    Safe to call more than once: each call replaces the previous handler.
    Returns the installed handler.
    """
    config = config or LoggingConfig()

    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(_attach_span_ids)
    handler.setFormatter(_build_formatter(config.json_output))

    root = logging.getLogger()
    root.setLevel(config.level.upper())
    root.handlers = [handler]

    for name in _SERVER_LOGGERS:
        server_logger = logging.getLogger(name)
        server_logger.handlers = [handler]
        server_logger.propagate = False

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return handler
