"""Structured logging for almanac.

Every module keeps logging through ``logging.getLogger(__name__)``; this
module routes those records through structlog's ``ProcessorFormatter`` so
they come out as coloured console lines (``fmt="text"``) or JSON lines
(``fmt="json"``). Each event is tagged with the active sync scope and the
current OTel trace/span ids, and credentials are scrubbed before any
handler sees the message.

With ``log_root`` set, JSON lines are also appended to
``{log_root}/almanac/{scope_id}.log``.

The same redaction backs :func:`sanitize_error`, which renders exceptions
for the ``last_error`` fields persisted in sync state and queue entries.
"""

from __future__ import annotations

import logging
import re
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_scope_context: ContextVar[str | None] = ContextVar("sync_scope", default=None)


def set_scope_context(scope_id: str) -> None:
    """Set the sync scope id for the current async context."""
    _scope_context.set(scope_id)


def get_scope_context() -> str | None:
    return _scope_context.get()


def add_scope_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """structlog processor: ``scope`` from the ContextVar."""
    event_dict["scope"] = _scope_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """structlog processor: ``trace_id``/``span_id`` of the current span, zeroed if none."""
    ctx = trace.get_current_span().get_span_context()
    has_span = bool(ctx and ctx.trace_id)
    event_dict["trace_id"] = format(ctx.trace_id, "032x") if has_span else "0" * 32
    event_dict["span_id"] = format(ctx.span_id, "016x") if has_span else "0" * 16
    return event_dict


# ---------------------------------------------------------------------------
# Credential redaction
# ---------------------------------------------------------------------------

_SECRET_KEYS = r"(access_token|refresh_token|sync_token|synctoken|token)"

_SECRET_PATTERNS = (
    (re.compile(r"(?i)\b(bearer)\s+[A-Za-z0-9._~+/=-]+"), r"\1 [REDACTED]"),
    (
        re.compile(r"(?i)\b" + _SECRET_KEYS + r"\s*=\s*([^\s,;&]+)"),
        r"\1=[REDACTED]",
    ),
    (
        re.compile(r"(?i)\b" + _SECRET_KEYS + r"\s*:\s*([^\s,;]+)"),
        r"\1: [REDACTED]",
    ),
)


def redact_secrets(message: str) -> str:
    """Replace bearer tokens and ``*_token=...`` values in *message*."""
    redacted = message
    for pattern, replacement in _SECRET_PATTERNS:
        redacted = pattern.sub(replacement, redacted)
    return redacted


def sanitize_error(error: BaseException | str, *, limit: int = 200) -> str:
    """Render an error for persistence: redacted, whitespace-collapsed, truncated."""
    if isinstance(error, BaseException):
        text = str(error) or type(error).__name__
    else:
        text = error
    return " ".join(redact_secrets(text).split())[:limit]


class CredentialRedactionFilter(logging.Filter):
    """Scrub credentials from log records before any handler formats them."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True
        redacted = redact_secrets(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


# ---------------------------------------------------------------------------
# configure_logging()
# ---------------------------------------------------------------------------

# HTTP and driver chatter stays at WARNING even when almanac runs at DEBUG.
_NOISE_LOGGERS = ("httpx", "httpcore", "asyncpg")

_LOG_SUBDIR = "almanac"


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_scope_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _handler(
    handler: logging.Handler,
    renderer: structlog.types.Processor,
    pre_chain: list[structlog.types.Processor],
) -> logging.Handler:
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=pre_chain,
        )
    )
    handler.addFilter(CredentialRedactionFilter())
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    scope_id: str | None = None,
) -> None:
    """Install almanac's handlers on the root logger, replacing any existing ones.

    Parameters
    ----------
    level:
        Root log level name.
    fmt:
        ``"text"`` for the coloured console renderer, ``"json"`` for JSON lines.
    log_root:
        When set, also write JSON lines to ``{log_root}/almanac/{scope_id}.log``
        (``almanac.log`` without a scope).
    scope_id:
        Sync scope to tag events with; stored in the scope ContextVar.
    """
    if scope_id:
        set_scope_context(scope_id)

    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(_handler(logging.StreamHandler(sys.stderr), renderer, pre_chain))
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_dir = Path(log_root) / _LOG_SUBDIR
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = _handler(
            logging.FileHandler(log_dir / f"{scope_id or 'almanac'}.log"),
            structlog.processors.JSONRenderer(),
            _pre_chain("iso"),
        )
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)

    # Direct structlog.get_logger() callers share the console pre-chain.
    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
