"""Structured logging with structlog.

Wallet signatures, RPC keys and cron secrets are never logged.
Production output is JSON; the CLI renders to the console.

Modules call ``get_logger`` at import time. That only falls back to the
LOG_LEVEL / LOG_FORMAT environment defaults when nothing has configured
logging yet; an explicit ``configure_logging`` call (the CLI does one per
invocation with the loaded config) always replaces the ledger handlers.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path

import structlog


_REDACTED_FIELDS = frozenset({
    "signature", "secret", "cron_secret", "api_key",
    "rpc_api_key", "coingecko_api_key", "authorization",
})

# Handlers installed on the root logger by configure_logging
_handlers: list[logging.Handler] = []
_configured = False


def _redact_processor(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    """Mask credential-like fields before rendering."""
    for key in list(event_dict.keys()):
        if key.lower() in _REDACTED_FIELDS:
            event_dict[key] = "***REDACTED***"
    return event_dict


def _shared_processors() -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        _redact_processor,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]


def _remove_handlers(root: logging.Logger) -> None:
    while _handlers:
        handler = _handlers.pop()
        root.removeHandler(handler)
        handler.close()


def configure_logging(
    level: str = "INFO",
    fmt: str = "json",
    log_file: str | Path | None = None,
) -> None:
    """(Re)configure the structlog pipeline and the ledger's root handlers.

    Handlers added by an earlier call are closed and replaced; handlers
    owned by anything else (test capture, host application) are left alone.
    """
    global _configured

    log_level = getattr(logging, level.upper(), logging.INFO)
    root = logging.getLogger()
    _remove_handlers(root)
    root.setLevel(log_level)

    shared = _shared_processors()
    if fmt == "json":
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    formatter = structlog.stdlib.ProcessorFormatter(
        processor=renderer,
        foreign_pre_chain=shared,
    )

    _handlers.append(logging.StreamHandler(sys.stderr))
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        # Files never get ANSI colour codes
        file_formatter = structlog.stdlib.ProcessorFormatter(
            processor=renderer if fmt == "json" else structlog.dev.ConsoleRenderer(colors=False),
            foreign_pre_chain=shared,
        )
        fh = logging.FileHandler(str(log_path), encoding="utf-8")
        fh.setFormatter(file_formatter)
        _handlers.append(fh)

    for handler in _handlers:
        handler.setLevel(log_level)
        if handler.formatter is None:
            handler.setFormatter(formatter)
        root.addHandler(handler)

    structlog.configure(
        processors=[
            *shared,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Return a structlog bound logger; env defaults apply only if unconfigured."""
    if not _configured:
        configure_logging(
            level=os.environ.get("LOG_LEVEL", "INFO"),
            fmt=os.environ.get("LOG_FORMAT", "console"),
        )
    return structlog.get_logger(name)
