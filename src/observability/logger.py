"""Structured logging with structlog.

Security: delegate private keys and the store secret are NEVER logged.
Known secret-bearing fields are masked by name, and any value shaped like a
raw 32-byte hex key is masked wherever it appears.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from pathlib import Path

import structlog


_CONFIGURED = False

REDACTED = "***REDACTED***"

_REDACTED_FIELDS = frozenset({
    "private_key", "privatekey", "secret", "password", "passphrase",
    "mnemonic", "store_secret", "key_material", "plaintext",
})

# 0x + 64 hex chars. Transaction hashes share the shape, so they are only
# masked when they show up inside free text, not in their own tx_hash field.
_RAW_KEY_RE = re.compile(r"0x[0-9a-fA-F]{64}\b")
_HASH_FIELDS = frozenset({"tx_hash", "txhash"})


class _StderrHandler(logging.StreamHandler):
    """StreamHandler that looks up ``sys.stderr`` per record.

    Test runners swap the stream out; holding on to the original one would
    write into a closed file afterwards.
    """

    def __init__(self) -> None:
        super().__init__(sys.stderr)

    @property  # type: ignore[override]
    def stream(self):
        return sys.stderr

    @stream.setter
    def stream(self, value) -> None:
        pass


def _redact_processor(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    for key in list(event_dict.keys()):
        value = event_dict[key]
        if key.lower() in _REDACTED_FIELDS:
            event_dict[key] = REDACTED
        elif isinstance(value, str) and key.lower() not in _HASH_FIELDS:
            event_dict[key] = _RAW_KEY_RE.sub(REDACTED, value)
    return event_dict


def _build_handlers(level: int, log_file: str | None) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [_StderrHandler()]
    if log_file:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(str(path)))
    for h in handlers:
        h.setLevel(level)
    return handlers


def configure_logging(
    level: str = "INFO",
    fmt: str = "json",
    log_file: str | None = None,
) -> None:
    """Route structlog through stdlib handlers. Only the first call applies."""
    global _CONFIGURED
    if _CONFIGURED:
        return

    log_level = getattr(logging, level.upper(), logging.INFO)

    shared: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _redact_processor,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    renderer: structlog.types.Processor = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )
    formatter = structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=shared)

    root = logging.getLogger()
    root.setLevel(log_level)
    for handler in _build_handlers(log_level, log_file):
        handler.setFormatter(formatter)
        root.addHandler(handler)

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    if not _CONFIGURED:
        configure_logging(
            level=os.environ.get("LOG_LEVEL", "INFO"),
            fmt=os.environ.get("LOG_FORMAT", "console"),
        )
    return structlog.get_logger(name)


def bind_agent_context(agent_id: int) -> None:
    """Attach the agent id to every log line emitted from the current task.

    Each agent loop runs in its own asyncio task, which owns a copy of the
    context, so bindings never leak between agents.
    """
    structlog.contextvars.bind_contextvars(agent_id=agent_id)
