# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""structlog + stdlib bridge for the monitoring pipeline.

Library modules only ever call ``logging.getLogger(__name__)``; the entry
point (the CLI, or an embedding application) calls ``configure()`` once.
Output goes to stderr: ConsoleRenderer for people, JSONRenderer for log
collectors.  When a *redactor* is given (normally
``PrivacyController.redact``) every string in every log event passes
through it, so page data that reaches a log line is redacted like any other
collected data.

Leaf module: no pagecontext imports.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable
from typing import Any

import structlog

Redactor = Callable[[str], str]

_KEEP_KEYS = frozenset({"timestamp", "level", "logger"})


def _redacting(redactor: Redactor) -> Callable[[Any, str, dict[str, Any]], dict[str, Any]]:
    def processor(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        for key, value in event_dict.items():
            if key not in _KEEP_KEYS and isinstance(value, str):
                event_dict[key] = redactor(value)
        return event_dict

    return processor


def _pre_chain(redactor: Redactor | None) -> list:
    chain: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if redactor is not None:
        chain.append(_redacting(redactor))
    return chain


def configure(*, json_output: bool = False, level: str = "INFO", redactor: Redactor | None = None) -> None:
    """Route stdlib and structlog records through one stderr handler.

    Args:
        json_output: JSON lines instead of human-readable console output.
        level: Root logger level; unknown names fall back to INFO.
        redactor: Applied to every string value of every event.
    """
    chain = _pre_chain(redactor)
    structlog.configure(
        processors=[*chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=chain,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def bind_page(url: str, **extra: object) -> None:
    """Attach the monitored page URL (and *extra* fields) to every following log line."""
    structlog.contextvars.bind_contextvars(page_url=url, **extra)


def clear_page() -> None:
    structlog.contextvars.clear_contextvars()
