# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Page Context exception hierarchy.

All pipeline errors inherit from PageContextError.  Only
ObservationUnsupported is ever raised to callers of the public API;
the rest are raised internally and converted into degraded results.
"""

from __future__ import annotations


class PageContextError(Exception):
    """Base exception for all Page Context errors."""


class ObservationUnsupported(PageContextError):
    """The host lacks a required observation primitive (fatal to one observer)."""

    def __init__(self, message: str, *, primitive: str = "") -> None:
        super().__init__(message)
        self.primitive = primitive


class CaptureFailure(PageContextError):
    """Recording a network call failed; the real call proceeds unmonitored."""

    def __init__(self, message: str, *, url: str = "") -> None:
        super().__init__(message)
        self.url = url


class SanitizationFailure(PageContextError):
    """Redaction of captured data failed; the record is dropped."""


class ExtractionFailure(PageContextError):
    """Structured-data extraction failed; the section degrades to empty."""

    def __init__(self, message: str, *, family: str = "") -> None:
        super().__init__(message)
        self.family = family


class AggregationFailure(PageContextError):
    """A context source failed during aggregation; the result is partial."""

    def __init__(self, message: str, *, source: str = "") -> None:
        super().__init__(message)
        self.source = source


class ConfigurationError(PageContextError):
    """Invalid configuration; the previous configuration stays in effect."""


class CircuitOpenError(PageContextError):
    """Call short-circuited because the component's breaker is open."""

    def __init__(self, component: str, *, retry_after: float = 0.0) -> None:
        super().__init__(f"Circuit breaker open for {component}")
        self.component = component
        self.retry_after = retry_after
