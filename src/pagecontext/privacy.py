# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Privacy policy: URL exclusion, sensitive-data redaction, retention, consent.

Single source of truth for what may be observed.  The policy is an
immutable ``PrivacyConfig`` snapshot; ``update_config()`` swaps in a new
snapshot and publishes ``EventType.PRIVACY_CONFIG_CHANGED``.  Consumers
read ``controller.config`` on every use instead of holding a copy.

Evaluation order: domain exclusion -> path exclusion -> redaction (if enabled).

Redaction replaces only the matched substring with ``[REDACTED]`` and never
re-matches inside an existing marker, so ``redact(redact(x)) == redact(x)``.
"""

from __future__ import annotations

import dataclasses
import logging
import re
import time
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from urllib.parse import urlsplit

from .errors import ConfigurationError, SanitizationFailure
from .events import EventBus, EventType

logger = logging.getLogger(__name__)

REDACTION_MARKER = "[REDACTED]"

# Query-string keys whose values are always sensitive.  One fixed-width
# lookbehind per key so only the value is replaced.
_SENSITIVE_QUERY_KEYS: tuple[str, ...] = (
    "token",
    "access_token",
    "key",
    "api_key",
    "apikey",
    "password",
    "secret",
    "auth",
    "session",
    "sessionid",
)

SENSITIVE_QUERY_PARAM_PATTERN = (
    "(?i)(?:"
    + "|".join(f"(?<=[?&]{re.escape(k)}=)" for k in _SENSITIVE_QUERY_KEYS)
    + r")(?!\[REDACTED\])[^&#\s]+"
)
CARD_NUMBER_PATTERN = r"\b\d{4}[\s-]?\d{4}[\s-]?\d{4}[\s-]?\d{4}\b"
SSN_PATTERN = r"\b\d{3}-\d{2}-\d{4}\b"

DEFAULT_SENSITIVE_PATTERNS: tuple[str, ...] = (
    SENSITIVE_QUERY_PARAM_PATTERN,
    CARD_NUMBER_PATTERN,
    SSN_PATTERN,
)

SENSITIVE_HEADERS: tuple[str, ...] = (
    "authorization",
    "cookie",
    "set-cookie",
    "x-api-key",
    "x-auth-token",
    "x-access-token",
    "proxy-authorization",
)

# Substring match on lowercased form-field names
SENSITIVE_FIELD_NAMES: tuple[str, ...] = (
    "password",
    "pwd",
    "pass",
    "secret",
    "token",
    "key",
    "ssn",
    "social",
    "credit",
    "card",
    "cvv",
    "cvc",
    "pin",
    "account",
    "routing",
    "bank",
)

_MAX_COLLECTION_LOG = 1000
_DAY_SECONDS = 24 * 60 * 60


# ---------------------------------------------------------------------------
# Config snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PrivacyConfig:
    """Immutable privacy policy snapshot."""

    excluded_domains: tuple[str, ...] = ()
    excluded_paths: tuple[str, ...] = ()
    redact_sensitive_data: bool = True
    sensitive_data_patterns: tuple[str, ...] = DEFAULT_SENSITIVE_PATTERNS
    data_retention_days: int = 7
    require_consent: bool = False

    def __post_init__(self) -> None:
        # Accept lists from settings payloads
        for name in ("excluded_domains", "excluded_paths", "sensitive_data_patterns"):
            value = getattr(self, name)
            if isinstance(value, str):
                raise ValueError(f"{name} must be a sequence of strings, not a single string")
            object.__setattr__(self, name, tuple(value))
        if self.data_retention_days <= 0:
            raise ValueError(f"data_retention_days must be > 0, got {self.data_retention_days}")
        for domain in self.excluded_domains:
            if not isinstance(domain, str) or not domain.strip():
                raise ValueError("excluded_domains entries must be non-empty strings")
        for path in self.excluded_paths:
            if not isinstance(path, str):
                raise ValueError("excluded_paths entries must be strings")
        for pattern in self.sensitive_data_patterns:
            try:
                re.compile(pattern)
            except (re.error, TypeError) as exc:
                raise ValueError(f"invalid sensitive data pattern {pattern!r}: {exc}") from exc


@dataclass(frozen=True, slots=True)
class CollectionLogEntry:
    timestamp: float
    type: str  # "network", "dom", "interaction", "context"
    url: str  # already redacted


@dataclass(frozen=True, slots=True)
class PrivacyReport:
    consent_status: bool
    consent_required: bool
    data_retention_days: int
    excluded_domains: tuple[str, ...]
    excluded_paths: tuple[str, ...]
    sensitive_data_redaction: bool
    recent_data_collection: int  # log entries in the last 24h
    generated_at: float = field(default_factory=time.time)


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class PrivacyController:
    """Policy engine consulted by every observer before data is kept."""

    def __init__(
        self,
        config: PrivacyConfig | None = None,
        *,
        bus: EventBus | None = None,
        clock=time.time,
    ) -> None:
        self._config = config or PrivacyConfig()
        self._compiled = _compile(self._config.sensitive_data_patterns)
        self._bus = bus
        self._clock = clock
        self._consent = False
        self._log: deque[CollectionLogEntry] = deque(maxlen=_MAX_COLLECTION_LOG)
        self._redactions = 0

    # -- Config --

    @property
    def config(self) -> PrivacyConfig:
        return self._config

    def update_config(self, config: PrivacyConfig | None = None, **changes: Any) -> PrivacyConfig:
        """Swap in a new snapshot built from *config* and/or field *changes*.

        Raises ConfigurationError (previous snapshot stays active) when the
        new values are invalid.
        """
        base = config or self._config
        try:
            new = dataclasses.replace(base, **changes) if changes else base
        except (TypeError, ValueError) as exc:
            logger.warning("Rejected privacy config update: %s", exc)
            raise ConfigurationError(str(exc)) from exc
        if new == self._config:
            return self._config
        self._config = new
        self._compiled = _compile(new.sensitive_data_patterns)
        logger.info(
            "Privacy config updated: excluded_domains=%d excluded_paths=%d redact=%s",
            len(new.excluded_domains),
            len(new.excluded_paths),
            new.redact_sensitive_data,
        )
        if self._bus is not None:
            self._bus.publish(EventType.PRIVACY_CONFIG_CHANGED, new)
        return new

    # -- Consent --

    def set_consent(self, consent: bool) -> None:
        """Record user consent.  Withdrawing consent clears the collection log."""
        changed = consent != self._consent
        self._consent = consent
        if not consent:
            self.clear_all_data()
        if changed and self._bus is not None:
            self._bus.publish(EventType.CONSENT_CHANGED, consent)

    def has_consent(self) -> bool:
        return self._consent

    # -- Exclusion --

    def should_monitor_url(self, url: str) -> bool:
        """Return False when *url* falls under the exclusion policy.

        Consent (if required) is checked first, then the domain list, then
        the path list.  Both lists use case-insensitive substring matching.
        Unparseable URLs are never monitored.
        """
        cfg = self._config
        if cfg.require_consent and not self._consent:
            return False
        try:
            parts = urlsplit(url)
            hostname = (parts.hostname or "").lower()
        except (ValueError, TypeError, AttributeError):
            return False

        if any(domain.lower() in hostname for domain in cfg.excluded_domains):
            return False
        path = parts.path.lower()
        if any(p and p.lower() in path for p in cfg.excluded_paths):
            return False
        return True

    # -- Redaction --

    def redact(self, text: str) -> str:
        """Replace every sensitive match in *text* with the marker."""
        if not text or not self._config.redact_sensitive_data:
            return text
        return self._redact(text)

    def _redact(self, text: str) -> str:
        # Existing markers are kept verbatim; only text between them is scanned.
        segments = text.split(REDACTION_MARKER)
        for i, segment in enumerate(segments):
            for pattern in self._compiled:
                segment, n = pattern.subn(REDACTION_MARKER, segment)
                self._redactions += n
            segments[i] = segment
        return REDACTION_MARKER.join(segments)

    def contains_sensitive_data(self, text: str) -> bool:
        if not text or not self._config.redact_sensitive_data:
            return False
        return any(p.search(seg) for seg in text.split(REDACTION_MARKER) for p in self._compiled)

    def sanitize_network_data(self, record: Mapping[str, Any]) -> dict[str, Any]:
        """Return a sanitized copy of a captured ``{url, headers, body}`` record.

        The input mapping is never modified.
        """
        sanitized = dict(record)
        if not self._config.redact_sensitive_data:
            return sanitized
        try:
            if sanitized.get("url"):
                sanitized["url"] = self._redact(str(sanitized["url"]))
            if sanitized.get("headers"):
                sanitized["headers"] = self.sanitize_headers(sanitized["headers"])
            body = sanitized.get("body")
            if isinstance(body, bytes):
                body = body.decode("utf-8", errors="replace")
            if body:
                sanitized["body"] = self._redact(str(body))
        except Exception as exc:
            raise SanitizationFailure(f"network record sanitization failed: {exc}") from exc
        return sanitized

    def sanitize_headers(self, headers: Mapping[str, str]) -> dict[str, str]:
        result: dict[str, str] = {}
        for name, value in headers.items():
            if name.lower() in SENSITIVE_HEADERS:
                result[name] = REDACTION_MARKER
            else:
                result[name] = self.redact(str(value))
        return result

    def sanitize_dom_content(self, content: str) -> str:
        return self.redact(content)

    def sanitize_form_data(self, form_data: Mapping[str, str]) -> dict[str, str]:
        """Field values whose names look sensitive are replaced outright."""
        if not self._config.redact_sensitive_data:
            return dict(form_data)
        result: dict[str, str] = {}
        for name, value in form_data.items():
            lowered = name.lower()
            if any(s in lowered for s in SENSITIVE_FIELD_NAMES):
                result[name] = REDACTION_MARKER
            else:
                result[name] = self._redact(str(value))
        return result

    def redact_value(self, value: Any) -> Any:
        """Recursively redact strings inside dataclasses, mappings and sequences."""
        if isinstance(value, Enum):
            return value
        if isinstance(value, str):
            return self.redact(value)
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            changes = {
                f.name: self.redact_value(getattr(value, f.name)) for f in dataclasses.fields(value) if f.init
            }
            return dataclasses.replace(value, **changes)
        if isinstance(value, Mapping):
            return {k: self.redact_value(v) for k, v in value.items()}
        if isinstance(value, tuple):
            return tuple(self.redact_value(v) for v in value)
        if isinstance(value, list):
            return [self.redact_value(v) for v in value]
        return value

    def filter_context(self, context: Any) -> Any | None:
        """Apply the current policy to an aggregated context.

        Returns None when the context's URL is excluded, otherwise a copy
        with every string field redacted.
        """
        url = getattr(context, "url", "")
        if url and not self.should_monitor_url(url):
            return None
        if not self._config.redact_sensitive_data:
            return context
        return self.redact_value(context)

    # -- Retention & transparency --

    def log_data_collection(self, kind: str, url: str) -> None:
        self._log.append(CollectionLogEntry(timestamp=self._clock(), type=kind, url=self.redact(url)))

    def get_data_collection_log(self) -> list[CollectionLogEntry]:
        return list(self._log)

    def clear_all_data(self) -> None:
        self._log.clear()

    def is_data_expired(self, timestamp: float) -> bool:
        return self._clock() - timestamp > self._config.data_retention_days * _DAY_SECONDS

    def purge_expired(self) -> int:
        """Drop collection-log entries older than the retention period."""
        kept = [e for e in self._log if not self.is_data_expired(e.timestamp)]
        dropped = len(self._log) - len(kept)
        if dropped:
            self._log.clear()
            self._log.extend(kept)
        return dropped

    @property
    def redaction_count(self) -> int:
        return self._redactions

    def get_privacy_report(self) -> PrivacyReport:
        cfg = self._config
        now = self._clock()
        recent = sum(1 for e in self._log if now - e.timestamp < _DAY_SECONDS)
        return PrivacyReport(
            consent_status=self._consent,
            consent_required=cfg.require_consent,
            data_retention_days=cfg.data_retention_days,
            excluded_domains=cfg.excluded_domains,
            excluded_paths=cfg.excluded_paths,
            sensitive_data_redaction=cfg.redact_sensitive_data,
            recent_data_collection=recent,
            generated_at=now,
        )


def _compile(patterns: Iterable[str]) -> tuple[re.Pattern[str], ...]:
    return tuple(re.compile(p) for p in patterns)
