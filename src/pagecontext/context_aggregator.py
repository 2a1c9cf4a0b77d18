# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Merge DOM, network, content and semantic observations into one scored context.

Pure Python module with no browser dependencies.  Talks to the page only
through the ``DocumentSource`` port and the already running observers.

Sources (each guarded independently):
  content   : DocumentSource.content() -> ContentSnapshot
  dom       : layout snapshot + recent changes + interactions
  network   : NetworkMonitor summary
  semantics : SemanticExtractor over the same parsed document

A failing source degrades only its own section; completeness reports the
fraction of sources that answered.

Cache: a single active entry keyed by normalized URL, 30 s TTL.  Expired
entries are never served.  Invalidated on navigation (URL change), privacy
config change, aggregator config change, explicit ``invalidate()``.

NOTE: single event loop, not thread-safe.
"""

from __future__ import annotations

import asyncio
import dataclasses
import json
import logging
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any
from urllib.parse import parse_qsl, urlparse, urlunparse

from . import ContentSnapshot
from .content import extract_content, parse_html
from .dom_observer import DOMChangeRecord, DOMObserver, InteractionRecord, InteractionType, LayoutSnapshot
from .errors import AggregationFailure
from .events import Event, EventBus, EventType
from .network_monitor import NetworkActivityRecord, NetworkMonitor, NetworkSummary, is_static_resource
from .page_classifier import ClassificationResult, classify_page
from .ports import DocumentSource
from .privacy import PrivacyController
from .resilience import ErrorCategory, ErrorHandler, ErrorSeverity
from .semantic_extractor import SemanticData, SemanticExtractor

logger = logging.getLogger(__name__)

COMPONENT = "context_aggregator"

DEFAULT_CONTENT_PRIORITIES: dict[str, float] = {
    "headings": 1.0,
    "forms": 0.9,
    "tables": 0.8,
    "text": 0.7,
    "links": 0.6,
    "images": 0.4,
}

# Base counts scaled by content priority
_CONTENT_BASE_LIMITS: dict[str, int] = {
    "headings": 10,
    "forms": 5,
    "tables": 3,
    "text": 2000,
    "links": 20,
    "images": 10,
}

_RELEVANCE_WEIGHTS = {"interaction": 0.4, "content": 0.35, "schema": 0.25}
_INTERACTION_RECENCY = 300.0  # s
_CONTENT_SATURATION = 2000  # chars
_RELEVANT_CLICK_TAGS = frozenset({"button", "a", "input", "select", "textarea"})


# ---------------------------------------------------------------------------
# Invalidation reasons
# ---------------------------------------------------------------------------


class InvalidationReason(StrEnum):
    NAVIGATION = "navigation"
    PRIVACY_CONFIG = "privacy_config"
    CONFIG = "config"
    MANUAL = "manual"


def normalize_cache_url(url: str) -> str:
    """Normalize URL for cache key: lowercase scheme/netloc, strip fragment, sort query."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return url
    params = parse_qsl(parsed.query, keep_blank_values=True)
    sorted_query = "&".join(f"{k}={v}" for k, v in sorted(params))
    return urlunparse((parsed.scheme.lower(), parsed.netloc.lower(), parsed.path, parsed.params, sorted_query, ""))


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DataQuality:
    completeness: float = 0.0  # fraction of sources that answered
    freshness: float = 0.0  # 1 - age / freshness_horizon
    accuracy: float = 0.0  # 1 / (1 + extraction errors)
    relevance: float = 0.0


@dataclass(frozen=True, slots=True)
class ActivitySummary:
    recent_interactions: int = 0  # within the last minute
    active_elements: tuple[str, ...] = ()
    form_activity: bool = False
    navigation_activity: bool = False


@dataclass(frozen=True, slots=True)
class DataFlow:
    endpoint: str
    method: str
    status: int | None
    timestamp: float
    relevance: float


@dataclass(frozen=True, slots=True)
class ContextSummary:
    page_type: str = "unknown"
    primary_content: str = ""
    key_elements: tuple[str, ...] = ()
    user_activity: ActivitySummary = field(default_factory=ActivitySummary)
    data_flows: tuple[DataFlow, ...] = ()
    relevance_score: float = 0.0
    classification: ClassificationResult | None = None


@dataclass(frozen=True, slots=True)
class ContextMetadata:
    timestamp: float
    url: str
    title: str
    aggregation_time: float = 0.0  # ms
    cache_hit: bool = False
    data_quality: DataQuality = field(default_factory=DataQuality)
    excluded: bool = False
    degraded_sources: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class PerformanceMetrics:
    response_time: float = 0.0  # ms
    data_size: int = 0  # bytes of the JSON projection
    cache_hit: bool = False
    processing_time: float = 0.0  # ms


@dataclass(frozen=True)
class AggregatedContext:
    """Merged, scored snapshot of the page at one point in time."""

    summary: ContextSummary
    content: ContentSnapshot
    metadata: ContextMetadata
    performance: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    layout: LayoutSnapshot | None = None
    network: NetworkSummary | None = None
    interactions: tuple[InteractionRecord, ...] = ()
    changes: tuple[DOMChangeRecord, ...] = ()
    semantics: SemanticData | None = None

    @property
    def url(self) -> str:
        return self.metadata.url

    @property
    def title(self) -> str:
        return self.metadata.title

    @property
    def timestamp(self) -> float:
        return self.metadata.timestamp

    @property
    def has_context(self) -> bool:
        return not self.metadata.excluded


@dataclass(frozen=True, slots=True)
class AggregatorConfig:
    """Aggregation knobs.  Times are in seconds."""

    cache_ttl: float = 30.0
    freshness_horizon: float = 300.0
    include_network: bool = True
    include_layout: bool = True
    include_interactions: bool = True
    include_semantics: bool = True
    max_network_requests: int = 20
    max_interactions: int = 10
    max_changes: int = 50
    change_window: float | None = 60.0
    content_timeout: float = 5.0  # a stalled page read degrades only the content source
    content_priorities: dict[str, float] = field(default_factory=lambda: dict(DEFAULT_CONTENT_PRIORITIES))

    def __post_init__(self) -> None:
        if self.cache_ttl < 0:
            raise ValueError(f"cache_ttl must be >= 0, got {self.cache_ttl}")
        if self.freshness_horizon <= 0:
            raise ValueError(f"freshness_horizon must be > 0, got {self.freshness_horizon}")
        if self.content_timeout <= 0:
            raise ValueError(f"content_timeout must be > 0, got {self.content_timeout}")
        if self.max_network_requests < 0 or self.max_interactions < 0 or self.max_changes < 0:
            raise ValueError("limits must be >= 0")
        unknown = set(self.content_priorities) - set(DEFAULT_CONTENT_PRIORITIES)
        if unknown:
            raise ValueError(f"unknown content priorities: {sorted(unknown)}")
        for name, weight in self.content_priorities.items():
            if not 0.0 <= weight <= 1.0:
                raise ValueError(f"content priority {name} must be within [0, 1], got {weight}")


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------


@dataclass
class CacheEntry:
    context: AggregatedContext
    key: str
    created_at: float  # monotonic

    def is_expired(self, now: float, ttl: float) -> bool:
        return (now - self.created_at) > ttl


@dataclass
class CacheStats:
    """Counters for cache behaviour, used for logging and metrics output."""

    hits: int = 0
    misses: int = 0
    ttl_expirations: int = 0
    invalidations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0


# ---------------------------------------------------------------------------
# Scoring helpers
# ---------------------------------------------------------------------------


def prioritize_content(content: ContentSnapshot, priorities: dict[str, float]) -> ContentSnapshot:
    """Trim each content block to its priority-scaled share."""

    def limit(name: str) -> int:
        return math.ceil(_CONTENT_BASE_LIMITS[name] * priorities.get(name, 1.0))

    return dataclasses.replace(
        content,
        headings=content.headings[: limit("headings")],
        links=content.links[: limit("links")],
        images=content.images[: limit("images")],
        forms=content.forms[: limit("forms")],
        tables=content.tables[: limit("tables")],
        text=content.text[: limit("text")],
    )


def is_relevant_request(record: NetworkActivityRecord) -> bool:
    if is_static_resource(record.url):
        return False
    return record.method.upper() in ("GET", "POST", "PUT", "PATCH", "DELETE")


def is_relevant_interaction(record: InteractionRecord) -> bool:
    if record.type in (InteractionType.INPUT, InteractionType.SUBMIT):
        return True
    if record.type is InteractionType.CLICK:
        return record.element.tag_name.lower() in _RELEVANT_CLICK_TAGS
    return False


def request_relevance(record: NetworkActivityRecord, now: float) -> float:
    path = urlparse(record.url).path.lower()
    relevance = 0.5
    if "/api/" in path or "/graphql" in path:
        relevance += 0.3
    if path.endswith(".json"):
        relevance += 0.2
    age = now - record.timestamp
    if age < 60:
        relevance += 0.2
    elif age < 300:
        relevance += 0.1
    if record.status is not None and 200 <= record.status < 300:
        relevance += 0.1
    return min(1.0, relevance)


def relevance_score(
    content: ContentSnapshot,
    interactions: tuple[InteractionRecord, ...],
    semantics: SemanticData | None,
    now: float,
) -> float:
    """Weighted interaction recency, content length and schema presence, in [0, 1]."""
    recency = 0.0
    if interactions:
        age = now - max(i.timestamp for i in interactions)
        recency = max(0.0, 1.0 - age / _INTERACTION_RECENCY)
    length = min(1.0, len(content.text) / _CONTENT_SATURATION)
    schema = 0.0
    if semantics is not None:
        if semantics.has_structured_data:
            schema = 1.0
        elif not semantics.is_empty:
            schema = 0.5
    w = _RELEVANCE_WEIGHTS
    score = w["interaction"] * recency + w["content"] * length + w["schema"] * schema
    return round(min(1.0, max(0.0, score)), 4)


def primary_content(content: ContentSnapshot) -> str:
    parts: list[str] = list(content.headings[:3])
    preview = content.text[:500].strip()
    if preview:
        parts.append(preview)
    if content.forms:
        parts.append(
            "; ".join(
                "Form with fields: " + ", ".join(f.label or f.name for f in form.fields) for form in content.forms[:2]
            )
        )
    return "\n\n".join(parts).strip()


def key_elements(content: ContentSnapshot) -> tuple[str, ...]:
    elements: list[str] = [f"Heading: {h}" for h in content.headings[:5]]
    links = [link for link in content.links if 3 < len(link.text) < 50]
    elements.extend(f"Link: {link.text}" for link in links[:5])
    for form in content.forms:
        elements.extend(f"Field: {f.name} ({f.type})" for f in form.fields[:3])
    for index, table in enumerate(content.tables[:2], start=1):
        elements.append(f"Table {index}: {', '.join(table.headers)}")
    return tuple(elements)


def summarize_activity(interactions: tuple[InteractionRecord, ...], now: float) -> ActivitySummary:
    tags: dict[str, None] = {}
    for record in interactions[-10:]:
        tags.setdefault(record.element.tag_name.lower(), None)
    return ActivitySummary(
        recent_interactions=sum(1 for i in interactions if now - i.timestamp < 60),
        active_elements=tuple(tags),
        form_activity=any(i.type in (InteractionType.INPUT, InteractionType.SUBMIT) for i in interactions),
        navigation_activity=any(
            i.type is InteractionType.CLICK and i.element.tag_name.lower() == "a" for i in interactions
        ),
    )


def _tail(items: tuple, count: int) -> tuple:
    return items[-count:] if count > 0 else ()


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    return str(value)


def estimate_size(context: AggregatedContext) -> int:
    try:
        return len(json.dumps(dataclasses.asdict(context), default=_json_default))
    except (TypeError, ValueError):
        logger.debug("Context size estimate failed", exc_info=True)
        return 0


# ---------------------------------------------------------------------------
# Aggregator
# ---------------------------------------------------------------------------


class ContextAggregator:
    """Sole owner of the aggregated-context cache."""

    def __init__(
        self,
        document: DocumentSource,
        privacy: PrivacyController,
        *,
        dom_observer: DOMObserver | None = None,
        network_monitor: NetworkMonitor | None = None,
        semantic_extractor: SemanticExtractor | None = None,
        error_handler: ErrorHandler | None = None,
        config: AggregatorConfig | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._document = document
        self._privacy = privacy
        self._dom = dom_observer
        self._network = network_monitor
        self._semantics = semantic_extractor
        self._errors = error_handler
        self._config = config or AggregatorConfig()
        self._bus = bus
        self._clock = clock
        self._monotonic = monotonic

        self._entry: CacheEntry | None = None
        self._stats = CacheStats()
        self._metrics = PerformanceMetrics()
        self._unsubscribe: Callable[[], None] | None = None
        if bus is not None:
            self._unsubscribe = bus.subscribe(EventType.PRIVACY_CONFIG_CHANGED, self._on_privacy_change)

    @property
    def config(self) -> AggregatorConfig:
        return self._config

    @property
    def cache_stats(self) -> CacheStats:
        return self._stats

    def update_config(self, config: AggregatorConfig) -> None:
        self._config = config
        self.invalidate(InvalidationReason.CONFIG)

    def invalidate(self, reason: InvalidationReason = InvalidationReason.MANUAL) -> None:
        if self._entry is not None:
            self._stats.invalidations += 1
        self._entry = None
        logger.debug("Context cache invalidated: reason=%s", reason.value)

    def _on_privacy_change(self, _event: Event) -> None:
        self.invalidate(InvalidationReason.PRIVACY_CONFIG)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._entry = None

    def get_performance_metrics(self) -> PerformanceMetrics:
        return self._metrics

    # -- Retrieval --

    def _lookup(self, key: str) -> CacheEntry | None:
        entry = self._entry
        if entry is None:
            return None
        if entry.key != key:
            self.invalidate(InvalidationReason.NAVIGATION)
            return None
        if entry.is_expired(self._monotonic(), self._config.cache_ttl):
            self._entry = None
            self._stats.ttl_expirations += 1
            logger.debug("Context cache TTL expired: %s", key)
            return None
        return entry

    async def get_context(self, *, force: bool = False) -> AggregatedContext:
        """Cached aggregated context for the current page.  Never raises.

        Excluded pages yield a minimal context with ``metadata.excluded``
        set and no observed data.
        """
        started = self._monotonic()
        url = self._safe_url()
        if not self._privacy.should_monitor_url(url):
            self.invalidate(InvalidationReason.NAVIGATION)
            return self._excluded_context(url)

        key = normalize_cache_url(url)
        entry = None if force else self._lookup(key)
        if entry is not None:
            self._stats.hits += 1
            cached = entry.context
            elapsed = (self._monotonic() - started) * 1000
            quality = dataclasses.replace(cached.metadata.data_quality, freshness=self._freshness(cached))
            self._metrics = dataclasses.replace(cached.performance, cache_hit=True, response_time=elapsed)
            return dataclasses.replace(
                cached,
                metadata=dataclasses.replace(cached.metadata, cache_hit=True, data_quality=quality),
                performance=self._metrics,
            )

        self._stats.misses += 1
        context = await self._aggregate(url, started)
        self._entry = CacheEntry(context=context, key=key, created_at=self._monotonic())
        if self._bus is not None:
            self._bus.publish(EventType.CONTEXT_UPDATED, context)
        return context

    def _safe_url(self) -> str:
        try:
            return self._document.url
        except Exception:
            logger.debug("Document URL unavailable", exc_info=True)
            return ""

    def _freshness(self, context: AggregatedContext) -> float:
        age = max(0.0, self._clock() - context.metadata.timestamp)
        return round(max(0.0, 1.0 - age / self._config.freshness_horizon), 4)

    def _excluded_context(self, url: str) -> AggregatedContext:
        return AggregatedContext(
            summary=ContextSummary(),
            content=ContentSnapshot(),
            metadata=ContextMetadata(timestamp=self._clock(), url=url, title="", excluded=True),
        )

    def _source_failed(self, source: str, exc: BaseException) -> None:
        failure = AggregationFailure(f"{source} source failed: {exc}", source=source)
        logger.warning("Aggregation source %s failed: %s", source, exc, exc_info=True)
        if self._errors is not None:
            self._errors.handle_error(
                failure, ErrorCategory.CONTEXT, ErrorSeverity.LOW, component=f"{COMPONENT}.{source}"
            )

    async def _aggregate(self, url: str, started: float) -> AggregatedContext:
        cfg = self._config
        now = self._clock()
        degraded: list[str] = []
        answered = 0
        sources = 0

        # -- content (also feeds semantics and classification) --
        sources += 1
        html = ""
        doc = None
        content = ContentSnapshot()
        title = ""
        try:
            try:
                html = await asyncio.wait_for(self._document.content(), cfg.content_timeout)
            except TimeoutError as exc:
                raise TimeoutError(f"page content not read within {cfg.content_timeout}s") from exc
            title = self._document.title
            doc = parse_html(html)
            content = extract_content(doc, base_url=url, privacy=self._privacy)
            answered += 1
        except Exception as exc:
            self._source_failed("content", exc)
            degraded.append("content")

        # -- dom --
        layout: LayoutSnapshot | None = None
        changes: tuple[DOMChangeRecord, ...] = ()
        interactions: tuple[InteractionRecord, ...] = ()
        if self._dom is not None and (cfg.include_layout or cfg.include_interactions):
            sources += 1
            try:
                if cfg.include_layout:
                    layout = self._dom.get_current_layout()
                    changes = _tail(tuple(self._dom.get_recent_changes(cfg.change_window)), cfg.max_changes)
                if cfg.include_interactions:
                    recent = [i for i in self._dom.get_recent_interactions() if is_relevant_interaction(i)]
                    interactions = _tail(tuple(recent), cfg.max_interactions)
                answered += 1
            except Exception as exc:
                self._source_failed("dom", exc)
                degraded.append("dom")

        # -- network --
        network: NetworkSummary | None = None
        if self._network is not None and cfg.include_network:
            sources += 1
            try:
                summary = self._network.get_summary()
                relevant = _tail(tuple(r for r in summary.recent if is_relevant_request(r)), cfg.max_network_requests)
                network = dataclasses.replace(summary, recent=relevant)
                answered += 1
            except Exception as exc:
                self._source_failed("network", exc)
                degraded.append("network")

        # -- semantics --
        semantics: SemanticData | None = None
        if self._semantics is not None and cfg.include_semantics:
            sources += 1
            if doc is None and "content" in degraded:
                degraded.append("semantics")
            else:
                try:
                    semantics = self._semantics.extract_semantic_data(doc)
                    answered += 1
                except Exception as exc:
                    self._source_failed("semantics", exc)
                    degraded.append("semantics")

        try:
            classification = classify_page(url, content, semantics, raw_html=html)
        except Exception as exc:
            self._source_failed("classifier", exc)
            classification = None

        relevance = relevance_score(content, interactions, semantics, now)
        flows: list[DataFlow] = []
        if network is not None:
            flows = [
                DataFlow(
                    endpoint=r.url,
                    method=r.method,
                    status=r.status,
                    timestamp=r.timestamp,
                    relevance=request_relevance(r, now),
                )
                for r in network.recent[-10:]
            ]
            flows.sort(key=lambda f: f.relevance, reverse=True)

        summary = ContextSummary(
            page_type=classification.page_type if classification else "unknown",
            primary_content=primary_content(content),
            key_elements=key_elements(content),
            user_activity=summarize_activity(interactions, now),
            data_flows=tuple(flows),
            relevance_score=relevance,
            classification=classification,
        )
        extraction_errors = semantics.extraction_errors if semantics is not None else 0
        quality = DataQuality(
            completeness=round(answered / sources, 4) if sources else 0.0,
            freshness=1.0,
            accuracy=round(1.0 / (1 + extraction_errors), 4),
            relevance=relevance,
        )
        elapsed = (self._monotonic() - started) * 1000
        context = AggregatedContext(
            summary=summary,
            content=prioritize_content(content, cfg.content_priorities),
            metadata=ContextMetadata(
                timestamp=now,
                url=url,
                title=title or content.metadata.title,
                aggregation_time=elapsed,
                cache_hit=False,
                data_quality=quality,
                degraded_sources=tuple(degraded),
            ),
            layout=layout,
            network=network,
            interactions=interactions,
            changes=changes,
            semantics=semantics,
        )
        self._metrics = PerformanceMetrics(
            response_time=elapsed,
            data_size=estimate_size(context),
            cache_hit=False,
            processing_time=elapsed,
        )
        context = dataclasses.replace(context, performance=self._metrics)
        if degraded:
            logger.info("Context aggregated with degraded sources: %s", ", ".join(degraded))
        logger.debug(
            "Context aggregated: url=%s type=%s completeness=%.2f time=%.1fms",
            url,
            summary.page_type,
            quality.completeness,
            elapsed,
        )
        return context
