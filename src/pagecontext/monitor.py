# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""PageContextMonitor: builds and wires every pipeline component for one page.

There are no module-level instances; each monitor owns its own event bus,
privacy controller, error handler, observers, aggregator and provider, and
passes them to each other by reference.

Lifecycle: start() / pause() / resume() / stop() are idempotent.  A failing
observer is started in fallback mode (reported in ``get_health()``) and
never prevents the rest of the pipeline from running.  destroy() is final.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, replace
from enum import StrEnum

from . import logging_config
from .config import MonitoringConfig
from .context_aggregator import AggregatedContext, ContextAggregator, InvalidationReason
from .context_provider import ContextProvider
from .dom_observer import DOMObserver
from .errors import ObservationUnsupported
from .events import Event, EventBus, EventType
from .formatter import ContextFormatter
from .network_monitor import InterceptTarget, NetworkMonitor
from .ports import DocumentSource, PageObservationPort
from .privacy import PrivacyController
from .resilience import CircuitState, ErrorCategory, ErrorHandler, ErrorSeverity
from .semantic_extractor import SemanticExtractor
from .suggestions import SuggestionEngine

logger = logging.getLogger(__name__)

DOM_COMPONENT = "dom_observer"


class ComponentStatus(StrEnum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"  # running without some capability
    DISABLED = "disabled"  # turned off by config or after repeated errors
    STOPPED = "stopped"


@dataclass(frozen=True, slots=True)
class ComponentHealth:
    name: str
    status: ComponentStatus
    error_count: int = 0
    last_health_check: float | None = None
    reconnect_attempts: int = 0
    circuit_state: CircuitState = CircuitState.CLOSED
    detail: str = ""


class PageContextMonitor:
    """Composition root for one monitored page."""

    def __init__(
        self,
        port: PageObservationPort,
        document: DocumentSource,
        *,
        targets: Iterable[InterceptTarget] = (),
        config: MonitoringConfig | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or MonitoringConfig()
        self._clock = clock
        features = self._config.features

        self.bus = bus or EventBus()
        self.privacy = PrivacyController(self._config.privacy, bus=self.bus, clock=clock)
        self.error_handler = ErrorHandler(self._config.errors, bus=self.bus, clock=clock, monotonic=monotonic)

        self.dom_observer: DOMObserver | None = None
        if features.dom_monitoring:
            dom_config = self._config.dom
            if not features.interaction_tracking:
                dom_config = replace(dom_config, track_interactions=False)
            self.dom_observer = DOMObserver(
                port, dom_config, privacy=self.privacy, bus=self.bus, clock=clock, monotonic=monotonic
            )

        self.network_monitor: NetworkMonitor | None = None
        if features.network_monitoring:
            self.network_monitor = NetworkMonitor(
                list(targets),
                self.privacy,
                self.error_handler,
                self._config.network,
                bus=self.bus,
                clock=clock,
                monotonic=monotonic,
            )

        self.semantic_extractor = SemanticExtractor() if features.semantic_extraction else None
        self.aggregator = ContextAggregator(
            document,
            self.privacy,
            dom_observer=self.dom_observer,
            network_monitor=self.network_monitor,
            semantic_extractor=self.semantic_extractor,
            error_handler=self.error_handler,
            config=self._config.aggregator,
            bus=self.bus,
            clock=clock,
            monotonic=monotonic,
        )
        self.formatter = ContextFormatter(self.privacy)
        self.suggestions = SuggestionEngine(clock=monotonic)
        self.provider = ContextProvider(
            self.aggregator,
            self.privacy,
            is_active=lambda: self.is_active,
            formatter=self.formatter,
            suggestion_engine=self.suggestions,
            config=self._config.provider,
            bus=self.bus,
            monotonic=monotonic,
        )

        self._document = document
        self._active = False
        self._paused = False
        self._destroyed = False
        self._dom_fallback = ""
        self._unsubscribe = self.bus.subscribe(EventType.CONSENT_CHANGED, self._on_consent_changed)

    # -- State --

    @property
    def config(self) -> MonitoringConfig:
        return self._config

    @property
    def is_active(self) -> bool:
        return self._active and not self._paused

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_destroyed(self) -> bool:
        return self._destroyed

    # -- Lifecycle --

    def start(self) -> None:
        """Start every enabled observer.  Idempotent."""
        if self._destroyed:
            logger.warning("start() called on a destroyed monitor; ignoring")
            return
        if self._active:
            return
        self._active = True
        self._paused = False
        self._bind_log_context()
        self._start_dom()
        if self.network_monitor is not None:
            self.network_monitor.start()
        logger.info(
            "Page monitoring started: dom=%s network=%s semantics=%s",
            self._component_status(DOM_COMPONENT).value,
            self._component_status("network_monitor").value,
            "on" if self.semantic_extractor is not None else "off",
        )

    def _start_dom(self) -> None:
        if self.dom_observer is None:
            return
        try:
            self.dom_observer.start_observing()
            self._dom_fallback = ""
        except ObservationUnsupported as exc:
            # Fallback: context still aggregates from content, network and semantics
            self._dom_fallback = str(exc)
            logger.warning("DOM observation unavailable, continuing without it: %s", exc)
            self.error_handler.handle_error(exc, ErrorCategory.DOM, ErrorSeverity.HIGH, DOM_COMPONENT)

    def stop(self) -> None:
        """Stop every observer; buffered data is kept.  Idempotent."""
        if not self._active:
            return
        self._active = False
        self._paused = False
        if self.dom_observer is not None:
            self.dom_observer.stop_observing()
        if self.network_monitor is not None:
            self.network_monitor.stop()
        logging_config.clear_page()
        logger.info("Page monitoring stopped")

    def pause(self) -> None:
        if not self._active or self._paused:
            return
        self._paused = True
        if self.dom_observer is not None:
            self.dom_observer.stop_observing()
        if self.network_monitor is not None:
            self.network_monitor.pause()
        logger.info("Page monitoring paused")

    def resume(self) -> None:
        if not self._active or not self._paused:
            return
        self._paused = False
        self._start_dom()
        if self.network_monitor is not None:
            self.network_monitor.resume()
        logger.info("Page monitoring resumed")

    def destroy(self) -> None:
        """Stop, drop all collected data and detach from the bus.  Final."""
        if self._destroyed:
            return
        self.stop()
        self.clear_data()
        self.provider.close()
        self.aggregator.close()
        self._unsubscribe()
        self._destroyed = True
        logger.info("Page monitor destroyed")

    def clear_data(self) -> None:
        if self.dom_observer is not None:
            self.dom_observer.clear_data()
        if self.network_monitor is not None:
            self.network_monitor.clear_data()
        self.privacy.clear_all_data()
        self.provider.clear_cache()
        self.aggregator.invalidate(InvalidationReason.MANUAL)

    def _on_consent_changed(self, event: Event) -> None:
        if event.payload is False and self.privacy.config.require_consent:
            logger.info("Consent withdrawn; dropping collected page data")
            self.clear_data()

    def _bind_log_context(self) -> None:
        try:
            url = self._document.url
        except Exception:
            logger.debug("Document URL unavailable for log context", exc_info=True)
            return
        logging_config.bind_page(self.privacy.redact(url))

    # -- Context --

    async def get_context(self, *, force: bool = False) -> AggregatedContext:
        return await self.aggregator.get_context(force=force)

    # -- Health --

    def _component_status(self, name: str) -> ComponentStatus:
        if name == DOM_COMPONENT:
            if self.dom_observer is None:
                return ComponentStatus.DISABLED
            if self._dom_fallback:
                return ComponentStatus.DEGRADED
            return ComponentStatus.HEALTHY if self.dom_observer.is_observing else ComponentStatus.STOPPED
        network = self.network_monitor
        if network is None:
            return ComponentStatus.DISABLED
        health = network.get_health_status()
        if health.disabled:
            return ComponentStatus.DISABLED
        if not health.is_active:
            return ComponentStatus.STOPPED
        if health.degraded or health.circuit_state is not CircuitState.CLOSED:
            return ComponentStatus.DEGRADED
        return ComponentStatus.HEALTHY

    def get_health(self) -> dict[str, ComponentHealth]:
        stats = self.error_handler.get_error_statistics()
        health = {
            DOM_COMPONENT: ComponentHealth(
                name=DOM_COMPONENT,
                status=self._component_status(DOM_COMPONENT),
                error_count=stats.errors_by_component.get(DOM_COMPONENT, 0)
                + (self.dom_observer.processing_errors if self.dom_observer is not None else 0),
                detail=self._dom_fallback,
            ),
        }
        if self.network_monitor is not None:
            status = self.network_monitor.get_health_status()
            health["network_monitor"] = ComponentHealth(
                name="network_monitor",
                status=self._component_status("network_monitor"),
                error_count=status.error_count,
                last_health_check=status.last_health_check,
                reconnect_attempts=status.reconnect_attempts,
                circuit_state=status.circuit_state,
            )
        else:
            health["network_monitor"] = ComponentHealth(name="network_monitor", status=ComponentStatus.DISABLED)
        aggregator_errors = sum(
            count for component, count in stats.errors_by_component.items() if component.startswith("context_aggregator")
        )
        health["context_aggregator"] = ComponentHealth(
            name="context_aggregator",
            status=ComponentStatus.DEGRADED if aggregator_errors else ComponentStatus.HEALTHY,
            error_count=aggregator_errors,
        )
        return health
