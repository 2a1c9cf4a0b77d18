# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""DOM observation: throttled change history, interactions, layout snapshots.

Raw host callbacks (mutation / intersection / resize / interaction) arrive
through a ``PageObservationPort``.  Mutations are queued and processed in
batches at most once per ``throttle_interval``; overflowing buffers evict
the oldest records.  Per-event processing errors are logged and dropped.

``stop_observing()`` bumps a generation counter: callbacks or timers from
an older generation are ignored, so nothing is written after it returns,
even when it is called from inside a callback.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from .errors import ObservationUnsupported
from .events import EventBus, EventType
from .ports import (
    ElementInfo,
    LayerInfo,
    LayoutMetrics,
    ObservationKind,
    PageObservationPort,
    RawIntersection,
    RawInteraction,
    RawMutation,
    RawResize,
    Rect,
    Subscription,
)
from .privacy import PrivacyController
from .ring_buffer import BufferView, RingBuffer

logger = logging.getLogger(__name__)


class ChangeType(StrEnum):
    ADDED = "added"
    REMOVED = "removed"
    MODIFIED = "modified"
    ATTRIBUTES = "attributes"


class InteractionType(StrEnum):
    CLICK = "click"
    INPUT = "input"
    SUBMIT = "submit"
    SCROLL = "scroll"
    FOCUS = "focus"
    BLUR = "blur"


class OverlayType(StrEnum):
    TOOLTIP = "tooltip"
    DROPDOWN = "dropdown"
    NOTIFICATION = "notification"
    POPUP = "popup"
    MODAL = "modal"


_MODAL_ROLES = frozenset({"dialog", "alertdialog"})
_MODAL_CLASS_HINTS = ("modal", "dialog", "popup")
_OVERLAY_ROLES = frozenset({"tooltip", "menu", "listbox", "status", "alert"})
_OVERLAY_CLASS_HINTS = ("overlay", "backdrop", "tooltip", "dropdown", "notification", "toast")
_POSITIONED = frozenset({"fixed", "absolute", "sticky"})


# ---------------------------------------------------------------------------
# Records & snapshots
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DOMChangeRecord:
    type: ChangeType
    element: ElementInfo
    timestamp: float
    attribute_name: str | None = None
    old_value: str | None = None
    new_value: str | None = None
    node_count: int = 0  # added/removed node count for childList changes


@dataclass(frozen=True, slots=True)
class InteractionContext:
    page_url: str
    element_path: str
    surrounding_text: str = ""
    form_context: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class InteractionRecord:
    type: InteractionType
    element: ElementInfo
    timestamp: float
    context: InteractionContext
    value: str | None = None


@dataclass(frozen=True, slots=True)
class VisibleElement:
    selector: str
    tag_name: str
    text: str
    bounds: Rect | None
    visibility: float  # intersection ratio 0..1


@dataclass(frozen=True, slots=True)
class Viewport:
    width: float = 0.0
    height: float = 0.0
    device_pixel_ratio: float = 1.0

    @property
    def area(self) -> float:
        return self.width * self.height


@dataclass(frozen=True, slots=True)
class ScrollPosition:
    x: float = 0.0
    y: float = 0.0
    max_x: float = 0.0
    max_y: float = 0.0


@dataclass(frozen=True, slots=True)
class Modal:
    selector: str
    title: str
    content: str
    z_index: int
    coverage: float  # fraction of the viewport covered
    covered_area: float


@dataclass(frozen=True, slots=True)
class Overlay:
    selector: str
    type: OverlayType
    z_index: int
    coverage: float


@dataclass(frozen=True, slots=True)
class LayoutSnapshot:
    viewport: Viewport = field(default_factory=Viewport)
    scroll: ScrollPosition = field(default_factory=ScrollPosition)
    visible_elements: tuple[VisibleElement, ...] = ()
    modals: tuple[Modal, ...] = ()
    overlays: tuple[Overlay, ...] = ()
    timestamp: float = 0.0

    @property
    def has_modal(self) -> bool:
        return bool(self.modals)


@dataclass(frozen=True, slots=True)
class DOMObserverConfig:
    """DOM observation knobs.  Times are in seconds."""

    throttle_interval: float = 0.1
    max_changes: int = 1000
    max_interactions: int = 500
    max_visible_elements: int = 200
    surrounding_text_limit: int = 200
    modal_min_z_index: int = 10
    modal_min_coverage: float = 0.25
    track_interactions: bool = True

    def __post_init__(self) -> None:
        if self.throttle_interval < 0:
            raise ValueError(f"throttle_interval must be >= 0, got {self.throttle_interval}")
        if self.max_changes < 1 or self.max_interactions < 1:
            raise ValueError("buffer sizes must be >= 1")
        if not 0.0 <= self.modal_min_coverage <= 1.0:
            raise ValueError(f"modal_min_coverage must be within [0, 1], got {self.modal_min_coverage}")


# ---------------------------------------------------------------------------
# Layout helpers
# ---------------------------------------------------------------------------


def _covered_area(rect: Rect, viewport: Viewport) -> float:
    """Area of *rect* inside the viewport (rect is viewport-relative)."""
    if viewport.area <= 0:
        return rect.area
    left = max(0.0, rect.x)
    top = max(0.0, rect.y)
    right = min(viewport.width, rect.x + rect.width)
    bottom = min(viewport.height, rect.y + rect.height)
    return max(0.0, right - left) * max(0.0, bottom - top)


def _has_class_hint(element: ElementInfo, hints: tuple[str, ...]) -> str | None:
    classes = element.class_name.lower().split()
    for hint in hints:
        if any(hint in c for c in classes):
            return hint
    return None


def _overlay_type(layer: LayerInfo) -> OverlayType:
    role = layer.role.lower()
    hint = _has_class_hint(layer.element, ("tooltip", "dropdown", "notification", "toast", "popup"))
    if role == "tooltip" or hint == "tooltip":
        return OverlayType.TOOLTIP
    if role in ("menu", "listbox") or hint == "dropdown":
        return OverlayType.DROPDOWN
    if role in ("status", "alert") or hint in ("notification", "toast"):
        return OverlayType.NOTIFICATION
    if hint == "popup":
        return OverlayType.POPUP
    return OverlayType.MODAL


def _modal_title(element: ElementInfo) -> str:
    label = element.attributes.get("aria-label", "")
    if label:
        return label.strip()
    first_line = element.text.strip().split("\n", 1)[0]
    return first_line[:120]


# ---------------------------------------------------------------------------
# DOMObserver
# ---------------------------------------------------------------------------


class DOMObserver:
    """Bounded, throttled observer of one page."""

    def __init__(
        self,
        port: PageObservationPort,
        config: DOMObserverConfig | None = None,
        *,
        privacy: PrivacyController | None = None,
        bus: EventBus | None = None,
        clock: Callable[[], float] = time.time,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._port = port
        self._config = config or DOMObserverConfig()
        self._privacy = privacy
        self._bus = bus
        self._clock = clock
        self._monotonic = monotonic

        self._changes: RingBuffer[DOMChangeRecord] = RingBuffer(self._config.max_changes, clock=clock)
        self._interactions: RingBuffer[InteractionRecord] = RingBuffer(self._config.max_interactions, clock=clock)
        self._visible: OrderedDict[str, VisibleElement] = OrderedDict()
        self._viewport: Viewport | None = None

        self._observing = False
        self._generation = 0
        self._subscriptions: list[Subscription] = []
        self._pending: list[RawMutation] = []
        self._timer: asyncio.TimerHandle | None = None
        self._last_flush = float("-inf")
        self._supported: set[ObservationKind] = set()
        self._processing_errors = 0
        self._batches = 0

    # -- Lifecycle --

    @property
    def is_observing(self) -> bool:
        return self._observing

    @property
    def supported_kinds(self) -> frozenset[ObservationKind]:
        return frozenset(self._supported)

    @property
    def processing_errors(self) -> int:
        return self._processing_errors

    def start_observing(self) -> None:
        """Subscribe to the host's observation primitives.  Idempotent.

        Raises ObservationUnsupported when the host cannot report mutations.
        Intersection, resize and interaction observation degrade silently.
        """
        if self._observing:
            return
        if not self._port.supports(ObservationKind.MUTATION):
            raise ObservationUnsupported("host does not support mutation observation", primitive="mutation")

        self._generation += 1
        generation = self._generation
        self._observing = True
        self._supported = {ObservationKind.MUTATION}
        self._subscriptions.append(
            self._port.subscribe(ObservationKind.MUTATION, lambda raw: self._on_mutation(raw, generation))
        )

        optional: list[tuple[ObservationKind, Callable[[Any, int], None]]] = [
            (ObservationKind.INTERSECTION, self._on_intersection),
            (ObservationKind.RESIZE, self._on_resize),
        ]
        if self._config.track_interactions:
            optional.append((ObservationKind.INTERACTION, self._on_interaction))
        for kind, handler in optional:
            if not self._port.supports(kind):
                logger.debug("Optional observation unavailable: %s", kind.value)
                continue
            try:
                self._subscriptions.append(
                    self._port.subscribe(kind, lambda raw, h=handler: h(raw, generation))
                )
                self._supported.add(kind)
            except Exception:
                logger.warning("Failed to subscribe to %s; continuing without it", kind.value, exc_info=True)
        logger.info("DOM observation started: %s", sorted(k.value for k in self._supported))

    def stop_observing(self) -> None:
        """Release every host handle and drop pending work.  Idempotent."""
        if not self._observing:
            return
        self._observing = False
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending.clear()
        subscriptions, self._subscriptions = self._subscriptions, []
        for sub in subscriptions:
            try:
                sub.disconnect()
            except Exception:
                logger.debug("Subscription disconnect failed", exc_info=True)
        logger.info("DOM observation stopped")

    def _is_current(self, generation: int) -> bool:
        return self._observing and generation == self._generation

    # -- Mutations --

    def _on_mutation(self, raw: RawMutation, generation: int) -> None:
        if not self._is_current(generation):
            return
        self._pending.append(raw)
        self._schedule(generation)

    def _schedule(self, generation: int) -> None:
        if self._timer is not None:
            return
        elapsed = self._monotonic() - self._last_flush
        interval = self._config.throttle_interval
        if elapsed >= interval:
            self._flush(generation)
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop to defer onto; process now
            self._flush(generation)
            return
        self._timer = loop.call_later(interval - elapsed, self._flush, generation)

    def flush(self) -> int:
        """Process pending mutations immediately.  Returns records added."""
        if self._timer is not None:
            self._timer.cancel()
        return self._flush(self._generation)

    def _flush(self, generation: int) -> int:
        self._timer = None
        if not self._is_current(generation) or not self._pending:
            return 0
        batch, self._pending = self._pending, []
        self._last_flush = self._monotonic()
        timestamp = self._clock()
        added: list[DOMChangeRecord] = []
        for raw in batch:
            if not self._is_current(generation):
                return len(added)
            try:
                records = self._process_mutation(raw, timestamp)
            except Exception:
                self._processing_errors += 1
                logger.debug("Mutation processing failed", exc_info=True)
                continue
            self._changes.extend(records)
            added.extend(records)
        self._batches += 1
        if added and self._bus is not None:
            self._bus.publish(EventType.DOM_CHANGED, tuple(added))
        return len(added)

    def _process_mutation(self, raw: RawMutation, timestamp: float) -> list[DOMChangeRecord]:
        target = raw.target
        if raw.kind == "childList":
            records = []
            if raw.added:
                records.append(
                    DOMChangeRecord(ChangeType.ADDED, target, timestamp, node_count=len(raw.added))
                )
            if raw.removed:
                records.append(
                    DOMChangeRecord(ChangeType.REMOVED, target, timestamp, node_count=len(raw.removed))
                )
            return records
        if raw.kind == "attributes":
            return [
                DOMChangeRecord(
                    ChangeType.ATTRIBUTES,
                    target,
                    timestamp,
                    attribute_name=raw.attribute_name,
                    old_value=self._sanitize(raw.old_value),
                    new_value=self._sanitize(raw.new_value),
                )
            ]
        if raw.kind == "characterData":
            return [
                DOMChangeRecord(
                    ChangeType.MODIFIED,
                    target,
                    timestamp,
                    old_value=self._sanitize(raw.old_value),
                    new_value=self._sanitize(raw.new_value),
                )
            ]
        raise ValueError(f"unknown mutation kind: {raw.kind!r}")

    def _sanitize(self, text: str | None) -> str | None:
        if text is None or self._privacy is None:
            return text
        return self._privacy.sanitize_dom_content(text)

    # -- Intersections / resize --

    def _on_intersection(self, raw: RawIntersection, generation: int) -> None:
        if not self._is_current(generation):
            return
        try:
            element = raw.target
            key = element.selector or element.id or element.tag_name
            if raw.is_intersecting:
                self._visible[key] = VisibleElement(
                    selector=key,
                    tag_name=element.tag_name,
                    text=(self._sanitize(element.text) or "")[: self._config.surrounding_text_limit],
                    bounds=element.bounds,
                    visibility=max(0.0, min(1.0, raw.ratio)),
                )
                self._visible.move_to_end(key)
                while len(self._visible) > self._config.max_visible_elements:
                    self._visible.popitem(last=False)
            else:
                self._visible.pop(key, None)
        except Exception:
            self._processing_errors += 1
            logger.debug("Intersection processing failed", exc_info=True)

    def _on_resize(self, raw: RawResize, generation: int) -> None:
        if not self._is_current(generation):
            return
        try:
            previous = self._viewport.device_pixel_ratio if self._viewport else 1.0
            self._viewport = Viewport(width=float(raw.width), height=float(raw.height), device_pixel_ratio=previous)
        except Exception:
            self._processing_errors += 1
            logger.debug("Resize processing failed", exc_info=True)

    # -- Interactions --

    def _on_interaction(self, raw: RawInteraction, generation: int) -> None:
        if not self._is_current(generation):
            return
        try:
            record = self._build_interaction(raw)
        except Exception:
            self._processing_errors += 1
            logger.debug("Interaction processing failed", exc_info=True)
            return
        if record is None:
            return
        self._interactions.push(record)
        if self._bus is not None:
            self._bus.publish(EventType.INTERACTION, record)

    def _build_interaction(self, raw: RawInteraction) -> InteractionRecord | None:
        try:
            kind = InteractionType(raw.type)
        except ValueError:
            return None
        page_url = self._port.page_url
        if self._privacy is not None and not self._privacy.should_monitor_url(page_url):
            return None

        limit = self._config.surrounding_text_limit
        surrounding = (raw.surrounding_text or raw.target.text).strip()[:limit]
        form_context = dict(raw.form_context) if raw.form_context else None
        value = raw.value
        if self._privacy is not None:
            surrounding = self._privacy.sanitize_dom_content(surrounding)
            field_name = (form_context or {}).get("field_name") or raw.target.attributes.get("name") or "value"
            if value is not None:
                value = self._privacy.sanitize_form_data({field_name: value})[field_name]
            if form_context and form_context.get("field_value") is not None:
                field_value = str(form_context["field_value"])
                form_context["field_value"] = self._privacy.sanitize_form_data({field_name: field_value})[field_name]
        return InteractionRecord(
            type=kind,
            element=raw.target,
            timestamp=self._clock(),
            context=InteractionContext(
                page_url=self._privacy.redact(page_url) if self._privacy else page_url,
                element_path=raw.target.selector,
                surrounding_text=surrounding,
                form_context=form_context,
            ),
            value=value,
        )

    # -- Queries --

    def get_recent_changes(self, window: float | None = None) -> BufferView[DOMChangeRecord]:
        """Changes from the last *window* seconds (None = whole buffer)."""
        return self._changes.window(window)

    def get_recent_interactions(self, window: float | None = None) -> BufferView[InteractionRecord]:
        """Interactions from the last *window* seconds (None = whole buffer)."""
        return self._interactions.window(window)

    def get_visible_content(self) -> list[VisibleElement]:
        return list(self._visible.values())

    def get_current_layout(self) -> LayoutSnapshot:
        """Best-effort layout snapshot.  Never raises; zeroed when unavailable."""
        try:
            metrics = self._port.layout_metrics()
        except Exception:
            logger.debug("layout_metrics failed", exc_info=True)
            metrics = None
        metrics = metrics or LayoutMetrics()

        viewport = Viewport(
            width=metrics.viewport_width or (self._viewport.width if self._viewport else 0.0),
            height=metrics.viewport_height or (self._viewport.height if self._viewport else 0.0),
            device_pixel_ratio=metrics.device_pixel_ratio or 1.0,
        )
        scroll = ScrollPosition(
            x=metrics.scroll_x,
            y=metrics.scroll_y,
            max_x=0.0,
            max_y=max(0.0, metrics.document_height - viewport.height),
        )
        try:
            layers = list(self._port.layers())
        except Exception:
            logger.debug("layers failed", exc_info=True)
            layers = []
        modals, overlays = self.classify_layers(layers, viewport)
        return LayoutSnapshot(
            viewport=viewport,
            scroll=scroll,
            visible_elements=tuple(self._visible.values()),
            modals=modals,
            overlays=overlays,
            timestamp=self._clock(),
        )

    def classify_layers(
        self, layers: list[LayerInfo], viewport: Viewport
    ) -> tuple[tuple[Modal, ...], tuple[Overlay, ...]]:
        """Split positioned layers into modals and overlays.

        Modals are ordered topmost first; equal z-index goes to the larger
        covered area.
        """
        cfg = self._config
        modals: list[Modal] = []
        overlays: list[Overlay] = []
        for layer in layers:
            try:
                if not layer.visible or layer.rect.area <= 0:
                    continue
                covered = _covered_area(layer.rect, viewport)
                coverage = covered / viewport.area if viewport.area > 0 else 0.0
                role = layer.role.lower()
                positioned = layer.position in _POSITIONED
                explicit_modal = (
                    role in _MODAL_ROLES
                    or layer.aria_modal
                    or _has_class_hint(layer.element, _MODAL_CLASS_HINTS) is not None
                )
                heuristic_modal = (
                    positioned and layer.z_index >= cfg.modal_min_z_index and coverage >= cfg.modal_min_coverage
                )
                selector = layer.element.selector or layer.element.tag_name
                if explicit_modal or heuristic_modal:
                    modals.append(
                        Modal(
                            selector=selector,
                            title=_modal_title(layer.element),
                            content=(self._sanitize(layer.element.text) or "")[:500],
                            z_index=layer.z_index,
                            coverage=round(coverage, 4),
                            covered_area=covered,
                        )
                    )
                elif (
                    role in _OVERLAY_ROLES
                    or _has_class_hint(layer.element, _OVERLAY_CLASS_HINTS) is not None
                    or (positioned and layer.z_index > 0)
                ):
                    overlays.append(
                        Overlay(selector=selector, type=_overlay_type(layer), z_index=layer.z_index, coverage=coverage)
                    )
            except Exception:
                self._processing_errors += 1
                logger.debug("Layer classification failed", exc_info=True)
        modals.sort(key=lambda m: (-m.z_index, -m.covered_area))
        overlays.sort(key=lambda o: (-o.z_index, -o.coverage))
        return tuple(modals), tuple(overlays)

    def get_statistics(self) -> dict[str, Any]:
        return {
            "observing": self._observing,
            "changes": len(self._changes),
            "interactions": len(self._interactions),
            "visible_elements": len(self._visible),
            "pending": len(self._pending),
            "batches": self._batches,
            "evicted_changes": self._changes.evictions,
            "processing_errors": self._processing_errors,
        }

    def clear_data(self) -> None:
        """Drop all buffered observation state."""
        self._changes.clear()
        self._interactions.clear()
        self._visible.clear()
        self._pending.clear()
