# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for pagecontext.dom_observer."""

from __future__ import annotations

import pytest

from pagecontext.dom_observer import (
    ChangeType,
    DOMObserver,
    DOMObserverConfig,
    InteractionType,
    OverlayType,
    Viewport,
)
from pagecontext.errors import ObservationUnsupported
from pagecontext.events import EventBus, EventType
from pagecontext.ports import (
    ElementInfo,
    LayerInfo,
    LayoutMetrics,
    ObservationKind,
    RawIntersection,
    RawInteraction,
    RawMutation,
    RawResize,
    Rect,
)
from pagecontext.privacy import PrivacyConfig, PrivacyController
from tests._fakes import FakeClock, FakePort

_DIV = ElementInfo("div", id="feed", selector="main > div#feed", text="Latest posts")
_INPUT = ElementInfo("input", selector="form > input", attributes={"name": "email"})
_PASSWORD = ElementInfo("input", selector="form > input[type=password]", attributes={"name": "password"})


def _attr(value: str = "x") -> RawMutation:
    return RawMutation("attributes", _DIV, attribute_name="data-state", old_value=None, new_value=value)


def _make_observer(port=None, clock=None, **config) -> DOMObserver:
    return DOMObserver(
        port or FakePort(),
        DOMObserverConfig(**config),
        privacy=PrivacyController(),
        clock=clock or FakeClock(),
        monotonic=FakeClock(start=1000.0),
    )


def _layer(selector, *, z=0, rect=Rect(0, 0, 400, 300), position="fixed", role="", text="", **kw) -> LayerInfo:
    element = ElementInfo("div", selector=selector, text=text, class_name=kw.pop("class_name", ""))
    return LayerInfo(element=element, rect=rect, z_index=z, position=position, role=role, **kw)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    def test_start_is_idempotent(self, port):
        observer = _make_observer(port)
        observer.start_observing()
        observer.start_observing()
        assert observer.is_observing
        assert len(port.callbacks[ObservationKind.MUTATION]) == 1

    def test_stop_is_idempotent(self, port):
        observer = _make_observer(port)
        observer.start_observing()
        observer.stop_observing()
        observer.stop_observing()
        assert not observer.is_observing
        assert port.disconnects == 4
        assert all(not callbacks for callbacks in port.callbacks.values())

    def test_requires_mutation_support(self):
        port = FakePort(supported={ObservationKind.INTERSECTION})
        observer = _make_observer(port)
        with pytest.raises(ObservationUnsupported) as exc_info:
            observer.start_observing()
        assert exc_info.value.primitive == "mutation"
        assert not observer.is_observing

    def test_optional_primitives_degrade(self):
        port = FakePort(supported={ObservationKind.MUTATION})
        observer = _make_observer(port)
        observer.start_observing()
        assert observer.supported_kinds == {ObservationKind.MUTATION}

    def test_interaction_tracking_can_be_disabled(self, port):
        observer = _make_observer(port, track_interactions=False)
        observer.start_observing()
        assert ObservationKind.INTERACTION not in observer.supported_kinds
        assert ObservationKind.INTERACTION not in port.callbacks

    def test_no_writes_after_stop(self, port):
        observer = _make_observer(port)
        observer.start_observing()
        stale_mutation = port.callbacks[ObservationKind.MUTATION][0]
        stale_click = port.callbacks[ObservationKind.INTERACTION][0]
        observer.stop_observing()
        stale_mutation(_attr())
        stale_click(RawInteraction("click", _DIV))
        assert len(observer.get_recent_changes()) == 0
        assert len(observer.get_recent_interactions()) == 0

    def test_restart_ignores_previous_generation(self, port):
        observer = _make_observer(port)
        observer.start_observing()
        stale = port.callbacks[ObservationKind.MUTATION][0]
        observer.stop_observing()
        observer.start_observing()
        stale(_attr())
        assert len(observer.get_recent_changes()) == 0
        port.emit(ObservationKind.MUTATION, _attr())
        assert len(observer.get_recent_changes()) == 1


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


class TestMutations:
    def test_child_list_produces_added_and_removed(self, port):
        observer = _make_observer(port)
        observer.start_observing()
        port.emit(ObservationKind.MUTATION, RawMutation("childList", _DIV, added=(_INPUT, _INPUT), removed=(_DIV,)))
        changes = observer.get_recent_changes().to_list()
        assert [c.type for c in changes] == [ChangeType.ADDED, ChangeType.REMOVED]
        assert changes[0].node_count == 2

    def test_buffer_is_bounded(self, port):
        observer = _make_observer(port, max_changes=5)
        observer.start_observing()
        for i in range(8):
            port.emit(ObservationKind.MUTATION, _attr(str(i)))
        changes = observer.get_recent_changes().to_list()
        assert len(changes) == 5
        assert changes[0].new_value == "3"
        assert observer.get_statistics()["evicted_changes"] == 3

    def test_values_are_sanitized(self, port):
        observer = _make_observer(port)
        observer.start_observing()
        port.emit(ObservationKind.MUTATION, RawMutation("characterData", _DIV, old_value="", new_value="4111 1111 1111 1111"))
        assert observer.get_recent_changes().to_list()[0].new_value == "[REDACTED]"

    def test_bad_mutation_is_dropped_and_counted(self, port):
        observer = _make_observer(port)
        observer.start_observing()
        port.emit(ObservationKind.MUTATION, RawMutation("bogus", _DIV))
        port.emit(ObservationKind.MUTATION, _attr())
        assert observer.processing_errors == 1
        assert len(observer.get_recent_changes()) == 1

    def test_window_filters_by_timestamp(self, port):
        clock = FakeClock()
        observer = _make_observer(port, clock=clock)
        observer.start_observing()
        port.emit(ObservationKind.MUTATION, _attr("old"))
        clock.advance(60)
        port.emit(ObservationKind.MUTATION, _attr("new"))
        assert [c.new_value for c in observer.get_recent_changes(window=10)] == ["new"]
        assert len(observer.get_recent_changes()) == 2

    def test_publishes_dom_changed(self, port):
        bus = EventBus()
        batches = []
        bus.subscribe(EventType.DOM_CHANGED, lambda event: batches.append(event.payload))
        observer = DOMObserver(port, bus=bus, clock=FakeClock(), monotonic=FakeClock())
        observer.start_observing()
        port.emit(ObservationKind.MUTATION, _attr())
        assert len(batches) == 1
        assert batches[0][0].attribute_name == "data-state"

    @pytest.mark.asyncio
    async def test_bursts_are_throttled_inside_a_loop(self, port):
        observer = _make_observer(port)
        observer.start_observing()
        port.emit(ObservationKind.MUTATION, _attr("1"))
        port.emit(ObservationKind.MUTATION, _attr("2"))
        port.emit(ObservationKind.MUTATION, _attr("3"))
        assert len(observer.get_recent_changes()) == 1
        assert observer.get_statistics()["pending"] == 2
        assert observer.flush() == 2
        assert len(observer.get_recent_changes()) == 3

    @pytest.mark.asyncio
    async def test_stop_drops_pending_batch(self, port):
        observer = _make_observer(port)
        observer.start_observing()
        port.emit(ObservationKind.MUTATION, _attr("1"))
        port.emit(ObservationKind.MUTATION, _attr("2"))
        observer.stop_observing()
        assert observer.flush() == 0
        assert len(observer.get_recent_changes()) == 1


# ---------------------------------------------------------------------------
# Interactions
# ---------------------------------------------------------------------------


class TestInteractions:
    def test_click_is_recorded_with_context(self, port):
        observer = _make_observer(port)
        observer.start_observing()
        port.emit(ObservationKind.INTERACTION, RawInteraction("click", _DIV, surrounding_text="  Latest posts  "))
        record = observer.get_recent_interactions().to_list()[0]
        assert record.type is InteractionType.CLICK
        assert record.context.page_url == "https://example.com/"
        assert record.context.element_path == "main > div#feed"
        assert record.context.surrounding_text == "Latest posts"

    def test_sensitive_field_value_is_redacted(self, port):
        observer = _make_observer(port)
        observer.start_observing()
        port.emit(ObservationKind.INTERACTION, RawInteraction("input", _PASSWORD, value="hunter2"))
        port.emit(ObservationKind.INTERACTION, RawInteraction("input", _INPUT, value="a@example.com"))
        values = [r.value for r in observer.get_recent_interactions()]
        assert values == ["[REDACTED]", "a@example.com"]

    def test_unknown_type_is_ignored(self, port):
        observer = _make_observer(port)
        observer.start_observing()
        port.emit(ObservationKind.INTERACTION, RawInteraction("hover", _DIV))
        assert len(observer.get_recent_interactions()) == 0

    def test_excluded_page_records_nothing(self):
        port = FakePort("https://bank.example/account")
        observer = DOMObserver(
            port,
            privacy=PrivacyController(PrivacyConfig(excluded_domains=("bank.example",))),
            clock=FakeClock(),
            monotonic=FakeClock(),
        )
        observer.start_observing()
        port.emit(ObservationKind.INTERACTION, RawInteraction("click", _DIV))
        assert len(observer.get_recent_interactions()) == 0

    def test_interaction_buffer_is_bounded(self, port):
        observer = _make_observer(port, max_interactions=3)
        observer.start_observing()
        for _ in range(5):
            port.emit(ObservationKind.INTERACTION, RawInteraction("scroll", _DIV))
        assert len(observer.get_recent_interactions()) == 3


# ---------------------------------------------------------------------------
# Visibility & layout
# ---------------------------------------------------------------------------


class TestVisibility:
    def test_enter_and_leave(self, port):
        observer = _make_observer(port)
        observer.start_observing()
        port.emit(ObservationKind.INTERSECTION, RawIntersection(_DIV, True, ratio=0.5))
        visible = observer.get_visible_content()
        assert [v.selector for v in visible] == ["main > div#feed"]
        assert visible[0].visibility == 0.5
        port.emit(ObservationKind.INTERSECTION, RawIntersection(_DIV, False))
        assert observer.get_visible_content() == []

    def test_visible_elements_are_capped(self, port):
        observer = _make_observer(port, max_visible_elements=2)
        observer.start_observing()
        for i in range(3):
            port.emit(ObservationKind.INTERSECTION, RawIntersection(ElementInfo("p", selector=f"p:nth-of-type({i})"), True))
        assert [v.selector for v in observer.get_visible_content()] == ["p:nth-of-type(1)", "p:nth-of-type(2)"]

    def test_clear_data(self, port):
        observer = _make_observer(port)
        observer.start_observing()
        port.emit(ObservationKind.MUTATION, _attr())
        port.emit(ObservationKind.INTERSECTION, RawIntersection(_DIV, True))
        observer.clear_data()
        assert len(observer.get_recent_changes()) == 0
        assert observer.get_visible_content() == []


class TestLayout:
    def test_zeroed_without_metrics(self, port):
        layout = _make_observer(port).get_current_layout()
        assert layout.viewport.area == 0
        assert not layout.has_modal

    def test_resize_fills_viewport_when_metrics_missing(self, port):
        observer = _make_observer(port)
        observer.start_observing()
        port.emit(ObservationKind.RESIZE, RawResize(1280, 720))
        assert observer.get_current_layout().viewport.width == 1280

    def test_bad_resize_is_dropped_and_counted(self, port):
        observer = _make_observer(port)
        observer.start_observing()
        port.emit(ObservationKind.RESIZE, RawResize(1280, 720))
        port.emit(ObservationKind.RESIZE, None)
        port.emit(ObservationKind.RESIZE, RawResize("wide", 720))
        assert observer.processing_errors == 2
        assert observer.get_current_layout().viewport.width == 1280

    def test_metrics_and_scroll(self):
        port = FakePort(metrics=LayoutMetrics(1000, 800, scroll_y=150, document_height=3000))
        layout = _make_observer(port).get_current_layout()
        assert layout.viewport == Viewport(1000, 800, 1.0)
        assert layout.scroll.y == 150
        assert layout.scroll.max_y == 2200

    def test_modal_detected_in_layout(self):
        dialog = _layer("div#cookie", z=1000, role="dialog", text="Cookies\nWe use cookies")
        port = FakePort(metrics=LayoutMetrics(1000, 800), layers=[dialog])
        layout = _make_observer(port).get_current_layout()
        assert layout.has_modal
        assert layout.modals[0].title == "Cookies"


class TestClassifyLayers:
    viewport = Viewport(1000, 800)

    def test_modals_topmost_first(self):
        observer = _make_observer()
        layers = [
            _layer("low", z=50, role="dialog"),
            _layer("high", z=100, role="dialog"),
        ]
        modals, _ = observer.classify_layers(layers, self.viewport)
        assert [m.selector for m in modals] == ["high", "low"]

    def test_equal_z_prefers_larger_area(self):
        observer = _make_observer()
        layers = [
            _layer("small", z=100, role="dialog", rect=Rect(0, 0, 100, 100)),
            _layer("large", z=100, role="dialog", rect=Rect(0, 0, 600, 600)),
        ]
        modals, _ = observer.classify_layers(layers, self.viewport)
        assert [m.selector for m in modals] == ["large", "small"]

    def test_large_positioned_layer_is_heuristic_modal(self):
        observer = _make_observer()
        modals, overlays = observer.classify_layers([_layer("sheet", z=20, rect=Rect(0, 0, 800, 600))], self.viewport)
        assert [m.selector for m in modals] == ["sheet"]
        assert modals[0].coverage == pytest.approx(0.6)
        assert overlays == ()

    def test_small_layers_become_overlays(self):
        observer = _make_observer()
        layers = [
            _layer("tip", z=5, role="tooltip", rect=Rect(10, 10, 80, 20)),
            _layer("menu", z=3, class_name="nav-dropdown", rect=Rect(0, 40, 200, 150)),
            _layer("toast", z=9, position="static", class_name="toast", rect=Rect(0, 0, 200, 40)),
        ]
        modals, overlays = observer.classify_layers(layers, self.viewport)
        assert modals == ()
        assert [(o.selector, o.type) for o in overlays] == [
            ("toast", OverlayType.NOTIFICATION),
            ("tip", OverlayType.TOOLTIP),
            ("menu", OverlayType.DROPDOWN),
        ]

    def test_invisible_and_empty_layers_are_skipped(self):
        observer = _make_observer()
        layers = [_layer("hidden", z=100, role="dialog", visible=False), _layer("empty", z=100, rect=Rect())]
        assert observer.classify_layers(layers, self.viewport) == ((), ())

    def test_aria_label_titles_the_modal(self):
        observer = _make_observer()
        element = ElementInfo("div", selector="dlg", text="Body text", attributes={"aria-label": "Sign in"})
        modals, _ = observer.classify_layers([LayerInfo(element, Rect(0, 0, 300, 300), z_index=10, aria_modal=True)], self.viewport)
        assert modals[0].title == "Sign in"
