# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for pagecontext.playwright_host with a mocked Playwright page."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest
from playwright.async_api import Error as PlaywrightError

from pagecontext.dom_observer import DOMObserver
from pagecontext.playwright_host import _LAYOUT_JS, BINDING_NAME, PlaywrightPageHost
from pagecontext.ports import ObservationKind, RawInteraction, RawMutation, RawResize
from tests._fakes import FakeClock

LAYOUT = {
    "metrics": {
        "viewportWidth": 1280,
        "viewportHeight": 800,
        "scrollX": 0,
        "scrollY": 120,
        "documentHeight": 4000,
        "dpr": 2,
    },
    "layers": [
        {
            "tag": "div",
            "id": "cookie",
            "cls": "modal",
            "text": "We use cookies",
            "heading": "Privacy settings",
            "label": "Cookie consent",
            "rect": {"x": 0, "y": 0, "width": 1280, "height": 800},
            "z": 1000,
            "position": "fixed",
            "role": "dialog",
            "modal": True,
            "visible": True,
        }
    ],
}


def _make_page(url: str = "https://example.com/contact") -> MagicMock:
    page = MagicMock()
    page.url = url
    page.expose_binding = AsyncMock()
    page.add_init_script = AsyncMock()
    page.title = AsyncMock(return_value="Contact us")
    page.content = AsyncMock(return_value="<html><body>hi</body></html>")

    async def _evaluate(script, *args):
        return LAYOUT if script == _LAYOUT_JS else None

    page.evaluate = AsyncMock(side_effect=_evaluate)
    return page


async def _installed_host(page=None) -> PlaywrightPageHost:
    host = PlaywrightPageHost(page or _make_page())
    await host.install()
    return host


class TestInstall:
    @pytest.mark.asyncio
    async def test_install_exposes_binding_and_reads_layout(self):
        page = _make_page()
        host = PlaywrightPageHost(page)
        assert not host.supports(ObservationKind.MUTATION)
        await host.install()
        await host.install()
        page.expose_binding.assert_awaited_once()
        assert page.expose_binding.await_args.args[0] == BINDING_NAME
        assert repr(BINDING_NAME) in page.add_init_script.await_args.kwargs["script"]
        assert host.supports(ObservationKind.MUTATION)
        assert host.title == "Contact us"
        metrics = host.layout_metrics()
        assert metrics.viewport_width == 1280
        assert metrics.scroll_y == 120
        assert metrics.device_pixel_ratio == 2

    @pytest.mark.asyncio
    async def test_layers_lead_with_heading(self):
        host = await _installed_host()
        (layer,) = host.layers()
        assert layer.element.text == "Privacy settings\nWe use cookies"
        assert layer.element.attributes == {"aria-label": "Cookie consent"}
        assert layer.z_index == 1000
        assert layer.aria_modal
        assert layer.rect.width == 1280

    @pytest.mark.asyncio
    async def test_current_document_injection_failure_is_tolerated(self):
        page = _make_page()

        async def _evaluate(script, *args):
            if script == _LAYOUT_JS:
                return LAYOUT
            raise PlaywrightError("Execution context was destroyed")

        page.evaluate = AsyncMock(side_effect=_evaluate)
        host = await _installed_host(page)
        assert host.installed
        assert host.layout_metrics() is not None

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_previous_snapshot(self):
        page = _make_page()
        host = await _installed_host(page)
        page.evaluate = AsyncMock(side_effect=PlaywrightError("Target closed"))
        await host.refresh()
        assert host.layout_metrics().viewport_height == 800


class TestBinding:
    @pytest.mark.asyncio
    async def test_payloads_are_converted(self):
        host = await _installed_host()
        received = []
        host.subscribe(ObservationKind.MUTATION, received.append)
        host.subscribe(ObservationKind.RESIZE, received.append)
        host.subscribe(ObservationKind.INTERACTION, received.append)

        host._on_binding(None, "mutation", {"kind": "childList", "target": {"tag": "ul"}, "added": [{"tag": "li"}]})
        host._on_binding(None, "resize", {"width": 640, "height": 480})
        host._on_binding(
            None,
            "interaction",
            {"type": "input", "target": {"tag": "input", "attrs": {"name": "email"}}, "value": "ada@example.com"},
        )

        mutation, resize, interaction = received
        assert isinstance(mutation, RawMutation)
        assert mutation.target.tag_name == "ul"
        assert [e.tag_name for e in mutation.added] == ["li"]
        assert resize == RawResize(width=640.0, height=480.0)
        assert isinstance(interaction, RawInteraction)
        assert interaction.target.attributes == {"name": "email"}

    @pytest.mark.asyncio
    async def test_unknown_kind_is_dropped(self):
        host = await _installed_host()
        received = []
        host.subscribe(ObservationKind.MUTATION, received.append)
        host._on_binding(None, "telemetry", {})
        assert received == []

    @pytest.mark.asyncio
    async def test_disconnect_and_failing_callback(self):
        host = await _installed_host()
        received = []

        def _boom(raw):
            raise RuntimeError("observer bug")

        host.subscribe(ObservationKind.RESIZE, _boom)
        sub = host.subscribe(ObservationKind.RESIZE, received.append)
        host._on_binding(None, "resize", {"width": 1, "height": 1})
        sub.disconnect()
        sub.disconnect()
        host._on_binding(None, "resize", {"width": 2, "height": 2})
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_feeds_dom_observer(self):
        host = await _installed_host()
        observer = DOMObserver(host, clock=FakeClock(), monotonic=FakeClock())
        observer.start_observing()
        try:
            host._on_binding(None, "interaction", {"type": "click", "target": {"tag": "button", "text": "Send"}})
        finally:
            observer.stop_observing()
        (record,) = observer.get_recent_interactions()
        assert record.element.tag_name == "button"


class TestDocumentSource:
    @pytest.mark.asyncio
    async def test_document_reads_go_to_page(self):
        page = _make_page("https://example.com/a")
        host = await _installed_host(page)
        assert host.url == host.page_url == "https://example.com/a"
        assert await host.content() == "<html><body>hi</body></html>"
