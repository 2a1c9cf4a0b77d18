# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Playwright adapter for the host ports.

One in-page script (installed with ``add_init_script`` so it survives
navigation) wires MutationObserver, IntersectionObserver, ResizeObserver and
interaction listeners to a single exposed binding.  Layout metrics and
positioned layers are pulled with ``page.evaluate`` by ``refresh()`` and
served synchronously from the cached values, since the observer asks for
them from synchronous code.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from contextlib import suppress
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from .ports import (
    ElementInfo,
    LayerInfo,
    LayoutMetrics,
    ObservationKind,
    RawInteraction,
    RawIntersection,
    RawMutation,
    RawResize,
    Rect,
)

logger = logging.getLogger(__name__)

BINDING_NAME = "__pageContextEmit"

_OBSERVER_JS = """(binding) => {
  if (window.__pageContextInstalled) return;
  window.__pageContextInstalled = true;
  const emit = (kind, payload) => { try { window[binding](kind, payload); } catch (e) {} };

  const selectorOf = (el) => {
    const parts = [];
    while (el && el.nodeType === 1 && parts.length < 6) {
      let part = el.tagName.toLowerCase();
      if (el.id) { parts.unshift(part + '#' + el.id); break; }
      const parent = el.parentElement;
      if (parent) {
        const same = Array.from(parent.children).filter(c => c.tagName === el.tagName);
        if (same.length > 1) part += ':nth-of-type(' + (same.indexOf(el) + 1) + ')';
      }
      parts.unshift(part);
      el = parent;
    }
    return parts.join(' > ');
  };
  const info = (el) => {
    if (!el || el.nodeType !== 1) {
      return {tag: el && el.parentElement ? el.parentElement.tagName.toLowerCase() : '#text', id: '', cls: '',
              selector: el && el.parentElement ? selectorOf(el.parentElement) : '', text: '', rect: null, attrs: {}};
    }
    const r = el.getBoundingClientRect();
    const attrs = {};
    for (const name of ['role', 'aria-label', 'aria-modal', 'name', 'type', 'href']) {
      const v = el.getAttribute(name);
      if (v !== null) attrs[name] = v;
    }
    return {
      tag: el.tagName.toLowerCase(), id: el.id || '',
      cls: typeof el.className === 'string' ? el.className : '',
      selector: selectorOf(el), text: (el.innerText || el.textContent || '').trim().slice(0, 200),
      rect: {x: r.x, y: r.y, width: r.width, height: r.height}, attrs,
    };
  };

  new MutationObserver((records) => {
    for (const m of records) {
      emit('mutation', {
        kind: m.type, target: info(m.target),
        added: Array.from(m.addedNodes).filter(n => n.nodeType === 1).slice(0, 20).map(info),
        removed: Array.from(m.removedNodes).filter(n => n.nodeType === 1).slice(0, 20).map(info),
        attribute: m.attributeName, oldValue: m.oldValue,
        newValue: m.type === 'attributes' && m.target.getAttribute ? m.target.getAttribute(m.attributeName) : null,
      });
    }
  }).observe(document, {childList: true, subtree: true, attributes: true, attributeOldValue: true,
                        characterData: true});

  const io = new IntersectionObserver((entries) => {
    for (const e of entries) emit('intersection', {target: info(e.target), visible: e.isIntersecting,
                                                   ratio: e.intersectionRatio});
  }, {threshold: [0, 0.5, 1]});
  const watch = () => document.querySelectorAll('h1,h2,h3,form,table,button,img,[role=dialog]')
    .forEach(el => io.observe(el));
  if (document.readyState === 'loading') document.addEventListener('DOMContentLoaded', watch); else watch();

  new ResizeObserver(() => emit('resize', {width: window.innerWidth, height: window.innerHeight}))
    .observe(document.documentElement);

  const surrounding = (el) => {
    const box = el.closest('label, fieldset, section, form, div');
    return box ? (box.innerText || '').trim().slice(0, 200) : '';
  };
  const formContext = (el) => {
    const form = el.closest('form');
    if (!form) return null;
    return {id: form.id || '', action: form.getAttribute('action') || '', method: (form.method || 'get').toUpperCase(),
            fields: form.elements.length};
  };
  const interaction = (type) => (ev) => {
    const el = ev.target && ev.target.nodeType === 1 ? ev.target : null;
    if (!el) return;
    const sensitive = el.type === 'password' || el.type === 'hidden';
    emit('interaction', {
      type, target: info(el), value: type === 'input' && !sensitive ? String(el.value || '').slice(0, 200) : null,
      x: ev.clientX ?? null, y: ev.clientY ?? null, surrounding: surrounding(el), form: formContext(el),
    });
  };
  document.addEventListener('click', interaction('click'), true);
  document.addEventListener('input', interaction('input'), true);
  document.addEventListener('submit', interaction('submit'), true);
  document.addEventListener('focusin', interaction('focus'), true);
  document.addEventListener('focusout', interaction('blur'), true);
  let scrollTimer = null;
  window.addEventListener('scroll', () => {
    if (scrollTimer) return;
    scrollTimer = setTimeout(() => {
      scrollTimer = null;
      emit('interaction', {type: 'scroll', target: info(document.documentElement), value: String(window.scrollY),
                           x: window.scrollX, y: window.scrollY, surrounding: '', form: null});
    }, 250);
  }, {passive: true});
}"""

_LAYOUT_JS = """() => {
  const doc = document.documentElement;
  const layers = [];
  for (const el of document.querySelectorAll('body *')) {
    if (layers.length >= 50) break;
    const style = getComputedStyle(el);
    const positioned = ['fixed', 'absolute', 'sticky'].includes(style.position);
    const role = el.getAttribute('role') || '';
    if (!positioned && role !== 'dialog' && role !== 'alertdialog') continue;
    const z = parseInt(style.zIndex, 10);
    const r = el.getBoundingClientRect();
    if (r.width === 0 || r.height === 0) continue;
    layers.push({
      tag: el.tagName.toLowerCase(), id: el.id || '', cls: typeof el.className === 'string' ? el.className : '',
      text: (el.innerText || '').trim().slice(0, 500),
      heading: (el.querySelector('h1,h2,h3,[role=heading]') || {}).innerText || '',
      label: el.getAttribute('aria-label') || '',
      rect: {x: r.x, y: r.y, width: r.width, height: r.height},
      z: Number.isNaN(z) ? 0 : z, position: style.position, role,
      modal: el.getAttribute('aria-modal') === 'true',
      visible: style.visibility !== 'hidden' && style.display !== 'none' && parseFloat(style.opacity) > 0,
    });
  }
  return {
    metrics: {
      viewportWidth: window.innerWidth, viewportHeight: window.innerHeight,
      scrollX: window.scrollX, scrollY: window.scrollY,
      documentHeight: doc.scrollHeight, dpr: window.devicePixelRatio || 1,
    },
    layers,
  };
}"""


# ---------------------------------------------------------------------------
# Payload conversion
# ---------------------------------------------------------------------------


def _rect(data: dict | None) -> Rect | None:
    if not data:
        return None
    return Rect(
        x=float(data.get("x", 0)),
        y=float(data.get("y", 0)),
        width=float(data.get("width", 0)),
        height=float(data.get("height", 0)),
    )


def _element(data: dict | None) -> ElementInfo:
    data = data or {}
    return ElementInfo(
        tag_name=data.get("tag", ""),
        id=data.get("id", ""),
        class_name=data.get("cls", ""),
        selector=data.get("selector", ""),
        text=data.get("text", ""),
        bounds=_rect(data.get("rect")),
        attributes=dict(data.get("attrs") or {}),
    )


def _to_raw(kind: ObservationKind, payload: dict) -> Any:
    if kind is ObservationKind.MUTATION:
        return RawMutation(
            kind=payload.get("kind", "childList"),
            target=_element(payload.get("target")),
            added=tuple(_element(e) for e in payload.get("added", ())),
            removed=tuple(_element(e) for e in payload.get("removed", ())),
            attribute_name=payload.get("attribute"),
            old_value=payload.get("oldValue"),
            new_value=payload.get("newValue"),
        )
    if kind is ObservationKind.INTERSECTION:
        return RawIntersection(
            target=_element(payload.get("target")),
            is_intersecting=bool(payload.get("visible")),
            ratio=float(payload.get("ratio", 0.0)),
        )
    if kind is ObservationKind.RESIZE:
        return RawResize(width=float(payload.get("width", 0)), height=float(payload.get("height", 0)))
    return RawInteraction(
        type=payload.get("type", "click"),
        target=_element(payload.get("target")),
        value=payload.get("value"),
        x=payload.get("x"),
        y=payload.get("y"),
        surrounding_text=payload.get("surrounding", ""),
        form_context=payload.get("form"),
    )


def _layer(data: dict) -> LayerInfo:
    text = data.get("text", "")
    heading = data.get("heading", "").strip()
    # Modal titles come from the first text line; lead with the heading
    if heading and not text.startswith(heading):
        text = f"{heading}\n{text}"
    label = data.get("label", "")
    element = ElementInfo(
        tag_name=data.get("tag", ""),
        id=data.get("id", ""),
        class_name=data.get("cls", ""),
        text=text,
        attributes={"aria-label": label} if label else {},
    )
    return LayerInfo(
        element=element,
        rect=_rect(data.get("rect")) or Rect(),
        z_index=int(data.get("z", 0)),
        position=data.get("position", "static"),
        role=data.get("role", ""),
        aria_modal=bool(data.get("modal")),
        visible=bool(data.get("visible", True)),
    )


# ---------------------------------------------------------------------------
# Host
# ---------------------------------------------------------------------------


class _Subscription:
    def __init__(self, callbacks: list[Callable[[Any], None]], callback: Callable[[Any], None]) -> None:
        self._callbacks = callbacks
        self._callback = callback

    def disconnect(self) -> None:
        with suppress(ValueError):
            self._callbacks.remove(self._callback)


class PlaywrightPageHost:
    """PageObservationPort and DocumentSource backed by one Playwright page.

    Call ``await install()`` once before starting observers, and
    ``await refresh()`` before reading the layout (the aggregator reads the
    cached snapshot).
    """

    def __init__(self, page: Page, *, binding_name: str = BINDING_NAME) -> None:
        self._page = page
        self._binding = binding_name
        self._callbacks: dict[ObservationKind, list[Callable[[Any], None]]] = {k: [] for k in ObservationKind}
        self._metrics: LayoutMetrics | None = None
        self._layers: tuple[LayerInfo, ...] = ()
        self._title = ""
        self._installed = False
        self._dropped = 0

    @property
    def page(self) -> Page:
        return self._page

    @property
    def installed(self) -> bool:
        return self._installed

    async def install(self) -> None:
        """Expose the event binding and inject the observer script.  Idempotent."""
        if self._installed:
            return
        await self._page.expose_binding(self._binding, self._on_binding)
        await self._page.add_init_script(script=f"({_OBSERVER_JS})({self._binding!r})")
        # add_init_script only affects future documents; cover the current one too
        try:
            await self._page.evaluate(_OBSERVER_JS, self._binding)
        except PlaywrightError as exc:
            logger.debug("Observer script injection into current document failed: %s", exc)
        self._installed = True
        await self.refresh()

    async def refresh(self) -> None:
        """Pull layout metrics, positioned layers and the title from the page."""
        try:
            data = await self._page.evaluate(_LAYOUT_JS)
            self._title = await self._page.title()
        except PlaywrightError as exc:
            logger.warning("Layout refresh failed: %s", exc)
            return
        m = data.get("metrics") or {}
        self._metrics = LayoutMetrics(
            viewport_width=float(m.get("viewportWidth", 0)),
            viewport_height=float(m.get("viewportHeight", 0)),
            scroll_x=float(m.get("scrollX", 0)),
            scroll_y=float(m.get("scrollY", 0)),
            document_height=float(m.get("documentHeight", 0)),
            device_pixel_ratio=float(m.get("dpr", 1.0)),
        )
        self._layers = tuple(_layer(layer) for layer in data.get("layers") or ())

    def _on_binding(self, _source: Any, kind: str, payload: dict) -> None:
        try:
            observation = ObservationKind(kind)
            raw = _to_raw(observation, payload or {})
        except (ValueError, TypeError, AttributeError):
            self._dropped += 1
            logger.debug("Dropped malformed %s event from page", kind, exc_info=True)
            return
        for callback in list(self._callbacks[observation]):
            try:
                callback(raw)
            except Exception:
                logger.warning("Observation callback failed for %s", kind, exc_info=True)

    # -- PageObservationPort --

    @property
    def page_url(self) -> str:
        return self._page.url

    def supports(self, kind: ObservationKind) -> bool:
        return self._installed

    def subscribe(self, kind: ObservationKind, callback: Callable[[Any], None]) -> _Subscription:
        callbacks = self._callbacks[kind]
        callbacks.append(callback)
        return _Subscription(callbacks, callback)

    def layout_metrics(self) -> LayoutMetrics | None:
        return self._metrics

    def layers(self) -> Sequence[LayerInfo]:
        return self._layers

    # -- DocumentSource --

    @property
    def url(self) -> str:
        return self._page.url

    @property
    def title(self) -> str:
        return self._title

    async def content(self) -> str:
        return await self._page.content()
