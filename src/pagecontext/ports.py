# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Host ports: the narrow surface the pipeline needs from a page host.

Everything above these protocols (observation buffering, privacy, caching,
aggregation) is host-agnostic.  A host adapter (``playwright_host``, or a
fake in tests) translates its native events into the raw records below.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any, Protocol, runtime_checkable


class ObservationKind(StrEnum):
    MUTATION = "mutation"
    INTERSECTION = "intersection"
    RESIZE = "resize"
    INTERACTION = "interaction"


# ---------------------------------------------------------------------------
# Raw host records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Rect:
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0

    @property
    def area(self) -> float:
        return max(0.0, self.width) * max(0.0, self.height)


@dataclass(frozen=True, slots=True)
class ElementInfo:
    """Serializable description of a DOM element."""

    tag_name: str
    id: str = ""
    class_name: str = ""
    selector: str = ""  # CSS path, e.g. "main > form#signup > input:nth-of-type(2)"
    text: str = ""  # trimmed text content (host may truncate)
    bounds: Rect | None = None
    attributes: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class RawMutation:
    kind: str  # "childList", "attributes", "characterData"
    target: ElementInfo
    added: tuple[ElementInfo, ...] = ()
    removed: tuple[ElementInfo, ...] = ()
    attribute_name: str | None = None
    old_value: str | None = None
    new_value: str | None = None


@dataclass(frozen=True, slots=True)
class RawIntersection:
    target: ElementInfo
    is_intersecting: bool
    ratio: float = 0.0


@dataclass(frozen=True, slots=True)
class RawResize:
    width: float
    height: float


@dataclass(frozen=True, slots=True)
class RawInteraction:
    type: str  # click, input, submit, scroll, focus, blur
    target: ElementInfo
    value: str | None = None
    x: float | None = None
    y: float | None = None
    surrounding_text: str = ""
    form_context: dict[str, Any] | None = None


@dataclass(frozen=True, slots=True)
class LayerInfo:
    """A positioned element the host considers a candidate modal/overlay."""

    element: ElementInfo
    rect: Rect
    z_index: int = 0
    position: str = "static"  # CSS position
    role: str = ""
    aria_modal: bool = False
    visible: bool = True


@dataclass(frozen=True, slots=True)
class LayoutMetrics:
    viewport_width: float = 0.0
    viewport_height: float = 0.0
    scroll_x: float = 0.0
    scroll_y: float = 0.0
    document_height: float = 0.0
    device_pixel_ratio: float = 1.0


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class Subscription(Protocol):
    def disconnect(self) -> None: ...


@runtime_checkable
class PageObservationPort(Protocol):
    """Observation primitives of one page."""

    @property
    def page_url(self) -> str: ...

    def supports(self, kind: ObservationKind) -> bool: ...

    def subscribe(self, kind: ObservationKind, callback: Callable[[Any], None]) -> Subscription: ...

    def layout_metrics(self) -> LayoutMetrics | None: ...

    def layers(self) -> Sequence[LayerInfo]: ...


@runtime_checkable
class DocumentSource(Protocol):
    """Read access to the current document."""

    @property
    def url(self) -> str: ...

    @property
    def title(self) -> str: ...

    async def content(self) -> str: ...
