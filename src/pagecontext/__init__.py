# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Page Context: live page awareness for AI chat assistants.

Observes a page for structural change, captures its network traffic,
extracts machine-readable semantics and merges everything, filtered through
a privacy policy, into one confidence-scored context object:
- content: text, headings, forms, tables, links, images, metadata
- layout: viewport, scroll, visible elements, modals, overlays
- network / interactions / semantics: recent observed activity
"""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class FormField:
    """A single form control."""

    name: str
    type: str  # text, email, password, select, textarea, checkbox, ...
    required: bool = False
    placeholder: str = ""
    label: str = ""
    value: str = ""  # only populated for non-sensitive fields


@dataclass
class FormInfo:
    """A form element and its controls."""

    id: str
    action: str
    method: str  # GET / POST
    fields: list[FormField] = field(default_factory=list)

    @property
    def required_count(self) -> int:
        return sum(1 for f in self.fields if f.required)


@dataclass
class TableInfo:
    headers: list[str]
    rows: list[list[str]]
    caption: str = ""


@dataclass
class LinkInfo:
    href: str
    text: str
    title: str = ""


@dataclass
class ImageInfo:
    src: str
    alt: str = ""
    title: str = ""


@dataclass
class PageMetadata:
    title: str = ""
    description: str = ""
    keywords: list[str] = field(default_factory=list)
    author: str = ""
    canonical: str = ""
    language: str = ""


@dataclass
class ContentSnapshot:
    """Extracted page content (text plus structured blocks)."""

    text: str = ""
    headings: list[str] = field(default_factory=list)
    links: list[LinkInfo] = field(default_factory=list)
    images: list[ImageInfo] = field(default_factory=list)
    forms: list[FormInfo] = field(default_factory=list)
    tables: list[TableInfo] = field(default_factory=list)
    metadata: PageMetadata = field(default_factory=PageMetadata)

    @property
    def is_empty(self) -> bool:
        return not (self.text or self.headings or self.forms or self.tables or self.links)
