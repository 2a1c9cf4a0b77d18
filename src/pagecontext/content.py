# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Page content extraction with lxml.

Turns raw document HTML into a ``ContentSnapshot``: visible text, headings,
links, images, forms (with field requirements), tables and page metadata.
Form values are only kept after passing the privacy controller.
"""

from __future__ import annotations

import logging
import re
from urllib.parse import urljoin

import lxml.html
from lxml import etree

from . import ContentSnapshot, FormField, FormInfo, ImageInfo, LinkInfo, PageMetadata, TableInfo
from .privacy import PrivacyController

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")
_NON_CONTENT_TAGS = ("script", "style", "noscript", "template", "svg")
_SKIPPED_INPUT_TYPES = frozenset({"hidden", "submit", "button", "reset", "image"})

MAX_TEXT_LENGTH = 5000
MAX_LINKS = 100
MAX_IMAGES = 50
MAX_TABLE_ROWS = 50


def parse_html(html: str) -> lxml.html.HtmlElement | None:
    """Parse a document; None for empty or unparseable input."""
    if not html or not html.strip():
        return None
    try:
        return lxml.html.document_fromstring(html)
    except (etree.ParserError, ValueError):
        logger.debug("HTML parse failed", exc_info=True)
        return None


def _clean(text: str | None) -> str:
    return _WS_RE.sub(" ", text or "").strip()


def visible_text(doc: lxml.html.HtmlElement) -> str:
    """Body text without script/style content, whitespace collapsed."""
    body = doc.find("body")
    parts: list[str] = []

    def walk(el: lxml.html.HtmlElement) -> None:
        # Comments and processing instructions have non-str tags
        if not isinstance(el.tag, str) or el.tag in _NON_CONTENT_TAGS:
            return
        if el.text:
            parts.append(el.text)
        for child in el:
            walk(child)
            if child.tail:
                parts.append(child.tail)

    walk(body if body is not None else doc)
    return _clean(" ".join(parts))


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


def extract_metadata(doc: lxml.html.HtmlElement) -> PageMetadata:
    def meta(name: str) -> str:
        for el in doc.iter("meta"):
            if (el.get("name") or el.get("property") or "").lower() == name:
                return _clean(el.get("content"))
        return ""

    title_el = doc.find(".//title")
    canonical = ""
    for link in doc.iter("link"):
        if "canonical" in (link.get("rel") or "").lower().split():
            canonical = link.get("href") or ""
            break
    keywords = [k.strip() for k in meta("keywords").split(",") if k.strip()]
    return PageMetadata(
        title=_clean(title_el.text_content()) if title_el is not None else "",
        description=meta("description"),
        keywords=keywords,
        author=meta("author"),
        canonical=canonical,
        language=doc.get("lang", "") or "",
    )


def _field_label(doc: lxml.html.HtmlElement, el: lxml.html.HtmlElement) -> str:
    el_id = el.get("id")
    if el_id:
        for label in doc.iter("label"):
            if label.get("for") == el_id:
                return _clean(label.text_content())
    parent = el.getparent()
    while parent is not None:
        if parent.tag == "label":
            return _clean(parent.text_content())
        parent = parent.getparent()
    return _clean(el.get("aria-label"))


def extract_forms(doc: lxml.html.HtmlElement, privacy: PrivacyController | None = None) -> list[FormInfo]:
    forms: list[FormInfo] = []
    for index, form in enumerate(doc.iter("form")):
        fields: list[FormField] = []
        for el in form.iter("input", "select", "textarea"):
            ftype = (el.get("type") or "text").lower() if el.tag == "input" else el.tag
            if ftype in _SKIPPED_INPUT_TYPES:
                continue
            name = el.get("name") or el.get("id") or ""
            value = ""
            if privacy is not None and ftype != "password" and el.get("value"):
                value = privacy.sanitize_form_data({name or "value": el.get("value")})[name or "value"]
            fields.append(
                FormField(
                    name=name,
                    type=ftype,
                    required=el.get("required") is not None or el.get("aria-required") == "true",
                    placeholder=el.get("placeholder") or "",
                    label=_field_label(doc, el),
                    value=value,
                )
            )
        forms.append(
            FormInfo(
                id=form.get("id") or form.get("name") or f"form-{index}",
                action=form.get("action") or "",
                method=(form.get("method") or "GET").upper(),
                fields=fields,
            )
        )
    return forms


def extract_tables(doc: lxml.html.HtmlElement) -> list[TableInfo]:
    tables: list[TableInfo] = []
    for table in doc.iter("table"):
        headers = [_clean(th.text_content()) for th in table.iter("th")]
        rows: list[list[str]] = []
        for tr in table.iter("tr"):
            cells = [_clean(td.text_content()) for td in tr if td.tag == "td"]
            if cells:
                rows.append(cells)
            if len(rows) >= MAX_TABLE_ROWS:
                break
        caption_el = table.find("caption")
        caption = _clean(caption_el.text_content()) if caption_el is not None else ""
        if headers or rows:
            tables.append(TableInfo(headers=headers, rows=rows, caption=caption))
    return tables


def extract_content(
    source: str | lxml.html.HtmlElement | None,
    *,
    base_url: str = "",
    privacy: PrivacyController | None = None,
) -> ContentSnapshot:
    """Build a ContentSnapshot from HTML or an already parsed document."""
    doc = parse_html(source) if isinstance(source, str) else source
    if doc is None:
        return ContentSnapshot()

    text = visible_text(doc)[:MAX_TEXT_LENGTH]
    headings = [
        _clean(h.text_content()) for h in doc.iter("h1", "h2", "h3", "h4", "h5", "h6") if _clean(h.text_content())
    ]
    links: list[LinkInfo] = []
    for a in doc.iter("a"):
        href = a.get("href")
        if not href or href.startswith(("javascript:", "#")):
            continue
        links.append(LinkInfo(href=urljoin(base_url, href), text=_clean(a.text_content()), title=a.get("title") or ""))
        if len(links) >= MAX_LINKS:
            break
    images = [
        ImageInfo(src=urljoin(base_url, img.get("src")), alt=img.get("alt") or "", title=img.get("title") or "")
        for img in doc.iter("img")
        if img.get("src")
    ][:MAX_IMAGES]

    snapshot = ContentSnapshot(
        text=text,
        headings=headings,
        links=links,
        images=images,
        forms=extract_forms(doc, privacy),
        tables=extract_tables(doc),
        metadata=extract_metadata(doc),
    )
    if privacy is not None:
        snapshot.text = privacy.sanitize_dom_content(snapshot.text)
    return snapshot
