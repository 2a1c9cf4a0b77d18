# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Structured-data extraction: schema.org, microdata, JSON-LD, OpenGraph,
Twitter Card and custom ``data-*`` namespaces.

Stateless: every call re-reads the document it is given (HTML string or a
parsed lxml tree).  No extraction call raises; each family is guarded and
degrades to an empty value, and ``extract_semantic_data`` reports how many
families (plus malformed JSON-LD blocks) failed.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import lxml.html

from .content import parse_html

logger = logging.getLogger(__name__)

Document = str | lxml.html.HtmlElement
NamespaceExtractor = Callable[[lxml.html.HtmlElement], dict[str, Any]]

OPEN_GRAPH_KEYS: tuple[str, ...] = ("title", "description", "image", "url", "type", "site_name")
TWITTER_CARD_KEYS: tuple[str, ...] = ("card", "title", "description", "image", "creator")
ASSISTANT_NAMESPACE = "assistant"

_JSON_LD_MAX_DEPTH = 5


@dataclass(frozen=True, slots=True)
class SchemaOrgItem:
    type: str  # "Product", "Article", ...
    properties: dict[str, Any]


@dataclass(frozen=True, slots=True)
class MicrodataItem:
    type: str  # full itemtype URL or "Unknown"
    properties: dict[str, Any]


@dataclass(frozen=True, slots=True)
class CustomSemanticData:
    namespace: str
    data: dict[str, Any]


@dataclass(frozen=True)
class SemanticData:
    schema: tuple[SchemaOrgItem, ...] = ()
    microdata: tuple[MicrodataItem, ...] = ()
    json_ld: tuple[dict[str, Any], ...] = ()
    open_graph: dict[str, str] = field(default_factory=dict)
    twitter: dict[str, str] = field(default_factory=dict)
    custom: tuple[CustomSemanticData, ...] = ()
    extraction_errors: int = 0

    @property
    def has_structured_data(self) -> bool:
        return bool(self.schema or self.microdata or self.json_ld)

    @property
    def is_empty(self) -> bool:
        return not (self.has_structured_data or self.open_graph or self.twitter or self.custom)

    def types(self) -> list[str]:
        """All declared item types (schema.org short names and JSON-LD @type)."""
        found: list[str] = [item.type for item in self.schema]
        for item in self.json_ld:
            t = item.get("@type")
            found.extend(t if isinstance(t, list) else [t])
        return [str(t) for t in found if t]


# ---------------------------------------------------------------------------
# Microdata helpers
# ---------------------------------------------------------------------------


def _schema_type(item_type: str) -> str | None:
    marker = "schema.org/"
    idx = item_type.find(marker)
    if idx < 0:
        return None
    short = item_type[idx + len(marker) :].strip().strip("/")
    return short or None


def _prop_value(el: lxml.html.HtmlElement) -> Any:
    tag = el.tag
    if el.get("itemscope") is not None:
        nested = _item_properties(el)
        item_type = el.get("itemtype")
        if nested and item_type:
            nested["@type"] = _schema_type(item_type) or item_type
        return nested
    if tag == "meta":
        return el.get("content")
    if tag in ("a", "link", "area"):
        return el.get("href")
    if tag in ("img", "audio", "video", "source", "iframe", "embed"):
        return el.get("src")
    if tag == "time":
        return el.get("datetime") or el.text_content().strip()
    if tag in ("data", "meter"):
        return el.get("value") or el.text_content().strip()
    if el.get("content") is not None:
        return el.get("content")
    return " ".join(el.text_content().split())


def _owned_props(scope: lxml.html.HtmlElement) -> list[lxml.html.HtmlElement]:
    """itemprop elements whose nearest itemscope ancestor is *scope*."""
    owned: list[lxml.html.HtmlElement] = []
    stack = list(scope)
    while stack:
        el = stack.pop(0)
        if not isinstance(el.tag, str):
            continue
        if el.get("itemprop") is not None:
            owned.append(el)
        if el.get("itemscope") is None:
            stack.extend(el)
    return owned


def _item_properties(scope: lxml.html.HtmlElement) -> dict[str, Any]:
    properties: dict[str, Any] = {}
    for el in _owned_props(scope):
        value = _prop_value(el)
        if value is None or value == "" or value == {}:
            continue
        # itemprop may list several names separated by whitespace
        for name in el.get("itemprop", "").split():
            existing = properties.get(name)
            if existing is None:
                properties[name] = value
            elif isinstance(existing, list):
                existing.append(value)
            else:
                properties[name] = [existing, value]
    return properties


def _top_level_scopes(doc: lxml.html.HtmlElement) -> list[lxml.html.HtmlElement]:
    return [
        el
        for el in doc.iter()
        if isinstance(el.tag, str) and el.get("itemscope") is not None and el.get("itemprop") is None
    ]


def _flatten_json_ld(data: Any, depth: int = 0) -> list[dict[str, Any]]:
    if depth > _JSON_LD_MAX_DEPTH:
        return []
    if isinstance(data, list):
        return [item for entry in data for item in _flatten_json_ld(entry, depth + 1)]
    if not isinstance(data, dict):
        return []
    if "@graph" in data:
        context = data.get("@context")
        items = _flatten_json_ld(data["@graph"], depth + 1)
        return [{"@context": context, **item} if context and "@context" not in item else item for item in items]
    if "@type" not in data:
        return []
    return [{"@context": data.get("@context", "https://schema.org"), **data}]


# ---------------------------------------------------------------------------
# Built-in namespaces
# ---------------------------------------------------------------------------


def _attribute_namespace(prefix: str, fields: dict[str, str], ints: tuple[str, ...] = ()) -> NamespaceExtractor:
    """Extractor reading ``data-<prefix>-<attr>`` attributes into *fields* keys."""

    def extract(el: lxml.html.HtmlElement) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for attr, key in fields.items():
            value = el.get(f"data-{prefix}-{attr}")
            if value is None or value == "":
                continue
            if key in ints:
                try:
                    data[key] = int(value)
                except ValueError:
                    continue
            else:
                data[key] = value
        return data

    return extract


_BUILTIN_NAMESPACES: dict[str, NamespaceExtractor] = {
    "product": _attribute_namespace("product", {"id": "id", "name": "name", "price": "price", "category": "category"}),
    "article": _attribute_namespace(
        "article", {"id": "id", "title": "title", "author": "author", "published": "publish_date"}
    ),
    "user": _attribute_namespace("user", {"id": "id", "name": "name", "role": "role"}),
    "event": _attribute_namespace("event", {"id": "id", "name": "name", "date": "date", "location": "location"}),
    # Reserved for pages that annotate themselves for the assistant
    ASSISTANT_NAMESPACE: _attribute_namespace(
        ASSISTANT_NAMESPACE,
        {"context": "context", "item": "item", "field": "field", "priority": "priority"},
        ints=("priority",),
    ),
}


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class SemanticExtractor:
    """Best-effort structured-data snapshot of a document."""

    def __init__(self) -> None:
        self._namespaces: dict[str, NamespaceExtractor] = dict(_BUILTIN_NAMESPACES)

    @property
    def namespaces(self) -> tuple[str, ...]:
        return tuple(self._namespaces)

    def register_custom_namespace(self, name: str, extractor: NamespaceExtractor) -> None:
        """Register (or replace) the extractor for ``data-<name>*`` elements."""
        if not name or not name.replace("-", "").replace("_", "").isalnum():
            raise ValueError(f"invalid namespace name: {name!r}")
        self._namespaces[name] = extractor

    # -- Plumbing --

    @staticmethod
    def _doc(source: Document | None) -> lxml.html.HtmlElement | None:
        if source is None:
            return None
        if isinstance(source, str):
            return parse_html(source)
        return source

    def _guarded(
        self,
        family: str,
        fn: Callable[[lxml.html.HtmlElement], Any],
        source: Document,
        empty: Any,
    ) -> tuple[Any, bool]:
        try:
            doc = self._doc(source)
            if doc is None:
                return empty, False
            return fn(doc), False
        except Exception:
            logger.warning("Semantic extraction failed: %s", family, exc_info=True)
            return empty, True

    # -- Families --

    def extract_schema_org_data(self, source: Document) -> list[SchemaOrgItem]:
        return self._guarded("schema_org", self._schema_org, source, [])[0]

    def extract_microdata_items(self, source: Document) -> list[MicrodataItem]:
        return self._guarded("microdata", self._microdata, source, [])[0]

    def extract_json_ld_data(self, source: Document) -> list[dict[str, Any]]:
        return self._guarded("json_ld", lambda d: self._json_ld(d)[0], source, [])[0]

    def extract_open_graph_data(self, source: Document) -> dict[str, str]:
        return self._guarded("open_graph", lambda d: self._meta_family(d, "og:", OPEN_GRAPH_KEYS), source, {})[0]

    def extract_twitter_card_data(self, source: Document) -> dict[str, str]:
        return self._guarded("twitter", lambda d: self._meta_family(d, "twitter:", TWITTER_CARD_KEYS), source, {})[0]

    def extract_custom_semantic_data(self, source: Document) -> list[CustomSemanticData]:
        return self._guarded("custom", lambda d: self._custom(d)[0], source, [])[0]

    def extract_semantic_data(self, source: Document | None) -> SemanticData:
        """Run every family against one parse of *source*."""
        try:
            doc = self._doc(source)
        except Exception:
            logger.warning("Semantic extraction: document unavailable", exc_info=True)
            return SemanticData(extraction_errors=1)
        if doc is None:
            return SemanticData()

        errors = 0
        schema, failed = self._guarded("schema_org", self._schema_org, doc, [])
        errors += failed
        microdata, failed = self._guarded("microdata", self._microdata, doc, [])
        errors += failed
        (json_ld, malformed), failed = self._guarded("json_ld", self._json_ld, doc, ([], 0))
        errors += failed + malformed
        open_graph, failed = self._guarded("open_graph", lambda d: self._meta_family(d, "og:", OPEN_GRAPH_KEYS), doc, {})
        errors += failed
        twitter, failed = self._guarded("twitter", lambda d: self._meta_family(d, "twitter:", TWITTER_CARD_KEYS), doc, {})
        errors += failed
        (custom, custom_failures), failed = self._guarded("custom", self._custom, doc, ([], 0))
        errors += failed + custom_failures

        return SemanticData(
            schema=tuple(schema),
            microdata=tuple(microdata),
            json_ld=tuple(json_ld),
            open_graph=open_graph,
            twitter=twitter,
            custom=tuple(custom),
            extraction_errors=errors,
        )

    # -- Family implementations --

    def _schema_org(self, doc: lxml.html.HtmlElement) -> list[SchemaOrgItem]:
        items = []
        for scope in _top_level_scopes(doc):
            short = _schema_type(scope.get("itemtype") or "")
            if not short:
                continue
            properties = _item_properties(scope)
            if properties:
                items.append(SchemaOrgItem(type=short, properties=properties))
        return items

    def _microdata(self, doc: lxml.html.HtmlElement) -> list[MicrodataItem]:
        items = []
        for scope in _top_level_scopes(doc):
            properties = _item_properties(scope)
            if properties:
                items.append(MicrodataItem(type=scope.get("itemtype") or "Unknown", properties=properties))
        return items

    def _json_ld(self, doc: lxml.html.HtmlElement) -> tuple[list[dict[str, Any]], int]:
        items: list[dict[str, Any]] = []
        malformed = 0
        for script in doc.iter("script"):
            if (script.get("type") or "").strip().lower() != "application/ld+json":
                continue
            raw = (script.text or "").strip()
            if not raw:
                continue
            try:
                data = json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                malformed += 1
                logger.debug("Skipping malformed JSON-LD block (%d chars)", len(raw))
                continue
            items.extend(_flatten_json_ld(data))
        return items, malformed

    @staticmethod
    def _meta_family(doc: lxml.html.HtmlElement, prefix: str, keys: tuple[str, ...]) -> dict[str, str]:
        found: dict[str, str] = {}
        for meta in doc.iter("meta"):
            name = (meta.get("property") or meta.get("name") or "").strip().lower()
            if not name.startswith(prefix):
                continue
            key = name[len(prefix) :]
            content = meta.get("content")
            if key in keys and content and key not in found:
                found[key] = content.strip()
        return found

    def _namespace_elements(self, doc: lxml.html.HtmlElement, name: str) -> list[lxml.html.HtmlElement]:
        attr = f"data-{name}"
        return [
            el
            for el in doc.iter()
            if isinstance(el.tag, str) and any(k == attr or k.startswith(attr + "-") for k in el.attrib)
        ]

    def _custom(self, doc: lxml.html.HtmlElement) -> tuple[list[CustomSemanticData], int]:
        results: list[CustomSemanticData] = []
        failures = 0
        for name, extractor in self._namespaces.items():
            try:
                merged: dict[str, Any] = {}
                for el in self._namespace_elements(doc, name):
                    data = extractor(el)
                    if data:
                        merged.update(data)
                if merged:
                    results.append(CustomSemanticData(namespace=name, data=merged))
            except Exception:
                failures += 1
                logger.warning("Custom namespace %s failed", name, exc_info=True)
        return results, failures

    # -- Element-level queries --

    def extract_element_semantics(self, element: lxml.html.HtmlElement) -> SemanticData:
        """Microdata and custom namespace data carried by one element."""
        schema: list[SchemaOrgItem] = []
        microdata: list[MicrodataItem] = []
        custom: list[CustomSemanticData] = []
        errors = 0
        try:
            if element.get("itemscope") is not None:
                item_type = element.get("itemtype") or "Unknown"
                properties = _item_properties(element)
                if properties:
                    microdata.append(MicrodataItem(type=item_type, properties=properties))
                    short = _schema_type(item_type)
                    if short:
                        schema.append(SchemaOrgItem(type=short, properties=properties))
        except Exception:
            errors += 1
            logger.warning("Element microdata extraction failed", exc_info=True)
        for name, extractor in self._namespaces.items():
            attr = f"data-{name}"
            if not any(k == attr or k.startswith(attr + "-") for k in element.attrib):
                continue
            try:
                data = extractor(element)
            except Exception:
                errors += 1
                logger.warning("Custom namespace %s failed", name, exc_info=True)
                continue
            if data:
                custom.append(CustomSemanticData(namespace=name, data=data))
        return SemanticData(
            schema=tuple(schema), microdata=tuple(microdata), custom=tuple(custom), extraction_errors=errors
        )

    def find_elements_by_semantic_type(self, source: Document, type_name: str) -> list[lxml.html.HtmlElement]:
        """Elements whose itemtype mentions *type_name*, plus JSON-LD items' ``id`` targets."""
        doc = self._doc(source)
        if doc is None:
            return []
        found = [el for el in doc.iter() if isinstance(el.tag, str) and type_name in (el.get("itemtype") or "")]
        for item in self.extract_json_ld_data(doc):
            if item.get("@type") != type_name:
                continue
            ref = str(item.get("@id") or item.get("id") or "").lstrip("#")
            if not ref:
                continue
            target = doc.get_element_by_id(ref, None)
            if target is not None and target not in found:
                found.append(target)
        return found

    def get_semantic_context(self, source: Document, element_id: str | None = None) -> SemanticData:
        """Semantics of one element (by id) or of the whole document."""
        doc = self._doc(source)
        if doc is None:
            return SemanticData()
        if element_id:
            element = doc.get_element_by_id(element_id.lstrip("#"), None)
            if element is not None:
                return self.extract_element_semantics(element)
        return self.extract_semantic_data(doc)
