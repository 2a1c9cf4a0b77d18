# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Weighted-voting page classifier: form / ecommerce / article / dashboard.

Every signal contributes positive *and* negative weights to page types;
the winner must clear its type threshold, otherwise the page is "unknown".
Equal scores resolve by type priority (form > ecommerce > article >
dashboard).

Layers:
  1. URL      : string matching on the URL
  2. Content  : extracted ContentSnapshot (forms, text, tables, headings)
  3. Semantics: schema.org / JSON-LD types, og:type, custom namespaces
  4. DOM      : optional raw-HTML counts (charts)
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass

from . import ContentSnapshot
from .semantic_extractor import SemanticData

PAGE_TYPES: tuple[str, ...] = ("form", "ecommerce", "article", "dashboard")
UNKNOWN = "unknown"

_PRIORITY = {ptype: i for i, ptype in enumerate(PAGE_TYPES)}

THRESHOLDS: dict[str, int] = {
    "form": 20,
    "ecommerce": 25,
    "article": 25,
    "dashboard": 25,
}
_DEFAULT_THRESHOLD = 20


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SignalDef:
    """A single signal that contributes scores to one or more page types."""

    name: str
    scores: dict[str, int]  # {page_type: weight}, may be negative
    check_url: Callable[[str], bool] | None = None
    check_content: Callable[[ContentSnapshot], bool] | None = None
    check_semantics: Callable[[SemanticData], bool] | None = None
    check_dom: Callable[[str], bool] | None = None


@dataclass(frozen=True, slots=True)
class ClassificationResult:
    page_type: str
    confidence: float  # 0.0 to 1.0
    score: int
    signals: tuple[str, ...]
    runner_up: str | None
    runner_up_score: int


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_PRICE_RE = re.compile(r"(?:[$€£¥₩]\s?\d[\d,.]*|\d[\d,.]*\s?(?:USD|EUR|GBP|원|円))")
_METRIC_WORDS = ("dashboard", "analytics", "metrics", "kpi", "revenue", "overview", "report", "statistics")
_CART_WORDS = ("add to cart", "add to bag", "add to basket", "buy now", "checkout", "in stock", "out of stock")
_PRODUCT_TYPES = frozenset({"Product", "IndividualProduct", "Offer", "AggregateOffer", "ProductGroup"})
_ARTICLE_TYPES = frozenset({"Article", "NewsArticle", "BlogPosting", "ReportageNewsArticle", "TechArticle"})


def _numeric_ratio(content: ContentSnapshot) -> float:
    cells = [cell for table in content.tables for row in table.rows for cell in row if cell]
    if not cells:
        return 0.0
    numeric = sum(1 for c in cells if re.fullmatch(r"[-+$€£%\d.,\s]+", c))
    return numeric / len(cells)


def _has_required_fields(content: ContentSnapshot, minimum: int) -> bool:
    return any(form.required_count >= minimum for form in content.forms)


def _text_has(content: ContentSnapshot, words: tuple[str, ...]) -> bool:
    text = content.text.lower()
    return any(w in text for w in words)


def _heading_has(content: ContentSnapshot, words: tuple[str, ...]) -> bool:
    joined = " ".join(content.headings).lower() + " " + content.metadata.title.lower()
    return any(w in joined for w in words)


def _has_type(semantics: SemanticData, types: frozenset[str]) -> bool:
    return any(t in types for t in semantics.types())


def _has_namespace(semantics: SemanticData, name: str) -> bool:
    return any(c.namespace == name for c in semantics.custom)


# ---------------------------------------------------------------------------
# Signal registry
# ---------------------------------------------------------------------------

_URL_SIGNALS: list[SignalDef] = [
    SignalDef(
        "url_form_path",
        {"form": 15},
        check_url=lambda u: any(k in u for k in ("/contact", "/signup", "/register", "/apply", "/form", "/survey")),
    ),
    SignalDef(
        "url_shop_path",
        {"ecommerce": 20},
        check_url=lambda u: any(k in u for k in ("/product", "/cart", "/checkout", "/shop", "/item/", "/dp/")),
    ),
    SignalDef(
        "url_article_path",
        {"article": 15},
        check_url=lambda u: any(k in u for k in ("/blog/", "/news/", "/article", "/post/", "/wiki/")),
    ),
    SignalDef(
        "url_dashboard_path",
        {"dashboard": 20},
        check_url=lambda u: any(k in u for k in ("/dashboard", "/admin", "/analytics", "/reports", "/console")),
    ),
]

_CONTENT_SIGNALS: list[SignalDef] = [
    # ---- form ----
    SignalDef("content_has_form", {"form": 20}, check_content=lambda c: any(f.fields for f in c.forms)),
    SignalDef(
        "content_required_fields",
        {"form": 15, "article": -5},
        check_content=lambda c: _has_required_fields(c, 2),
    ),
    SignalDef(
        "content_many_fields",
        {"form": 10},
        check_content=lambda c: any(len(f.fields) >= 5 for f in c.forms),
    ),
    SignalDef("content_textarea", {"form": 5}, check_content=lambda c: any(fl.type == "textarea" for f in c.forms for fl in f.fields)),
    # ---- ecommerce ----
    SignalDef("content_price", {"ecommerce": 15}, check_content=lambda c: bool(_PRICE_RE.search(c.text))),
    SignalDef("content_cart_words", {"ecommerce": 20, "form": -10}, check_content=lambda c: _text_has(c, _CART_WORDS)),
    # ---- article ----
    SignalDef(
        "content_long_text",
        {"article": 20, "form": -5},
        check_content=lambda c: len(c.text) >= 1500 and len(c.headings) >= 1,
    ),
    SignalDef("content_author", {"article": 10}, check_content=lambda c: bool(c.metadata.author)),
    # ---- dashboard ----
    SignalDef("content_many_tables", {"dashboard": 20, "article": -10}, check_content=lambda c: len(c.tables) >= 2),
    SignalDef("content_numeric_tables", {"dashboard": 15}, check_content=lambda c: _numeric_ratio(c) >= 0.5),
    SignalDef("content_metric_headings", {"dashboard": 15}, check_content=lambda c: _heading_has(c, _METRIC_WORDS)),
]

_SEMANTIC_SIGNALS: list[SignalDef] = [
    SignalDef(
        "schema_product",
        {"ecommerce": 35, "article": -10},
        check_semantics=lambda s: _has_type(s, _PRODUCT_TYPES),
    ),
    SignalDef("schema_article", {"article": 35}, check_semantics=lambda s: _has_type(s, _ARTICLE_TYPES)),
    SignalDef("og_article", {"article": 20}, check_semantics=lambda s: s.open_graph.get("type", "").lower() == "article"),
    SignalDef(
        "og_product",
        {"ecommerce": 20},
        check_semantics=lambda s: s.open_graph.get("type", "").lower() in ("product", "og:product"),
    ),
    SignalDef("ns_product", {"ecommerce": 15}, check_semantics=lambda s: _has_namespace(s, "product")),
    SignalDef("ns_article", {"article": 15}, check_semantics=lambda s: _has_namespace(s, "article")),
]

_DOM_SIGNALS: list[SignalDef] = [
    SignalDef("dom_chart_elements", {"dashboard": 25}, check_dom=lambda h: h.count("<canvas") + h.count("<svg") >= 3),
    SignalDef(
        "dom_chart_library",
        {"dashboard": 15},
        check_dom=lambda h: any(k in h for k in ("highcharts", "chartjs", "chart.js", "recharts", "echarts", "plotly")),
    ),
]

SIGNAL_REGISTRY: list[SignalDef] = _URL_SIGNALS + _CONTENT_SIGNALS + _SEMANTIC_SIGNALS + _DOM_SIGNALS


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


def classify_page(
    url: str,
    content: ContentSnapshot | None = None,
    semantics: SemanticData | None = None,
    raw_html: str | None = None,
) -> ClassificationResult:
    """Weighted voting across URL, content, semantic and DOM signals."""
    url_lower = url.lower()
    scores: dict[str, int] = {}
    fired: list[str] = []

    def apply(sig: SignalDef) -> None:
        fired.append(sig.name)
        for ptype, weight in sig.scores.items():
            scores[ptype] = scores.get(ptype, 0) + weight

    for sig in _URL_SIGNALS:
        if sig.check_url and sig.check_url(url_lower):
            apply(sig)
    if content is not None:
        for sig in _CONTENT_SIGNALS:
            if sig.check_content and sig.check_content(content):
                apply(sig)
    if semantics is not None:
        for sig in _SEMANTIC_SIGNALS:
            if sig.check_semantics and sig.check_semantics(semantics):
                apply(sig)
    if raw_html:
        html_lower = raw_html.lower()
        for sig in _DOM_SIGNALS:
            if sig.check_dom and sig.check_dom(html_lower):
                apply(sig)

    if not scores:
        return ClassificationResult(UNKNOWN, 0.0, 0, tuple(fired), None, 0)

    ranked = sorted(scores.items(), key=lambda x: (-x[1], _PRIORITY.get(x[0], len(_PRIORITY))))
    winner_type, winner_score = ranked[0]
    runner_up = ranked[1][0] if len(ranked) > 1 else None
    runner_up_score = ranked[1][1] if len(ranked) > 1 else 0
    threshold = THRESHOLDS.get(winner_type, _DEFAULT_THRESHOLD)
    confidence = min(1.0, max(0.0, winner_score / (threshold * 2)))

    if winner_score < threshold:
        return ClassificationResult(UNKNOWN, confidence, winner_score, tuple(fired), runner_up, runner_up_score)
    return ClassificationResult(winner_type, confidence, winner_score, tuple(fired), runner_up, runner_up_score)
