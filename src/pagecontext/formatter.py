# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""AI-facing projection of an aggregated context, trimmed to a token budget.

Token counts use tiktoken ``cl100k_base``.  Trimming is iterative: main
content first, then network, interactions, links, tables, forms, and a
final hard cut of the rendered text.  URLs are passed through the privacy
controller's redaction (sensitive query values become ``[REDACTED]``).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from urllib.parse import urlsplit

import tiktoken

from .context_aggregator import AggregatedContext
from .privacy import PrivacyController

logger = logging.getLogger(__name__)

_enc: tiktoken.Encoding = tiktoken.get_encoding("cl100k_base")

MAX_CONTENT_LENGTH = 2000
MAX_NETWORK_REQUESTS = 10
MAX_INTERACTIONS = 5
MAX_LINKS = 10
_MAX_TRIM_ITERATIONS = 10
_API_HINTS = ("/api/", "/v1/", "/v2/", "/graphql", "/rest/", ".json")
_WORD_RE = re.compile(r"\w{3,}")


def count_tokens(text: str) -> int:
    """Count tokens using cl100k_base."""
    return len(_enc.encode(text))


def count_tokens_approx(text: str) -> int:
    """Rough ~4 chars/token estimate.  Do NOT use for budgets."""
    return (len(text) + 3) // 4


def truncate_to_tokens(text: str, max_tokens: int) -> str:
    tokens = _enc.encode(text)
    if len(tokens) <= max_tokens:
        return text
    # Decoding a cut can re-encode to more tokens at the boundary
    limit = max_tokens
    while limit > 0:
        truncated = _enc.decode(tokens[:limit])
        if count_tokens(truncated) <= max_tokens:
            return truncated
        limit -= 1
    return ""


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class FormSummary:
    action: str
    method: str
    field_count: int
    fields: list[str]
    required_fields: int = 0


@dataclass(slots=True)
class TableSummary:
    headers: list[str]
    row_count: int
    caption: str = ""


@dataclass(slots=True)
class LinkSummary:
    text: str
    href: str
    is_external: bool


@dataclass(slots=True)
class FormattedContent:
    title: str = ""
    url: str = ""
    main_content: str = ""
    forms: list[FormSummary] = field(default_factory=list)
    tables: list[TableSummary] = field(default_factory=list)
    links: list[LinkSummary] = field(default_factory=list)


@dataclass(slots=True)
class RequestSummary:
    url: str
    method: str
    status: int | None
    type: str
    timestamp: str


@dataclass(slots=True)
class FormattedNetwork:
    recent_requests: list[RequestSummary] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    api_endpoints: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ActionSummary:
    type: str
    element: str
    timestamp: str


@dataclass(slots=True)
class FormattedInteractions:
    recent_actions: list[ActionSummary] = field(default_factory=list)
    focused_elements: list[str] = field(default_factory=list)


@dataclass(slots=True)
class FormattedMetadata:
    page_type: str = "unknown"
    has_structured_data: bool = False
    schema_types: list[str] = field(default_factory=list)
    description: str = ""
    data_quality: dict[str, float] = field(default_factory=dict)


@dataclass(slots=True)
class FormattedContext:
    summary: str = ""
    content: FormattedContent = field(default_factory=FormattedContent)
    network: FormattedNetwork = field(default_factory=FormattedNetwork)
    interactions: FormattedInteractions = field(default_factory=FormattedInteractions)
    metadata: FormattedMetadata = field(default_factory=FormattedMetadata)
    token_count: int = 0
    has_context: bool = True
    text: str = ""  # rendered form sent to the model


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="seconds")


def _is_external(href: str, page_url: str) -> bool:
    try:
        host = urlsplit(href).hostname
        return bool(host) and host != urlsplit(page_url).hostname
    except ValueError:
        return False


def summarize_text(text: str, limit: int = MAX_CONTENT_LENGTH) -> str:
    """Keep the head (70%) and tail (30%) of long text."""
    if len(text) <= limit:
        return text
    head = text[: int(limit * 0.7)].strip()
    tail = text[len(text) - int(limit * 0.3) :].strip()
    return f"{head}...\n\n[Content truncated]\n\n...{tail}"


def _query_terms(query: str | None) -> set[str]:
    return {w.lower() for w in _WORD_RE.findall(query or "")}


def _rank(items: list, key, terms: set[str]) -> list:
    """Stable re-order putting items that mention query terms first."""
    if not terms:
        return items
    return sorted(items, key=lambda item: not any(t in key(item).lower() for t in terms))


# ---------------------------------------------------------------------------
# Formatter
# ---------------------------------------------------------------------------


class ContextFormatter:
    """Builds FormattedContext projections.  Stateless apart from the privacy hook."""

    def __init__(self, privacy: PrivacyController | None = None) -> None:
        self._privacy = privacy

    def _clean(self, text: str) -> str:
        return self._privacy.redact(text) if self._privacy is not None else text

    def format_for_ai(
        self,
        context: AggregatedContext | None,
        query: str | None = None,
        max_tokens: int = 1000,
    ) -> FormattedContext:
        if context is None or not context.has_context:
            return FormattedContext(has_context=False)
        terms = _query_terms(query)
        formatted = FormattedContext(
            summary=self._summary(context),
            content=self._content(context, terms),
            network=self._network(context),
            interactions=self._interactions(context),
            metadata=self._metadata(context),
        )
        self._render(formatted)
        if formatted.token_count > max_tokens:
            self._trim(formatted, max_tokens)
        return formatted

    # -- Sections --

    def _summary(self, context: AggregatedContext) -> str:
        meta = context.metadata
        content = context.content
        lines = [f'Page: "{meta.title}" at {self._clean(meta.url)}']
        if content.text:
            preview = content.text[:200].strip()
            lines.append(f"Content: {preview}{'...' if len(content.text) > 200 else ''}")
        if content.forms:
            lines.append(f"Forms: {len(content.forms)} form(s) detected")
        if context.network is not None and context.network.recent:
            lines.append(f"Network: {len(context.network.recent)} recent requests")
        if context.layout is not None and context.layout.has_modal:
            lines.append(f"Modal open: {context.layout.modals[0].title or context.layout.modals[0].selector}")
        return self._clean("\n".join(lines))

    def _content(self, context: AggregatedContext, terms: set[str]) -> FormattedContent:
        content = context.content
        page_url = context.metadata.url
        links = _rank(list(content.links), lambda link: link.text, terms)[:MAX_LINKS]
        return FormattedContent(
            title=context.metadata.title,
            url=self._clean(page_url),
            main_content=self._clean(summarize_text(content.text)),
            forms=[
                FormSummary(
                    action=self._clean(form.action),
                    method=form.method,
                    field_count=len(form.fields),
                    fields=[f"{f.label or f.name} ({f.type}{', required' if f.required else ''})" for f in form.fields],
                    required_fields=form.required_count,
                )
                for form in content.forms
            ],
            tables=[
                TableSummary(headers=list(t.headers), row_count=len(t.rows), caption=t.caption)
                for t in _rank(list(content.tables), lambda t: " ".join(t.headers) + " " + t.caption, terms)
            ],
            links=[
                LinkSummary(text=link.text, href=self._clean(link.href), is_external=_is_external(link.href, page_url))
                for link in links
            ],
        )

    def _network(self, context: AggregatedContext) -> FormattedNetwork:
        network = context.network
        if network is None:
            return FormattedNetwork()
        recent = list(network.recent)[-MAX_NETWORK_REQUESTS:]
        requests = [
            RequestSummary(
                url=self._clean(r.url),
                method=r.method,
                status=r.status,
                type=r.type.value,
                timestamp=_iso(r.timestamp),
            )
            for r in recent
        ]
        endpoints: dict[str, None] = {e: None for e in network.api_endpoints}
        for req in requests:
            if any(h in req.url for h in _API_HINTS) or req.type in ("fetch", "xhr"):
                endpoints.setdefault(f"{req.method} {urlsplit(req.url).path}", None)
        return FormattedNetwork(
            recent_requests=requests,
            errors=[self._clean(f"{e.method} {e.url}: {e.error or e.status}") for e in network.errors],
            api_endpoints=list(endpoints),
        )

    def _interactions(self, context: AggregatedContext) -> FormattedInteractions:
        records = list(context.interactions)
        actions = [
            ActionSummary(
                type=r.type.value,
                element=r.element.tag_name + (f"#{r.element.id}" if r.element.id else ""),
                timestamp=_iso(r.timestamp),
            )
            for r in records[-MAX_INTERACTIONS:]
        ]
        focused = [
            self._clean(f"{r.element.tag_name} {r.element.selector}: {r.context.surrounding_text[:80]}".strip())
            for r in records
            if r.type.value in ("focus", "click", "input")
        ][-3:]
        return FormattedInteractions(recent_actions=actions, focused_elements=focused)

    def _metadata(self, context: AggregatedContext) -> FormattedMetadata:
        semantics = context.semantics
        quality = context.metadata.data_quality
        description = context.content.metadata.description
        if not description and semantics is not None:
            description = semantics.open_graph.get("description", "")
        return FormattedMetadata(
            page_type=context.summary.page_type,
            has_structured_data=semantics.has_structured_data if semantics is not None else False,
            schema_types=sorted(set(semantics.types())) if semantics is not None else [],
            description=self._clean(description),
            data_quality={
                "completeness": quality.completeness,
                "freshness": quality.freshness,
                "accuracy": quality.accuracy,
                "relevance": quality.relevance,
            },
        )

    # -- Rendering & budget --

    def format_as_text(self, formatted: FormattedContext) -> str:
        if not formatted.has_context:
            return ""
        c = formatted.content
        parts = ["## Summary", formatted.summary, "", "## Page Content", f"**Title:** {c.title}", f"**URL:** {c.url}"]
        if c.main_content:
            parts += ["", "**Main Content:**", c.main_content]
        if c.forms:
            parts += ["", "**Forms:**"]
            for i, form in enumerate(c.forms, start=1):
                parts.append(f"{i}. {form.method} {form.action or '(no action)'}: {', '.join(form.fields)}")
        if c.tables:
            parts += ["", "**Tables:**"]
            for i, table in enumerate(c.tables, start=1):
                label = f" ({table.caption})" if table.caption else ""
                parts.append(f"{i}. {', '.join(table.headers)}{label}, {table.row_count} rows")
        if c.links:
            parts += ["", "**Links:**"]
            parts += [f"- {link.text or link.href}{' (external)' if link.is_external else ''}" for link in c.links]
        n = formatted.network
        if n.recent_requests:
            parts += ["", "## Network Activity"]
            parts += [f"- {r.method} {r.url} ({r.status if r.status is not None else 'pending'})" for r in n.recent_requests]
        if n.api_endpoints:
            parts += ["", "**API Endpoints:**"] + [f"- {e}" for e in n.api_endpoints]
        if n.errors:
            parts += ["", "**Errors:**"] + [f"- {e}" for e in n.errors]
        if formatted.interactions.recent_actions:
            parts += ["", "## Recent Interactions"]
            parts += [f"- {a.type} on {a.element}" for a in formatted.interactions.recent_actions]
        m = formatted.metadata
        parts += ["", "## Metadata", f"**Page Type:** {m.page_type}"]
        if m.schema_types:
            parts.append(f"**Schema Types:** {', '.join(m.schema_types)}")
        if m.description:
            parts.append(f"**Description:** {m.description}")
        return "\n".join(parts)

    def _render(self, formatted: FormattedContext) -> None:
        formatted.text = self.format_as_text(formatted)
        formatted.token_count = count_tokens(formatted.text)

    def _trim(self, formatted: FormattedContext, max_tokens: int) -> None:
        c = formatted.content
        for _ in range(_MAX_TRIM_ITERATIONS):
            if formatted.token_count <= max_tokens:
                break
            if len(c.main_content) > 200:
                c.main_content = c.main_content[:200] + "..."
            formatted.network.recent_requests = formatted.network.recent_requests[:3]
            formatted.network.errors = formatted.network.errors[:3]
            formatted.interactions.recent_actions = formatted.interactions.recent_actions[:1]
            c.links = c.links[:2]
            c.tables = []
            self._render(formatted)
            if formatted.token_count > max_tokens and c.forms:
                c.forms = c.forms[:1]
                self._render(formatted)
            if formatted.token_count > max_tokens and len(c.main_content) > 100:
                c.main_content = c.main_content[:100] + "..."
                self._render(formatted)
            if formatted.token_count > max_tokens:
                formatted.network.api_endpoints = formatted.network.api_endpoints[:3]
                c.links = []
                self._render(formatted)
        if formatted.token_count > max_tokens:
            formatted.text = truncate_to_tokens(formatted.text, max_tokens)
            formatted.token_count = count_tokens(formatted.text)
        logger.debug("Formatted context trimmed to %d tokens (budget %d)", formatted.token_count, max_tokens)
