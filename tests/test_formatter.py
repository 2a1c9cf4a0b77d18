# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for pagecontext.formatter: AI projection, redaction, token budget."""

from __future__ import annotations

import pytest

from pagecontext import ContentSnapshot, FormField, FormInfo, LinkInfo, TableInfo
from pagecontext.context_aggregator import AggregatedContext, ContextMetadata, ContextSummary
from pagecontext.formatter import (
    ContextFormatter,
    count_tokens,
    summarize_text,
    truncate_to_tokens,
)
from pagecontext.network_monitor import (
    NetworkActivityRecord,
    NetworkStatistics,
    NetworkSummary,
    RequestTiming,
    RequestType,
)
from pagecontext.privacy import PrivacyController

_NOW = 1_700_000_000.0


def _record(url: str, status: int | None = 200, method: str = "GET", error: str | None = None) -> NetworkActivityRecord:
    return NetworkActivityRecord(
        id=url,
        url=url,
        method=method,
        status=status,
        status_text="",
        type=RequestType.FETCH,
        headers={},
        timing=RequestTiming(_NOW, _NOW, 12.0),
        timestamp=_NOW,
        error=error,
    )


def _context(
    *,
    text: str = "Plans start at nine dollars.",
    url: str = "https://example.com/pricing",
    links: list[LinkInfo] | None = None,
    forms: list[FormInfo] | None = None,
    tables: list[TableInfo] | None = None,
    network: NetworkSummary | None = None,
    excluded: bool = False,
) -> AggregatedContext:
    return AggregatedContext(
        summary=ContextSummary(page_type="ecommerce"),
        content=ContentSnapshot(
            text=text,
            headings=["Pricing"],
            links=links or [],
            forms=forms or [],
            tables=tables or [],
        ),
        metadata=ContextMetadata(timestamp=_NOW, url=url, title="Pricing", excluded=excluded),
        network=network,
    )


@pytest.fixture
def formatter() -> ContextFormatter:
    return ContextFormatter(PrivacyController())


class TestTokenHelpers:
    def test_count_tokens(self):
        assert count_tokens("") == 0
        assert count_tokens("hello world") == 2

    def test_truncate_to_tokens(self):
        text = "alpha beta gamma delta " * 50
        cut = truncate_to_tokens(text, 10)
        assert count_tokens(cut) <= 10
        assert text.startswith(cut)
        assert truncate_to_tokens("short", 10) == "short"

    def test_summarize_text_keeps_head_and_tail(self):
        text = "H" * 1500 + "M" * 1000 + "T" * 1500
        summary = summarize_text(text, limit=1000)
        assert summary.startswith("H" * 700)
        assert summary.endswith("T" * 300)
        assert "[Content truncated]" in summary
        assert summarize_text("short") == "short"


class TestFormatForAI:
    def test_no_context(self, formatter):
        formatted = formatter.format_for_ai(None)
        assert not formatted.has_context
        assert formatted.text == ""
        assert not formatter.format_for_ai(_context(excluded=True)).has_context

    def test_sections_are_rendered(self, formatter):
        form = FormInfo(
            id="signup",
            action="/signup",
            method="POST",
            fields=[FormField(name="email", type="email", required=True, label="Email")],
        )
        table = TableInfo(headers=["Plan", "Price"], rows=[["Basic", "$9"]], caption="Plans")
        formatted = formatter.format_for_ai(_context(forms=[form], tables=[table]))
        text = formatted.text
        assert text.startswith("## Summary")
        assert '"Pricing" at https://example.com/pricing' in text
        assert "1. POST /signup: Email (email, required)" in text
        assert "1. Plan, Price (Plans), 1 rows" in text
        assert "**Page Type:** ecommerce" in text
        assert formatted.token_count == count_tokens(text)
        assert formatted.content.forms[0].required_fields == 1

    def test_sensitive_values_are_redacted(self, formatter):
        context = _context(
            text="Your card 4111 1111 1111 1111 expires soon.",
            url="https://example.com/billing?token=s3cr3t",
        )
        formatted = formatter.format_for_ai(context)
        assert "4111" not in formatted.text
        assert "s3cr3t" not in formatted.text
        assert "[REDACTED]" in formatted.text

    def test_network_section(self, formatter):
        network = NetworkSummary(
            recent=(_record("https://example.com/api/plans"), _record("https://example.com/api/cart", status=500)),
            statistics=NetworkStatistics(total_requests=2),
            api_endpoints=("GET /api/plans",),
            errors=(_record("https://example.com/api/cart", status=500),),
        )
        formatted = formatter.format_for_ai(_context(network=network))
        assert "## Network Activity" in formatted.text
        assert "- GET https://example.com/api/cart (500)" in formatted.text
        assert formatted.network.api_endpoints == ["GET /api/plans", "GET /api/cart"]
        assert formatted.network.errors == ["GET https://example.com/api/cart: 500"]
        assert "Network: 2 recent requests" in formatted.summary

    def test_query_ranks_matching_links_first(self, formatter):
        links = [
            LinkInfo(href="https://example.com/about", text="About us"),
            LinkInfo(href="https://other.example/plans", text="Compare plans"),
        ]
        formatted = formatter.format_for_ai(_context(links=links), query="which plans exist?")
        assert [link.text for link in formatted.content.links] == ["Compare plans", "About us"]
        assert formatted.content.links[0].is_external

    def test_budget_is_respected(self, formatter):
        text = " ".join(f"sentence {i} about the product catalogue." for i in range(600))
        links = [LinkInfo(href=f"https://example.com/p/{i}", text=f"Product {i}") for i in range(10)]
        formatted = formatter.format_for_ai(_context(text=text, links=links), max_tokens=120)
        assert formatted.token_count <= 120
        assert formatted.token_count == count_tokens(formatted.text)
        assert len(formatted.content.links) <= 2

    def test_under_budget_is_untouched(self, formatter):
        formatted = formatter.format_for_ai(_context(), max_tokens=5000)
        assert formatted.content.main_content == "Plans start at nine dollars."
