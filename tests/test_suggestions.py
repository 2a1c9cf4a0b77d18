# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for pagecontext.suggestions: rule engine, insights, patterns."""

from __future__ import annotations

import pytest

from pagecontext import ContentSnapshot, FormField, FormInfo, ImageInfo, TableInfo
from pagecontext.context_aggregator import ActivitySummary, AggregatedContext, ContextMetadata, ContextSummary
from pagecontext.network_monitor import NetworkActivityRecord, NetworkSummary, RequestTiming, RequestType
from pagecontext.suggestions import (
    MAX_SUGGESTIONS,
    ChatMessage,
    InsightType,
    SuggestionEngine,
    SuggestionType,
    detect_task_patterns,
)
from tests._fakes import FakeClock

_NOW = 1_700_000_000.0


def _record(url: str, status: int | None = 200, duration: float = 50.0, method: str = "GET") -> NetworkActivityRecord:
    return NetworkActivityRecord(
        id=url,
        url=url,
        method=method,
        status=status,
        status_text="",
        type=RequestType.FETCH,
        headers={},
        timing=RequestTiming(_NOW, _NOW, duration),
        timestamp=_NOW,
    )


def _context(
    content: ContentSnapshot | None = None,
    *,
    page_type: str = "unknown",
    requests: tuple[NetworkActivityRecord, ...] = (),
    url: str = "https://example.com/page",
    activity: ActivitySummary | None = None,
    timestamp: float = _NOW,
) -> AggregatedContext:
    return AggregatedContext(
        summary=ContextSummary(page_type=page_type, user_activity=activity or ActivitySummary()),
        content=content or ContentSnapshot(),
        metadata=ContextMetadata(timestamp=timestamp, url=url, title="Page"),
        network=NetworkSummary(recent=requests) if requests else None,
    )


def _form(*fields: FormField) -> FormInfo:
    return FormInfo(id="f", action="/send", method="POST", fields=list(fields))


@pytest.fixture
def engine() -> SuggestionEngine:
    return SuggestionEngine(clock=FakeClock())


class TestTaskPatterns:
    def test_needs_two_mentions(self):
        assert detect_task_patterns(["Please fill this in", "submit it now"]) == ["form filling"]
        assert detect_task_patterns(["fix this error"]) == []

    def test_multiple_tasks(self):
        tasks = detect_task_patterns(["debug the table", "analyze the error", "thanks"])
        assert tasks == ["data analysis", "debugging"]


class TestSuggestions:
    def test_form_page(self, engine):
        content = ContentSnapshot(forms=[_form(FormField("email", "email", required=True), FormField("note", "text"))])
        suggestions = engine.generate_suggestions(_context(content, page_type="form"))
        titles = [s.title for s in suggestions]
        assert titles[:2] == ["Smart Form Assistant", "Required Field Checker"]
        assert suggestions[0].prompt == "Help me fill out this form"
        assert suggestions[0].type is SuggestionType.FORM_ASSISTANCE

    def test_errors_rank_first(self, engine):
        requests = (_record("https://example.com/api/cart", status=503), _record("https://example.com/api/user"))
        content = ContentSnapshot(forms=[_form(FormField("q", "text"))])
        suggestions = engine.generate_suggestions(_context(content, requests=requests))
        assert suggestions[0].title == "Error Diagnostic Assistant"
        assert suggestions[0].context == "Error types: 5xx"
        assert "API Activity Monitor" in [s.title for s in suggestions]

    def test_non_api_traffic_and_slow_requests(self, engine):
        requests = (_record("https://example.com/page/2", duration=2500),)
        titles = [s.title for s in engine.generate_suggestions(_context(requests=requests))]
        assert titles == ["Performance Analysis", "Network Activity Analysis"]

    def test_tables(self, engine):
        wide = TableInfo(headers=["a", "b", "c", "d"], rows=[["1", "2", "3", "4"]])
        titles = [s.title for s in engine.generate_suggestions(_context(ContentSnapshot(tables=[wide])))]
        assert titles == ["Data Table Analyzer", "Advanced Data Operations"]

    def test_content_and_page_type(self, engine):
        content = ContentSnapshot(text="x" * 2500, headings=[f"h{i}" for i in range(6)])
        titles = [s.title for s in engine.generate_suggestions(_context(content, page_type="ecommerce"))]
        assert titles == ["Content Summarizer", "Shopping Assistant", "Page Navigation Assistant"]

    def test_history_adds_workflow_suggestion(self, engine):
        history = [
            ChatMessage("user", "fill the shipping form"),
            ChatMessage("assistant", "Done"),
            ChatMessage("user", "now submit it"),
        ]
        suggestions = engine.generate_suggestions(_context(), history)
        assert [s.title for s in suggestions] == ["Workflow Automation"]
        assert "form filling" in suggestions[0].context

    def test_result_is_capped(self, engine):
        content = ContentSnapshot(
            text="x" * 3000,
            headings=[f"h{i}" for i in range(8)],
            forms=[_form(FormField("a", "text", required=True))],
            tables=[TableInfo(headers=["a", "b", "c", "d"], rows=[])],
        )
        requests = (_record("https://example.com/api/a", status=500, duration=2500),)
        suggestions = engine.generate_suggestions(_context(content, page_type="dashboard", requests=requests))
        assert len(suggestions) == MAX_SUGGESTIONS
        confidences = [s.confidence for s in suggestions]
        assert confidences == sorted(confidences, reverse=True)

    def test_empty_context(self, engine):
        assert engine.generate_suggestions(_context()) == []


class TestInsights:
    def test_mixed_content_and_slow_requests(self, engine):
        requests = (_record("http://cdn.example.com/api/x", duration=3500),)
        insights = engine.generate_proactive_insights(_context(requests=requests))
        assert [i.type for i in insights] == [InsightType.SECURITY_CONCERN, InsightType.PERFORMANCE_ISSUE]
        assert insights[0].severity == "high"

    def test_no_mixed_content_on_http_page(self, engine):
        requests = (_record("http://example.com/api/x"),)
        assert engine.generate_proactive_insights(_context(requests=requests, url="http://example.com/")) == []

    def test_accessibility_and_ux(self, engine):
        content = ContentSnapshot(
            images=[ImageInfo(src="/a.png"), ImageInfo(src="/b.png", alt="Chart")],
            forms=[_form(FormField("q", "text"))],
        )
        insights = engine.generate_proactive_insights(_context(content))
        by_type = {i.type: i for i in insights}
        assert by_type[InsightType.ACCESSIBILITY_ISSUE].evidence == ("/a.png",)
        assert InsightType.UX_IMPROVEMENT in by_type

    def test_error_patterns(self, engine):
        requests = (
            _record("https://example.com/api/a", status=404),
            _record("https://example.com/api/b", status=404),
            _record("https://example.com/api/c", status=502),
            _record("https://example.com/api/d", status=403),
        )
        titles = [i.title for i in engine.generate_proactive_insights(_context(requests=requests))]
        assert titles == ["Recurring 404 Errors", "502 Error Detected"]

    def test_large_tables_and_unstructured_text(self, engine):
        content = ContentSnapshot(text="y" * 1600, tables=[TableInfo(headers=["n"], rows=[["1"]] * 50)])
        types = {i.type for i in engine.generate_proactive_insights(_context(content))}
        assert types == {InsightType.DATA_PATTERN, InsightType.CONTENT_QUALITY}

    def test_cached_per_context_identity(self):
        clock = FakeClock()
        engine = SuggestionEngine(cache_ttl=60, clock=clock)
        content = ContentSnapshot(images=[ImageInfo(src="/a.png")])
        first = engine.generate_proactive_insights(_context(content))
        # Same identity (url, timestamp, page type) is served from cache
        changed = _context(ContentSnapshot())
        assert engine.generate_proactive_insights(changed) == first
        assert engine.generate_proactive_insights(_context(ContentSnapshot(), timestamp=_NOW + 1)) == []
        clock.advance(61)
        assert engine.generate_proactive_insights(changed) == []

    def test_clear_cache(self, engine):
        engine.generate_proactive_insights(_context(ContentSnapshot(images=[ImageInfo(src="/a.png")])))
        engine.clear_cache()
        assert engine.generate_proactive_insights(_context()) == []

    def test_failing_rule_is_skipped(self, engine, monkeypatch):
        from pagecontext import suggestions as module

        def _boom(context):
            raise RuntimeError("rule bug")

        monkeypatch.setattr(module, "_INSIGHT_RULES", (_boom, module._accessibility_insights))
        insights = engine.generate_proactive_insights(_context(ContentSnapshot(images=[ImageInfo(src="/a.png")])))
        assert [i.type for i in insights] == [InsightType.ACCESSIBILITY_ISSUE]


class TestWorkflowAndPatterns:
    def test_recommendations_sorted_and_capped(self, engine):
        content = ContentSnapshot(forms=[_form(FormField("a", "text"))], tables=[TableInfo(headers=["x"], rows=[])])
        requests = (_record("https://example.com/api/a", status=500),)
        recs = engine.generate_workflow_recommendations(_context(content, page_type="article", requests=requests))
        assert [r.workflow_type for r in recs] == ["api-debugger", "form-assistant", "data-analyzer", "content-optimizer"]

    def test_patterns(self, engine):
        content = ContentSnapshot(forms=[_form(FormField("a", "text", required=True))])
        requests = (_record("https://api.example.com/v1/a"), _record("https://example.com/api/b", method="POST"))
        activity = ActivitySummary(recent_interactions=4, navigation_activity=True)
        patterns = engine.detect_common_patterns(_context(content, requests=requests, activity=activity))
        assert [p.pattern for p in patterns] == ["rest_api_usage", "form_validation", "dynamic_content", "spa_navigation"]
        assert patterns[0].occurrences == 2

    def test_no_patterns(self, engine):
        assert engine.detect_common_patterns(_context()) == []
