# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Rule-based suggestions, proactive insights and workflow recommendations.

Every rule reads an ``AggregatedContext`` and emits zero or more items with a
confidence; callers get the highest-confidence items first (8 suggestions,
6 insights, 4 workflow recommendations).  Rules never raise: a failing rule
is logged and skipped.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from urllib.parse import urlsplit

from .context_aggregator import AggregatedContext
from .network_monitor import NetworkActivityRecord

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 8
MAX_INSIGHTS = 6
MAX_RECOMMENDATIONS = 4

_SLOW_SUGGESTION_MS = 2000
_SLOW_INSIGHT_MS = 3000
_INSIGHT_CACHE_TTL = 60.0  # s

_TASK_KEYWORDS: dict[str, tuple[str, ...]] = {
    "form filling": ("fill", "form", "complete", "submit"),
    "data analysis": ("analyze", "data", "table", "chart"),
    "debugging": ("error", "debug", "fix", "problem"),
    "navigation": ("find", "go to", "navigate", "search"),
}


class SuggestionType(StrEnum):
    FORM_ASSISTANCE = "form_assistance"
    DATA_ANALYSIS = "data_analysis"
    ERROR_DIAGNOSIS = "error_diagnosis"
    WORKFLOW_OPTIMIZATION = "workflow_optimization"
    CONTENT_SUMMARY = "content_summary"
    API_INSIGHTS = "api_insights"
    NAVIGATION_HELP = "navigation_help"


class InsightType(StrEnum):
    PERFORMANCE_ISSUE = "performance_issue"
    SECURITY_CONCERN = "security_concern"
    ACCESSIBILITY_ISSUE = "accessibility_issue"
    UX_IMPROVEMENT = "ux_improvement"
    DATA_PATTERN = "data_pattern"
    ERROR_PATTERN = "error_pattern"
    CONTENT_QUALITY = "content_quality"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ChatMessage:
    sender: str  # "user" / "assistant"
    content: str


@dataclass(frozen=True, slots=True)
class ContextSuggestion:
    type: SuggestionType
    title: str
    description: str
    confidence: float
    actionable: bool = True
    context: str = ""
    prompt: str = ""  # ready-to-send prompt for the chat box


@dataclass(frozen=True, slots=True)
class AIInsight:
    type: InsightType
    title: str
    description: str
    severity: str  # low / medium / high
    confidence: float
    recommendations: tuple[str, ...] = ()
    evidence: tuple[str, ...] = ()
    actionable: bool = True
    context: str = ""


@dataclass(frozen=True, slots=True)
class WorkflowRecommendation:
    workflow_type: str
    title: str
    description: str
    relevance_score: float
    trigger_context: str
    suggested_prompts: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class PatternDetection:
    pattern: str
    confidence: float
    occurrences: int
    context: str
    suggestions: tuple[str, ...] = field(default_factory=tuple)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _requests(context: AggregatedContext) -> tuple[NetworkActivityRecord, ...]:
    return context.network.recent if context.network is not None else ()


def _duration(record: NetworkActivityRecord) -> float:
    return record.timing.duration_ms or 0.0


def _is_api(record: NetworkActivityRecord) -> bool:
    path = urlsplit(record.url).path
    content_type = next((v for k, v in record.headers.items() if k.lower() == "content-type"), "")
    return "/api/" in path or path.endswith(".json") or "application/json" in content_type


def _run(rules: Sequence[Callable[[AggregatedContext], list]], context: AggregatedContext) -> list:
    items: list = []
    for rule in rules:
        try:
            items.extend(rule(context))
        except Exception:
            logger.warning("Suggestion rule %s failed", rule.__name__, exc_info=True)
    return items


def detect_task_patterns(messages: Sequence[str]) -> list[str]:
    """Tasks mentioned in at least two of *messages*."""
    lowered = [m.lower() for m in messages]
    return [
        task
        for task, keywords in _TASK_KEYWORDS.items()
        if sum(1 for m in lowered if any(k in m for k in keywords)) >= 2
    ]


# ---------------------------------------------------------------------------
# Suggestion rules
# ---------------------------------------------------------------------------


def _form_suggestions(context: AggregatedContext) -> list[ContextSuggestion]:
    forms = context.content.forms
    if not forms:
        return []
    total = sum(len(f.fields) for f in forms)
    suggestions = [
        ContextSuggestion(
            type=SuggestionType.FORM_ASSISTANCE,
            title="Smart Form Assistant",
            description=f"Help with {total} form field(s) across {len(forms)} form(s)",
            confidence=0.9,
            context="Forms: " + ", ".join(f"{len(f.fields)} fields" for f in forms),
            prompt="Help me fill out this form",
        )
    ]
    required = [fl for f in forms for fl in f.fields if fl.required]
    if required:
        suggestions.append(
            ContextSuggestion(
                type=SuggestionType.FORM_ASSISTANCE,
                title="Required Field Checker",
                description=f"Validate {len(required)} required field(s)",
                confidence=0.8,
                context="Required fields: " + ", ".join(fl.label or fl.name for fl in required),
                prompt="What information is required here?",
            )
        )
    return suggestions


def _data_suggestions(context: AggregatedContext) -> list[ContextSuggestion]:
    tables = context.content.tables
    if not tables:
        return []
    rows = sum(len(t.rows) for t in tables)
    suggestions = [
        ContextSuggestion(
            type=SuggestionType.DATA_ANALYSIS,
            title="Data Table Analyzer",
            description=f"Analyze {rows} rows across {len(tables)} table(s)",
            confidence=0.8,
            context="Tables with headers: " + "; ".join(", ".join(t.headers) for t in tables),
            prompt="Analyze this data for patterns",
        )
    ]
    if any(len(t.headers) > 3 for t in tables):
        suggestions.append(
            ContextSuggestion(
                type=SuggestionType.DATA_ANALYSIS,
                title="Advanced Data Operations",
                description="Sort, filter, and export table data",
                confidence=0.7,
                context="Complex tables detected with multiple columns",
                prompt="Help me sort and filter this table",
            )
        )
    return suggestions


def _network_suggestions(context: AggregatedContext) -> list[ContextSuggestion]:
    requests = _requests(context)
    if not requests:
        return []
    suggestions: list[ContextSuggestion] = []
    api = [r for r in requests if _is_api(r)]
    if api:
        suggestions.append(
            ContextSuggestion(
                type=SuggestionType.API_INSIGHTS,
                title="API Activity Monitor",
                description=f"Monitor {len(api)} API call(s) and responses",
                confidence=0.8,
                context="API endpoints: " + ", ".join(urlsplit(r.url).path for r in api),
                prompt="Explain the recent API activity",
            )
        )
    else:
        suggestions.append(
            ContextSuggestion(
                type=SuggestionType.API_INSIGHTS,
                title="Network Activity Analysis",
                description=f"Analyze {len(requests)} network request(s)",
                confidence=0.6,
                context="Network requests detected",
                prompt="What is this page loading?",
            )
        )
    slow = [r for r in requests if _duration(r) > _SLOW_SUGGESTION_MS]
    if slow:
        suggestions.append(
            ContextSuggestion(
                type=SuggestionType.API_INSIGHTS,
                title="Performance Analysis",
                description=f"Analyze {len(slow)} slow request(s)",
                confidence=0.9,
                context="Slow network requests detected (>2s response time)",
                prompt="Why are these requests slow?",
            )
        )
    return suggestions


def _error_suggestions(context: AggregatedContext) -> list[ContextSuggestion]:
    failed = [r for r in _requests(context) if r.status is not None and r.status >= 400]
    if not failed:
        return []
    classes = sorted({f"{r.status // 100}xx" for r in failed})
    return [
        ContextSuggestion(
            type=SuggestionType.ERROR_DIAGNOSIS,
            title="Error Diagnostic Assistant",
            description=f"Diagnose {len(failed)} HTTP error(s)",
            confidence=0.95,
            context="Error types: " + ", ".join(classes),
            prompt="Debug these API errors",
        )
    ]


def _content_suggestions(context: AggregatedContext) -> list[ContextSuggestion]:
    content = context.content
    suggestions: list[ContextSuggestion] = []
    if len(content.text) > 2000 or (context.summary.page_type == "article" and content.text):
        suggestions.append(
            ContextSuggestion(
                type=SuggestionType.CONTENT_SUMMARY,
                title="Content Summarizer",
                description="Get a concise summary of this page",
                confidence=0.7,
                context=f"{round(len(content.text), -2)}+ characters of content",
                prompt="Summarize this page for me",
            )
        )
    if len(content.headings) > 5:
        suggestions.append(
            ContextSuggestion(
                type=SuggestionType.NAVIGATION_HELP,
                title="Page Navigation Assistant",
                description=f"Navigate through {len(content.headings)} sections",
                confidence=0.6,
                context="Sections: " + ", ".join(content.headings[:3]) + "...",
                prompt="Where on this page can I find what I need?",
            )
        )
    return suggestions


def _page_type_suggestions(context: AggregatedContext) -> list[ContextSuggestion]:
    page_type = context.summary.page_type
    if page_type == "ecommerce":
        return [
            ContextSuggestion(
                type=SuggestionType.WORKFLOW_OPTIMIZATION,
                title="Shopping Assistant",
                description="Compare prices, find deals, track items",
                confidence=0.7,
                context="E-commerce page detected",
                prompt="Tell me about this product",
            )
        ]
    if page_type == "dashboard":
        return [
            ContextSuggestion(
                type=SuggestionType.DATA_ANALYSIS,
                title="Dashboard Explainer",
                description="Explain the metrics shown on this dashboard",
                confidence=0.75,
                context="Dashboard page detected",
                prompt="What do these metrics mean?",
            )
        ]
    return []


# ---------------------------------------------------------------------------
# Insight rules
# ---------------------------------------------------------------------------


def _performance_insights(context: AggregatedContext) -> list[AIInsight]:
    slow = [r for r in _requests(context) if _duration(r) > _SLOW_INSIGHT_MS]
    if not slow:
        return []
    return [
        AIInsight(
            type=InsightType.PERFORMANCE_ISSUE,
            title="Slow Network Requests Detected",
            description=f"{len(slow)} request(s) taking longer than 3 seconds",
            severity="medium",
            confidence=0.9,
            recommendations=(
                "Check network connection",
                "Analyze request payload size",
                "Consider request optimization",
                "Implement caching strategies",
            ),
            evidence=tuple(f"{r.method} {r.url}: {_duration(r):.0f}ms" for r in slow),
            context="Network performance analysis",
        )
    ]


def _security_insights(context: AggregatedContext) -> list[AIInsight]:
    if not context.metadata.url.startswith("https://"):
        return []
    insecure = [r for r in _requests(context) if r.url.startswith("http://")]
    if not insecure:
        return []
    return [
        AIInsight(
            type=InsightType.SECURITY_CONCERN,
            title="Mixed Content Warning",
            description="HTTP requests detected on HTTPS page",
            severity="high",
            confidence=0.95,
            recommendations=(
                "Update HTTP URLs to HTTPS",
                "Check for insecure resource loading",
                "Review Content Security Policy",
            ),
            evidence=tuple(r.url for r in insecure),
            context="Security analysis",
        )
    ]


def _accessibility_insights(context: AggregatedContext) -> list[AIInsight]:
    missing = [img for img in context.content.images if not img.alt.strip()]
    if not missing:
        return []
    return [
        AIInsight(
            type=InsightType.ACCESSIBILITY_ISSUE,
            title="Missing Alt Text",
            description=f"{len(missing)} image(s) missing alt text",
            severity="medium",
            confidence=0.8,
            recommendations=(
                "Add descriptive alt text to images",
                'Use empty alt="" for decorative images',
            ),
            evidence=tuple(img.src for img in missing),
            context="Accessibility analysis",
        )
    ]


def _ux_insights(context: AggregatedContext) -> list[AIInsight]:
    unlabeled = [f for f in context.content.forms if any(not (fl.label or fl.placeholder) for fl in f.fields)]
    if not unlabeled:
        return []
    return [
        AIInsight(
            type=InsightType.UX_IMPROVEMENT,
            title="Form Usability Issues",
            description="Form fields without a label or placeholder detected",
            severity="medium",
            confidence=0.7,
            recommendations=(
                "Add labels to every form field",
                "Provide helpful placeholder text",
                "Include field validation messages",
            ),
            evidence=(f"{len(unlabeled)} form(s) with unlabeled fields",),
            context="User experience analysis",
        )
    ]


def _data_insights(context: AggregatedContext) -> list[AIInsight]:
    large = [t for t in context.content.tables if len(t.rows) >= 50]
    if not large:
        return []
    return [
        AIInsight(
            type=InsightType.DATA_PATTERN,
            title="Large Dataset Detected",
            description=f"Table(s) with {sum(len(t.rows) for t in large)} total rows",
            severity="low",
            confidence=0.8,
            recommendations=("Consider data pagination", "Implement search and filtering", "Add data export"),
            evidence=tuple(f"Table with {len(t.rows)} rows" for t in large),
            context="Data analysis",
        )
    ]


def _error_insights(context: AggregatedContext) -> list[AIInsight]:
    groups: dict[int, list[NetworkActivityRecord]] = {}
    for record in _requests(context):
        if record.status is not None and record.status >= 400:
            groups.setdefault(record.status, []).append(record)
    insights: list[AIInsight] = []
    for status, records in sorted(groups.items()):
        evidence = tuple(f"{r.method} {r.url}" for r in records)
        if len(records) > 1:
            insights.append(
                AIInsight(
                    type=InsightType.ERROR_PATTERN,
                    title=f"Recurring {status} Errors",
                    description=f"{len(records)} requests failing with {status} status",
                    severity="high" if status >= 500 else "medium",
                    confidence=0.9,
                    recommendations=(
                        "Check API endpoint availability",
                        "Verify request parameters",
                        "Review authentication tokens",
                    ),
                    evidence=evidence,
                    context="Error pattern analysis",
                )
            )
        elif status >= 500:
            insights.append(
                AIInsight(
                    type=InsightType.ERROR_PATTERN,
                    title=f"{status} Error Detected",
                    description=f"Server error detected: {status} status",
                    severity="high",
                    confidence=0.8,
                    recommendations=("Check server availability", "Review server logs"),
                    evidence=evidence,
                    context="Error analysis",
                )
            )
    return insights


def _content_quality_insights(context: AggregatedContext) -> list[AIInsight]:
    content = context.content
    if content.headings or len(content.text) < 1500:
        return []
    return [
        AIInsight(
            type=InsightType.CONTENT_QUALITY,
            title="Content Structure Issues",
            description="Long content without proper heading structure",
            severity="low",
            confidence=0.6,
            recommendations=("Add section headings", "Break content into smaller paragraphs"),
            evidence=(f"{round(len(content.text) / 1000)}k characters without headings",),
            context="Content quality analysis",
        )
    ]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

_SUGGESTION_RULES = (
    _form_suggestions,
    _data_suggestions,
    _network_suggestions,
    _error_suggestions,
    _content_suggestions,
    _page_type_suggestions,
)
_INSIGHT_RULES = (
    _performance_insights,
    _security_insights,
    _accessibility_insights,
    _ux_insights,
    _data_insights,
    _error_insights,
    _content_quality_insights,
)


class SuggestionEngine:
    """Stateless rules plus a short-lived insight cache keyed by context identity."""

    def __init__(self, *, cache_ttl: float = _INSIGHT_CACHE_TTL, clock: Callable[[], float] = time.monotonic) -> None:
        self._cache_ttl = cache_ttl
        self._clock = clock
        self._insights: dict[tuple[str, float, str], tuple[float, list[AIInsight]]] = {}

    def generate_suggestions(
        self, context: AggregatedContext, history: Sequence[ChatMessage] | None = None
    ) -> list[ContextSuggestion]:
        suggestions: list[ContextSuggestion] = _run(_SUGGESTION_RULES, context)
        if history:
            recent = [m.content for m in history if m.sender == "user"][-3:]
            tasks = detect_task_patterns(recent)
            if tasks:
                suggestions.append(
                    ContextSuggestion(
                        type=SuggestionType.WORKFLOW_OPTIMIZATION,
                        title="Workflow Automation",
                        description="Automate repetitive tasks you've been doing",
                        confidence=0.8,
                        context="Detected patterns: " + ", ".join(tasks),
                    )
                )
        suggestions.sort(key=lambda s: s.confidence, reverse=True)
        return suggestions[:MAX_SUGGESTIONS]

    def generate_proactive_insights(self, context: AggregatedContext) -> list[AIInsight]:
        key = (context.metadata.url, context.metadata.timestamp, context.summary.page_type)
        now = self._clock()
        cached = self._insights.get(key)
        if cached is not None and now - cached[0] <= self._cache_ttl:
            return list(cached[1])
        insights: list[AIInsight] = _run(_INSIGHT_RULES, context)
        insights.sort(key=lambda i: i.confidence, reverse=True)
        insights = insights[:MAX_INSIGHTS]
        self._insights = {k: v for k, v in self._insights.items() if now - v[0] <= self._cache_ttl}
        self._insights[key] = (now, insights)
        return list(insights)

    def generate_workflow_recommendations(self, context: AggregatedContext) -> list[WorkflowRecommendation]:
        content = context.content
        recommendations: list[WorkflowRecommendation] = []
        if content.forms:
            recommendations.append(
                WorkflowRecommendation(
                    workflow_type="form-assistant",
                    title="Form Completion Assistant",
                    description="Get help filling out forms with smart suggestions",
                    relevance_score=0.9,
                    trigger_context=f"{len(content.forms)} form(s) detected",
                    suggested_prompts=(
                        "Help me fill out this form",
                        "What information is required?",
                        "Check my form for errors",
                    ),
                )
            )
        if content.tables:
            recommendations.append(
                WorkflowRecommendation(
                    workflow_type="data-analyzer",
                    title="Data Analysis Assistant",
                    description="Analyze and extract insights from page data",
                    relevance_score=0.8,
                    trigger_context=f"{len(content.tables)} data table(s) found",
                    suggested_prompts=(
                        "Analyze this data for patterns",
                        "Export this data to CSV",
                        "Create a summary of this data",
                    ),
                )
            )
        if any(r.status is not None and r.status >= 400 for r in _requests(context)):
            recommendations.append(
                WorkflowRecommendation(
                    workflow_type="api-debugger",
                    title="API Debugging Assistant",
                    description="Debug API issues and network problems",
                    relevance_score=0.95,
                    trigger_context="API errors detected",
                    suggested_prompts=(
                        "Debug these API errors",
                        "Explain what went wrong",
                        "Suggest fixes for these issues",
                    ),
                )
            )
        if context.summary.page_type == "article":
            recommendations.append(
                WorkflowRecommendation(
                    workflow_type="content-optimizer",
                    title="Content Optimization Assistant",
                    description="Improve content quality and SEO",
                    relevance_score=0.7,
                    trigger_context="Content page detected",
                    suggested_prompts=("Analyze this content for SEO", "Suggest improvements"),
                )
            )
        recommendations.sort(key=lambda r: r.relevance_score, reverse=True)
        return recommendations[:MAX_RECOMMENDATIONS]

    def detect_common_patterns(self, context: AggregatedContext) -> list[PatternDetection]:
        patterns: list[PatternDetection] = []
        validated = [f for f in context.content.forms if any(fl.required for fl in f.fields)]
        if validated:
            patterns.append(
                PatternDetection(
                    pattern="form_validation",
                    confidence=0.8,
                    occurrences=len(validated),
                    context="Forms with validation rules detected",
                    suggestions=("Provide real-time validation feedback", "Highlight required fields"),
                )
            )
        rest = [
            r
            for r in _requests(context)
            if ("/api/" in r.url or "://api." in r.url) and r.method in ("GET", "POST", "PUT", "DELETE")
        ]
        if len(rest) >= 2:
            patterns.append(
                PatternDetection(
                    pattern="rest_api_usage",
                    confidence=0.9,
                    occurrences=len(rest),
                    context="RESTful API usage detected",
                    suggestions=("Monitor API response times", "Add request caching"),
                )
            )
        activity = context.summary.user_activity
        if activity.navigation_activity:
            patterns.append(
                PatternDetection(
                    pattern="spa_navigation",
                    confidence=0.7,
                    occurrences=1,
                    context="In-page navigation detected",
                    suggestions=("Add navigation breadcrumbs", "Implement loading states"),
                )
            )
        if activity.recent_interactions >= 3:
            patterns.append(
                PatternDetection(
                    pattern="dynamic_content",
                    confidence=0.8,
                    occurrences=activity.recent_interactions,
                    context="Frequent user interactions detected",
                    suggestions=("Add loading indicators", "Optimize interaction performance"),
                )
            )
        patterns.sort(key=lambda p: p.confidence, reverse=True)
        return patterns

    def clear_cache(self) -> None:
        self._insights.clear()
