# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""AI-facing facade over the aggregator.

Re-applies the privacy policy to every context it hands out, formats it
under a token budget, and keeps a second short-lived cache (15 s) for
query-less formatted contexts.  Every public method degrades instead of
raising: a missing or excluded page yields ``has_context=False`` / empty
lists.  ``ask()`` is the one exception; errors from the chat client itself
propagate to the caller.
"""

from __future__ import annotations

import copy
import dataclasses
import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from .context_aggregator import AggregatedContext, ContextAggregator, ContextSummary, InvalidationReason
from .events import Event, EventBus, EventType
from .formatter import ContextFormatter, FormattedContext, count_tokens
from .privacy import PrivacyConfig, PrivacyController
from .suggestions import (
    AIInsight,
    ChatMessage,
    ContextSuggestion,
    PatternDetection,
    SuggestionEngine,
    WorkflowRecommendation,
)

logger = logging.getLogger(__name__)

_FALLBACK_PROMPTS = ("Summarize this page", "What can I do on this page?", "Explain this page to me")
_PAGE_TYPE_PROMPTS: dict[str, tuple[str, ...]] = {
    "form": ("Help me fill out this form", "What information is required?", "Check my form for errors"),
    "ecommerce": ("Tell me about this product", "Is this a good deal?", "Compare similar products"),
    "article": ("Summarize this article", "What are the key points?"),
    "dashboard": ("Explain these metrics", "What trends do you see?"),
}


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ProviderConfig:
    include_page_summary: bool = True
    include_network_activity: bool = True
    include_user_interactions: bool = True
    include_semantic_data: bool = True
    max_context_length: int = 2000  # chars of context embedded in a prompt
    formatted_cache_ttl: float = 15.0
    allow_unmonitored: bool = False  # serve context while the monitor is stopped

    def __post_init__(self) -> None:
        if self.max_context_length <= 0:
            raise ValueError(f"max_context_length must be positive, got {self.max_context_length}")
        if self.formatted_cache_ttl < 0:
            raise ValueError(f"formatted_cache_ttl must be >= 0, got {self.formatted_cache_ttl}")


@dataclass(frozen=True, slots=True)
class EnhancedPrompt:
    original_message: str
    enhanced_message: str
    context_summary: str = ""
    context: FormattedContext | None = None
    enhancement_applied: bool = False


@dataclass(frozen=True, slots=True)
class ChatReply:
    message: str
    tokens_used: int = 0


@runtime_checkable
class AIChatClient(Protocol):
    """The opaque chat model the enhanced prompts are sent to."""

    async def send_message(self, prompt: str, history: Sequence[ChatMessage]) -> ChatReply: ...


@dataclass(slots=True)
class TokenUsage:
    requests: int = 0
    tokens_used: int = 0  # as reported by the client
    context_tokens: int = 0  # tokens of injected page context
    last_request_tokens: int = 0

    def record(self, tokens_used: int, context_tokens: int) -> None:
        self.requests += 1
        self.tokens_used += tokens_used
        self.context_tokens += context_tokens
        self.last_request_tokens = tokens_used


@dataclass(slots=True)
class _FormattedEntry:
    key: tuple[str, float, int]
    value: FormattedContext  # private copy; callers only ever see deep copies
    created_at: float  # monotonic
    hits: int = field(default=0)


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------


class ContextProvider:
    def __init__(
        self,
        aggregator: ContextAggregator,
        privacy: PrivacyController,
        *,
        is_active: Callable[[], bool] | None = None,
        formatter: ContextFormatter | None = None,
        suggestion_engine: SuggestionEngine | None = None,
        config: ProviderConfig | None = None,
        bus: EventBus | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self._aggregator = aggregator
        self._privacy = privacy
        self._is_active = is_active
        self._formatter = formatter or ContextFormatter(privacy)
        self._suggestions = suggestion_engine or SuggestionEngine()
        self._config = config or ProviderConfig()
        self._monotonic = monotonic
        self._formatted: _FormattedEntry | None = None
        self._usage = TokenUsage()
        self._unsubscribe: Callable[[], None] | None = None
        if bus is not None:
            self._unsubscribe = bus.subscribe(EventType.PRIVACY_CONFIG_CHANGED, self._on_privacy_change)

    @property
    def config(self) -> ProviderConfig:
        return self._config

    @property
    def token_usage(self) -> TokenUsage:
        return self._usage

    @property
    def formatted_cache_hits(self) -> int:
        """Hits served by the current formatted-context entry."""
        return self._formatted.hits if self._formatted is not None else 0

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._formatted = None

    # -- Readiness --

    def is_ready(self) -> bool:
        if self._is_active is None:
            return True
        try:
            if self._is_active():
                return True
        except Exception:
            logger.debug("Monitor status check failed", exc_info=True)
        if self._config.allow_unmonitored:
            logger.warning("Context requested while monitoring is inactive; serving unmonitored context")
            return True
        return False

    # -- Context --

    async def get_current_context(self) -> AggregatedContext | None:
        """Privacy-filtered aggregated context, or None when unavailable or excluded."""
        if not self.is_ready():
            return None
        try:
            context = await self._aggregator.get_context()
            if context.metadata.excluded:
                return None
            return self._privacy.filter_context(context)
        except Exception:
            logger.warning("Failed to get current context", exc_info=True)
            return None

    def _project(self, context: AggregatedContext) -> AggregatedContext:
        cfg = self._config
        changes: dict = {}
        if not cfg.include_page_summary:
            changes["summary"] = ContextSummary(page_type=context.summary.page_type)
        if not cfg.include_network_activity:
            changes["network"] = None
        if not cfg.include_user_interactions:
            changes["interactions"] = ()
        if not cfg.include_semantic_data:
            changes["semantics"] = None
        return dataclasses.replace(context, **changes) if changes else context

    async def get_ai_formatted_context(self, query: str | None = None, max_tokens: int = 1000) -> FormattedContext:
        try:
            context = await self.get_current_context()
            if context is None:
                return FormattedContext(has_context=False)
            key = (context.url, context.metadata.timestamp, max_tokens)
            now = self._monotonic()
            entry = self._formatted
            if (
                query is None
                and entry is not None
                and entry.key == key
                and now - entry.created_at < self._config.formatted_cache_ttl
            ):
                entry.hits += 1
                return copy.deepcopy(entry.value)
            formatted = self._formatter.format_for_ai(self._project(context), query=query, max_tokens=max_tokens)
            if query is None:
                self._formatted = _FormattedEntry(key=key, value=copy.deepcopy(formatted), created_at=now)
            return formatted
        except Exception:
            logger.warning("Failed to format context for AI", exc_info=True)
            return FormattedContext(has_context=False)

    async def enhance_prompt(self, message: str, history: Sequence[ChatMessage] | None = None) -> EnhancedPrompt:
        """Prefix *message* with the current page context, when there is one."""
        formatted = await self.get_ai_formatted_context(query=message)
        if not formatted.has_context:
            return EnhancedPrompt(original_message=message, enhanced_message=message)
        limit = self._config.max_context_length
        context_text = formatted.text
        if len(context_text) > limit:
            context_text = context_text[:limit] + "..."
        return EnhancedPrompt(
            original_message=message,
            enhanced_message=f"Context: {context_text}\n\nUser question: {message}",
            context_summary=formatted.summary,
            context=formatted,
            enhancement_applied=True,
        )

    # -- Suggestions --

    async def generate_suggestions(self, history: Sequence[ChatMessage] | None = None) -> list[ContextSuggestion]:
        try:
            context = await self.get_current_context()
            if context is None:
                return []
            return self._suggestions.generate_suggestions(context, history)
        except Exception:
            logger.warning("Failed to generate suggestions", exc_info=True)
            return []

    async def generate_proactive_insights(self) -> list[AIInsight]:
        try:
            context = await self.get_current_context()
            if context is None:
                return []
            return self._suggestions.generate_proactive_insights(context)
        except Exception:
            logger.warning("Failed to generate proactive insights", exc_info=True)
            return []

    async def generate_workflow_recommendations(self) -> list[WorkflowRecommendation]:
        try:
            context = await self.get_current_context()
            if context is None:
                return []
            return self._suggestions.generate_workflow_recommendations(context)
        except Exception:
            logger.warning("Failed to generate workflow recommendations", exc_info=True)
            return []

    async def detect_common_patterns(self) -> list[PatternDetection]:
        try:
            context = await self.get_current_context()
            if context is None:
                return []
            return self._suggestions.detect_common_patterns(context)
        except Exception:
            logger.warning("Failed to detect patterns", exc_info=True)
            return []

    async def get_prompt_suggestions(self) -> list[str]:
        """Up to four ready-to-send prompts for the current page."""
        context = await self.get_current_context()
        if context is None:
            return list(_FALLBACK_PROMPTS)
        prompts: list[str] = list(_PAGE_TYPE_PROMPTS.get(context.summary.page_type, ()))
        if context.network is not None and context.network.errors:
            prompts.append("Debug these API errors")
        if context.content.tables:
            prompts.append("Analyze this data for patterns")
        if context.content.forms and "Help me fill out this form" not in prompts:
            prompts.append("Help me fill out this form")
        for prompt in _FALLBACK_PROMPTS:
            if len(prompts) >= 4:
                break
            if prompt not in prompts:
                prompts.append(prompt)
        return prompts[:4]

    # -- Chat --

    async def ask(
        self, message: str, client: AIChatClient, history: Sequence[ChatMessage] | None = None
    ) -> ChatReply:
        """Send the context-enhanced *message* to *client* and account its token usage."""
        enhanced = await self.enhance_prompt(message, history)
        reply = await client.send_message(enhanced.enhanced_message, list(history or ()))
        context_tokens = enhanced.context.token_count if enhanced.context is not None else 0
        tokens = reply.tokens_used or count_tokens(enhanced.enhanced_message) + count_tokens(reply.message)
        self._usage.record(tokens, context_tokens)
        logger.debug("Chat request: tokens=%d context_tokens=%d", tokens, context_tokens)
        return reply

    # -- Config --

    def update_config(self, config: ProviderConfig) -> None:
        self._config = config
        self._formatted = None
        self._aggregator.invalidate(InvalidationReason.CONFIG)

    def update_privacy_config(self, config: PrivacyConfig | None = None, **changes) -> PrivacyConfig:
        """Apply a new privacy policy; cached contexts are dropped immediately.

        Raises ConfigurationError and keeps the previous policy when invalid.
        """
        new = self._privacy.update_config(config, **changes)
        self._formatted = None
        self._aggregator.invalidate(InvalidationReason.PRIVACY_CONFIG)
        return new

    def _on_privacy_change(self, _event: Event) -> None:
        self._formatted = None

    def clear_cache(self) -> None:
        self._formatted = None
        self._suggestions.clear_cache()
