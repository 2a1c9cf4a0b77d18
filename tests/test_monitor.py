# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for pagecontext.monitor: wiring, lifecycle, fallback and health."""

from __future__ import annotations

import pytest

from pagecontext.config import FeatureConfig, MonitoringConfig
from pagecontext.events import EventType
from pagecontext.monitor import ComponentStatus, PageContextMonitor
from pagecontext.network_monitor import InterceptTarget
from pagecontext.ports import ElementInfo, ObservationKind, RawInteraction
from pagecontext.privacy import PrivacyConfig
from tests._fakes import FakeClock, FakePort


class _Api:
    def fetch(self, url, *, method="GET", headers=None, body=None):
        return {"status": 200}


def _make_monitor(document, *, port=None, api=None, config=None) -> tuple[PageContextMonitor, FakePort, _Api]:
    port = port or FakePort(document.url)
    api = api or _Api()
    monitor = PageContextMonitor(
        port,
        document,
        targets=[InterceptTarget(owner=api, attribute="fetch")],
        config=config,
        clock=FakeClock(),
        monotonic=FakeClock(start=1000.0),
    )
    return monitor, port, api


def _click(port: FakePort) -> None:
    port.emit(ObservationKind.INTERACTION, RawInteraction("click", ElementInfo("button", text="Send")))


class TestLifecycle:
    def test_start_wires_observers(self, form_document):
        monitor, port, api = _make_monitor(form_document)
        monitor.start()
        monitor.start()
        assert monitor.is_active
        assert len(port.callbacks[ObservationKind.MUTATION]) == 1
        assert "fetch" in vars(api)
        health = monitor.get_health()
        assert health["dom_observer"].status is ComponentStatus.HEALTHY
        assert health["network_monitor"].status is ComponentStatus.HEALTHY
        assert health["context_aggregator"].status is ComponentStatus.HEALTHY
        monitor.stop()

    def test_pause_and_resume(self, form_document):
        monitor, port, api = _make_monitor(form_document)
        monitor.start()
        monitor.pause()
        assert monitor.is_paused
        assert not monitor.is_active
        assert not monitor.dom_observer.is_observing
        api.fetch("https://example.com/api/ignored")
        assert monitor.network_monitor.get_statistics().total_requests == 0

        monitor.resume()
        assert monitor.dom_observer.is_observing
        api.fetch("https://example.com/api/recorded")
        _click(port)
        assert monitor.network_monitor.get_statistics().total_requests == 1
        assert len(monitor.dom_observer.get_recent_interactions()) == 1
        monitor.stop()

    def test_stop_restores_and_keeps_data(self, form_document):
        monitor, port, api = _make_monitor(form_document)
        monitor.start()
        api.fetch("https://example.com/api/a")
        monitor.stop()
        monitor.stop()
        assert "fetch" not in vars(api)
        assert port.callbacks[ObservationKind.MUTATION] == []
        assert monitor.network_monitor.get_statistics().total_requests == 1
        health = monitor.get_health()
        assert health["dom_observer"].status is ComponentStatus.STOPPED
        assert health["network_monitor"].status is ComponentStatus.STOPPED

    def test_destroy_is_final(self, form_document):
        monitor, _, api = _make_monitor(form_document)
        monitor.start()
        api.fetch("https://example.com/api/a")
        monitor.destroy()
        assert monitor.is_destroyed
        assert monitor.network_monitor.get_statistics().total_requests == 0
        assert monitor.bus.subscriber_count(EventType.CONSENT_CHANGED) == 0
        assert monitor.bus.subscriber_count(EventType.PRIVACY_CONFIG_CHANGED) == 0
        monitor.start()
        assert not monitor.is_active


class TestFeatures:
    def test_disabled_observers(self, form_document):
        config = MonitoringConfig(features=FeatureConfig(dom_monitoring=False, network_monitoring=False))
        monitor, port, api = _make_monitor(form_document, config=config)
        monitor.start()
        assert monitor.dom_observer is None
        assert monitor.network_monitor is None
        assert port.callbacks == {}
        assert "fetch" not in vars(api)
        health = monitor.get_health()
        assert health["dom_observer"].status is ComponentStatus.DISABLED
        assert health["network_monitor"].status is ComponentStatus.DISABLED
        monitor.stop()

    def test_interaction_tracking_off(self, form_document):
        config = MonitoringConfig(features=FeatureConfig(interaction_tracking=False))
        monitor, port, _ = _make_monitor(form_document, config=config)
        monitor.start()
        assert ObservationKind.INTERACTION not in port.callbacks
        assert ObservationKind.MUTATION in port.callbacks
        monitor.stop()


class TestFallback:
    def test_missing_mutation_observation_degrades_dom_only(self, form_document):
        port = FakePort(form_document.url, supported={ObservationKind.INTERACTION})
        monitor, _, api = _make_monitor(form_document, port=port)
        monitor.start()
        assert monitor.is_active
        api.fetch("https://example.com/api/a")
        assert monitor.network_monitor.get_statistics().total_requests == 1
        health = monitor.get_health()
        assert health["dom_observer"].status is ComponentStatus.DEGRADED
        assert "mutation" in health["dom_observer"].detail
        assert health["dom_observer"].error_count == 1
        assert health["network_monitor"].status is ComponentStatus.HEALTHY
        monitor.stop()

    @pytest.mark.asyncio
    async def test_context_still_aggregates(self, form_document):
        port = FakePort(form_document.url, supported=set())
        monitor, _, _ = _make_monitor(form_document, port=port)
        monitor.start()
        try:
            context = await monitor.get_context()
            formatted = await monitor.provider.get_ai_formatted_context()
        finally:
            monitor.stop()
        assert context.summary.page_type == "form"
        assert formatted.has_context


class TestConsent:
    def test_withdrawal_clears_collected_data(self, form_document):
        config = MonitoringConfig(privacy=PrivacyConfig(require_consent=True))
        monitor, port, api = _make_monitor(form_document, config=config)
        monitor.privacy.set_consent(True)
        monitor.start()
        api.fetch("https://example.com/api/a")
        _click(port)
        assert monitor.network_monitor.get_statistics().total_requests == 1
        assert len(monitor.dom_observer.get_recent_interactions()) == 1

        monitor.privacy.set_consent(False)
        assert monitor.network_monitor.get_statistics().total_requests == 0
        assert len(monitor.dom_observer.get_recent_interactions()) == 0
        monitor.stop()

    def test_withdrawal_without_consent_policy_keeps_data(self, form_document):
        monitor, _, api = _make_monitor(form_document)
        monitor.privacy.set_consent(True)
        monitor.start()
        api.fetch("https://example.com/api/a")
        monitor.privacy.set_consent(False)
        assert monitor.network_monitor.get_statistics().total_requests == 1
        monitor.stop()


class TestContext:
    @pytest.mark.asyncio
    async def test_paused_monitor_serves_no_provider_context(self, form_document):
        monitor, _, _ = _make_monitor(form_document)
        monitor.start()
        assert await monitor.provider.get_current_context() is not None
        monitor.pause()
        assert await monitor.provider.get_current_context() is None
        monitor.stop()

    @pytest.mark.asyncio
    async def test_form_page_with_activity(self, form_document):
        monitor, port, api = _make_monitor(form_document)
        monitor.start()
        try:
            api.fetch("https://example.com/api/contact/options")
            _click(port)
            context = await monitor.get_context()
            suggestions = await monitor.provider.generate_suggestions()
        finally:
            monitor.stop()
        assert context.summary.page_type == "form"
        assert [f.endpoint for f in context.summary.data_flows] == ["https://example.com/api/contact/options"]
        assert context.summary.user_activity.recent_interactions == 1
        assert suggestions[0].title == "Smart Form Assistant"
