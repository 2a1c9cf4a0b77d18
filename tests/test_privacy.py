# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for pagecontext.privacy: exclusion, redaction, consent, retention."""

from __future__ import annotations

from dataclasses import dataclass

import pytest

from pagecontext.dom_observer import InteractionType
from pagecontext.errors import ConfigurationError
from pagecontext.events import EventBus, EventType
from pagecontext.privacy import REDACTION_MARKER, PrivacyConfig, PrivacyController
from tests._fakes import FakeClock


def _make_controller(**config) -> PrivacyController:
    return PrivacyController(PrivacyConfig(**config))


@dataclass(frozen=True)
class _Snapshot:
    url: str
    text: str
    kind: InteractionType = InteractionType.CLICK
    tags: tuple[str, ...] = ()


class TestPrivacyConfig:
    def test_lists_become_tuples(self):
        cfg = PrivacyConfig(excluded_domains=["bank.example"], excluded_paths=["/account"])
        assert cfg.excluded_domains == ("bank.example",)
        assert cfg.excluded_paths == ("/account",)

    def test_single_string_rejected(self):
        with pytest.raises(ValueError):
            PrivacyConfig(excluded_domains="bank.example")

    def test_invalid_pattern_rejected(self):
        with pytest.raises(ValueError, match="invalid sensitive data pattern"):
            PrivacyConfig(sensitive_data_patterns=("([unclosed",))

    def test_retention_must_be_positive(self):
        with pytest.raises(ValueError):
            PrivacyConfig(data_retention_days=0)


class TestShouldMonitorUrl:
    def test_default_monitors_everything(self):
        assert _make_controller().should_monitor_url("https://example.com/any")

    def test_domain_exclusion_is_case_insensitive_substring(self):
        privacy = _make_controller(excluded_domains=("Bank.Example",))
        assert not privacy.should_monitor_url("https://www.bank.example/login")
        assert privacy.should_monitor_url("https://example.com/bank.example")

    def test_path_exclusion(self):
        privacy = _make_controller(excluded_paths=("/Checkout",))
        assert not privacy.should_monitor_url("https://shop.example/checkout/step1")
        assert privacy.should_monitor_url("https://shop.example/cart")

    def test_unparseable_url_not_monitored(self):
        assert not _make_controller().should_monitor_url("http://[::1")

    def test_consent_gate_checked_first(self):
        privacy = _make_controller(require_consent=True)
        assert not privacy.should_monitor_url("https://example.com/")
        privacy.set_consent(True)
        assert privacy.should_monitor_url("https://example.com/")


class TestRedaction:
    def test_card_number(self):
        out = _make_controller().redact("Pay with 4111 1111 1111 1111 today")
        assert out == f"Pay with {REDACTION_MARKER} today"

    def test_ssn(self):
        assert "123-45-6789" not in _make_controller().redact("SSN 123-45-6789")

    def test_query_param_value_only(self):
        out = _make_controller().redact("https://example.com/cb?token=abc123&page=2")
        assert out == f"https://example.com/cb?token={REDACTION_MARKER}&page=2"

    def test_idempotent_on_known_inputs(self):
        privacy = _make_controller()
        for text in ("card 4111-1111-1111-1111", "?api_key=xyz&token=1", "nothing here", ""):
            once = privacy.redact(text)
            assert privacy.redact(once) == once

    def test_disabled_redaction_returns_input(self):
        privacy = _make_controller(redact_sensitive_data=False)
        assert privacy.redact("4111 1111 1111 1111") == "4111 1111 1111 1111"
        assert not privacy.contains_sensitive_data("4111 1111 1111 1111")

    def test_contains_sensitive_data_ignores_markers(self):
        privacy = _make_controller()
        assert privacy.contains_sensitive_data("ssn 123-45-6789")
        assert not privacy.contains_sensitive_data(privacy.redact("ssn 123-45-6789"))

    def test_redaction_count(self):
        privacy = _make_controller()
        privacy.redact("4111 1111 1111 1111 and 123-45-6789")
        assert privacy.redaction_count == 2


class TestRedactionProperties:
    def test_redaction_idempotent_for_any_text(self):
        hypothesis = pytest.importorskip("hypothesis")
        st = pytest.importorskip("hypothesis.strategies")
        privacy = _make_controller()

        @hypothesis.given(
            st.text(alphabet="0123456789 -?&=tokenapi_kysRED[]ACT", max_size=80)
        )
        @hypothesis.settings(max_examples=200, deadline=None)
        def check(text: str) -> None:
            once = privacy.redact(text)
            assert privacy.redact(once) == once

        check()


class TestSanitizers:
    def test_network_record_copy_is_sanitized(self):
        privacy = _make_controller()
        record = {
            "url": "https://api.example.com/v1/me?access_token=s3cr3t",
            "headers": {"Authorization": "Bearer abc", "Accept": "application/json"},
            "body": b'{"card": "4111 1111 1111 1111"}',
        }
        out = privacy.sanitize_network_data(record)
        assert "s3cr3t" not in out["url"]
        assert out["headers"]["Authorization"] == REDACTION_MARKER
        assert out["headers"]["Accept"] == "application/json"
        assert "4111" not in out["body"]
        # input untouched
        assert record["headers"]["Authorization"] == "Bearer abc"
        assert record["url"].endswith("s3cr3t")

    def test_form_data_sensitive_names(self):
        out = _make_controller().sanitize_form_data({"password": "hunter2", "city": "Seoul", "card_no": "1"})
        assert out == {"password": REDACTION_MARKER, "city": "Seoul", "card_no": REDACTION_MARKER}

    def test_dom_content(self):
        assert "4111" not in _make_controller().sanitize_dom_content("<p>4111 1111 1111 1111</p>")


class TestFilterContext:
    def test_excluded_url_yields_none(self):
        privacy = _make_controller(excluded_domains=("bank.example",))
        assert privacy.filter_context(_Snapshot(url="https://bank.example/", text="hi")) is None

    def test_nested_strings_redacted_enums_kept(self):
        privacy = _make_controller()
        snap = _Snapshot(url="https://example.com/", text="card 4111 1111 1111 1111", tags=("123-45-6789",))
        out = privacy.filter_context(snap)
        assert "4111" not in out.text
        assert out.tags == (REDACTION_MARKER,)
        assert out.kind is InteractionType.CLICK
        assert snap.text.startswith("card 4111")


class TestConfigUpdates:
    def test_update_publishes_new_snapshot(self):
        bus = EventBus()
        events: list = []
        bus.subscribe(EventType.PRIVACY_CONFIG_CHANGED, events.append)
        privacy = PrivacyController(bus=bus)
        old = privacy.config
        new = privacy.update_config(excluded_domains=("bank.example",))
        assert privacy.config is new
        assert old.excluded_domains == ()
        assert [e.payload for e in events] == [new]

    def test_unchanged_update_is_silent(self):
        bus = EventBus()
        events: list = []
        bus.subscribe(EventType.PRIVACY_CONFIG_CHANGED, events.append)
        privacy = PrivacyController(bus=bus)
        privacy.update_config(PrivacyConfig())
        assert events == []

    def test_invalid_update_keeps_previous(self):
        privacy = _make_controller(excluded_paths=("/a",))
        with pytest.raises(ConfigurationError):
            privacy.update_config(data_retention_days=-1)
        assert privacy.config.excluded_paths == ("/a",)

    def test_new_patterns_take_effect(self):
        privacy = _make_controller()
        privacy.update_config(sensitive_data_patterns=(r"secret-\w+",))
        assert privacy.redact("id secret-xyz") == f"id {REDACTION_MARKER}"
        assert privacy.redact("123-45-6789") == "123-45-6789"


class TestConsentAndRetention:
    def test_withdrawing_consent_clears_log_and_notifies(self):
        bus = EventBus()
        events: list = []
        bus.subscribe(EventType.CONSENT_CHANGED, events.append)
        privacy = PrivacyController(PrivacyConfig(require_consent=True), bus=bus)
        privacy.set_consent(True)
        privacy.log_data_collection("network", "https://example.com/?token=t")
        assert len(privacy.get_data_collection_log()) == 1
        privacy.set_consent(False)
        assert privacy.get_data_collection_log() == []
        assert [e.payload for e in events] == [True, False]

    def test_collection_log_urls_are_redacted(self):
        privacy = _make_controller()
        privacy.log_data_collection("dom", "https://example.com/?token=abc")
        assert "abc" not in privacy.get_data_collection_log()[0].url

    def test_expiry_and_purge(self):
        clock = FakeClock()
        privacy = PrivacyController(PrivacyConfig(data_retention_days=1), clock=clock)
        privacy.log_data_collection("dom", "https://example.com/")
        assert not privacy.is_data_expired(clock.now - 3600)
        clock.advance(2 * 86400)
        privacy.log_data_collection("dom", "https://example.com/b")
        assert privacy.purge_expired() == 1
        assert len(privacy.get_data_collection_log()) == 1

    def test_privacy_report(self):
        clock = FakeClock()
        privacy = PrivacyController(PrivacyConfig(excluded_domains=("bank.example",)), clock=clock)
        privacy.log_data_collection("network", "https://example.com/")
        report = privacy.get_privacy_report()
        assert report.excluded_domains == ("bank.example",)
        assert report.recent_data_collection == 1
        assert report.generated_at == clock.now
        assert report.sensitive_data_redaction
