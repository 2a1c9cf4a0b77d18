# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Monitoring configuration: one frozen object per component plus feature flags.

Settings arrive as plain mappings (from a settings UI or a YAML file) and
are turned into validated dataclasses here.  Any invalid value raises
``ConfigurationError``; callers keep whatever configuration they had.

Example YAML::

    features:
      network_monitoring: false
    privacy:
      excluded_domains: [bank.example.com]
      require_consent: true
    aggregator:
      cache_ttl: 10
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .context_aggregator import AggregatorConfig
from .context_provider import ProviderConfig
from .dom_observer import DOMObserverConfig
from .errors import ConfigurationError
from .network_monitor import NetworkMonitorConfig
from .privacy import PrivacyConfig
from .resilience import ErrorRecoveryConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class FeatureConfig:
    """Which observers the monitor starts."""

    dom_monitoring: bool = True
    network_monitoring: bool = True
    semantic_extraction: bool = True
    interaction_tracking: bool = True


@dataclass(frozen=True, slots=True)
class MonitoringConfig:
    features: FeatureConfig = field(default_factory=FeatureConfig)
    dom: DOMObserverConfig = field(default_factory=DOMObserverConfig)
    network: NetworkMonitorConfig = field(default_factory=NetworkMonitorConfig)
    aggregator: AggregatorConfig = field(default_factory=AggregatorConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    errors: ErrorRecoveryConfig = field(default_factory=ErrorRecoveryConfig)
    privacy: PrivacyConfig = field(default_factory=PrivacyConfig)


_SECTIONS: dict[str, type] = {
    "features": FeatureConfig,
    "dom": DOMObserverConfig,
    "network": NetworkMonitorConfig,
    "aggregator": AggregatorConfig,
    "provider": ProviderConfig,
    "errors": ErrorRecoveryConfig,
    "privacy": PrivacyConfig,
}


def _build_section(name: str, cls: type, data: Any) -> Any:
    if data is None:
        return cls()
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"config section '{name}' must be a mapping, got {type(data).__name__}")
    known = {f.name for f in dataclasses.fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"unknown keys in config section '{name}': {', '.join(map(str, unknown))}")
    try:
        return cls(**data)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"invalid config section '{name}': {exc}") from exc


def from_mapping(data: Mapping[str, Any] | None) -> MonitoringConfig:
    """Build a validated MonitoringConfig from nested settings data."""
    if data is None:
        return MonitoringConfig()
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"config root must be a mapping, got {type(data).__name__}")
    unknown = sorted(set(data) - set(_SECTIONS))
    if unknown:
        raise ConfigurationError(f"unknown config sections: {', '.join(map(str, unknown))}")
    sections = {name: _build_section(name, cls, data.get(name)) for name, cls in _SECTIONS.items()}
    return MonitoringConfig(**sections)


def load_config(path: str | Path) -> MonitoringConfig:
    """Read a YAML config file.  An empty file yields the defaults."""
    path = Path(path)
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigurationError(f"cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"invalid YAML in {path}: {exc}") from exc
    config = from_mapping(data)
    logger.info("Loaded monitoring config from %s", path)
    return config
