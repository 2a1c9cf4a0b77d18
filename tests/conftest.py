# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures."""

try:
    import pagecontext  # noqa: F401
except ImportError:
    raise ImportError("pagecontext is not installed. Run: pip install -e '.[test]'") from None

import pytest

from tests._fakes import FORM_PAGE, FakeClock, FakeDocument, FakePort


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def monotonic() -> FakeClock:
    return FakeClock(start=1000.0)


@pytest.fixture
def port() -> FakePort:
    return FakePort()


@pytest.fixture
def form_document() -> FakeDocument:
    return FakeDocument("https://example.com/contact", FORM_PAGE, "Contact us")
