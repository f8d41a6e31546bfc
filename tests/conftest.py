"""Pytest configuration."""

from __future__ import annotations

import pytest

from tests.helpers.fakes import FakeServer


@pytest.fixture
def server() -> FakeServer:
    return FakeServer()
