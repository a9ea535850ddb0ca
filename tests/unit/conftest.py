"""Unit test fixtures."""

from __future__ import annotations

import pytest

from tests.unit.fakes import FakeClock, FakeStore


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> FakeStore:
    return FakeStore(clock)
