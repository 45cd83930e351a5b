"""Shared fixtures for resilience component tests."""

import pytest

from callguard.resilience.registry import ResilienceRegistry


@pytest.fixture
def registry(clock):
    """Fresh registry per test; nothing is shared across tests."""
    return ResilienceRegistry(clock=clock)
