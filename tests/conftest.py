"""Shared fixtures for memlimit tests."""

import pytest
import structlog


@pytest.fixture(autouse=True)
def reset_logging():
    """Undo logging configuration done by CLI invocations."""
    yield
    structlog.reset_defaults()
