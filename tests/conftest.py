"""Shared test fixtures for the SDR agent test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    Provider credentials are blanked so a developer's ``.env`` never
    points the suite at a real CRM or calendar.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    for name in (
        "PIPEFY_API_TOKEN",
        "PIPEFY_PIPE_ID",
        "CALENDAR_PROVIDER",
        "CALENDLY_API_TOKEN",
        "GOOGLE_CLIENT_ID",
        "GOOGLE_CLIENT_SECRET",
        "GOOGLE_REFRESH_TOKEN",
    ):
        os.environ[name] = ""
    os.environ["METRICS_ENABLED"] = "false"


@pytest.fixture
def mock_http_response():
    """Factory fixture for creating mock httpx responses."""

    def _make(data: dict, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make
