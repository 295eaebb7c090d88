"""Shared test fixtures for the Clinic Front Desk test suite."""

from __future__ import annotations

import os
from unittest.mock import MagicMock

import pytest


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any test module is imported, so config.py won't fail on
    module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("METRICS_ENABLED", "false")
    os.environ.setdefault("STORE_BACKEND", "memory")


@pytest.fixture
def mock_fhir_response():
    """Factory fixture for creating mock FHIR server responses."""

    def _make(data: dict, status_code: int = 200):
        mock = MagicMock()
        mock.status_code = status_code
        mock.json.return_value = data
        mock.text = str(data)
        return mock

    return _make


@pytest.fixture
def bundle():
    """Factory fixture wrapping resources in a FHIR searchset Bundle."""

    def _make(*resources: dict) -> dict:
        return {
            "resourceType": "Bundle",
            "type": "searchset",
            "entry": [{"resource": r} for r in resources],
        }

    return _make
