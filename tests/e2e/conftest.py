"""
E2E test configuration.

These tests use REAL Salesforce connections - no mocking.
"""

import os

import pytest

from sfrest.env_loader import load_env_files


@pytest.fixture(autouse=True)
def clean_sf_env():
    """
    Override the global clean_sf_env fixture from tests/conftest.py.

    E2E tests need the real SF_* credentials, so the environment is left alone.
    """
    load_env_files(quiet=True)


@pytest.fixture(autouse=True)
def dummy_api():
    """Override the global dummy_api fixture: the CLI talks to Salesforce for real."""


@pytest.fixture(scope="session")
def check_credentials():
    """Verify Salesforce credentials are available."""
    load_env_files(quiet=True)

    required_vars = [
        "SF_CLIENT_ID",
        "SF_CLIENT_SECRET",
        "SF_USERNAME",
        "SF_PASSWORD",
    ]

    missing = [v for v in required_vars if not os.environ.get(v)]
    if missing:
        pytest.skip(f"Missing credentials: {', '.join(missing)}")
