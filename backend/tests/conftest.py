"""Pytest fixtures and configuration for test suite

This module provides:
1. Settings built in isolation from the developer's .env files
2. A recording stand-in for asyncio.sleep so retry delays are instant
3. Sample image bytes and a recording image handler
"""
from unittest.mock import AsyncMock

import pytest

from mvwatch.core.config import Settings
from tests.mocks import SAMPLE_JPEG


def make_settings(**overrides) -> Settings:
    """
    Factory for Settings with every required value filled in.

    Env files are ignored so tests never pick up a local ~/.meraki.env.

    Example:
        config = make_settings(USE_OPENALPR=True, OPENALPR_SECRET_KEY="sk_test")
    """
    values = {
        "MERAKI_API_KEY": "test-api-key",
        "MERAKI_ORG_NAME": "Test Org",
        "MERAKI_NETWORK_NAME": "Test Network",
        "MERAKI_BASE_URL": "https://dashboard.test/api/v0",
        "MQTT_CAMERAS": "/merakimv/ABC123/0, /merakimv/XYZ789/0",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def test_settings() -> Settings:
    return make_settings()


@pytest.fixture
def sample_jpeg() -> bytes:
    return SAMPLE_JPEG


@pytest.fixture
def fake_sleep() -> AsyncMock:
    """Replaces asyncio.sleep; inspect await_args_list for the requested delays."""
    return AsyncMock(return_value=None)


@pytest.fixture
def image_handler() -> AsyncMock:
    """Image handler that records (camera_id, occurred_at, image) calls."""
    return AsyncMock(return_value=None)
