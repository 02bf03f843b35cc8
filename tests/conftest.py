"""Test configuration and fixtures."""

import pytest

from geoenrich.config import Settings
from geoenrich.services.kv_store import InMemoryKeyValueStore
from tests.fakes import RecordingSleep


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        mapbox_access_token="mapbox-test",
        geocodio_api_key="geocodio-test",
        gemini_api_key="gemini-test",
        pacing_delay_seconds=0,
        retry_base_delay_seconds=0,
        transient_retry_delay_seconds=0,
        concurrency_limit=4,
        checkpoint_interval=5,
    )


@pytest.fixture
def sleeper():
    return RecordingSleep()
