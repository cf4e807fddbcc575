"""
Pytest configuration and shared fixtures.
"""

import os
from collections.abc import Generator

import pytest

# Set test environment variables before importing app modules
os.environ.setdefault("TRADEFE_ENV", "development")
os.environ.setdefault("TRADEFE_LOG_LEVEL", "DEBUG")


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure a local .env cannot point tests at a real backend."""
    for var in (
        "TRADEFE_BACKEND_BASE_URL",
        "TRADEFE_STATUS_RECHECK_INTERVAL_S",
        "TRADEFE_TICK_HISTORY_LIMIT",
        "TRADEFE_BACKEND_MAX_RETRIES",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture(autouse=True)
def reset_singletons() -> Generator[None, None, None]:
    """Reset module-level singletons between tests."""
    yield

    from tradefe_engine.api import market_data_routes
    from tradefe_engine.config import get_settings

    market_data_routes._backend_client = None
    market_data_routes._market_controller = None
    get_settings.cache_clear()
