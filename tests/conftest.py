"""Global test fixtures."""

import pytest


@pytest.fixture(autouse=True)
def _isolate_config_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep a developer's EVENTCACHE_* file settings out of the tests."""
    monkeypatch.delenv("EVENTCACHE_CONFIG_FILE", raising=False)
    monkeypatch.delenv("EVENTCACHE_LOG_FILE", raising=False)
