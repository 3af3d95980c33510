import pytest

from provkit.config.settings import settings


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    """Shrink the provider retry backoff so retried requests finish quickly."""
    monkeypatch.setattr(settings, "http_base_delay", 0.001)
    monkeypatch.setattr(settings, "http_max_delay", 0.005)
    monkeypatch.setattr(settings, "http_backoff_multiplier", 1.0)
