import pytest

from promptgate.core.config import settings

# Override settings for tests
settings.app_env = "development"
settings.gemini_api_key = ""
settings.google_cloud_project = ""
settings.fallback_chains = {}
settings.process_terminate_grace_seconds = 1.0


class FakeClock:
    """Manually advanced clock for credential expiry tests."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()
