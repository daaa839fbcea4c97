"""Shared fixtures: a controllable clock and a bootstrap environment."""
import pytest

MASTER_SECRET = "Xk9-mQ2_vL7pR4tW8zB3nC6yH1jF5dS0aE"
JWT_SECRET = "jwt-Secret_Value_0123456789_abcdefXYZ"


class FakeClock:
    """Callable clock returning POSIX seconds, advanced manually."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    """Fake clock starting at a fixed POSIX time."""
    return FakeClock()


@pytest.fixture
def environ():
    """Environment with bootstrap secrets and four service keys."""
    return {
        "API_KEYS_ENCRYPTION_KEY": MASTER_SECRET,
        "JWT_SECRET": JWT_SECRET,
        "OPENROUTE_API_KEY": "ors-initial-key",
        "MAPBOX_SECRET_TOKEN": "mapbox-initial-token",
        "OPENWEATHER_API_KEY": "weather-initial-key",
        "STRAVA_CLIENT_SECRET": "strava-initial-secret",
    }
