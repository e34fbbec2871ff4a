"""Shared fakes for the git-scrobbler test suite."""

from typing import Dict, List, Optional, Tuple

import pytest

from config import Settings
from scrobble_matching import ListeningEvent

ENV_NAMES = [
    "LASTFM_API_KEY",
    "LASTFM_APIKEY",
    "LASTFM_USERNAME",
    "LASTFM_USER",
    "LASTFM_REQUESTS_PER_SEC",
    "LASTFM_TIMEOUT",
    "MAX_WORKERS",
    "WINDOW_BEFORE_SECONDS",
    "WINDOW_AFTER_SECONDS",
    "UNKNOWN_DURATION_POLICY",
    "ASSUMED_TRACK_SECONDS",
    "TOP_N",
    "DISPLAY_UTC",
    "LOG_LEVEL",
]


class FakeScrobbles:
    """Scrobble provider keyed by commit timestamp (window start + 600)."""

    def __init__(self, by_commit: Optional[Dict[int, List[ListeningEvent]]] = None, window_before: int = 600):
        self.by_commit = by_commit or {}
        self.window_before = window_before
        self.calls: List[Tuple[str, int, int]] = []
        self.failing: set = set()

    def get_recent_tracks(self, username: str, from_ts: int, to_ts: int) -> List[ListeningEvent]:
        self.calls.append((username, from_ts, to_ts))
        commit_ts = from_ts + self.window_before
        if commit_ts in self.failing:
            raise ConnectionError("connection reset by peer")
        return list(self.by_commit.get(commit_ts, []))


class FakeDurations:
    def __init__(self, durations: Optional[Dict[str, Optional[int]]] = None):
        self.durations = durations or {}
        self.calls: List[str] = []

    def get_track_duration(self, identifier: str, artist: str = "", track: str = "") -> Optional[int]:
        self.calls.append(identifier)
        return self.durations.get(identifier)


class FakeClient(FakeScrobbles, FakeDurations):
    def __init__(self, by_commit=None, durations=None):
        FakeScrobbles.__init__(self, by_commit)
        FakeDurations.__init__(self, durations)
        self.api_calls = 0
        self.cache_hits = 0


def event(start, track="Familiar", artist="Nils Frahm", identifier="", duration=None, now_playing=False):
    return ListeningEvent(
        start_timestamp=start,
        track=track,
        artist=artist,
        identifier=identifier,
        duration_seconds=duration,
        now_playing=now_playing,
    )


def make_settings(**overrides) -> Settings:
    values = dict(
        lastfm_api_key="key",
        lastfm_username="cody",
        lastfm_requests_per_sec=1000.0,
        request_timeout=5.0,
        max_workers=1,
        window_before_seconds=600,
        window_after_seconds=10,
        unknown_duration_policy="assume",
        assumed_track_seconds=240,
        top_n=10,
        display_utc=True,
        log_level="INFO",
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    yield
