"""Match commits to the Last.fm scrobble that was playing when they were made."""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, replace
from typing import Iterable, List, Optional, Tuple

DEFAULT_WINDOW_BEFORE = 600
DEFAULT_WINDOW_AFTER = 10


@dataclass(frozen=True, slots=True)
class Commit:
    """One line of `git log --format='%at %h %s'` output."""

    timestamp: int
    hash: str
    message: str


@dataclass(frozen=True, slots=True)
class ListeningEvent:
    """A scrobble returned by the listening-history service.

    `duration_seconds` is None while the track length is unknown.
    `start_timestamp` is None for "now playing" entries.
    """

    start_timestamp: Optional[int]
    track: str
    artist: str
    identifier: str = ""
    duration_seconds: Optional[int] = None
    now_playing: bool = False

    def with_duration(self, duration_seconds: Optional[int]) -> ListeningEvent:
        return replace(self, duration_seconds=duration_seconds)


@dataclass(frozen=True, slots=True)
class Match:
    commit: Commit
    event: ListeningEvent


@dataclass(frozen=True, slots=True)
class TrackKey:
    track: str
    artist: str


@dataclass(frozen=True, slots=True)
class TimeWindow:
    """Commit-relative query interval sent to the scrobble provider."""

    commit_timestamp: int
    before: int = DEFAULT_WINDOW_BEFORE
    after: int = DEFAULT_WINDOW_AFTER

    @property
    def start(self) -> int:
        return self.commit_timestamp - self.before

    @property
    def end(self) -> int:
        return self.commit_timestamp + self.after


def effective_duration(duration: Optional[int], assumed_duration: Optional[int]) -> Optional[int]:
    if duration is not None:
        return duration
    return assumed_duration


def is_eligible(commit_timestamp: int, event: ListeningEvent, assumed_duration: Optional[int] = None) -> bool:
    """Return True when *event* was playing at *commit_timestamp*.

    An event with no known duration is only eligible when an assumed duration
    is supplied; with ``assumed_duration=None`` it never matches.
    """
    if event.now_playing or event.start_timestamp is None:
        return False
    duration = effective_duration(event.duration_seconds, assumed_duration)
    if duration is None:
        return False
    start = event.start_timestamp
    return start <= commit_timestamp and start + duration >= commit_timestamp


def find_match(
    commit: Commit,
    candidates: Iterable[ListeningEvent],
    assumed_duration: Optional[int] = None,
) -> Optional[Match]:
    """Pick the most recently started eligible scrobble for *commit*.

    Candidates sharing a start time keep the order the provider returned them in.
    """
    ordered = sorted(
        (event for event in candidates if event.start_timestamp is not None),
        key=lambda event: event.start_timestamp,
        reverse=True,
    )
    for event in ordered:
        if is_eligible(commit.timestamp, event, assumed_duration):
            return Match(commit=commit, event=event)
    return None


def _ranked(counts: Counter, n: int) -> List[tuple]:
    # sorted() is stable, so ties keep first-seen order.
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    return ranked[: max(n, 0)]


class StatsAggregator:
    """Running artist and track frequency tables for one pipeline run."""

    def __init__(self) -> None:
        self._artists: Counter = Counter()
        self._tracks: Counter = Counter()
        self._lock = threading.Lock()

    def record(self, match: Match) -> None:
        event = match.event
        with self._lock:
            self._artists[event.artist] += 1
            self._tracks[TrackKey(event.track, event.artist)] += 1

    @property
    def total(self) -> int:
        with self._lock:
            return sum(self._artists.values())

    def top_artists(self, n: int) -> List[Tuple[str, int]]:
        with self._lock:
            return [(artist, count) for artist, count in _ranked(self._artists, n)]

    def top_tracks(self, n: int) -> List[Tuple[str, str, int]]:
        with self._lock:
            return [(key.track, key.artist, count) for key, count in _ranked(self._tracks, n)]


__all__ = [
    "Commit",
    "DEFAULT_WINDOW_AFTER",
    "DEFAULT_WINDOW_BEFORE",
    "ListeningEvent",
    "Match",
    "StatsAggregator",
    "TimeWindow",
    "TrackKey",
    "effective_duration",
    "find_match",
    "is_eligible",
]
