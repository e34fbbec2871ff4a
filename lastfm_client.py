"""Last.fm web service client used as scrobble and track-duration provider."""

from __future__ import annotations

import json
import logging
import threading
import time
from typing import Any, Dict, List, Optional

import requests

from scrobble_matching import ListeningEvent

LOG = logging.getLogger("lastfm_client")

LASTFM_API_URL = "https://ws.audioscrobbler.com/2.0/"
RECENT_TRACKS_LIMIT = 200


class LastFMClient:
    def __init__(self, api_key: str, rate_limit_per_sec: float, timeout: float = 20.0) -> None:
        self.api_key = api_key
        self.rate_interval = 1.0 / max(rate_limit_per_sec, 0.01)
        self.timeout = timeout
        self._cache: Dict[str, Any] = {}
        self._cache_lock = threading.Lock()
        self._request_lock = threading.Lock()
        self._last_request_ts = 0.0
        self.cache_hits = 0
        self.api_calls = 0

        self.session = requests.Session()
        self.session.headers.update({"User-Agent": "git-scrobbler"})

    def rate_limited_get(self, method: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        cache_key = self._cache_key(method, params)
        with self._cache_lock:
            if cache_key in self._cache:
                self.cache_hits += 1
                LOG.debug("Cache hit for %s", method)
                return self._cache[cache_key]

        request_params = dict(params)
        request_params["method"] = method
        request_params["api_key"] = self.api_key
        request_params["format"] = "json"

        with self._request_lock:
            now = time.monotonic()
            wait_for = self._last_request_ts + self.rate_interval - now
            if wait_for > 0:
                time.sleep(wait_for)
            self._last_request_ts = time.monotonic()
        try:
            response = self.session.get(LASTFM_API_URL, params=request_params, timeout=self.timeout)
            self.api_calls += 1
        except requests.RequestException as exc:
            LOG.warning("Last.fm request error for %s: %s", method, exc)
            return None

        if response.status_code != 200:
            LOG.warning("Unexpected Last.fm status %s for %s", response.status_code, method)
            return None

        try:
            payload = response.json()
        except ValueError:
            LOG.warning("Invalid JSON response from Last.fm for %s", method)
            return None

        if not isinstance(payload, dict):
            LOG.warning("Last.fm returned a non-object payload for %s", method)
            return None
        if "error" in payload:
            LOG.debug("Last.fm reported error %s for %s", payload.get("message", payload.get("error")), method)
            return None

        with self._cache_lock:
            self._cache[cache_key] = payload
        return payload

    def get_recent_tracks(self, username: str, from_ts: int, to_ts: int) -> List[ListeningEvent]:
        """Return the scrobbles of *username* between two unix timestamps (inclusive).

        Any transport or decoding problem yields an empty list.
        """
        payload = self.rate_limited_get(
            "user.getrecenttracks",
            {
                "user": username,
                "from": str(from_ts),
                "to": str(to_ts),
                "limit": str(RECENT_TRACKS_LIMIT),
            },
        )
        if not payload:
            return []

        recent = payload.get("recenttracks")
        if not isinstance(recent, dict):
            LOG.warning("Unexpected response format for recent tracks of %s", username)
            return []
        entries = recent.get("track", [])
        if isinstance(entries, dict):
            entries = [entries]
        if not isinstance(entries, list):
            return []

        events: List[ListeningEvent] = []
        for entry in entries:
            event = parse_recent_track(entry)
            if event is None:
                LOG.debug("Skipping malformed recent track entry: %r", entry)
                continue
            events.append(event)
        LOG.debug("Window %d..%d returned %d scrobble(s) for %s", from_ts, to_ts, len(events), username)
        return events

    def get_track_duration(self, identifier: str, artist: str = "", track: str = "") -> Optional[int]:
        """Look up a track length in seconds, or None when Last.fm does not know it."""
        if identifier:
            duration = self._lookup_duration({"mbid": identifier})
            if duration is not None:
                return duration
        if artist and track:
            return self._lookup_duration({"artist": artist, "track": track, "autocorrect": "1"})
        return None

    def _lookup_duration(self, params: Dict[str, Any]) -> Optional[int]:
        payload = self.rate_limited_get("track.getInfo", params)
        if not payload:
            return None
        track_payload = payload.get("track")
        if not isinstance(track_payload, dict):
            return None
        return parse_duration_ms(track_payload.get("duration"))

    def _cache_key(self, method: str, params: Dict[str, Any]) -> str:
        items = tuple(sorted((k, str(v)) for k, v in params.items()))
        return json.dumps([method, items], separators=(",", ":"))


def parse_recent_track(entry: Any) -> Optional[ListeningEvent]:
    if not isinstance(entry, dict):
        return None
    name = str(entry.get("name", "")).strip()
    artist = _text_of(entry.get("artist"))
    if not name or not artist:
        return None

    attrs = entry.get("@attr")
    now_playing = isinstance(attrs, dict) and str(attrs.get("nowplaying", "")).lower() == "true"

    start_timestamp: Optional[int] = None
    date = entry.get("date")
    if isinstance(date, dict):
        try:
            start_timestamp = int(date.get("uts"))
        except (TypeError, ValueError):
            start_timestamp = None
    if start_timestamp is None and not now_playing:
        return None

    return ListeningEvent(
        start_timestamp=start_timestamp,
        track=name,
        artist=artist,
        identifier=str(entry.get("mbid") or "").strip(),
        now_playing=now_playing,
    )


def parse_duration_ms(raw: Any) -> Optional[int]:
    # track.getInfo reports milliseconds; "0" means Last.fm has no length on record.
    try:
        duration_ms = int(raw)
    except (TypeError, ValueError):
        return None
    if duration_ms <= 0:
        return None
    return duration_ms // 1000


def _text_of(value: Any) -> str:
    if isinstance(value, dict):
        return str(value.get("#text") or value.get("name") or "").strip()
    if isinstance(value, str):
        return value.strip()
    return ""
