"""Unit tests for the Last.fm client."""

import logging
from unittest.mock import MagicMock

import pytest
import requests

from lastfm_client import LASTFM_API_URL, LastFMClient, parse_duration_ms, parse_recent_track


def response(payload=None, status_code=200, json_error=False):
    resp = MagicMock()
    resp.status_code = status_code
    if json_error:
        resp.json.side_effect = ValueError("Expecting value")
    else:
        resp.json.return_value = payload
    return resp


@pytest.fixture
def client():
    lastfm = LastFMClient("secret", rate_limit_per_sec=1000.0, timeout=5.0)
    lastfm.session = MagicMock()
    return lastfm


def recent_payload(*tracks):
    return {"recenttracks": {"track": list(tracks), "@attr": {"user": "cody"}}}


def scrobble(name, artist, uts=None, mbid="", nowplaying=False):
    entry = {"name": name, "artist": {"#text": artist, "mbid": ""}, "mbid": mbid}
    if uts is not None:
        entry["date"] = {"uts": str(uts), "#text": "01 Jan 1970, 00:16"}
    if nowplaying:
        entry["@attr"] = {"nowplaying": "true"}
    return entry


class TestRateLimitedGet:
    def test_sends_method_key_and_json_format(self, client):
        client.session.get.return_value = response({"ok": True})

        assert client.rate_limited_get("track.getInfo", {"mbid": "m1"}) == {"ok": True}

        args, kwargs = client.session.get.call_args
        assert args[0] == LASTFM_API_URL
        assert kwargs["params"] == {"mbid": "m1", "method": "track.getInfo", "api_key": "secret", "format": "json"}
        assert kwargs["timeout"] == 5.0
        assert client.api_calls == 1

    def test_repeated_request_is_served_from_cache(self, client):
        client.session.get.return_value = response({"ok": True})

        client.rate_limited_get("track.getInfo", {"mbid": "m1"})
        client.rate_limited_get("track.getInfo", {"mbid": "m1"})

        assert client.session.get.call_count == 1
        assert client.cache_hits == 1

    def test_cache_hit_is_logged_at_debug(self, client, caplog):
        client.session.get.return_value = response({"ok": True})

        with caplog.at_level(logging.DEBUG, logger="lastfm_client"):
            client.rate_limited_get("track.getInfo", {"mbid": "m1"})
            client.rate_limited_get("track.getInfo", {"mbid": "m1"})

        assert "Cache hit for track.getInfo" in caplog.text

    def test_transport_error_returns_none(self, client):
        client.session.get.side_effect = requests.ConnectionError("boom")
        assert client.rate_limited_get("track.getInfo", {"mbid": "m1"}) is None

    def test_non_200_returns_none_without_retry(self, client):
        client.session.get.return_value = response({}, status_code=503)
        assert client.rate_limited_get("track.getInfo", {"mbid": "m1"}) is None
        assert client.session.get.call_count == 1

    def test_invalid_json_returns_none(self, client):
        client.session.get.return_value = response(json_error=True)
        assert client.rate_limited_get("track.getInfo", {"mbid": "m1"}) is None

    def test_api_error_payload_returns_none_and_is_not_cached(self, client):
        client.session.get.return_value = response({"error": 6, "message": "Track not found"})

        assert client.rate_limited_get("track.getInfo", {"mbid": "m1"}) is None
        assert client.rate_limited_get("track.getInfo", {"mbid": "m1"}) is None
        assert client.session.get.call_count == 2


class TestGetRecentTracks:
    def test_requests_the_window(self, client):
        client.session.get.return_value = response(recent_payload())

        client.get_recent_tracks("cody", 400, 1010)

        params = client.session.get.call_args.kwargs["params"]
        assert params["method"] == "user.getrecenttracks"
        assert params["user"] == "cody"
        assert params["from"] == "400"
        assert params["to"] == "1010"
        assert params["limit"] == "200"

    def test_parses_scrobbles_and_now_playing(self, client):
        client.session.get.return_value = response(
            recent_payload(
                scrobble("Partisans", "Ólafur Arnalds", nowplaying=True),
                scrobble("Familiar", "Nils Frahm", uts=950, mbid="m-fam"),
            )
        )

        events = client.get_recent_tracks("cody", 400, 1010)

        assert len(events) == 2
        assert events[0].now_playing is True
        assert events[0].start_timestamp is None
        assert events[1].now_playing is False
        assert events[1].start_timestamp == 950
        assert events[1].track == "Familiar"
        assert events[1].artist == "Nils Frahm"
        assert events[1].identifier == "m-fam"
        assert events[1].duration_seconds is None

    def test_single_track_object_is_accepted(self, client):
        client.session.get.return_value = response(
            {"recenttracks": {"track": scrobble("Invincible", "Tool", uts=990)}}
        )
        events = client.get_recent_tracks("cody", 400, 1010)
        assert [e.track for e in events] == ["Invincible"]

    def test_malformed_entries_are_skipped(self, client):
        client.session.get.return_value = response(
            recent_payload(
                "garbage",
                {"name": "No Artist"},
                {"name": "No date", "artist": {"#text": "Tool"}},
                scrobble("Familiar", "Nils Frahm", uts=950),
            )
        )
        events = client.get_recent_tracks("cody", 400, 1010)
        assert [e.track for e in events] == ["Familiar"]

    def test_failure_yields_empty_list(self, client):
        client.session.get.side_effect = requests.Timeout("slow")
        assert client.get_recent_tracks("cody", 400, 1010) == []

    def test_unexpected_shape_yields_empty_list(self, client):
        client.session.get.return_value = response({"recenttracks": "nope"})
        assert client.get_recent_tracks("cody", 400, 1010) == []


class TestGetTrackDuration:
    def test_converts_milliseconds_to_seconds(self, client):
        client.session.get.return_value = response({"track": {"duration": "236500"}})
        assert client.get_track_duration("m-fam") == 236
        assert client.session.get.call_args.kwargs["params"]["mbid"] == "m-fam"

    def test_zero_duration_is_unknown(self, client):
        client.session.get.return_value = response({"track": {"duration": "0"}})
        assert client.get_track_duration("m-fam") is None

    def test_falls_back_to_artist_and_track_without_mbid(self, client):
        client.session.get.return_value = response({"track": {"duration": "210000"}})

        assert client.get_track_duration("", artist="Nils Frahm", track="Familiar") == 210

        params = client.session.get.call_args.kwargs["params"]
        assert params["artist"] == "Nils Frahm"
        assert params["track"] == "Familiar"
        assert "mbid" not in params

    def test_falls_back_to_artist_and_track_when_mbid_unknown(self, client):
        client.session.get.side_effect = [
            response({"error": 6, "message": "Track not found"}),
            response({"track": {"duration": "180000"}}),
        ]
        assert client.get_track_duration("stale-mbid", artist="Tool", track="Invincible") == 180
        assert client.session.get.call_count == 2

    def test_no_identifier_and_no_names_is_unknown(self, client):
        assert client.get_track_duration("") is None
        client.session.get.assert_not_called()

    def test_failure_is_unknown(self, client):
        client.session.get.side_effect = requests.ConnectionError("down")
        assert client.get_track_duration("m-fam") is None


class TestParsers:
    @pytest.mark.parametrize(
        "raw,expected",
        [("240000", 240), (1999, 1), ("0", None), ("-5", None), (None, None), ("abc", None)],
    )
    def test_parse_duration_ms(self, raw, expected):
        assert parse_duration_ms(raw) == expected

    def test_parse_recent_track_accepts_plain_artist_name(self):
        parsed = parse_recent_track({"name": "Says", "artist": {"name": "Nils Frahm"}, "date": {"uts": "5"}})
        assert parsed.artist == "Nils Frahm"
        assert parsed.start_timestamp == 5
        assert parsed.identifier == ""
