#!/usr/bin/env python3
"""Cross-reference git commit history with Last.fm scrobbles.

Reads `git log --format='%at %h %s'` output, prints the track that was playing
for every commit it can place, then the artists and tracks you commit to most.
"""

from __future__ import annotations

import argparse
import io
import logging
import sys
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, Iterable, Iterator, List, Optional, Protocol, Sequence, TextIO, Tuple

from rich.console import Console
from rich.logging import RichHandler

from config import ConfigurationError, Settings as AppSettings, get_settings
from lastfm_client import LastFMClient
from scrobble_matching import (
    DEFAULT_WINDOW_AFTER,
    DEFAULT_WINDOW_BEFORE,
    Commit,
    ListeningEvent,
    Match,
    StatsAggregator,
    TimeWindow,
    find_match,
)

LOG = logging.getLogger("git_scrobbler")

GIT_LOG_HINT = "git log --format='%at %h %s' | git-scrobbler --username <your-last.fm-username> --apikey <your-last.fm-api-key>"


class CommitParseError(ValueError):
    """Raised when a commit-log line does not look like `<timestamp> <hash> <subject>`."""


class ScrobbleProvider(Protocol):
    def get_recent_tracks(self, username: str, from_ts: int, to_ts: int) -> List[ListeningEvent]: ...


class DurationProvider(Protocol):
    def get_track_duration(self, identifier: str, artist: str = "", track: str = "") -> Optional[int]: ...


class MatchReporter(Protocol):
    def report_match(self, match: Match) -> None: ...


@dataclass
class CommitResult:
    commit: Commit
    match: Optional[Match]
    candidates: int = 0


@dataclass
class RunSummary:
    commits: int = 0
    matched: int = 0
    top_artists: List[Tuple[str, int]] = field(default_factory=list)
    top_tracks: List[Tuple[str, str, int]] = field(default_factory=list)

    @property
    def unmatched(self) -> int:
        return self.commits - self.matched


def parse_commit_line(line: str) -> Commit:
    parts = line.strip().split(" ", 2)
    if len(parts) < 2 or not parts[1]:
        raise CommitParseError(f"Expected '<timestamp> <hash> <subject>', got {line.strip()!r}")
    try:
        timestamp = int(parts[0])
    except ValueError as exc:
        raise CommitParseError(f"Invalid commit timestamp {parts[0]!r}") from exc
    message = parts[2] if len(parts) > 2 else ""
    return Commit(timestamp=timestamp, hash=parts[1], message=message)


class CommitSource:
    """Pull-based iterator over commit-log lines; malformed lines are logged and skipped."""

    def __init__(self, lines: Iterable[str]) -> None:
        self._lines = lines
        self.malformed = 0

    def __iter__(self) -> Iterator[Commit]:
        for line_number, line in enumerate(self._lines, 1):
            if not line.strip():
                continue
            try:
                yield parse_commit_line(line)
            except CommitParseError as exc:
                self.malformed += 1
                LOG.warning("Skipping commit log line %d: %s", line_number, exc)


class ScrobblePipeline:
    def __init__(
        self,
        scrobbles: ScrobbleProvider,
        durations: DurationProvider,
        username: str,
        *,
        stats: Optional[StatsAggregator] = None,
        window_before: int = DEFAULT_WINDOW_BEFORE,
        window_after: int = DEFAULT_WINDOW_AFTER,
        assumed_duration: Optional[int] = None,
        max_workers: int = 1,
        top_n: int = 10,
        reporter: Optional[MatchReporter] = None,
    ) -> None:
        self.scrobbles = scrobbles
        self.durations = durations
        self.username = username
        self.stats = stats if stats is not None else StatsAggregator()
        self.window_before = window_before
        self.window_after = window_after
        self.assumed_duration = assumed_duration
        self.max_workers = max(1, max_workers)
        self.top_n = top_n
        self.reporter = reporter

    def window_for(self, commit: Commit) -> TimeWindow:
        return TimeWindow(commit.timestamp, before=self.window_before, after=self.window_after)

    def lookup(self, commit: Commit) -> CommitResult:
        """Fetch, resolve and match the scrobbles around a single commit."""
        window = self.window_for(commit)
        candidates = [
            event
            for event in self._fetch_candidates(window)
            if not event.now_playing
            and event.start_timestamp is not None
            # Plays starting after the commit can never match; skip their duration lookups.
            and event.start_timestamp <= commit.timestamp
        ]
        resolved = [self._resolve_duration(event) for event in candidates]
        match = find_match(commit, resolved, self.assumed_duration)
        if match is None:
            LOG.debug("No scrobble playing at %s (%d candidate(s))", commit.hash, len(resolved))
        return CommitResult(commit=commit, match=match, candidates=len(resolved))

    def run(self, commits: Iterable[Commit]) -> RunSummary:
        summary = RunSummary()
        pending: Deque[Future] = deque()
        max_pending = self.max_workers * 2

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            for commit in commits:
                pending.append(executor.submit(self.lookup, commit))
                if len(pending) >= max_pending:
                    self._complete(pending.popleft().result(), summary)
            while pending:
                self._complete(pending.popleft().result(), summary)

        summary.top_artists = self.stats.top_artists(self.top_n)
        summary.top_tracks = self.stats.top_tracks(self.top_n)
        return summary

    def _complete(self, result: CommitResult, summary: RunSummary) -> None:
        summary.commits += 1
        if result.match is None:
            return
        summary.matched += 1
        if self.reporter is not None:
            self.reporter.report_match(result.match)
        self.stats.record(result.match)

    def _fetch_candidates(self, window: TimeWindow) -> List[ListeningEvent]:
        try:
            return list(self.scrobbles.get_recent_tracks(self.username, window.start, window.end))
        except Exception as exc:  # pylint: disable=broad-except
            LOG.warning("Scrobble lookup failed for %d..%d: %s", window.start, window.end, exc)
            return []

    def _resolve_duration(self, event: ListeningEvent) -> ListeningEvent:
        if event.duration_seconds is not None:
            return event
        try:
            duration = self.durations.get_track_duration(event.identifier, artist=event.artist, track=event.track)
        except Exception as exc:  # pylint: disable=broad-except
            LOG.warning("Duration lookup failed for %s - %s: %s", event.artist, event.track, exc)
            duration = None
        return event.with_duration(duration)


def format_commit_time(timestamp: int, *, utc: bool = True) -> str:
    if utc:
        moment = datetime.fromtimestamp(timestamp, tz=timezone.utc)
    else:
        moment = datetime.fromtimestamp(timestamp)
    return moment.strftime("%Y-%m-%d %H:%M")


class ConsoleReporter:
    """Plain-text report of matched commits and the final rankings."""

    def __init__(self, stream: TextIO, *, utc: bool = True) -> None:
        self.stream = stream
        self.utc = utc

    def _heading(self, title: str) -> None:
        self.stream.write(f"{title}\n{'=' * len(title)}\n")

    def start(self) -> None:
        self._heading("Scrobbles")

    def report_match(self, match: Match) -> None:
        commit = match.commit
        event = match.event
        self.stream.write(f"{commit.hash} {commit.message}\n")
        self.stream.write(f"{format_commit_time(commit.timestamp, utc=self.utc)} {event.track} - {event.artist}\n\n")
        self.stream.flush()

    def report_rankings(self, top_artists: Sequence[Tuple[str, int]], top_tracks: Sequence[Tuple[str, str, int]]) -> None:
        self._heading("Top Artists")
        for artist, count in top_artists:
            self.stream.write(f"{artist} ({count} commits)\n")
        self.stream.write("\n")

        self._heading("Top Tracks")
        for track, artist, count in top_tracks:
            self.stream.write(f"{track} - {artist} ({count} commits)\n")
        self.stream.write("\n")
        self.stream.flush()


def _stderr_handler() -> logging.Handler:
    # stdout carries the report, so log records go to stderr.
    return RichHandler(console=Console(stderr=True), rich_tracebacks=False, markup=False)


def configure_logging(settings: AppSettings, verbose: bool, debug: bool) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    if verbose:
        level = logging.INFO
    if debug:
        level = logging.DEBUG

    logging.basicConfig(level=level, handlers=[_stderr_handler()], force=True)


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Cross-reference commit history with your Last.fm scrobbles.",
        epilog=f"Example: {GIT_LOG_HINT}",
    )
    parser.add_argument("--username", help="Last.fm username (default: LASTFM_USERNAME).")
    parser.add_argument("--apikey", help="Last.fm API key (default: LASTFM_API_KEY).")
    parser.add_argument("--input", help="Read the commit log from this file instead of stdin.")
    parser.add_argument("--top", type=int, help="Number of artists and tracks to rank (default: TOP_N or 10).")
    parser.add_argument("--workers", type=int, help="Commits looked up concurrently (default: MAX_WORKERS or 4).")
    duration = parser.add_mutually_exclusive_group()
    duration.add_argument(
        "--assume-duration",
        type=int,
        metavar="SECONDS",
        help="Track length assumed when Last.fm has none (default: ASSUMED_TRACK_SECONDS or 240).",
    )
    duration.add_argument(
        "--exclude-unknown-duration",
        action="store_true",
        help="Never match scrobbles whose track length is unknown.",
    )
    parser.add_argument("--local-time", action="store_true", help="Show commit times in the local time zone instead of UTC.")
    parser.add_argument("--verbose", action="store_true", help="Enable informational logging.")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging.")
    return parser


def apply_overrides(settings: AppSettings, args: argparse.Namespace) -> AppSettings:
    """Fold command-line overrides into the environment settings."""
    overrides = {}
    if args.username:
        overrides["lastfm_username"] = args.username
    if args.apikey:
        overrides["lastfm_api_key"] = args.apikey
    if args.top is not None:
        if args.top < 1:
            raise ConfigurationError(f"--top must be >= 1, got {args.top}")
        overrides["top_n"] = args.top
    if args.workers is not None:
        if args.workers < 1:
            raise ConfigurationError(f"--workers must be >= 1, got {args.workers}")
        overrides["max_workers"] = args.workers
    if args.assume_duration is not None:
        if args.assume_duration < 1:
            raise ConfigurationError(f"--assume-duration must be >= 1, got {args.assume_duration}")
        overrides["unknown_duration_policy"] = "assume"
        overrides["assumed_track_seconds"] = args.assume_duration
    if args.exclude_unknown_duration:
        overrides["unknown_duration_policy"] = "exclude"
    if args.local_time:
        overrides["display_utc"] = False
    return replace(settings, **overrides)


def open_commit_log(path: Optional[str]) -> TextIO:
    # Commit subjects are not guaranteed to be UTF-8; undecodable bytes become U+FFFD.
    if not path or path == "-":
        if not hasattr(sys.stdin, "buffer"):
            return sys.stdin
        return io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    log_path = Path(path).expanduser()
    if not log_path.exists():
        raise ConfigurationError(f"Commit log not found: {log_path}")
    return log_path.open("r", encoding="utf-8", errors="replace")


def scrobble_commits(
    settings: AppSettings,
    lines: Iterable[str],
    *,
    client: Optional[LastFMClient] = None,
    out: Optional[TextIO] = None,
) -> RunSummary:
    start_time = time.perf_counter()
    out = out if out is not None else sys.stdout
    if client is None:
        client = LastFMClient(settings.lastfm_api_key or "", settings.lastfm_requests_per_sec, settings.request_timeout)

    reporter = ConsoleReporter(out, utc=settings.display_utc)
    pipeline = ScrobblePipeline(
        client,
        client,
        settings.lastfm_username or "",
        window_before=settings.window_before_seconds,
        window_after=settings.window_after_seconds,
        assumed_duration=settings.assumed_duration,
        max_workers=settings.max_workers,
        top_n=settings.top_n,
        reporter=reporter,
    )
    source = CommitSource(lines)

    reporter.start()
    summary = pipeline.run(source)
    reporter.report_rankings(summary.top_artists, summary.top_tracks)

    elapsed = time.perf_counter() - start_time
    LOG.info(
        "Summary: commits=%d matched=%d unmatched=%d malformed=%d api_calls=%d cache_hits=%d elapsed=%.2fs",
        summary.commits,
        summary.matched,
        summary.unmatched,
        source.malformed,
        client.api_calls,
        client.cache_hits,
        elapsed,
    )
    return summary


def run(args: argparse.Namespace, parser: argparse.ArgumentParser) -> int:
    try:
        settings = apply_overrides(get_settings(), args)
    except (ConfigurationError, ValueError, RuntimeError) as exc:
        logging.basicConfig(level=logging.INFO, handlers=[_stderr_handler()], force=True)
        LOG.error("Configuration error: %s", exc)
        return 1

    if not settings.lastfm_username or not settings.lastfm_api_key:
        parser.print_usage(sys.stdout)
        print(GIT_LOG_HINT)
        return 0

    configure_logging(settings, verbose=args.verbose, debug=args.debug)

    try:
        handle = open_commit_log(args.input)
    except ConfigurationError as exc:
        LOG.error("Configuration error: %s", exc)
        return 1

    try:
        scrobble_commits(settings, handle)
    finally:
        if args.input and args.input != "-":
            handle.close()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    return run(args, parser)


if __name__ == "__main__":
    sys.exit(main())

# Required (or pass --username / --apikey)
# LASTFM_USERNAME=your-last.fm-username
# LASTFM_API_KEY=YOUR_KEY

# Defaults (can override)
# LASTFM_REQUESTS_PER_SEC=4
# LASTFM_TIMEOUT=20
# MAX_WORKERS=4
# WINDOW_BEFORE_SECONDS=600
# WINDOW_AFTER_SECONDS=10
# UNKNOWN_DURATION_POLICY=assume
# ASSUMED_TRACK_SECONDS=240
# TOP_N=10
# DISPLAY_UTC=true
# LOG_LEVEL=INFO

# requirements.txt
# python-dotenv
# requests
# rich
