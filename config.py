"""Central configuration helpers for git-scrobbler."""

from __future__ import annotations

import os
import unicodedata
import warnings
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, Optional

from dotenv import find_dotenv, load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent

# Load the project .env first, then the one next to where the tool is run, without clobbering.
load_dotenv(dotenv_path=PROJECT_ROOT / ".env", override=False)
load_dotenv(find_dotenv(usecwd=True), override=False)

LEGACY_ENV_NAMES: Dict[str, list[str]] = {
    "LASTFM_API_KEY": ["LASTFM_APIKEY"],
    "LASTFM_USERNAME": ["LASTFM_USER"],
}

UNKNOWN_DURATION_POLICIES = ("assume", "exclude")

_WARNED: set[tuple[str, str]] = set()


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


def _coerce_str(value: str) -> str:
    return unicodedata.normalize("NFC", value.strip())


def _get_env(name: str) -> Optional[str]:
    candidates = [name] + LEGACY_ENV_NAMES.get(name, [])
    for candidate in candidates:
        raw = os.getenv(candidate)
        if raw is None or raw.strip() == "":
            continue
        if candidate != name:
            _warn_once(candidate, name)
        return raw
    return None


def _warn_once(old_name: str, new_name: str) -> None:
    key = (old_name, new_name)
    if key in _WARNED:
        return
    _WARNED.add(key)
    warnings.warn(
        f"Environment variable {old_name} is deprecated; use {new_name} instead.",
        DeprecationWarning,
        stacklevel=3,
    )


def env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = _get_env(name)
    if raw is None or raw.strip() == "":
        return _coerce_str(default) if isinstance(default, str) else default
    return _coerce_str(raw)


def env_bool(name: str, default: Optional[bool] = None) -> bool:
    raw = _get_env(name)
    if raw is None or raw.strip() == "":
        if default is None:
            raise RuntimeError(f"Missing required boolean environment variable: {name}")
        return bool(default)
    normalized = raw.strip().lower()
    truthy = {"1", "true", "yes", "on"}
    falsy = {"0", "false", "no", "off"}
    if normalized in truthy:
        return True
    if normalized in falsy:
        return False
    raise ValueError(f"Environment variable {name} must be boolean-like, got {raw!r}")


def env_int(name: str, default: Optional[int] = None, *, min_value: Optional[int] = None) -> int:
    raw = _get_env(name)
    if raw is None or raw.strip() == "":
        if default is None:
            raise RuntimeError(f"Missing required integer environment variable: {name}")
        value = int(default)
    else:
        try:
            value = int(raw.strip())
        except ValueError as exc:
            raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}") from exc
    if min_value is not None and value < min_value:
        raise ValueError(f"Environment variable {name} must be >= {min_value}, got {value}")
    return value


def env_float(name: str, default: Optional[float] = None) -> float:
    raw = _get_env(name)
    if raw is None or raw.strip() == "":
        if default is None:
            raise RuntimeError(f"Missing required float environment variable: {name}")
        return float(default)
    try:
        return float(raw.strip())
    except ValueError as exc:
        raise ValueError(f"Environment variable {name} must be a float, got {raw!r}") from exc


@dataclass(frozen=True)
class Settings:
    lastfm_api_key: Optional[str]
    lastfm_username: Optional[str]
    lastfm_requests_per_sec: float
    request_timeout: float
    max_workers: int
    window_before_seconds: int
    window_after_seconds: int
    unknown_duration_policy: str
    assumed_track_seconds: int
    top_n: int
    display_utc: bool
    log_level: str

    @property
    def assumed_duration(self) -> Optional[int]:
        """Duration used for plays Last.fm has no length for, or None to never match them."""
        if self.unknown_duration_policy == "exclude":
            return None
        return self.assumed_track_seconds

    @classmethod
    def from_env(cls) -> Settings:
        defaults = {
            "LASTFM_REQUESTS_PER_SEC": "4",
            "LASTFM_TIMEOUT": "20",
            "MAX_WORKERS": "4",
            "WINDOW_BEFORE_SECONDS": "600",
            "WINDOW_AFTER_SECONDS": "10",
            "UNKNOWN_DURATION_POLICY": "assume",
            "ASSUMED_TRACK_SECONDS": "240",
            "TOP_N": "10",
            "DISPLAY_UTC": "true",
            "LOG_LEVEL": "INFO",
        }

        lastfm_api_key = env_str("LASTFM_API_KEY")
        lastfm_username = env_str("LASTFM_USERNAME")
        lastfm_requests_per_sec = env_float("LASTFM_REQUESTS_PER_SEC", defaults["LASTFM_REQUESTS_PER_SEC"])
        if lastfm_requests_per_sec <= 0:
            raise ValueError(
                f"Environment variable LASTFM_REQUESTS_PER_SEC must be > 0, got {lastfm_requests_per_sec}"
            )
        request_timeout = env_float("LASTFM_TIMEOUT", defaults["LASTFM_TIMEOUT"])
        max_workers = env_int("MAX_WORKERS", defaults["MAX_WORKERS"], min_value=1)
        window_before = env_int("WINDOW_BEFORE_SECONDS", defaults["WINDOW_BEFORE_SECONDS"], min_value=0)
        window_after = env_int("WINDOW_AFTER_SECONDS", defaults["WINDOW_AFTER_SECONDS"], min_value=0)

        policy = (env_str("UNKNOWN_DURATION_POLICY", defaults["UNKNOWN_DURATION_POLICY"]) or "").lower()
        if policy not in UNKNOWN_DURATION_POLICIES:
            raise ValueError(
                f"Environment variable UNKNOWN_DURATION_POLICY must be one of "
                f"{', '.join(UNKNOWN_DURATION_POLICIES)}, got {policy!r}"
            )
        assumed_track_seconds = env_int("ASSUMED_TRACK_SECONDS", defaults["ASSUMED_TRACK_SECONDS"], min_value=1)
        top_n = env_int("TOP_N", defaults["TOP_N"], min_value=1)
        display_utc = env_bool("DISPLAY_UTC", defaults["DISPLAY_UTC"] == "true")
        log_level = (env_str("LOG_LEVEL", defaults["LOG_LEVEL"]) or defaults["LOG_LEVEL"]).upper()

        return cls(
            lastfm_api_key=lastfm_api_key,
            lastfm_username=lastfm_username,
            lastfm_requests_per_sec=lastfm_requests_per_sec,
            request_timeout=request_timeout,
            max_workers=max_workers,
            window_before_seconds=window_before,
            window_after_seconds=window_after,
            unknown_duration_policy=policy,
            assumed_track_seconds=assumed_track_seconds,
            top_n=top_n,
            display_utc=display_utc,
            log_level=log_level,
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached Settings instance populated from the environment."""
    return Settings.from_env()


__all__ = [
    "ConfigurationError",
    "Settings",
    "env_bool",
    "env_float",
    "env_int",
    "env_str",
    "get_settings",
]
