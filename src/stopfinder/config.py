"""Runtime settings for stopfinder."""

import os
from dataclasses import dataclass, fields
from typing import Mapping, Optional
from zoneinfo import ZoneInfo

# Public bucket holding one JSON array of scheduled arrivals per stop
DEFAULT_SCHEDULE_URL = "https://pub-aad94a89c9ea4f6390466b521c65d978.r2.dev/stops/{stop_id}.json"

# GTFS-RT proxy worker
DEFAULT_REALTIME_URL = "https://falling-firefly-fd90.eoinol.workers.dev/"

DEFAULT_STOPS_SOURCE = "stops.geojson.gz"

ENV_PREFIX = "STOPFINDER_"


@dataclass
class Settings:
    """Settings for a NearbyStopsTracker. Override with STOPFINDER_* env vars."""
    stops_source: str = DEFAULT_STOPS_SOURCE  # path or URL
    schedule_url_template: str = DEFAULT_SCHEDULE_URL
    realtime_url: Optional[str] = DEFAULT_REALTIME_URL
    gtfs_source: Optional[str] = None  # directory, zip file or zip URL
    timezone: str = "Europe/Dublin"
    nearest_count: int = 5
    max_concurrency: int = 4
    http_timeout: float = 10.0
    realtime_retries: int = 2
    retry_backoff: float = 0.5
    past_window_minutes: int = 30
    future_window_minutes: int = 60
    dedupe_by: str = "visit"  # "visit" or "trip"
    include_unscheduled: bool = False
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        """
        Build settings from environment variables.

        Each field maps to STOPFINDER_<FIELD NAME>, e.g. STOPFINDER_NEAREST_COUNT=3.
        An empty STOPFINDER_REALTIME_URL or STOPFINDER_GTFS_SOURCE disables that source.
        """
        if environ is None:
            environ = os.environ

        values = {}
        for f in fields(cls):
            key = ENV_PREFIX + f.name.upper()
            if key not in environ:
                continue
            raw = environ[key].strip()
            values[f.name] = _coerce(f.name, raw, f.default)
        return cls(**values)


def _coerce(name: str, raw: str, default):
    if name in ("latitude", "longitude"):
        return float(raw) if raw else None
    if name in ("realtime_url", "gtfs_source"):
        return raw or None
    if isinstance(default, bool):
        return raw.lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw
