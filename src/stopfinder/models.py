"""Data models for the nearby stop finder."""

from dataclasses import dataclass, field
from typing import List, Optional
from datetime import datetime


@dataclass(frozen=True)
class Stop:
    """Represents a bus stop from the geography file."""
    stop_id: str  # AtcoCode
    name: str
    latitude: Optional[float]
    longitude: Optional[float]

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None


@dataclass(frozen=True)
class Location:
    """A user position in decimal degrees."""
    latitude: float
    longitude: float
    accuracy: Optional[float] = None  # metres, when the provider reports it


@dataclass(frozen=True)
class RankedStop:
    """A stop with its distance and bearing from the user."""
    stop: Stop
    distance: float  # metres
    bearing: float  # degrees clockwise from north
    compass: str  # e.g. "NE"


@dataclass
class ScheduledArrival:
    """Represents one scheduled visit of a trip to a stop."""
    trip_id: Optional[str]
    route: str
    headsign: str
    arrival_time: str  # HH:MM:SS, hours may exceed 23
    stop_id: str
    service_id: Optional[str] = None
    stop_sequence: Optional[int] = None


@dataclass
class RealtimeUpdate:
    """Represents a realtime prediction for a trip, optionally at one stop."""
    trip_id: str
    stop_id: Optional[str] = None  # None for trip-level delays
    arrival_time: Optional[int] = None  # Unix timestamp
    delay: Optional[int] = None  # seconds relative to schedule
    vehicle_id: Optional[str] = None
    route_id: Optional[str] = None
    headsign: Optional[str] = None
    stop_sequence: Optional[int] = None


@dataclass
class ArrivalRow:
    """A display row for one upcoming arrival."""
    route: str
    headsign: str
    scheduled_time: Optional[datetime]
    realtime_time: Optional[datetime] = None
    trip_id: Optional[str] = None
    vehicle_id: Optional[str] = None

    @property
    def is_realtime(self) -> bool:
        return self.realtime_time is not None

    @property
    def effective_time(self) -> datetime:
        return self.realtime_time if self.realtime_time is not None else self.scheduled_time


@dataclass
class StopFailure:
    """A per-stop fetch failure that did not abort the render."""
    stop_id: str
    error: Exception


@dataclass
class StopArrivals:
    """A ranked stop and its upcoming arrivals."""
    ranked_stop: RankedStop
    arrivals: List[ArrivalRow] = field(default_factory=list)
    available: bool = True  # False when the schedule could not be fetched


@dataclass
class NearbyResult:
    """Complete outcome of one render pass."""
    stops: List[StopArrivals]
    failures: List[StopFailure]
    last_updated: datetime
    location: Optional[Location] = None
    error: Optional[str] = None  # fatal: nothing but this message can be shown
    realtime_error: Optional[str] = None
    calendar_error: Optional[str] = None
    calendar_applied: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None
