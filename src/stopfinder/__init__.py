"""stopfinder - Nearest bus stops with scheduled and real-time arrivals."""

__version__ = "0.1.0"

from .models import (
    Stop,
    Location,
    RankedStop,
    ScheduledArrival,
    RealtimeUpdate,
    ArrivalRow,
    StopArrivals,
    StopFailure,
    NearbyResult,
)
from .config import Settings
from .geo import rank_stops, haversine_distance, initial_bearing, bearing_to_compass
from .service_days import resolve_active_services, ServiceCalendar
from .arrivals import merge_arrivals
from .tracker import NearbyStopsTracker
from .stops_loader import StopsLoader
from .gtfs_loader import GTFSLoader
from .schedule_client import ScheduleClient
from .realtime_client import RealtimeClient, RealtimeFeed
from .render import render_text, render_html

__all__ = [
    "NearbyStopsTracker",
    "Settings",
    "StopsLoader",
    "GTFSLoader",
    "ScheduleClient",
    "RealtimeClient",
    "RealtimeFeed",
    "ServiceCalendar",
    "rank_stops",
    "haversine_distance",
    "initial_bearing",
    "bearing_to_compass",
    "resolve_active_services",
    "merge_arrivals",
    "render_text",
    "render_html",
    "Stop",
    "Location",
    "RankedStop",
    "ScheduledArrival",
    "RealtimeUpdate",
    "ArrivalRow",
    "StopArrivals",
    "StopFailure",
    "NearbyResult",
]
