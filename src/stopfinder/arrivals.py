"""Merge scheduled and realtime arrivals for a stop."""

import logging
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Hashable, Iterable, List, Optional, Tuple

from .models import ArrivalRow, RealtimeUpdate, ScheduledArrival
from .realtime_client import RealtimeFeed
from .service_days import ServiceDayIndex

logger = logging.getLogger(__name__)

PAST_WINDOW = timedelta(minutes=30)
FUTURE_WINDOW = timedelta(minutes=60)

# Predictions further than this from a scheduled time belong to another service day
MAX_PREDICTION_OFFSET = timedelta(hours=12)

DEDUPE_BY_VISIT = "visit"
DEDUPE_BY_TRIP = "trip"

UNKNOWN = "Unknown"


def parse_time_of_day(value: str) -> Optional[timedelta]:
    """
    Parse a GTFS time of day (HH:MM:SS or HH:MM) into an offset from midnight.

    Hours may exceed 23 for trips running past midnight. Returns None when
    the value is malformed.
    """
    if not value or not isinstance(value, str):
        return None
    parts = value.strip().split(":")
    if len(parts) not in (2, 3):
        return None
    try:
        hours, minutes = int(parts[0]), int(parts[1])
        seconds = int(parts[2]) if len(parts) == 3 else 0
    except ValueError:
        return None
    if hours < 0 or not 0 <= minutes < 60 or not 0 <= seconds < 60:
        return None
    return timedelta(hours=hours, minutes=minutes, seconds=seconds)


def scheduled_datetime(service_date: date, offset: timedelta, tz: tzinfo) -> datetime:
    """Anchor a time-of-day offset to midnight of its service date."""
    return datetime.combine(service_date, time(0), tzinfo=tz) + offset


def from_timestamp(value: int, tz: tzinfo) -> Optional[datetime]:
    """Convert a Unix timestamp; None when it is outside the platform's range."""
    try:
        return datetime.fromtimestamp(value, tz)
    except (OverflowError, ValueError, OSError):
        logger.debug(f"Ignoring out-of-range realtime timestamp {value}")
        return None


def predicted_time(update: Optional[RealtimeUpdate], scheduled_time: datetime, tz: tzinfo) -> Optional[datetime]:
    """Realtime time for a scheduled visit: absolute prediction, or schedule plus delay."""
    if update is None:
        return None
    if update.arrival_time is not None:
        predicted = from_timestamp(update.arrival_time, tz)
        if predicted is None:
            return None
        if abs(predicted - scheduled_time) > MAX_PREDICTION_OFFSET:
            return None
        return predicted
    if update.delay is not None:
        if abs(update.delay) > MAX_PREDICTION_OFFSET.total_seconds():
            return None
        return scheduled_time + timedelta(seconds=update.delay)
    return None


def _dedupe_key(arrival: ScheduledArrival, dedupe_by: str, position: int) -> Hashable:
    # Rows without a trip cannot be matched to each other
    if arrival.trip_id is None:
        return ("row", position)
    if dedupe_by == DEDUPE_BY_TRIP:
        return (arrival.trip_id,)
    visit = arrival.stop_sequence if arrival.stop_sequence is not None else arrival.arrival_time
    return (arrival.trip_id, visit)


def merge_arrivals(
    scheduled: Iterable[ScheduledArrival],
    now: datetime,
    realtime: Optional[RealtimeFeed] = None,
    services: Optional[ServiceDayIndex] = None,
    *,
    stop_id: Optional[str] = None,
    tz: Optional[tzinfo] = None,
    past_window: timedelta = PAST_WINDOW,
    future_window: timedelta = FUTURE_WINDOW,
    dedupe_by: str = DEDUPE_BY_VISIT,
    include_unscheduled: bool = False,
) -> List[ArrivalRow]:
    """
    Build the display rows for one stop.

    Steps, in order:
        1. Drop arrivals whose service is not active (only when ``services`` is given;
           None means no calendar data and no filtering).
        2. Attach the realtime update for the trip at this stop, if any.
        3. Keep rows whose effective time is within [now - past_window, now + future_window].
        4. Deduplicate by trip and stop visit (or by trip alone with ``dedupe_by="trip"``),
           keeping the first occurrence.
        5. Sort by effective time, then scheduled time.

    Args:
        scheduled: The stop's scheduled arrivals.
        now: Timezone-aware reference time.
        realtime: Realtime feed for the render pass.
        services: Active services resolved for this render pass.
        stop_id: Stop being rendered; defaults to each arrival's own stop.
        tz: Timezone of the schedule's times of day; defaults to ``now.tzinfo``.
        past_window: How far back rows are still shown.
        future_window: How far ahead rows are shown.
        dedupe_by: "visit" or "trip".
        include_unscheduled: Also show realtime trips at this stop that have no scheduled row.

    Returns:
        Ordered list of ArrivalRow objects.
    """
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    if dedupe_by not in (DEDUPE_BY_VISIT, DEDUPE_BY_TRIP):
        raise ValueError(f"Unknown dedupe mode: {dedupe_by}")

    tz = tz or now.tzinfo
    window_start = now - past_window
    window_end = now + future_window

    local_today = now.astimezone(tz).date()
    service_dates = [local_today + timedelta(days=d) for d in (-1, 0, 1)]

    candidates: List[Tuple[Hashable, ArrivalRow]] = []
    scheduled_trips = set()
    malformed = 0

    for arrival in scheduled:
        if arrival.trip_id is not None:
            scheduled_trips.add(arrival.trip_id)

        offset = parse_time_of_day(arrival.arrival_time)
        if offset is None:
            malformed += 1
            continue

        update = None
        if realtime is not None:
            update = realtime.lookup(arrival.trip_id, stop_id or arrival.stop_id, arrival.stop_sequence)

        for service_date in service_dates:
            if services is not None and not services.is_active(arrival, service_date):
                continue

            scheduled_time = scheduled_datetime(service_date, offset, tz)
            realtime_time = predicted_time(update, scheduled_time, tz)
            effective = realtime_time if realtime_time is not None else scheduled_time
            if not window_start <= effective <= window_end:
                continue

            row = ArrivalRow(
                route=arrival.route or UNKNOWN,
                headsign=arrival.headsign or UNKNOWN,
                scheduled_time=scheduled_time,
                realtime_time=realtime_time,
                trip_id=arrival.trip_id,
                vehicle_id=update.vehicle_id if realtime_time is not None else None,
            )
            candidates.append((_dedupe_key(arrival, dedupe_by, len(candidates)), row))

    if malformed:
        logger.debug(f"Skipped {malformed} arrivals with malformed times")

    if include_unscheduled and realtime is not None and stop_id is not None:
        for update in realtime.for_stop(stop_id):
            if update.trip_id in scheduled_trips or update.arrival_time is None:
                continue
            predicted = from_timestamp(update.arrival_time, tz)
            if predicted is None or not window_start <= predicted <= window_end:
                continue
            row = ArrivalRow(
                route=update.route_id or UNKNOWN,
                headsign=update.headsign or UNKNOWN,
                scheduled_time=None,
                realtime_time=predicted,
                trip_id=update.trip_id,
                vehicle_id=update.vehicle_id,
            )
            visit = update.stop_sequence if dedupe_by == DEDUPE_BY_VISIT else None
            candidates.append(((update.trip_id, "realtime", visit), row))

    seen = set()
    rows: List[ArrivalRow] = []
    for key, row in candidates:
        if key in seen:
            continue
        seen.add(key)
        rows.append(row)

    rows.sort(key=lambda r: (r.effective_time, r.scheduled_time or r.effective_time))
    return rows
