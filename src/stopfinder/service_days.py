"""GTFS service-day resolution."""

import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Dict, Optional, Set

import pandas as pd

from .models import ScheduledArrival

logger = logging.getLogger(__name__)

WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]

CALENDAR_COLUMNS = ["service_id"] + WEEKDAYS + ["start_date", "end_date"]
CALENDAR_DATES_COLUMNS = ["service_id", "date", "exception_type"]

EXCEPTION_ADDED = "1"
EXCEPTION_REMOVED = "2"


def _text(series: pd.Series) -> pd.Series:
    return series.astype(str).str.strip()


def resolve_active_services(
    calendar: Optional[pd.DataFrame],
    calendar_dates: Optional[pd.DataFrame],
    on: date,
) -> Set[str]:
    """
    Determine all service_ids active on a date.

    Weekly rules from calendar.txt apply when the weekday flag is set and the date
    falls within [start_date, end_date]. Exceptions from calendar_dates.txt dated
    exactly on the date then add (type 1) or remove (type 2) services; a removal
    wins over an addition for the same service.

    Args:
        calendar: calendar.txt rows (dates as YYYYMMDD).
        calendar_dates: calendar_dates.txt rows.
        on: The service date.

    Returns:
        Set of active service_ids.
    """
    date_key = on.strftime("%Y%m%d")
    active: Set[str] = set()

    # 1. Weekly rules
    if calendar is not None and not calendar.empty:
        weekday = WEEKDAYS[on.weekday()]
        mask = (
            (_text(calendar["start_date"]) <= date_key)
            & (_text(calendar["end_date"]) >= date_key)
            & (_text(calendar[weekday]) == "1")
        )
        active.update(_text(calendar.loc[mask, "service_id"]))

    # 2. Exceptions for this exact date
    if calendar_dates is not None and not calendar_dates.empty:
        todays = calendar_dates[_text(calendar_dates["date"]) == date_key]
        exception_type = _text(todays["exception_type"])
        active.update(_text(todays.loc[exception_type == EXCEPTION_ADDED, "service_id"]))
        active.difference_update(_text(todays.loc[exception_type == EXCEPTION_REMOVED, "service_id"]))

    return active


@dataclass
class ServiceDayIndex:
    """Active services for a few consecutive service dates, resolved once per render."""
    active_by_date: Dict[date, Set[str]]
    trip_services: Dict[str, str]  # trip_id -> service_id

    def service_for(self, arrival: ScheduledArrival) -> Optional[str]:
        if arrival.service_id not in (None, ""):
            return str(arrival.service_id).strip()
        if arrival.trip_id is None:
            return None
        return self.trip_services.get(arrival.trip_id)

    def is_active(self, arrival: ScheduledArrival, service_date: date) -> bool:
        """True if the arrival's service runs on the service date."""
        service_id = self.service_for(arrival)
        if service_id is None:
            return False
        return service_id in self.active_by_date.get(service_date, set())


class ServiceCalendar:
    """Weekly service rules, date exceptions and the trip -> service mapping."""

    def __init__(
        self,
        calendar: Optional[pd.DataFrame],
        calendar_dates: Optional[pd.DataFrame],
        trip_services: Dict[str, str],
    ):
        self.calendar = calendar
        self.calendar_dates = calendar_dates
        self.trip_services = trip_services

    def active_services(self, on: date) -> Set[str]:
        return resolve_active_services(self.calendar, self.calendar_dates, on)

    def index_for(self, reference: date) -> ServiceDayIndex:
        """
        Resolve the reference date and its neighbours.

        The previous day covers GTFS times past 24:00:00; the next day covers
        display windows that run past midnight.
        """
        active_by_date = {}
        for offset in (-1, 0, 1):
            service_date = reference + timedelta(days=offset)
            active_by_date[service_date] = self.active_services(service_date)

        logger.debug(
            f"{len(active_by_date[reference])} services active on {reference.isoformat()}"
        )
        return ServiceDayIndex(active_by_date=active_by_date, trip_services=self.trip_services)
