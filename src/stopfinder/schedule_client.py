"""Per-stop scheduled arrivals from the static JSON bucket."""

import json
import logging
from typing import List, Optional

import httpx

from .config import DEFAULT_SCHEDULE_URL
from .errors import FeedError
from .models import ScheduledArrival

logger = logging.getLogger(__name__)

UNKNOWN = "Unknown"


def _optional_int(value) -> Optional[int]:
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError, OverflowError):
        return None


def parse_schedule(stop_id: str, records) -> List[ScheduledArrival]:
    """
    Parse a stop's JSON array into ScheduledArrival objects.

    Missing route or headsign fields become "Unknown"; non-object entries are skipped.
    """
    if not isinstance(records, list):
        raise FeedError(f"Schedule for stop {stop_id} is not a list")

    arrivals: List[ScheduledArrival] = []
    for record in records:
        if not isinstance(record, dict):
            continue
        trip_id = record.get("trip_id")
        service_id = record.get("service_id")
        arrivals.append(
            ScheduledArrival(
                trip_id=str(trip_id) if trip_id not in (None, "") else None,
                route=str(record.get("route_short") or UNKNOWN),
                headsign=str(record.get("trip_headsign") or UNKNOWN),
                arrival_time=str(record.get("arrival_time") or ""),
                stop_id=stop_id,
                # Calendar tables are read as text; compare service ids as text too
                service_id=str(service_id).strip() if service_id not in (None, "") else None,
                stop_sequence=_optional_int(record.get("stop_sequence")),
            )
        )
    return arrivals


class ScheduleClient:
    """Fetches scheduled arrivals for one stop at a time."""

    def __init__(self, url_template: str = DEFAULT_SCHEDULE_URL, timeout: float = 10.0):
        """
        Initialize the schedule client.

        Args:
            url_template: URL with a ``{stop_id}`` placeholder.
            timeout: Per-request timeout in seconds.
        """
        self.url_template = url_template
        self.timeout = timeout

    async def get_arrivals_for_stop(self, client: httpx.AsyncClient, stop_id: str) -> List[ScheduledArrival]:
        """
        Get scheduled arrivals for a stop.

        Raises:
            FeedError: On a network error, a non-2xx response or an invalid body.
        """
        url = self.url_template.format(stop_id=stop_id)
        try:
            response = await client.get(url, timeout=self.timeout)
            response.raise_for_status()
            records = response.json()
        except httpx.HTTPStatusError as e:
            logger.warning(f"Stop {stop_id} schedule not available (HTTP {e.response.status_code})")
            raise FeedError(f"Schedule for stop {stop_id} returned HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            logger.warning(f"Error loading stop {stop_id}: {e}")
            raise FeedError(f"Schedule for stop {stop_id} unreachable: {e}") from e
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise FeedError(f"Schedule for stop {stop_id} is not valid JSON: {e}") from e

        arrivals = parse_schedule(stop_id, records)
        logger.debug(f"Stop {stop_id}: {len(arrivals)} scheduled arrivals")
        return arrivals
