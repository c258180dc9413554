"""GTFS-Realtime feed fetcher and normalizer."""

import asyncio
import json
import logging
from typing import Dict, Iterable, List, Optional

import httpx
from google.protobuf import json_format
from google.protobuf.message import DecodeError
from google.transit import gtfs_realtime_pb2

from .config import DEFAULT_REALTIME_URL
from .errors import FeedError
from .models import RealtimeUpdate

logger = logging.getLogger(__name__)

RETRY_STATUSES = frozenset([429, 500, 502, 503, 504])


class RealtimeFeed:
    """Realtime updates indexed by trip_id for per-stop lookups."""

    def __init__(self, updates: Iterable[RealtimeUpdate], timestamp: Optional[int] = None):
        self.updates: List[RealtimeUpdate] = list(updates)
        self.timestamp = timestamp
        self._by_trip: Dict[str, List[RealtimeUpdate]] = {}
        for update in self.updates:
            self._by_trip.setdefault(update.trip_id, []).append(update)

    def __len__(self) -> int:
        return len(self.updates)

    def lookup(
        self,
        trip_id: Optional[str],
        stop_id: Optional[str] = None,
        stop_sequence: Optional[int] = None,
    ) -> Optional[RealtimeUpdate]:
        """
        Find the update for a trip at a stop.

        Per-stop updates must match the stop (and the stop_sequence when both sides
        carry one). A trip-level update with no stop applies to every stop of the
        trip and is used only when no per-stop update matches.
        """
        if trip_id is None:
            return None

        trip_level = None
        for update in self._by_trip.get(trip_id, []):
            if update.stop_id is None:
                trip_level = trip_level or update
                continue
            if stop_id is not None and update.stop_id != stop_id:
                continue
            if (
                stop_sequence is not None
                and update.stop_sequence is not None
                and update.stop_sequence != stop_sequence
            ):
                continue
            return update
        return trip_level

    def for_stop(self, stop_id: str) -> List[RealtimeUpdate]:
        """All per-stop updates at the given stop."""
        return [u for u in self.updates if u.stop_id == stop_id]


def _get(record: dict, snake: str, camel: str):
    """GTFS-RT JSON appears both with proto field names and in camelCase."""
    value = record.get(snake)
    if value is None:
        value = record.get(camel)
    return value


def _as_int(value) -> Optional[int]:
    # int64 fields arrive as strings in proto3 JSON
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None


def _as_str(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _mapping(value) -> dict:
    """Nested GTFS-RT messages; anything that is not an object counts as absent."""
    return value if isinstance(value, dict) else {}


def _parse_trip_update(trip_update: dict, entity: dict) -> List[RealtimeUpdate]:
    trip = _mapping(trip_update.get("trip"))
    vehicle = _mapping(trip_update.get("vehicle") or entity.get("vehicle"))
    vehicle_id = _as_str(vehicle.get("id") or vehicle.get("label"))
    trip_delay = _as_int(trip_update.get("delay"))
    stop_time_updates = _get(trip_update, "stop_time_update", "stopTimeUpdate")
    if not isinstance(stop_time_updates, list):
        stop_time_updates = []

    updates: List[RealtimeUpdate] = []

    for stu in stop_time_updates:
        if not isinstance(stu, dict):
            continue
        # Some proxies copy the trip descriptor onto each stop-time update
        stu_trip = _mapping(stu.get("trip")) or trip
        trip_id = _as_str(_get(stu_trip, "trip_id", "tripId"))
        if trip_id is None:
            logger.debug("Skipping stop-time update without trip_id")
            continue

        event = _mapping(stu.get("arrival")) or _mapping(stu.get("departure"))
        delay = _as_int(event.get("delay"))
        if delay is None:
            delay = trip_delay

        updates.append(
            RealtimeUpdate(
                trip_id=trip_id,
                stop_id=_as_str(_get(stu, "stop_id", "stopId")),
                arrival_time=_as_int(event.get("time")),
                delay=delay,
                vehicle_id=vehicle_id,
                route_id=_as_str(_get(stu_trip, "route_id", "routeId")),
                headsign=_as_str(_get(stu_trip, "trip_headsign", "tripHeadsign") or stu_trip.get("headsign")),
                stop_sequence=_as_int(_get(stu, "stop_sequence", "stopSequence")),
            )
        )

    # A trip update carrying only a delay applies to the whole trip
    if not stop_time_updates and trip_delay is not None:
        trip_id = _as_str(_get(trip, "trip_id", "tripId"))
        if trip_id is not None:
            updates.append(
                RealtimeUpdate(
                    trip_id=trip_id,
                    delay=trip_delay,
                    vehicle_id=vehicle_id,
                    route_id=_as_str(_get(trip, "route_id", "routeId")),
                )
            )

    return updates


def _parse_flat_record(record: dict) -> Optional[RealtimeUpdate]:
    trip_id = _as_str(_get(record, "trip_id", "tripId"))
    if trip_id is None:
        return None
    arrival_time = _as_int(_get(record, "arrival_time", "arrivalTime"))
    if arrival_time is None:
        arrival_time = _as_int(record.get("time"))
    return RealtimeUpdate(
        trip_id=trip_id,
        stop_id=_as_str(_get(record, "stop_id", "stopId")),
        arrival_time=arrival_time,
        delay=_as_int(record.get("delay")),
        vehicle_id=_as_str(_get(record, "vehicle_id", "vehicleId")),
        route_id=_as_str(_get(record, "route_id", "routeId")),
        headsign=_as_str(_get(record, "trip_headsign", "tripHeadsign") or record.get("headsign")),
        stop_sequence=_as_int(_get(record, "stop_sequence", "stopSequence")),
    )


def normalize_feed(payload) -> List[RealtimeUpdate]:
    """
    Normalize any supported realtime JSON shape into RealtimeUpdate objects.

    Accepts ``{"arrivals": [...]}``, ``{"entity": [...]}`` or a bare list. Each
    element is either a GTFS-RT entity holding a trip update (snake_case or
    camelCase) or a flat ``{trip_id, stop_id, arrival_time | delay}`` record.
    """
    if isinstance(payload, dict):
        records = payload.get("arrivals")
        if records is None:
            records = payload.get("entity")
    else:
        records = payload

    if not isinstance(records, list):
        raise FeedError("Unrecognised realtime feed shape")

    updates: List[RealtimeUpdate] = []
    skipped = 0

    for record in records:
        if not isinstance(record, dict):
            skipped += 1
            continue

        trip_update = _get(record, "trip_update", "tripUpdate")
        if isinstance(trip_update, dict):
            updates.extend(_parse_trip_update(trip_update, record))
            continue

        update = _parse_flat_record(record)
        if update is None:
            skipped += 1
            continue
        updates.append(update)

    if skipped:
        logger.debug(f"Skipped {skipped} realtime records without a trip")
    return updates


def parse_protobuf_feed(data: bytes) -> dict:
    """Decode a GTFS-RT FeedMessage into the same JSON shape the proxy serves."""
    feed = gtfs_realtime_pb2.FeedMessage()
    try:
        feed.ParseFromString(data)
    except DecodeError as e:
        raise FeedError(f"Invalid GTFS-RT protobuf: {e}") from e
    return json_format.MessageToDict(feed, preserving_proto_field_name=True)


class RealtimeClient:
    """Fetches and normalizes a GTFS-Realtime trip-update feed."""

    def __init__(
        self,
        feed_url: str = DEFAULT_REALTIME_URL,
        timeout: float = 10.0,
        max_retries: int = 2,
        backoff_factor: float = 0.5,
    ):
        """
        Initialize the realtime client.

        Args:
            feed_url: Realtime endpoint serving JSON or GTFS-RT protobuf.
            timeout: Per-request timeout in seconds.
            max_retries: Extra attempts after a transport error or a 429/5xx response.
            backoff_factor: First retry delay in seconds; doubles on each attempt.
        """
        self.feed_url = feed_url
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor

    async def fetch_feed(self, client: httpx.AsyncClient) -> RealtimeFeed:
        """
        Fetch the feed and index it by trip.

        Raises:
            FeedError: If the feed cannot be fetched after retries or cannot be decoded.
        """
        response = await self._fetch(client)
        payload = self._decode(response)
        updates = normalize_feed(payload)

        header = payload.get("header") if isinstance(payload, dict) else None
        timestamp = _as_int(header.get("timestamp")) if isinstance(header, dict) else None

        logger.info(f"Realtime feed: {len(updates)} updates")
        return RealtimeFeed(updates, timestamp=timestamp)

    async def _fetch(self, client: httpx.AsyncClient) -> httpx.Response:
        attempt = 0
        while True:
            try:
                response = await client.get(self.feed_url, timeout=self.timeout)
                if response.status_code in RETRY_STATUSES and attempt < self.max_retries:
                    logger.warning(f"Realtime feed returned HTTP {response.status_code}, retrying")
                else:
                    response.raise_for_status()
                    return response
            except httpx.HTTPStatusError as e:
                logger.error(f"Failed to fetch {self.feed_url}: {e}")
                raise FeedError(f"Realtime feed returned HTTP {e.response.status_code}") from e
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    logger.error(f"Failed to fetch {self.feed_url}: {e}")
                    raise FeedError(f"Realtime feed unreachable: {e}") from e
                logger.warning(f"Realtime feed request failed ({e}), retrying")

            await asyncio.sleep(self.backoff_factor * (2 ** attempt))
            attempt += 1

    @staticmethod
    def _decode(response: httpx.Response):
        content_type = response.headers.get("content-type", "")
        if "protobuf" in content_type or "octet-stream" in content_type:
            return parse_protobuf_feed(response.content)
        try:
            return response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise FeedError(f"Invalid realtime JSON: {e}") from e
