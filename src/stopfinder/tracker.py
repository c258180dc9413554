"""Main nearby stops tracker."""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

import httpx

from .arrivals import merge_arrivals
from .config import Settings
from .errors import FeedError, GeographyError, GeolocationError, GTFSError
from .geo import rank_stops
from .gtfs_loader import GTFSLoader
from .locator import FixedLocator, IPLocator, Locator
from .models import NearbyResult, RankedStop, Stop, StopArrivals, StopFailure
from .realtime_client import RealtimeClient, RealtimeFeed
from .schedule_client import ScheduleClient
from .service_days import ServiceDayIndex
from .stops_loader import StopsLoader

logger = logging.getLogger(__name__)


class NearbyStopsTracker:
    """
    Finds the nearest bus stops and their upcoming arrivals.

    This class provides methods to:
    - Load the stop geography and, optionally, a GTFS calendar
    - Rank stops by distance from the user's location
    - Merge scheduled arrivals with realtime predictions per stop

    Geography and calendar tables are loaded once per tracker. Schedules and the
    realtime feed are fetched fresh on every call to get_nearby().
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        locator: Optional[Locator] = None,
        stops_loader: Optional[StopsLoader] = None,
        gtfs_loader: Optional[GTFSLoader] = None,
        schedule_client: Optional[ScheduleClient] = None,
        realtime_client: Optional[RealtimeClient] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """
        Initialize the tracker.

        Args:
            settings: Runtime settings; defaults to Settings().
            locator: Location provider. Defaults to the fixed coordinates in settings,
                     or an IP lookup when none are set.
            stops_loader: Preloaded or custom stops loader.
            gtfs_loader: Preloaded or custom GTFS calendar loader.
            schedule_client: Per-stop schedule client.
            realtime_client: Realtime feed client. Defaults to one for settings.realtime_url
                     when that is set; no realtime otherwise.
            http_client: Shared async HTTP client. A new one is opened per call when omitted.
        """
        self.settings = settings or Settings()
        self.stops_loader = stops_loader or StopsLoader()
        self.gtfs_loader = gtfs_loader or GTFSLoader()
        self.schedule_client = schedule_client or ScheduleClient(
            self.settings.schedule_url_template, timeout=self.settings.http_timeout
        )
        if realtime_client is None and self.settings.realtime_url:
            realtime_client = RealtimeClient(
                self.settings.realtime_url,
                timeout=self.settings.http_timeout,
                max_retries=self.settings.realtime_retries,
                backoff_factor=self.settings.retry_backoff,
            )
        self.realtime_client = realtime_client
        self.locator = locator or self._default_locator()
        self._http_client = http_client

    def _default_locator(self) -> Locator:
        if self.settings.latitude is not None and self.settings.longitude is not None:
            return FixedLocator(self.settings.latitude, self.settings.longitude)
        return IPLocator(timeout=self.settings.http_timeout)

    def load_stops(self) -> None:
        """
        Load the stop geography from settings.stops_source.

        Raises:
            GeographyError: If the file cannot be fetched, decompressed or parsed.
        """
        self.stops_loader.load(self.settings.stops_source, timeout=self.settings.http_timeout * 3)

    def load_calendar(self) -> None:
        """
        Load GTFS calendar and trips from settings.gtfs_source.

        Raises:
            GTFSError: If the source cannot be loaded.
        """
        if not self.settings.gtfs_source:
            raise GTFSError("No GTFS source configured")
        self.gtfs_loader.load(self.settings.gtfs_source, timeout=self.settings.http_timeout * 6)

    def get_stop(self, stop_input: str) -> Stop:
        """
        Get a stop by AtcoCode or name.

        Raises:
            ValueError: If no stop matches.
        """
        try:
            return self.stops_loader.get_stop(stop_input)
        except ValueError:
            pass

        stops = self.stops_loader.find_stops_by_name(stop_input)
        if not stops:
            raise ValueError(f"No stop found matching '{stop_input}'")
        return stops[0]

    def find_stops_by_name(self, name: str) -> List[Stop]:
        """Find all stops matching a name (partial match)."""
        return self.stops_loader.find_stops_by_name(name)

    async def get_nearby(self, now: Optional[datetime] = None) -> NearbyResult:
        """
        Run one render pass: rank the nearest stops and fetch their arrivals.

        Fatal problems (geography, location) are reported through NearbyResult.error
        rather than raised. Per-stop failures are listed in NearbyResult.failures.

        Args:
            now: Reference time; defaults to the current time in settings.timezone.

        Returns:
            NearbyResult for this pass.
        """
        now = now or datetime.now(self.settings.tz)
        if now.tzinfo is None:
            now = now.replace(tzinfo=self.settings.tz)

        if self._http_client is not None:
            return await self._get_nearby(self._http_client, now)

        async with httpx.AsyncClient(timeout=self.settings.http_timeout, follow_redirects=True) as client:
            return await self._get_nearby(client, now)

    async def _get_nearby(self, client: httpx.AsyncClient, now: datetime) -> NearbyResult:
        # Geography first: nothing can be shown without it
        if not self.stops_loader.stops:
            try:
                await asyncio.to_thread(self.load_stops)
            except GeographyError as e:
                logger.error(f"Failed to load stop geography: {e}")
                return self._error_result(now, f"Could not load bus stops: {e}")

        try:
            location = await self.locator.locate(client)
        except GeolocationError as e:
            logger.error(f"Location unavailable: {e}")
            return self._error_result(now, f"Location unavailable: {e}")

        try:
            nearest = rank_stops(location, self.stops_loader.stops.values(), limit=self.settings.nearest_count)
        except ValueError as e:
            logger.error(f"Cannot rank stops: {e}")
            return self._error_result(now, f"Location unavailable: {e}")

        services, calendar_error = await self._resolve_services(now)
        realtime, realtime_error = await self._fetch_realtime(client)

        semaphore = asyncio.Semaphore(self.settings.max_concurrency)
        outcomes = await asyncio.gather(
            *(self._stop_arrivals(client, semaphore, ranked, now, realtime, services) for ranked in nearest)
        )

        stops: List[StopArrivals] = []
        failures: List[StopFailure] = []
        for stop_arrivals, failure in outcomes:
            stops.append(stop_arrivals)
            if failure is not None:
                failures.append(failure)

        if failures:
            logger.warning(f"{len(failures)} of {len(nearest)} stops have no data")

        return NearbyResult(
            stops=stops,
            failures=failures,
            last_updated=now,
            location=location,
            realtime_error=realtime_error,
            calendar_error=calendar_error,
            calendar_applied=services is not None,
        )

    async def _resolve_services(self, now: datetime) -> Tuple[Optional[ServiceDayIndex], Optional[str]]:
        """Active services for this pass, or None when no calendar is configured or loadable."""
        if not self.gtfs_loader.loaded:
            if not self.settings.gtfs_source:
                return None, None
            try:
                await asyncio.to_thread(self.load_calendar)
            except GTFSError as e:
                logger.warning(f"Calendar unavailable, showing all scheduled trips: {e}")
                return None, str(e)

        reference = now.astimezone(self.settings.tz).date()
        return self.gtfs_loader.build_calendar().index_for(reference), None

    async def _fetch_realtime(self, client: httpx.AsyncClient) -> Tuple[Optional[RealtimeFeed], Optional[str]]:
        if self.realtime_client is None:
            return None, None
        try:
            return await self.realtime_client.fetch_feed(client), None
        except FeedError as e:
            logger.warning(f"Realtime unavailable, showing scheduled times only: {e}")
            return None, str(e)

    async def _stop_arrivals(
        self,
        client: httpx.AsyncClient,
        semaphore: asyncio.Semaphore,
        ranked: RankedStop,
        now: datetime,
        realtime: Optional[RealtimeFeed],
        services: Optional[ServiceDayIndex],
    ) -> Tuple[StopArrivals, Optional[StopFailure]]:
        stop_id = ranked.stop.stop_id
        async with semaphore:
            try:
                scheduled = await self.schedule_client.get_arrivals_for_stop(client, stop_id)
            except FeedError as e:
                return StopArrivals(ranked_stop=ranked, available=False), StopFailure(stop_id=stop_id, error=e)

        try:
            rows = merge_arrivals(
                scheduled,
                now,
                realtime=realtime,
                services=services,
                stop_id=stop_id,
                tz=self.settings.tz,
                past_window=timedelta(minutes=self.settings.past_window_minutes),
                future_window=timedelta(minutes=self.settings.future_window_minutes),
                dedupe_by=self.settings.dedupe_by,
                include_unscheduled=self.settings.include_unscheduled,
            )
        except (TypeError, ValueError, OverflowError) as e:
            logger.error(f"Could not build arrivals for stop {stop_id}: {e}")
            return StopArrivals(ranked_stop=ranked, available=False), StopFailure(stop_id=stop_id, error=e)
        return StopArrivals(ranked_stop=ranked, arrivals=rows), None

    @staticmethod
    def _error_result(now: datetime, message: str) -> NearbyResult:
        return NearbyResult(stops=[], failures=[], last_updated=now, error=message)
