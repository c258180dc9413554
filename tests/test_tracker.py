"""Tests for NearbyStopsTracker."""

import asyncio
import gzip
import os
import tempfile
import unittest
from datetime import datetime
from unittest.mock import AsyncMock, MagicMock
import sys
from pathlib import Path
from zoneinfo import ZoneInfo

import geojson
import httpx

# Add src to path so we can import stopfinder
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from stopfinder.config import Settings
from stopfinder.errors import FeedError, GeolocationError
from stopfinder.locator import FixedLocator, IPLocator
from stopfinder.render import NO_DATA, render_text
from stopfinder.tracker import NearbyStopsTracker

DUBLIN = ZoneInfo("Europe/Dublin")
NOW = datetime(2024, 7, 3, 12, 0, tzinfo=DUBLIN)  # a Wednesday

SCHEDULE_URL = "https://bucket.example.org/stops/{stop_id}.json"
REALTIME_URL = "https://rt.example.org/"

# Seven stops strung out northwards from the user at 53.35, -6.26
STOP_IDS = [f"8220DB00000{i}" for i in range(1, 8)]

CALENDAR_TXT = """service_id,monday,tuesday,wednesday,thursday,friday,saturday,sunday,start_date,end_date
A,1,1,1,1,1,0,0,20240101,20241231
W,0,0,0,0,0,1,1,20240101,20241231
"""

TRIPS_TXT = """route_id,service_id,trip_id
39A,A,T-WEEKDAY
39A,W,T-WEEKEND
"""


def schedule_body():
    return [
        {"trip_id": "T-WEEKDAY", "route_short": "39A", "trip_headsign": "Ongar", "arrival_time": "12:10:00"},
        {"trip_id": "T-WEEKEND", "route_short": "39A", "trip_headsign": "Ongar", "arrival_time": "12:20:00"},
    ]


DEFAULT_REALTIME = {
    "entity": [
        {
            "trip_update": {
                "trip": {"trip_id": "T-WEEKDAY"},
                "stop_time_update": [{"stop_id": STOP_IDS[0], "arrival": {"delay": 240}}],
            }
        }
    ]
}


class FakeBackend:
    """Routes schedule and realtime requests; records what was asked for."""

    def __init__(self, failing_stops=(), realtime_status=200, realtime_payload=None, delay=0.0):
        self.failing_stops = set(failing_stops)
        self.realtime_status = realtime_status
        self.realtime_payload = realtime_payload if realtime_payload is not None else DEFAULT_REALTIME
        self.delay = delay
        self.requests = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def __call__(self, request):
        self.requests.append(request)
        url = str(request.url)

        if url.startswith(REALTIME_URL):
            if self.realtime_status != 200:
                return httpx.Response(self.realtime_status)
            return httpx.Response(200, json=self.realtime_payload)

        stop_id = url.rsplit("/", 1)[-1].replace(".json", "")
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1

        if stop_id in self.failing_stops:
            return httpx.Response(500)
        return httpx.Response(200, json=schedule_body())


class TrackerTestCase(unittest.IsolatedAsyncioTestCase):
    """Writes a stop geography file and builds trackers against a fake backend."""

    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.stops_path = os.path.join(self.tmpdir.name, "stops.geojson.gz")
        features = [
            geojson.Feature(
                geometry=None,
                properties={
                    "AtcoCode": stop_id,
                    "SCN_English": f"Stop {i + 1}",
                    "Latitude": str(53.35 + (i + 1) * 0.001),
                    "Longitude": "-6.26",
                },
            )
            for i, stop_id in enumerate(STOP_IDS)
        ]
        with gzip.open(self.stops_path, "wt", encoding="utf-8") as f:
            f.write(geojson.dumps(geojson.FeatureCollection(features)))

    def tearDown(self):
        self.tmpdir.cleanup()

    def settings(self, **overrides):
        values = dict(
            stops_source=self.stops_path,
            schedule_url_template=SCHEDULE_URL,
            realtime_url=REALTIME_URL,
            latitude=53.35,
            longitude=-6.26,
            retry_backoff=0.0,
        )
        values.update(overrides)
        return Settings(**values)

    def tracker(self, backend, settings=None, **kwargs):
        client = httpx.AsyncClient(transport=httpx.MockTransport(backend))
        self.addAsyncCleanup(client.aclose)
        return NearbyStopsTracker(settings or self.settings(), http_client=client, **kwargs)


class TestTrackerFailures(TrackerTestCase):
    """Test fatal and partial failure handling."""

    async def test_geography_failure_is_fatal(self):
        """Test that no location or arrival requests are made without stops."""
        backend = FakeBackend()
        locator = MagicMock()
        locator.locate = AsyncMock()
        tracker = self.tracker(
            backend,
            self.settings(stops_source=os.path.join(self.tmpdir.name, "missing.geojson.gz")),
            locator=locator,
        )

        result = await tracker.get_nearby(NOW)

        self.assertFalse(result.ok)
        self.assertIn("Could not load bus stops", result.error)
        locator.locate.assert_not_called()
        self.assertEqual(backend.requests, [])
        self.assertTrue(render_text(result).startswith("Error:"))

    async def test_geolocation_failure_is_fatal(self):
        """Test that a denied or failed location lookup yields only an error."""
        backend = FakeBackend()
        locator = MagicMock()
        locator.locate = AsyncMock(side_effect=GeolocationError("permission denied"))
        tracker = self.tracker(backend, locator=locator)

        result = await tracker.get_nearby(NOW)

        self.assertFalse(result.ok)
        self.assertIn("permission denied", result.error)
        self.assertEqual(result.stops, [])
        self.assertEqual(backend.requests, [])

    async def test_one_stop_failing(self):
        """Test that a failing stop does not abort the others."""
        backend = FakeBackend(failing_stops={STOP_IDS[1]})
        tracker = self.tracker(backend)

        result = await tracker.get_nearby(NOW)

        self.assertTrue(result.ok)
        self.assertEqual(len(result.stops), 5)
        self.assertEqual([f.stop_id for f in result.failures], [STOP_IDS[1]])
        self.assertIsInstance(result.failures[0].error, FeedError)

        failed = result.stops[1]
        self.assertFalse(failed.available)
        self.assertEqual(failed.arrivals, [])
        for other in result.stops[:1] + result.stops[2:]:
            self.assertTrue(other.available)
            self.assertGreater(len(other.arrivals), 0)

        self.assertIn(NO_DATA, render_text(result, DUBLIN))

    async def test_realtime_failure_falls_back_to_schedule(self):
        """Test that scheduled rows are still shown when the realtime feed is down."""
        backend = FakeBackend(realtime_status=503)
        tracker = self.tracker(backend, self.settings(realtime_retries=1))

        result = await tracker.get_nearby(NOW)

        self.assertTrue(result.ok)
        self.assertIsNotNone(result.realtime_error)
        self.assertEqual(result.failures, [])
        rows = result.stops[0].arrivals
        self.assertGreater(len(rows), 0)
        self.assertFalse(any(row.is_realtime for row in rows))
        self.assertIn("Real-time information is unavailable.", render_text(result, DUBLIN))

    async def test_millisecond_realtime_timestamp(self):
        """Test that an out-of-range arrival time leaves the scheduled row in place."""
        millis = int(datetime(2024, 7, 3, 12, 14, tzinfo=DUBLIN).timestamp()) * 1000
        backend = FakeBackend(
            realtime_payload={"arrivals": [{"trip_id": "T-WEEKDAY", "stop_id": STOP_IDS[0], "arrival_time": millis}]}
        )
        tracker = self.tracker(backend, self.settings(include_unscheduled=True))

        result = await tracker.get_nearby(NOW)

        self.assertTrue(result.ok)
        self.assertEqual(result.failures, [])
        rows = result.stops[0].arrivals
        self.assertEqual([r.trip_id for r in rows], ["T-WEEKDAY", "T-WEEKEND"])
        self.assertFalse(rows[0].is_realtime)

    async def test_merge_error_recorded_per_stop(self):
        """Test that a stop whose rows cannot be built is reported instead of raising."""
        tracker = self.tracker(FakeBackend(), self.settings(dedupe_by="route"))

        result = await tracker.get_nearby(NOW)

        self.assertTrue(result.ok)
        self.assertEqual(len(result.failures), 5)
        self.assertIsInstance(result.failures[0].error, ValueError)
        self.assertFalse(any(stop.available for stop in result.stops))

    async def test_wrongly_typed_realtime_fields(self):
        """Test that a stop-time update with a non-object arrival does not break the pass."""
        backend = FakeBackend(
            realtime_payload={
                "entity": [
                    {
                        "trip_update": {
                            "trip": {"trip_id": "T-WEEKDAY"},
                            "stop_time_update": [{"stop_id": STOP_IDS[0], "arrival": "soon"}],
                        }
                    }
                ]
            }
        )
        tracker = self.tracker(backend)

        result = await tracker.get_nearby(NOW)

        self.assertTrue(result.ok)
        self.assertIsNone(result.realtime_error)
        self.assertEqual(result.failures, [])
        self.assertFalse(result.stops[0].arrivals[0].is_realtime)


class TestTrackerArrivals(TrackerTestCase):
    """Test ranking, realtime merging and calendar filtering."""

    async def test_nearest_stops_with_realtime(self):
        """Test the five nearest stops in order and the realtime merge at the first."""
        backend = FakeBackend()
        tracker = self.tracker(backend)

        result = await tracker.get_nearby(NOW)

        self.assertEqual([s.ranked_stop.stop.stop_id for s in result.stops], STOP_IDS[:5])
        self.assertEqual(result.stops[0].ranked_stop.compass, "N")
        self.assertFalse(result.calendar_applied)

        first = result.stops[0].arrivals
        # No calendar configured: both trips are shown
        self.assertEqual([r.trip_id for r in first], ["T-WEEKDAY", "T-WEEKEND"])
        self.assertEqual(first[0].realtime_time, datetime(2024, 7, 3, 12, 14, tzinfo=DUBLIN))

        # The realtime update is only for the first stop
        self.assertFalse(result.stops[1].arrivals[0].is_realtime)

    async def test_calendar_filters_inactive_services(self):
        """Test that weekend trips are hidden on a weekday once GTFS is loaded."""
        gtfs_dir = os.path.join(self.tmpdir.name, "gtfs")
        os.mkdir(gtfs_dir)
        with open(os.path.join(gtfs_dir, "calendar.txt"), "w") as f:
            f.write(CALENDAR_TXT)
        with open(os.path.join(gtfs_dir, "trips.txt"), "w") as f:
            f.write(TRIPS_TXT)

        tracker = self.tracker(FakeBackend(), self.settings(gtfs_source=gtfs_dir))

        result = await tracker.get_nearby(NOW)

        self.assertTrue(result.calendar_applied)
        self.assertIsNone(result.calendar_error)
        self.assertEqual([r.trip_id for r in result.stops[0].arrivals], ["T-WEEKDAY"])

    async def test_calendar_failure_shows_all_trips(self):
        """Test that an unloadable calendar is reported and filtering skipped."""
        tracker = self.tracker(
            FakeBackend(),
            self.settings(gtfs_source=os.path.join(self.tmpdir.name, "missing.zip")),
        )

        result = await tracker.get_nearby(NOW)

        self.assertTrue(result.ok)
        self.assertFalse(result.calendar_applied)
        self.assertIsNotNone(result.calendar_error)
        self.assertEqual(len(result.stops[0].arrivals), 2)

    async def test_bounded_concurrency(self):
        """Test that at most max_concurrency schedule requests are in flight."""
        backend = FakeBackend(delay=0.02)
        tracker = self.tracker(backend, self.settings(max_concurrency=2, realtime_url=None))

        result = await tracker.get_nearby(NOW)

        self.assertEqual(len(result.stops), 5)
        self.assertLessEqual(backend.max_in_flight, 2)
        self.assertEqual(backend.max_in_flight, 2)

    async def test_geography_loaded_once(self):
        """Test that a second pass reuses the loaded stops."""
        tracker = self.tracker(FakeBackend())
        await tracker.get_nearby(NOW)

        os.remove(self.stops_path)
        result = await tracker.get_nearby(NOW)

        self.assertTrue(result.ok)


class TestTrackerSetup(TrackerTestCase):
    """Test defaults and stop lookups."""

    def test_default_locator(self):
        tracker = NearbyStopsTracker(self.settings())
        self.assertIsInstance(tracker.locator, FixedLocator)

        tracker = NearbyStopsTracker(self.settings(latitude=None, longitude=None))
        self.assertIsInstance(tracker.locator, IPLocator)

    def test_realtime_disabled(self):
        tracker = NearbyStopsTracker(self.settings(realtime_url=None))
        self.assertIsNone(tracker.realtime_client)

    def test_get_stop(self):
        """Test lookup by AtcoCode and by name."""
        tracker = NearbyStopsTracker(self.settings())
        tracker.load_stops()

        self.assertEqual(tracker.get_stop(STOP_IDS[2]).name, "Stop 3")
        self.assertEqual(tracker.get_stop("Stop 4").stop_id, STOP_IDS[3])
        self.assertEqual(len(tracker.find_stops_by_name("stop")), 7)

        with self.assertRaises(ValueError):
            tracker.get_stop("Nowhere")


class TestIPLocator(unittest.IsolatedAsyncioTestCase):
    """Test the IP geolocation provider."""

    async def test_locate(self):
        def handler(request):
            return httpx.Response(200, json={"latitude": 53.35, "longitude": "-6.26"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            location = await IPLocator().locate(client)

        self.assertEqual(location.latitude, 53.35)
        self.assertEqual(location.longitude, -6.26)

    async def test_locate_failure(self):
        def handler(request):
            return httpx.Response(200, json={"error": True, "reason": "RateLimited"})

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with self.assertRaises(GeolocationError):
                await IPLocator().locate(client)


if __name__ == "__main__":
    unittest.main()
