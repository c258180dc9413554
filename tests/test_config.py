"""Tests for Settings."""

import unittest
import sys
from pathlib import Path

# Add src to path so we can import stopfinder
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from stopfinder.config import DEFAULT_REALTIME_URL, Settings


class TestSettings(unittest.TestCase):
    """Test defaults and environment overrides."""

    def test_defaults(self):
        settings = Settings.from_env({})

        self.assertEqual(settings.nearest_count, 5)
        self.assertEqual(settings.realtime_url, DEFAULT_REALTIME_URL)
        self.assertIsNone(settings.gtfs_source)
        self.assertEqual(str(settings.tz), "Europe/Dublin")

    def test_env_overrides(self):
        settings = Settings.from_env(
            {
                "STOPFINDER_NEAREST_COUNT": "3",
                "STOPFINDER_HTTP_TIMEOUT": "2.5",
                "STOPFINDER_INCLUDE_UNSCHEDULED": "true",
                "STOPFINDER_LATITUDE": "53.35",
                "STOPFINDER_LONGITUDE": " -6.26 ",
                "STOPFINDER_GTFS_SOURCE": "/data/gtfs.zip",
                "UNRELATED": "x",
            }
        )

        self.assertEqual(settings.nearest_count, 3)
        self.assertEqual(settings.http_timeout, 2.5)
        self.assertTrue(settings.include_unscheduled)
        self.assertEqual(settings.latitude, 53.35)
        self.assertEqual(settings.longitude, -6.26)
        self.assertEqual(settings.gtfs_source, "/data/gtfs.zip")

    def test_empty_realtime_url_disables_realtime(self):
        settings = Settings.from_env({"STOPFINDER_REALTIME_URL": ""})
        self.assertIsNone(settings.realtime_url)

    def test_invalid_number(self):
        with self.assertRaises(ValueError):
            Settings.from_env({"STOPFINDER_MAX_CONCURRENCY": "many"})


if __name__ == "__main__":
    unittest.main()
