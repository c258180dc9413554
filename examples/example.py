"""Example usage of NearbyStopsTracker."""

import asyncio
import logging
import sys
from pathlib import Path

# Add src to path so we can import stopfinder
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from stopfinder.config import Settings
from stopfinder.render import render_text
from stopfinder.tracker import NearbyStopsTracker

# Set up logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


async def print_nearby(settings: Settings):
    """
    Fetch and display the nearest stops and their arrivals.

    Args:
        settings: Tracker settings (stops file, feeds, location).
    """
    tracker = NearbyStopsTracker(settings)
    result = await tracker.get_nearby()

    print(f"\n{'='*70}")
    print(f"Nearest stops at {result.last_updated.strftime('%H:%M:%S')}")
    print(f"{'='*70}\n")
    print(render_text(result, settings.tz))

    for failure in result.failures:
        logger.warning(f"Stop {failure.stop_id}: {failure.error}")

    return 0 if result.ok else 1


def main():
    """Usage: example.py [LATITUDE LONGITUDE]. Other settings come from STOPFINDER_* variables."""
    settings = Settings.from_env()

    if len(sys.argv) == 3:
        try:
            settings.latitude = float(sys.argv[1])
            settings.longitude = float(sys.argv[2])
        except ValueError:
            print("Latitude and longitude must be decimal degrees, e.g. 53.3498 -6.2603")
            sys.exit(2)
    elif len(sys.argv) != 1:
        print(main.__doc__)
        sys.exit(2)

    sys.exit(asyncio.run(print_nearby(settings)))


if __name__ == "__main__":
    main()
