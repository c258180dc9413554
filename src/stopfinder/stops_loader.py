"""Bus stop geography loader (gzip-compressed GeoJSON)."""

import gzip
import logging
import zlib
from typing import Dict, List, Optional

import geojson
import requests

from .errors import GeographyError
from .models import Stop

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"

UNKNOWN = "Unknown"


class StopsLoader:
    """Loads and indexes bus stops from a GeoJSON FeatureCollection."""

    def __init__(
        self,
        id_field: str = "AtcoCode",
        name_field: str = "SCN_English",
        lat_field: str = "Latitude",
        lon_field: str = "Longitude",
    ):
        """
        Initialize the stops loader.

        Args:
            id_field: Feature property holding the stop code.
            name_field: Feature property holding the display name.
            lat_field: Feature property holding the latitude string.
            lon_field: Feature property holding the longitude string.
        """
        self.id_field = id_field
        self.name_field = name_field
        self.lat_field = lat_field
        self.lon_field = lon_field
        self.stops: Dict[str, Stop] = {}
        self.stops_by_name: Dict[str, List[str]] = {}  # name -> [stop_ids]

    def load(self, source: str, timeout: float = 30.0) -> None:
        """Load from a URL or a local path."""
        if source.startswith(("http://", "https://")):
            self.load_from_url(source, timeout=timeout)
        else:
            self.load_from_file(source)

    def load_from_url(self, url: str, timeout: float = 30.0) -> None:
        """Download and load the geography file."""
        logger.info(f"Downloading stop geography from {url}")
        try:
            response = requests.get(url, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to download stop geography: {e}")
            raise GeographyError(f"Failed to download {url}: {e}") from e
        self._load_geojson(response.content)
        logger.info(f"Loaded {len(self.stops)} stops")

    def load_from_file(self, path: str) -> None:
        """Load the geography file from disk."""
        logger.info(f"Loading stop geography from {path}")
        try:
            with open(path, "rb") as f:
                raw = f.read()
        except OSError as e:
            logger.error(f"Failed to read stop geography: {e}")
            raise GeographyError(f"Failed to read {path}: {e}") from e
        self._load_geojson(raw)
        logger.info(f"Loaded {len(self.stops)} stops")

    def _load_geojson(self, raw: bytes) -> None:
        """Decompress (when gzipped) and parse a FeatureCollection into Stop objects."""
        try:
            if raw[:2] == GZIP_MAGIC:
                raw = gzip.decompress(raw)
            collection = geojson.loads(raw.decode("utf-8"))
        except (OSError, EOFError, zlib.error, UnicodeDecodeError, ValueError, TypeError, IndexError) as e:
            raise GeographyError(f"Unreadable stop geography: {e}") from e

        features = collection.get("features") if isinstance(collection, dict) else None
        if not isinstance(features, list):
            raise GeographyError("Stop geography is not a FeatureCollection")

        stops: Dict[str, Stop] = {}
        stops_by_name: Dict[str, List[str]] = {}

        for feature in features:
            stop = self._parse_feature(feature)
            if stop is None:
                continue
            stops[stop.stop_id] = stop
            stops_by_name.setdefault(stop.name, []).append(stop.stop_id)

        self.stops = stops
        self.stops_by_name = stops_by_name

    def _parse_feature(self, feature) -> Optional[Stop]:
        if not isinstance(feature, dict):
            return None
        properties = feature.get("properties")
        if not isinstance(properties, dict):
            logger.debug("Skipping feature without a properties object")
            return None

        stop_id = properties.get(self.id_field)
        if not stop_id:
            logger.debug(f"Skipping feature without {self.id_field}")
            return None

        latitude = _parse_coordinate(properties.get(self.lat_field))
        longitude = _parse_coordinate(properties.get(self.lon_field))

        # Fall back to the Point geometry ([lon, lat]) when properties lack coordinates
        if latitude is None or longitude is None:
            geometry = feature.get("geometry")
            if not isinstance(geometry, dict):
                geometry = {}
            coordinates = geometry.get("coordinates")
            if geometry.get("type") == "Point" and isinstance(coordinates, (list, tuple)) and len(coordinates) >= 2:
                longitude = _parse_coordinate(coordinates[0])
                latitude = _parse_coordinate(coordinates[1])

        return Stop(
            stop_id=str(stop_id),
            name=str(properties.get(self.name_field) or UNKNOWN),
            latitude=latitude,
            longitude=longitude,
        )

    def get_stop(self, stop_id: str) -> Stop:
        """Get stop by AtcoCode."""
        if stop_id not in self.stops:
            raise ValueError(f"Stop {stop_id} not found")
        return self.stops[stop_id]

    def find_stops_by_name(self, name: str) -> List[Stop]:
        """Find stops by name (partial match)."""
        results = []
        name_lower = name.lower()

        for stop_name, stop_ids in self.stops_by_name.items():
            if name_lower in stop_name.lower():
                for stop_id in stop_ids:
                    results.append(self.stops[stop_id])

        return results

    def clear(self) -> None:
        """Clear all loaded stops to free memory."""
        self.stops.clear()
        self.stops_by_name.clear()
        logger.info("Cleared stop geography from memory")


def _parse_coordinate(value) -> Optional[float]:
    """Parse a decimal-degree string; None when missing or unparseable."""
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError, OverflowError):
        return None
