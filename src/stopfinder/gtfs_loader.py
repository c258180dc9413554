"""GTFS static calendar and trip data loader."""

import io
import logging
import os
import zipfile
from typing import Dict, Optional

import pandas as pd
import requests

from .service_days import CALENDAR_COLUMNS, CALENDAR_DATES_COLUMNS, ServiceCalendar
from .errors import GTFSError

logger = logging.getLogger(__name__)


class GTFSLoader:
    """Loads calendar.txt, calendar_dates.txt and trips.txt into pandas tables."""

    def __init__(self):
        """Initialize the GTFS loader."""
        self.calendar: pd.DataFrame = pd.DataFrame(columns=CALENDAR_COLUMNS)
        self.calendar_dates: pd.DataFrame = pd.DataFrame(columns=CALENDAR_DATES_COLUMNS)
        self.trip_services: Dict[str, str] = {}  # trip_id -> service_id

    @property
    def loaded(self) -> bool:
        return bool(self.trip_services) and not (self.calendar.empty and self.calendar_dates.empty)

    def load(self, source: str, timeout: float = 60.0) -> None:
        """
        Load from a directory, a local zip file, or a zip URL.

        Args:
            source: Directory containing the .txt files, path to a GTFS zip, or URL of a GTFS zip.
            timeout: Download timeout in seconds for URLs.
        """
        if source.startswith(("http://", "https://")):
            self.load_from_zip_url(source, timeout=timeout)
        elif os.path.isdir(source):
            self.load_from_directory(source)
        else:
            self.load_from_zip(source)

    def load_from_zip_url(self, url: str, timeout: float = 60.0) -> None:
        """Download a GTFS zip and load its calendar and trips."""
        logger.info(f"Downloading GTFS data from {url}")
        try:
            response = requests.get(url, timeout=timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.error(f"Failed to load GTFS data: {e}")
            raise GTFSError(f"Failed to download {url}: {e}") from e
        self._load_zip(io.BytesIO(response.content))

    def load_from_zip(self, path: str) -> None:
        """Load calendar and trips from a local GTFS zip."""
        logger.info(f"Loading GTFS data from {path}")
        try:
            with open(path, "rb") as f:
                self._load_zip(io.BytesIO(f.read()))
        except OSError as e:
            raise GTFSError(f"Failed to read {path}: {e}") from e

    def load_from_directory(self, path: str) -> None:
        """Load from a directory of GTFS text files. trips may be gzip-compressed."""
        logger.info(f"Loading GTFS data from {path}")
        trips_path = os.path.join(path, "trips.txt")
        if not os.path.exists(trips_path) and os.path.exists(trips_path + ".gz"):
            trips_path += ".gz"
        self.load_from_files(
            calendar_path=os.path.join(path, "calendar.txt"),
            calendar_dates_path=os.path.join(path, "calendar_dates.txt"),
            trips_path=trips_path,
        )

    def load_from_files(
        self,
        calendar_path: Optional[str],
        calendar_dates_path: Optional[str],
        trips_path: str,
    ) -> None:
        """
        Load GTFS data from local CSV files.

        Either calendar file may be None or absent; GTFS feeds may ship only one of them.
        """
        try:
            if calendar_path and os.path.exists(calendar_path):
                self._load_calendar(calendar_path)
            if calendar_dates_path and os.path.exists(calendar_dates_path):
                self._load_calendar_dates(calendar_dates_path)
            self._load_trips(trips_path, compression="infer")
        except (OSError, ValueError, KeyError) as e:
            raise GTFSError(f"Failed to load GTFS files: {e}") from e
        self._log_counts()

    def load_from_urls(
        self,
        calendar_url: Optional[str],
        calendar_dates_url: Optional[str],
        trips_url: str,
        timeout: float = 60.0,
    ) -> None:
        """Load each table from its own URL. A trips URL ending in .gz is gunzipped."""
        try:
            if calendar_url:
                self._load_calendar(io.BytesIO(self._download(calendar_url, timeout)))
            if calendar_dates_url:
                self._load_calendar_dates(io.BytesIO(self._download(calendar_dates_url, timeout)))
            compression = "gzip" if trips_url.endswith(".gz") else None
            self._load_trips(io.BytesIO(self._download(trips_url, timeout)), compression=compression)
        except requests.RequestException as e:
            logger.error(f"Failed to load GTFS data: {e}")
            raise GTFSError(f"Failed to download GTFS data: {e}") from e
        except (OSError, ValueError, KeyError) as e:
            raise GTFSError(f"Failed to parse GTFS data: {e}") from e
        self._log_counts()

    @staticmethod
    def _download(url: str, timeout: float) -> bytes:
        logger.debug(f"Fetching {url}")
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        return response.content

    def _load_zip(self, buffer: io.BytesIO) -> None:
        try:
            with zipfile.ZipFile(buffer) as zip_file:
                names = set(zip_file.namelist())
                if "calendar.txt" in names:
                    self._load_calendar(io.BytesIO(zip_file.read("calendar.txt")))
                if "calendar_dates.txt" in names:
                    self._load_calendar_dates(io.BytesIO(zip_file.read("calendar_dates.txt")))
                self._load_trips(io.BytesIO(zip_file.read("trips.txt")), compression=None)
        except (zipfile.BadZipFile, KeyError, ValueError) as e:
            raise GTFSError(f"Invalid GTFS zip: {e}") from e
        self._log_counts()

    @staticmethod
    def _read_csv(source, compression=None) -> pd.DataFrame:
        # Keep every column as text so dates and ids compare exactly
        frame = pd.read_csv(source, dtype=str, keep_default_na=False, compression=compression)
        frame.columns = [c.strip() for c in frame.columns]
        for column in frame.columns:
            frame[column] = frame[column].astype(str).str.strip()
        return frame

    def _load_calendar(self, source) -> None:
        """Parse calendar.txt (weekly rules)."""
        frame = self._read_csv(source)
        missing = [c for c in CALENDAR_COLUMNS if c not in frame.columns]
        if missing:
            raise ValueError(f"calendar.txt missing columns: {missing}")
        self.calendar = frame[CALENDAR_COLUMNS]

    def _load_calendar_dates(self, source) -> None:
        """Parse calendar_dates.txt (date exceptions)."""
        frame = self._read_csv(source)
        missing = [c for c in CALENDAR_DATES_COLUMNS if c not in frame.columns]
        if missing:
            raise ValueError(f"calendar_dates.txt missing columns: {missing}")
        self.calendar_dates = frame[CALENDAR_DATES_COLUMNS]

    def _load_trips(self, source, compression=None) -> None:
        """Parse trips.txt into the trip_id -> service_id mapping."""
        frame = pd.read_csv(
            source,
            dtype=str,
            keep_default_na=False,
            usecols=["trip_id", "service_id"],
            compression=compression,
        )
        frame = frame[frame["trip_id"] != ""]
        self.trip_services = dict(zip(frame["trip_id"].str.strip(), frame["service_id"].str.strip()))

    def _log_counts(self) -> None:
        logger.info(
            f"Loaded {len(self.calendar)} calendar rules, {len(self.calendar_dates)} exceptions "
            f"and {len(self.trip_services)} trips"
        )

    def build_calendar(self) -> ServiceCalendar:
        """Wrap the loaded tables in a ServiceCalendar."""
        return ServiceCalendar(self.calendar, self.calendar_dates, self.trip_services)

    def clear(self) -> None:
        """Clear all loaded data to free memory."""
        self.calendar = pd.DataFrame(columns=CALENDAR_COLUMNS)
        self.calendar_dates = pd.DataFrame(columns=CALENDAR_DATES_COLUMNS)
        self.trip_services = {}
        logger.info("Cleared GTFS data from memory")
