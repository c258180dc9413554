"""Exceptions raised by stopfinder."""


class StopFinderError(Exception):
    """Base class for stopfinder errors."""


class GeographyError(StopFinderError):
    """The stop geography file could not be fetched, decompressed or parsed."""


class GeolocationError(StopFinderError):
    """The user's location is unavailable."""


class GTFSError(StopFinderError):
    """GTFS static calendar data could not be loaded."""


class FeedError(StopFinderError):
    """A schedule or realtime feed could not be fetched or decoded."""
