from typing import Optional, Protocol

from geosearch.core.config import Settings, settings
from geosearch.core.errors import NoLocation
from geosearch.models.dto import Coordinate


class LocationProvider(Protocol):
    """Source of the caller's current position."""

    async def current_location(self) -> Coordinate:
        """Return the current position or raise NoLocation."""
        ...


class StaticLocationProvider:
    """Serves a fixed, configured position (or none at all)."""

    def __init__(self, coordinate: Optional[Coordinate] = None):
        self.coordinate = coordinate

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "StaticLocationProvider":
        if config.DEFAULT_LATITUDE is None or config.DEFAULT_LONGITUDE is None:
            return cls(None)
        return cls(Coordinate(latitude=config.DEFAULT_LATITUDE, longitude=config.DEFAULT_LONGITUDE))

    async def current_location(self) -> Coordinate:
        if self.coordinate is None or not self.coordinate.is_valid():
            raise NoLocation("no location configured")
        return self.coordinate
