"""
Position acquisition.
"""

import abc
from datetime import datetime, timezone
from typing import Optional

import structlog

from .data_models import GeoPosition
from .exceptions import LocationUnavailable

# Initialize structured logger
logger = structlog.get_logger(__name__)


class PositionProvider(abc.ABC):
    """Supplies the subject's current position."""

    @abc.abstractmethod
    async def current_position(self) -> GeoPosition:
        """
        Return a fresh position.

        Raises
        ------
        LocationUnavailable
            On denied permission or no signal. Timeouts are enforced by the
            caller.
        """


class StaticPositionProvider(PositionProvider):
    """
    Fixed position for stationary kiosks.

    Parameters
    ----------
    latitude, longitude : Optional[float]
        Kiosk coordinates; leaving either unset reports no signal.
    accuracy : float, default=0.0
        Reported accuracy in metres.
    """

    def __init__(
        self,
        latitude: Optional[float],
        longitude: Optional[float],
        accuracy: float = 0.0,
    ) -> None:
        self.latitude = latitude
        self.longitude = longitude
        self.accuracy = accuracy

    async def current_position(self) -> GeoPosition:
        if self.latitude is None or self.longitude is None:
            raise LocationUnavailable("Location not available", cause="no_signal")

        position = GeoPosition(
            latitude=self.latitude,
            longitude=self.longitude,
            accuracy=self.accuracy,
            timestamp=datetime.now(timezone.utc),
        )
        logger.debug("Static position provided", lat=position.latitude, lon=position.longitude)
        return position
