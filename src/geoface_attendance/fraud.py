"""
Impossible-travel heuristic for consecutive check-ins.

The assessment only annotates a record; it never blocks a commit.
"""

from datetime import datetime
from typing import Optional

import structlog

from .constants import MAX_PLAUSIBLE_SPEED_KMH, MIN_ELAPSED_HOURS
from .data_models import AttendanceRecord, FraudAssessment, GeoPosition
from .geofence import distance_between

# Initialize structured logger
logger = structlog.get_logger(__name__)


class FraudHeuristicEngine:
    """
    Flags check-ins whose implied travel speed since the previous check-in
    exceeds ``max_speed_kmh``.

    Parameters
    ----------
    max_speed_kmh : float, default=MAX_PLAUSIBLE_SPEED_KMH
        Highest plausible travel speed.
    min_elapsed_hours : float, default=MIN_ELAPSED_HOURS
        Floor applied to the elapsed time so coinciding timestamps do not
        divide by zero.

    Examples
    --------
    >>> engine = FraudHeuristicEngine()
    >>> engine.evaluate(None, position, timestamp).flagged
    False
    """

    def __init__(
        self,
        max_speed_kmh: float = MAX_PLAUSIBLE_SPEED_KMH,
        min_elapsed_hours: float = MIN_ELAPSED_HOURS,
    ) -> None:
        self.max_speed_kmh = max_speed_kmh
        self.min_elapsed_hours = min_elapsed_hours

    def evaluate(
        self,
        previous_record: Optional[AttendanceRecord],
        new_position: GeoPosition,
        new_timestamp: datetime,
    ) -> FraudAssessment:
        """
        Compare a new check-in against the identity's previous record.

        Returns
        -------
        FraudAssessment
            Never flagged without a previous record; otherwise flagged when
            distance / elapsed hours exceeds the speed bound, with the speed
            in the reason string.
        """
        if previous_record is None:
            return FraudAssessment(flagged=False)

        distance_km = distance_between(previous_record.position, new_position)
        elapsed_hours = (new_timestamp - previous_record.timestamp).total_seconds() / 3600.0
        elapsed_hours = max(elapsed_hours, self.min_elapsed_hours)
        speed_kmh = distance_km / elapsed_hours

        flagged = speed_kmh > self.max_speed_kmh
        reason = ""
        if flagged:
            reason = (
                f"Impossible travel: {speed_kmh:.1f} km/h since previous check-in "
                f"({distance_km:.1f} km in {elapsed_hours:.2f} h)"
            )
            logger.warning(
                "Impossible travel detected",
                identity_key=previous_record.identity_key,
                speed_kmh=round(speed_kmh, 1),
                distance_km=round(distance_km, 3),
                elapsed_hours=elapsed_hours,
            )

        return FraudAssessment(
            flagged=flagged,
            reason=reason,
            speed_kmh=speed_kmh,
            distance_km=distance_km,
            elapsed_hours=elapsed_hours,
        )
