"""
location_validator.py — Reject fallback and out-of-range coordinates.

Browsers and phone OSes answer a location request even when no GPS fix is
available. Two defaults show up often enough to filter:

    Fallback                      Coordinates                Source
    ────────────────────────────  ─────────────────────────  ──────────────────
    Null island                   (0, 0)                     unset / zeroed fix
    IP-geolocation city centre    (37.785834, -122.406417)   simulator & IP lookup

The city-centre default is matched against two nested bands: a tight one
(±0.0001°, ~11 m) for the exact value and a loose one (±0.001°, ~110 m) for
the same value after rounding or jitter. Both reject.

This is a heuristic against accidental fallbacks, not a GPS authenticity
check: a client can still submit any coordinate it likes.

Accuracy is advisory. Fixes worse than LOCATION_ACCURACY_WARN_METERS are
accepted but flagged and logged.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from guardian.app.core.config import settings

logger = logging.getLogger(__name__)


NULL_ISLAND_TOLERANCE = 0.001
KNOWN_FALLBACK = (37.785834, -122.406417)
FALLBACK_TIGHT_TOLERANCE = 0.0001
FALLBACK_LOOSE_TOLERANCE = 0.001

LAT_RANGE: Tuple[float, float] = (-90.0, 90.0)
LNG_RANGE: Tuple[float, float] = (-180.0, 180.0)


class RejectionReason(str, Enum):
    OUT_OF_RANGE      = "out_of_range"
    NULL_ISLAND       = "null_island"
    FALLBACK_LOCATION = "fallback_location"


@dataclass(frozen=True)
class LocationVerdict:
    """Outcome of validating one coordinate pair."""
    accepted: bool
    reason: Optional[RejectionReason] = None
    detail: str = ""
    low_accuracy: bool = False

    @property
    def rejected(self) -> bool:
        return not self.accepted


def _near(value: float, target: float, tolerance: float) -> bool:
    return abs(value - target) <= tolerance


def validate(
    lat: float,
    lng: float,
    accuracy: Optional[float] = None,
) -> LocationVerdict:
    """
    Validate a reported coordinate pair.

    Parameters
    ----------
    lat, lng : float
        Reported position in decimal degrees.
    accuracy : float, optional
        Reported horizontal accuracy in metres.

    Returns
    -------
    LocationVerdict
    """
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return LocationVerdict(False, RejectionReason.OUT_OF_RANGE, "non-finite coordinate")

    if not (LAT_RANGE[0] <= lat <= LAT_RANGE[1]) or not (LNG_RANGE[0] <= lng <= LNG_RANGE[1]):
        return LocationVerdict(
            False, RejectionReason.OUT_OF_RANGE,
            f"({lat}, {lng}) outside latitude {LAT_RANGE} / longitude {LNG_RANGE}",
        )

    if abs(lat) <= NULL_ISLAND_TOLERANCE and abs(lng) <= NULL_ISLAND_TOLERANCE:
        return LocationVerdict(False, RejectionReason.NULL_ISLAND, "coordinates at (0, 0)")

    fb_lat, fb_lng = KNOWN_FALLBACK
    if _near(lat, fb_lat, FALLBACK_TIGHT_TOLERANCE) and _near(lng, fb_lng, FALLBACK_TIGHT_TOLERANCE):
        return LocationVerdict(False, RejectionReason.FALLBACK_LOCATION, "exact")
    if _near(lat, fb_lat, FALLBACK_LOOSE_TOLERANCE) and _near(lng, fb_lng, FALLBACK_LOOSE_TOLERANCE):
        return LocationVerdict(False, RejectionReason.FALLBACK_LOCATION, "approximate")

    low_accuracy = (
        accuracy is not None
        and accuracy > settings.LOCATION_ACCURACY_WARN_METERS
    )
    if low_accuracy:
        logger.warning(
            "Low-accuracy fix accepted: (%.6f, %.6f) ±%.0fm", lat, lng, accuracy,
        )

    return LocationVerdict(True, low_accuracy=low_accuracy)
