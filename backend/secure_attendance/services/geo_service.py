"""Geofence and location-accuracy validation."""
from dataclasses import asdict, dataclass
from typing import Dict, Optional
import math

from secure_attendance.models.attendance_session import Geofence


@dataclass(frozen=True)
class ReportedLocation:
    """Location as reported by the student's device."""

    latitude: float
    longitude: float
    accuracy: Optional[float] = None


@dataclass(frozen=True)
class GeoResult:
    """Outcome of a geofence check.

    ``evaluated`` is False when the session does not require location; that
    is distinct from a failed check.
    """

    evaluated: bool
    within_radius: bool
    distance_meters: Optional[float]
    accuracy_ok: bool

    @classmethod
    def not_evaluated(cls) -> 'GeoResult':
        return cls(evaluated=False, within_radius=False, distance_meters=None, accuracy_ok=False)

    @property
    def passed(self) -> bool:
        return self.evaluated and self.within_radius and self.accuracy_ok

    def to_dict(self) -> Dict:
        return asdict(self)


class GeoValidator:
    """Stateless geofence validator."""

    EARTH_RADIUS_METERS = 6371000.0
    DEFAULT_ACCURACY_THRESHOLD_METERS = 50.0

    def __init__(self, accuracy_threshold_meters: float = DEFAULT_ACCURACY_THRESHOLD_METERS):
        self.accuracy_threshold_meters = accuracy_threshold_meters

    @staticmethod
    def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
        """Great-circle distance between two GPS points in meters (haversine)."""
        for lat, lon in ((lat1, lon1), (lat2, lon2)):
            if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
                raise ValueError(f"Invalid coordinates: ({lat}, {lon})")

        lat1_rad = math.radians(lat1)
        lat2_rad = math.radians(lat2)
        delta_lat = math.radians(lat2 - lat1)
        delta_lon = math.radians(lon2 - lon1)

        a = (math.sin(delta_lat / 2) ** 2 +
             math.cos(lat1_rad) * math.cos(lat2_rad) *
             math.sin(delta_lon / 2) ** 2)
        # Rounding can push a slightly above 1 for antipodal points
        a = min(1.0, max(0.0, a))
        c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

        return GeoValidator.EARTH_RADIUS_METERS * c

    def accuracy_ok(self, accuracy: Optional[float]) -> bool:
        """Missing accuracy is treated as poor accuracy."""
        if accuracy is None:
            return False
        return 0 <= accuracy <= self.accuracy_threshold_meters

    def validate(self, geofence: Geofence, location: ReportedLocation) -> GeoResult:
        """Check a reported location against a geofence (boundary inclusive)."""
        distance = self.calculate_distance(
            geofence.latitude, geofence.longitude,
            location.latitude, location.longitude
        )

        return GeoResult(
            evaluated=True,
            within_radius=distance <= geofence.radius_meters,
            distance_meters=distance,
            accuracy_ok=self.accuracy_ok(location.accuracy)
        )
