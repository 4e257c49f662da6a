"""Great-circle geometry for geofence claims."""
import math

from app.core.exceptions import InvalidGeofence

# Mean Earth radius (IUGG)
EARTH_RADIUS_METERS = 6371008.8

MIN_RADIUS_METERS = 25.0
MAX_RADIUS_METERS = 1000.0
DEFAULT_RADIUS_METERS = 100.0


def haversine_distance(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Distance in meters between two WGS84 points"""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(a)))


def validate_position(lat: float, lng: float) -> None:
    if not (math.isfinite(lat) and math.isfinite(lng)):
        raise InvalidGeofence("Coordinates must be finite numbers", latitude=lat, longitude=lng)
    if not -90.0 <= lat <= 90.0 or not -180.0 <= lng <= 180.0:
        raise InvalidGeofence("Coordinates out of range", latitude=lat, longitude=lng)


def validate_radius(radius_meters: float) -> None:
    if not math.isfinite(radius_meters) or not MIN_RADIUS_METERS <= radius_meters <= MAX_RADIUS_METERS:
        raise InvalidGeofence(
            f"Radius must be between {MIN_RADIUS_METERS:g} and {MAX_RADIUS_METERS:g} meters",
            radius_meters=radius_meters
        )
