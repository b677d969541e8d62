"""
Geofence validation service.
Uses Haversine formula to calculate distance between points.
"""
import math
from dataclasses import dataclass, asdict
from typing import Optional

from ..config import settings

# Earth radius in meters
EARTH_RADIUS_M = 6371000


@dataclass(frozen=True)
class GeofenceResult:
    """
    Outcome of a containment check.

    verified is False when the site has no configured coordinates: the
    check passed by default and proves nothing about the worker's location.
    """
    within_fence: bool
    distance_meters: float
    radius_meters: float
    verified: bool

    def as_dict(self) -> dict:
        data = asdict(self)
        data["distance_meters"] = round(self.distance_meters, 1)
        return data


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great circle distance between two points on Earth.

    Args:
        lat1: Latitude of first point
        lon1: Longitude of first point
        lat2: Latitude of second point
        lon2: Longitude of second point

    Returns:
        Distance in meters
    """
    # Convert to radians
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    # Haversine formula
    a = (
        math.sin(delta_phi / 2) ** 2 +
        math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_M * c


def distance_meters(a, b) -> float:
    """Distance between two objects exposing lat/lng."""
    return haversine_distance(float(a.lat), float(a.lng), float(b.lat), float(b.lng))


def site_has_coordinates(site) -> bool:
    return (
        site is not None
        and getattr(site, "location_lat", None) is not None
        and getattr(site, "location_lng", None) is not None
    )


def validate(position, site) -> GeofenceResult:
    """
    Check whether a position lies inside a site's geofence.

    Args:
        position: Current position (lat, lng)
        site: PropertySite-like object with location_lat, location_lng, geofence_radius_meters

    Returns:
        GeofenceResult; the boundary itself counts as inside
    """
    radius_m: Optional[float] = getattr(site, "geofence_radius_meters", None) if site is not None else None
    if radius_m is None:
        radius_m = settings.geo_radius_m_default
    radius_m = float(radius_m)

    if not site_has_coordinates(site):
        # No coordinates configured: allow, but flag as unverified
        return GeofenceResult(within_fence=True, distance_meters=0.0, radius_meters=radius_m, verified=False)

    distance = haversine_distance(
        float(position.lat),
        float(position.lng),
        float(site.location_lat),
        float(site.location_lng),
    )
    return GeofenceResult(
        within_fence=distance <= radius_m,
        distance_meters=distance,
        radius_meters=radius_m,
        verified=True,
    )
