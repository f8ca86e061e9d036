"""Geospatial helpers."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Dict

KM_PER_DEGREE = 111.0


@dataclass(frozen=True)
class Region:
    """Map camera position: center plus visible span in degrees."""

    latitude: float
    longitude: float
    latitude_delta: float
    longitude_delta: float

    def values(self) -> tuple:
        return (self.latitude, self.longitude, self.latitude_delta, self.longitude_delta)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    r = 6371.0
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return r * c


def distance_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    return haversine_km(lat1, lon1, lat2, lon2) * 1000.0


def km_to_lat_delta(km: float) -> float:
    return km / KM_PER_DEGREE


def km_to_lng_delta(km: float, at_lat: float) -> float:
    denom = KM_PER_DEGREE * math.cos(math.radians(at_lat))
    # cos(90deg) is ~6e-17, not 0
    if abs(denom) < 1e-9:
        return km / KM_PER_DEGREE
    return km / denom


def region_from_center(lat: float, lng: float, radius_km: float) -> Region:
    """Viewport whose span covers the circle's diameter on both axes."""
    diameter = radius_km * 2
    return Region(
        latitude=lat,
        longitude=lng,
        latitude_delta=km_to_lat_delta(diameter),
        longitude_delta=km_to_lng_delta(diameter, lat),
    )


def region_to_bbox(region: Region) -> Dict[str, float]:
    half_lat = region.latitude_delta / 2
    half_lng = region.longitude_delta / 2
    return {
        "min_lat": region.latitude - half_lat,
        "max_lat": region.latitude + half_lat,
        "min_lng": region.longitude - half_lng,
        "max_lng": region.longitude + half_lng,
    }
