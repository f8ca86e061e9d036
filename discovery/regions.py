"""Viewport normalization: area selection, pan/zoom sanitizing, zoom levels."""
from __future__ import annotations

import math
from typing import Optional

from . import config
from .geo import Region, distance_meters, km_to_lat_delta, km_to_lng_delta, region_from_center
from .models import AdministrativeArea


def clamp(value: float, lo: float, hi: float) -> float:
    return max(lo, min(hi, value))


def _all_finite(*values: float) -> bool:
    return all(isinstance(v, (int, float)) and math.isfinite(v) for v in values)


def default_region() -> Region:
    return region_from_center(
        config.DEFAULT_CENTER_LAT, config.DEFAULT_CENTER_LNG, config.DEFAULT_VIEW_RADIUS_KM
    )


def region_from_area(area: AdministrativeArea) -> Optional[Region]:
    """Target viewport for a selected area, or None when it has no geometry."""
    if area.has_center and _all_finite(area.center_lat, area.center_lng):
        lat = float(area.center_lat)
        lng = float(area.center_lng)
        radius = area.default_radius_km
        if radius is None or not _all_finite(radius) or radius <= 0:
            radius = config.DEFAULT_AREA_RADIUS_KM
        return Region(
            latitude=clamp(lat, config.LAT_MIN, config.LAT_MAX),
            longitude=clamp(lng, config.LNG_MIN, config.LNG_MAX),
            latitude_delta=clamp(
                km_to_lat_delta(radius * 2), config.AREA_DELTA_MIN, config.AREA_DELTA_MAX
            ),
            longitude_delta=clamp(
                km_to_lng_delta(radius * 2, lat), config.AREA_DELTA_MIN, config.AREA_DELTA_MAX
            ),
        )

    bbox = area.bbox
    if bbox is not None and _all_finite(*bbox):
        min_lat, max_lat, min_lng, max_lng = bbox
        lat_delta = max(config.BBOX_MIN_DELTA, abs(max_lat - min_lat) * config.BBOX_PADDING)
        lng_delta = max(config.BBOX_MIN_DELTA, abs(max_lng - min_lng) * config.BBOX_PADDING)
        return Region(
            latitude=clamp((min_lat + max_lat) / 2, config.LAT_MIN, config.LAT_MAX),
            longitude=clamp((min_lng + max_lng) / 2, config.LNG_MIN, config.LNG_MAX),
            latitude_delta=clamp(lat_delta, config.AREA_DELTA_MIN, config.AREA_DELTA_MAX),
            longitude_delta=clamp(lng_delta, config.AREA_DELTA_MIN, config.AREA_DELTA_MAX),
        )

    return None


def zoom_for_longitude_delta(lon_delta: float, screen_width_px: float) -> int:
    """Slippy-map zoom level for cameras that animate by zoom, not delta."""
    delta = clamp(lon_delta, config.ZOOM_DELTA_MIN, config.ZOOM_DELTA_MAX)
    tiles = screen_width_px / config.TILE_SIZE_PX
    zoom = math.log2((360 * tiles) / delta)
    return int(clamp(round(zoom), config.ZOOM_MIN, config.ZOOM_MAX))


def sanitize_region(candidate: Region, previous: Region) -> Region:
    if not _all_finite(*candidate.values()):
        return previous
    return Region(
        latitude=clamp(candidate.latitude, config.LAT_MIN, config.LAT_MAX),
        longitude=clamp(candidate.longitude, config.LNG_MIN, config.LNG_MAX),
        latitude_delta=clamp(candidate.latitude_delta, config.VIEW_DELTA_MIN, config.VIEW_DELTA_MAX),
        longitude_delta=clamp(
            candidate.longitude_delta, config.VIEW_DELTA_MIN, config.VIEW_DELTA_MAX
        ),
    )


def has_moved_enough(
    last: Optional[Region],
    candidate: Region,
    min_distance_m: Optional[float] = None,
    delta_change: Optional[float] = None,
) -> bool:
    """Whether a viewport differs enough from the last fetched one to refetch."""
    if last is None:
        return True
    if min_distance_m is None:
        min_distance_m = config.MOVE_THRESHOLD_M
    if delta_change is None:
        delta_change = config.DELTA_CHANGE_THRESHOLD

    dist = distance_meters(last.latitude, last.longitude, candidate.latitude, candidate.longitude)
    lat_change = abs(candidate.latitude_delta - last.latitude_delta) / max(1e-6, last.latitude_delta)
    lng_change = abs(candidate.longitude_delta - last.longitude_delta) / max(
        1e-6, last.longitude_delta
    )
    return dist > min_distance_m or lat_change > delta_change or lng_change > delta_change
