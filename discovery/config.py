"""Project configuration.

Loads user-defined discovery settings from discovery_config.json when
available, falling back to defaults. Keep API request shapes centralized here.
"""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

_REPO_ROOT = Path(__file__).resolve().parent.parent

# --- API endpoints ---

DEFAULT_API_BASE_URL = "https://mirhadati.octaprize.com/api"
API_BASE_URL = os.environ.get("DISCOVERY_API_URL") or DEFAULT_API_BASE_URL

MARKERS_PATH = "/toilets-markers"
TOILETS_PATH = "/toilets"
TAXONOMY_PATH = "/taxonomy"

# --- Default viewport (Algiers) ---

DEFAULT_CENTER_LAT = 36.7525
DEFAULT_CENTER_LNG = 3.04197
DEFAULT_VIEW_RADIUS_KM = 50.0
DEFAULT_AREA_RADIUS_KM = 30.0

# --- Region clamps ---

LAT_MIN, LAT_MAX = -85.0, 85.0
LNG_MIN, LNG_MAX = -179.999, 179.999
VIEW_DELTA_MIN, VIEW_DELTA_MAX = 0.0008, 60.0
AREA_DELTA_MIN, AREA_DELTA_MAX = 0.002, 40.0
BBOX_MIN_DELTA = 0.05
BBOX_PADDING = 1.2

# --- Zoom conversion ---

TILE_SIZE_PX = 256
ZOOM_DELTA_MIN, ZOOM_DELTA_MAX = 0.0005, 360.0
ZOOM_MIN, ZOOM_MAX = 2, 18

# --- Fetch coordination ---

MAP_DEBOUNCE_MS = 350
LIST_DEBOUNCE_MS = 0
MOVE_THRESHOLD_M = 300.0
DELTA_CHANGE_THRESHOLD = 0.25
CENTER_KEY_DECIMALS = 5

# --- Paging ---

LIST_PER_PAGE = 20
MAP_PER_PAGE = 80
NEARBY_PER_PAGE = 20
NEARBY_RADIUS_KM = 2.0
NEARBY_INCLUDE = "category,wilaya,owner,photos,open_hours,favorite"
DEFAULT_SORT = "distance"
DEFAULT_ORDER = "asc"

# --- HTTP ---

HTTP_TIMEOUT_SECONDS = 15
HTTP_RETRY_MAX = 3
HTTP_BACKOFF_BASE = 0.5
HTTP_BACKOFF_MAX = 8.0

_FLOAT_KEYS = {
    "move_threshold_m": "MOVE_THRESHOLD_M",
    "delta_change_threshold": "DELTA_CHANGE_THRESHOLD",
    "nearby_radius_km": "NEARBY_RADIUS_KM",
    "http_backoff_base": "HTTP_BACKOFF_BASE",
    "http_backoff_max": "HTTP_BACKOFF_MAX",
    "default_center_lat": "DEFAULT_CENTER_LAT",
    "default_center_lng": "DEFAULT_CENTER_LNG",
}
_INT_KEYS = {
    "map_debounce_ms": "MAP_DEBOUNCE_MS",
    "list_debounce_ms": "LIST_DEBOUNCE_MS",
    "list_per_page": "LIST_PER_PAGE",
    "map_per_page": "MAP_PER_PAGE",
    "nearby_per_page": "NEARBY_PER_PAGE",
    "http_timeout_seconds": "HTTP_TIMEOUT_SECONDS",
    "http_retry_max": "HTTP_RETRY_MAX",
}


def load_discovery_config(path: Optional[str] = None) -> bool:
    """Load discovery settings from a JSON file.

    Updates module-level globals with values from the config file. The
    DISCOVERY_API_URL environment variable wins over the file's api_base_url.
    Returns True if config was loaded, False if file not found.
    """
    if path is None:
        path = str(_REPO_ROOT / "discovery_config.json")

    config_path = Path(path)
    if not config_path.exists():
        return False

    with open(config_path, "r", encoding="utf-8") as f:
        data: Dict[str, Any] = json.load(f)

    globals_ref = globals()

    base_url = data.get("api_base_url")
    if base_url and not os.environ.get("DISCOVERY_API_URL"):
        globals_ref["API_BASE_URL"] = str(base_url).rstrip("/")

    for key, name in _FLOAT_KEYS.items():
        if data.get(key) is not None:
            globals_ref[name] = float(data[key])
    for key, name in _INT_KEYS.items():
        if data.get(key) is not None:
            globals_ref[name] = int(data[key])

    return True
