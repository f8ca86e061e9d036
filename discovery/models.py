"""Value types, response-envelope parsing and merge helpers."""
from __future__ import annotations

import hashlib
import json
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

ACCESS_METHODS = ("public", "code", "staff", "key", "app")
PRICING_MODELS = ("flat", "per-visit", "per-30-min", "per-60-min")


def _finite_or_none(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


@dataclass(frozen=True)
class AdministrativeArea:
    """A wilaya: filter dimension and source of a default viewport."""

    id: int
    code: str
    number: Optional[int] = None
    names: Dict[str, Optional[str]] = field(default_factory=dict, compare=False, hash=False)
    center_lat: Optional[float] = None
    center_lng: Optional[float] = None
    default_radius_km: Optional[float] = None
    min_lat: Optional[float] = None
    max_lat: Optional[float] = None
    min_lng: Optional[float] = None
    max_lng: Optional[float] = None

    @classmethod
    def from_api(cls, payload: Dict[str, Any]) -> "AdministrativeArea":
        number = payload.get("number")
        return cls(
            id=int(payload["id"]),
            code=str(payload.get("code") or ""),
            number=int(number) if number is not None else None,
            names={lang: payload.get(lang) for lang in ("en", "fr", "ar")},
            center_lat=_finite_or_none(payload.get("center_lat")),
            center_lng=_finite_or_none(payload.get("center_lng")),
            default_radius_km=_finite_or_none(payload.get("default_radius_km")),
            min_lat=_finite_or_none(payload.get("min_lat")),
            max_lat=_finite_or_none(payload.get("max_lat")),
            min_lng=_finite_or_none(payload.get("min_lng")),
            max_lng=_finite_or_none(payload.get("max_lng")),
        )

    @property
    def has_center(self) -> bool:
        return self.center_lat is not None and self.center_lng is not None

    @property
    def bbox(self) -> Optional[Tuple[float, float, float, float]]:
        if self.min_lat is None or self.max_lat is None:
            return None
        if self.min_lng is None or self.max_lng is None:
            return None
        return (self.min_lat, self.max_lat, self.min_lng, self.max_lng)

    def label(self, lang: str = "en") -> str:
        for key in (lang, "en", "fr", "ar"):
            name = self.names.get(key)
            if name:
                return name
        return self.code


class AreaCatalog:
    """Read-only list of administrative areas from the taxonomy endpoint."""

    def __init__(self, areas: Iterable[AdministrativeArea]) -> None:
        self.areas: List[AdministrativeArea] = list(areas)
        self._by_id = {a.id: a for a in self.areas}
        self._by_code = {a.code.lower(): a for a in self.areas if a.code}

    def __len__(self) -> int:
        return len(self.areas)

    def __iter__(self):
        return iter(self.areas)

    def get(self, area_id: int) -> Optional[AdministrativeArea]:
        return self._by_id.get(area_id)

    def find(self, ref: str) -> Optional[AdministrativeArea]:
        """Look up by code, numeric id or wilaya number."""
        ref = ref.strip()
        area = self._by_code.get(ref.lower())
        if area is not None:
            return area
        if ref.isdigit():
            value = int(ref)
            area = self._by_id.get(value)
            if area is not None:
                return area
            for candidate in self.areas:
                if candidate.number == value:
                    return candidate
        return None


def parse_area_catalog(payload: Any) -> AreaCatalog:
    rows: Any = []
    if isinstance(payload, dict):
        rows = payload.get("wilayas")
        if rows is None:
            data = payload.get("data")
            rows = data.get("wilayas") if isinstance(data, dict) else data
    elif isinstance(payload, list):
        rows = payload
    areas = []
    for row in rows or []:
        if isinstance(row, dict) and row.get("id") is not None:
            areas.append(AdministrativeArea.from_api(row))
    return AreaCatalog(areas)


@dataclass(frozen=True)
class SearchFilters:
    is_free: Optional[bool] = None
    access_method: Optional[str] = None
    pricing_model: Optional[str] = None
    min_rating: Optional[float] = None
    amenities: Tuple[str, ...] = ()
    categories: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        # accept lists from callers while keeping the object hashable
        object.__setattr__(self, "amenities", tuple(self.amenities or ()))
        object.__setattr__(self, "categories", tuple(self.categories or ()))
        if self.access_method is not None and self.access_method not in ACCESS_METHODS:
            raise ValueError(f"Unknown access method: {self.access_method}")
        if self.pricing_model is not None and self.pricing_model not in PRICING_MODELS:
            raise ValueError(f"Unknown pricing model: {self.pricing_model}")

    def serialize(self) -> str:
        payload = {
            "is_free": self.is_free,
            "access_method": self.access_method,
            "pricing_model": self.pricing_model,
            "min_rating": self.min_rating,
            "amenities": list(self.amenities),
            "categories": list(self.categories),
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":"))

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if self.is_free is not None:
            params["is_free"] = bool(self.is_free)
        if self.access_method is not None:
            params["access_method"] = self.access_method
        if self.pricing_model is not None:
            params["pricing_model"] = self.pricing_model
        if self.min_rating is not None:
            params["min_rating"] = self.min_rating
        if self.amenities:
            params["amenities"] = list(self.amenities)
        if self.categories:
            params["categories"] = list(self.categories)
        return params


@dataclass(frozen=True)
class SearchCenter:
    lat: float
    lng: float
    radius_km: float


@dataclass(frozen=True)
class Marker:
    id: int
    lat: float
    lng: float
    is_free: bool
    distance_km: Optional[float] = None


@dataclass
class ResultPage:
    items: List[Any]
    page: int
    per_page: int
    total: int
    # False when meta.total was absent and total fell back to len(items)
    has_total: bool = True


def make_query_key(
    area_id: Optional[int],
    filters: SearchFilters,
    center: Optional[SearchCenter],
    decimals: int = 5,
) -> str:
    if center is not None:
        center_part: Any = [round(center.lat, decimals), round(center.lng, decimals), center.radius_km]
    else:
        center_part = None
    payload = json.dumps(
        {"area": area_id, "filters": filters.serialize(), "center": center_part},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def parse_marker(row: Dict[str, Any]) -> Optional[Marker]:
    marker_id = row.get("id")
    lat = _finite_or_none(row.get("lat"))
    lng = _finite_or_none(row.get("lng"))
    if marker_id is None or lat is None or lng is None:
        return None
    return Marker(
        id=int(marker_id),
        lat=lat,
        lng=lng,
        is_free=bool(row.get("is_free")),
        distance_km=_finite_or_none(row.get("distance_km")),
    )


def _item_id(item: Any) -> Any:
    if isinstance(item, dict):
        return item.get("id")
    return getattr(item, "id", None)


def dedupe_by_id(items: Iterable[Any]) -> List[Any]:
    seen = set()
    out: List[Any] = []
    for item in items:
        item_id = _item_id(item)
        if item_id is None or item_id in seen:
            continue
        seen.add(item_id)
        out.append(item)
    return out


def merge_by_id(existing: Iterable[Any], incoming: Iterable[Any]) -> List[Any]:
    """Ordered merge used when appending a page.

    Existing items keep their position. An incoming item whose id is already
    present replaces the stored record in place (dict records are
    shallow-merged); new ids are appended in server order.
    """
    merged: Dict[Any, Any] = {}
    for item in existing:
        item_id = _item_id(item)
        if item_id is not None and item_id not in merged:
            merged[item_id] = item
    for item in incoming:
        item_id = _item_id(item)
        if item_id is None:
            continue
        current = merged.get(item_id)
        if isinstance(current, dict) and isinstance(item, dict):
            merged[item_id] = {**current, **item}
        else:
            merged[item_id] = item
    return list(merged.values())


def parse_result_page(
    response: Any,
    requested_page: int,
    per_page: int,
    markers: bool = False,
) -> ResultPage:
    """Normalize a `{data|markers, meta?}` envelope.

    A missing list degrades to an empty page. Missing meta falls back to the
    requested page/per-page and `total = len(items)`.
    """
    rows: Any = None
    if isinstance(response, dict):
        rows = response.get("markers") if markers else None
        if rows is None:
            rows = response.get("data")
    if not isinstance(rows, list):
        rows = []

    if markers:
        items: List[Any] = [m for m in (parse_marker(r) for r in rows if isinstance(r, dict)) if m]
    else:
        items = [r for r in rows if isinstance(r, dict)]
    items = dedupe_by_id(items)

    meta = response.get("meta") if isinstance(response, dict) else None
    if not isinstance(meta, dict):
        meta = {}
    page = _int_or(meta.get("page"), requested_page)
    size = _int_or(meta.get("perPage", meta.get("per_page")), per_page)
    has_total = _int_or(meta.get("total"), -1) >= 0
    total = _int_or(meta.get("total"), len(items)) if has_total else len(items)
    return ResultPage(items=items, page=page, per_page=size, total=total, has_total=has_total)


def _int_or(value: Any, default: int) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default
