"""Search API client: marker and list endpoints plus query construction."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

from . import config
from .http import AUTH_IF_AVAILABLE, AUTH_REQUIRED, AsyncHttpClient
from .models import ResultPage, SearchCenter, SearchFilters, parse_result_page


@dataclass(frozen=True)
class SearchStream:
    """Request shape for one consumer of the search endpoints."""

    name: str
    path: str
    per_page: int
    debounce_ms: int
    markers: bool = False
    auth: str = AUTH_IF_AVAILABLE
    use_bbox: bool = False
    with_distance: bool = False
    include: Optional[str] = None
    sort: str = config.DEFAULT_SORT
    order: str = config.DEFAULT_ORDER


def map_stream() -> SearchStream:
    return SearchStream(
        name="markers",
        path=config.MARKERS_PATH,
        per_page=config.MAP_PER_PAGE,
        debounce_ms=config.MAP_DEBOUNCE_MS,
        markers=True,
        auth=AUTH_REQUIRED,
        use_bbox=True,
        with_distance=True,
    )


def list_stream() -> SearchStream:
    return SearchStream(
        name="list",
        path=config.TOILETS_PATH,
        per_page=config.LIST_PER_PAGE,
        debounce_ms=config.LIST_DEBOUNCE_MS,
        use_bbox=True,
    )


def nearby_stream() -> SearchStream:
    return SearchStream(
        name="nearby",
        path=config.TOILETS_PATH,
        per_page=config.NEARBY_PER_PAGE,
        debounce_ms=0,
        use_bbox=True,
        with_distance=True,
        include=config.NEARBY_INCLUDE,
    )


def _has_precise_center(center: Optional[SearchCenter]) -> bool:
    return center is not None and math.isfinite(center.lat) and math.isfinite(center.lng)


def build_search_params(
    stream: SearchStream,
    filters: SearchFilters,
    page: int = 1,
    center: Optional[SearchCenter] = None,
    area_id: Optional[int] = None,
    area_radius_km: Optional[float] = None,
) -> Dict[str, Any]:
    """Query parameters for the search endpoints.

    A precise center wins over the area filter: "near X" intersected with
    "inside area Y" is empty once the user pans outside Y.
    """
    params: Dict[str, Any] = {}
    if _has_precise_center(center):
        params["lat"] = center.lat
        params["lng"] = center.lng
        params["radius_km"] = center.radius_km
    elif area_id is not None:
        params["wilaya_id"] = area_id
        if area_radius_km is not None:
            params["radius_km"] = area_radius_km

    params.update(filters.to_params())

    params["page"] = page
    params["perPage"] = stream.per_page
    params["sort"] = stream.sort
    params["order"] = stream.order
    if stream.use_bbox:
        params["use_bbox"] = True
    if stream.with_distance:
        params["with_distance"] = True
    if stream.include:
        params["include"] = stream.include
    return params


class SearchClient:
    def __init__(self, http_client: AsyncHttpClient) -> None:
        self.http = http_client

    async def search(self, stream: SearchStream, params: Dict[str, Any]) -> ResultPage:
        response = await self.http.get_json(
            stream.path, params, auth=stream.auth, kind=stream.name
        )
        return parse_result_page(
            response,
            requested_page=int(params.get("page", 1)),
            per_page=int(params.get("perPage", stream.per_page)),
            markers=stream.markers,
        )

    async def aclose(self) -> None:
        await self.http.aclose()
