"""Anchor-based "near this point" list for a tapped map location."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from . import config
from .coordinator import FetchTicket, QueryCoordinator
from .http import TransportError
from .models import SearchCenter, SearchFilters, merge_by_id
from .search_client import SearchClient, SearchStream, build_search_params, nearby_stream

logger = logging.getLogger(__name__)


@dataclass
class NearbyState:
    anchor: Optional[SearchCenter] = None
    is_open: bool = False
    items: List[Any] = field(default_factory=list)
    page: int = 1
    total: int = 0
    has_more: bool = False
    loading: bool = False
    fetching_more: bool = False
    error: Optional[str] = None


class NearbyListSheet:
    """Paginated list keyed by a fixed anchor, not the live viewport.

    The anchor radius is fixed and independent of the map's search radius.
    Filter edits only refetch while the sheet is open.
    """

    def __init__(
        self,
        client: SearchClient,
        coordinator: Optional[QueryCoordinator] = None,
        key: str = "nearby",
        area_id: Optional[int] = None,
        filters: Optional[SearchFilters] = None,
        stream: Optional[SearchStream] = None,
    ) -> None:
        self.client = client
        self.coordinator = coordinator or QueryCoordinator()
        self.key = key
        self.area_id = area_id
        self.filters = filters or SearchFilters()
        self.stream = stream or nearby_stream()
        self.state = NearbyState()

    def build_params(self, page: int) -> dict:
        return build_search_params(
            self.stream,
            self.filters,
            page=page,
            center=self.state.anchor,
            area_id=self.area_id,
        )

    async def open_at(self, lat: float, lng: float) -> None:
        self.state = NearbyState(
            anchor=SearchCenter(lat=lat, lng=lng, radius_km=config.NEARBY_RADIUS_KM),
            is_open=True,
        )
        await self.coordinator.run_now(self.key, self._load_first)

    def hide(self) -> None:
        self.state.is_open = False
        self.coordinator.cancel(self.key)
        self.state.loading = False
        self.state.fetching_more = False

    def set_area(self, area_id: Optional[int]) -> None:
        self.area_id = area_id

    async def set_filters(self, filters: SearchFilters) -> None:
        changed = filters.serialize() != self.filters.serialize()
        self.filters = filters
        if not changed or not self.state.is_open or self.state.anchor is None:
            return
        await self.coordinator.run_now(self.key, self._load_first)

    async def load_more(self) -> None:
        s = self.state
        if not s.is_open or not s.items or s.loading or s.fetching_more or not s.has_more:
            return
        await self.coordinator.run_now(self.key, self._load_more)

    def close(self) -> None:
        self.state.is_open = False
        self.coordinator.cancel(self.key)

    async def wait_idle(self) -> None:
        await self.coordinator.wait_idle(self.key)

    async def _load_first(self, ticket: FetchTicket) -> None:
        s = self.state
        s.error = None
        s.page = 1
        s.has_more = False
        s.fetching_more = False
        s.loading = True
        try:
            result = await self.client.search(self.stream, self.build_params(1))
        except TransportError as exc:
            ticket.ensure_current()
            s.loading = False
            s.error = str(exc) or "Failed to load nearby toilets"
            return
        ticket.ensure_current()
        s.items = list(result.items)
        s.total = result.total
        s.has_more = result.page * result.per_page < result.total
        s.loading = False

    async def _load_more(self, ticket: FetchTicket) -> None:
        s = self.state
        next_page = s.page + 1
        s.fetching_more = True
        try:
            result = await self.client.search(self.stream, self.build_params(next_page))
        except TransportError as exc:
            ticket.ensure_current()
            logger.info("nearby page %s failed: %s", next_page, exc)
            s.fetching_more = False
            s.error = str(exc) or "Failed to load nearby toilets"
            return
        ticket.ensure_current()
        s.items = merge_by_id(s.items, result.items)
        s.page = next_page
        total = result.total if result.has_total else len(s.items)
        s.total = total
        s.has_more = result.page * result.per_page < total
        s.fetching_more = False
