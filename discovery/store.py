"""Discovery store: filters, area, center and a paginated result set."""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from . import config
from .coordinator import FetchTicket, QueryCoordinator
from .geo import Region
from .http import TransportError
from .models import (
    AdministrativeArea,
    SearchCenter,
    SearchFilters,
    make_query_key,
    merge_by_id,
)
from .regions import default_region, has_moved_enough, region_from_area, sanitize_region
from .search_client import SearchClient, SearchStream, build_search_params, list_stream, map_stream

logger = logging.getLogger(__name__)

Listener = Callable[["DiscoveryState"], None]


@dataclass
class DiscoveryState:
    selected_area: Optional[AdministrativeArea] = None
    filters: SearchFilters = field(default_factory=SearchFilters)
    center: Optional[SearchCenter] = None
    items: List[Any] = field(default_factory=list)
    page: int = 1
    per_page: int = config.LIST_PER_PAGE
    total: int = 0
    has_more: bool = False
    loading: bool = False
    refreshing: bool = False
    error: Optional[str] = None


class DiscoveryStore:
    """One store per screen; list and map screens own separate instances.

    Setter calls that change the query key schedule a single debounced
    first-page load. Every load runs through the coordinator under this
    store's key, so a newer load always cancels an older one.
    """

    def __init__(
        self,
        client: SearchClient,
        stream: SearchStream,
        coordinator: Optional[QueryCoordinator] = None,
        key: Optional[str] = None,
    ) -> None:
        self.client = client
        self.stream = stream
        self.coordinator = coordinator or QueryCoordinator()
        self.key = key or stream.name
        self.state = DiscoveryState(per_page=stream.per_page)
        self.viewport: Region = default_region()
        self.last_fetched_viewport: Optional[Region] = None
        self._query_key: Optional[str] = None
        self._listeners: List[Listener] = []

    # --- listeners ---

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self.state)

    # --- controls ---

    def set_selected_area(self, area: Optional[AdministrativeArea]) -> None:
        self.state.selected_area = area
        self._notify()
        self._schedule_if_changed()

    def set_filters(self, filters: SearchFilters) -> None:
        self.state.filters = filters
        self._notify()
        self._schedule_if_changed()

    def set_center(self, lat: float, lng: float, radius_km: float) -> None:
        if not all(math.isfinite(v) for v in (lat, lng, radius_km)) or radius_km <= 0:
            logger.debug("Ignoring invalid center %s,%s r=%s", lat, lng, radius_km)
            return
        self.state.center = SearchCenter(lat=lat, lng=lng, radius_km=radius_km)
        self._notify()
        self._schedule_if_changed()

    def clear_center(self) -> None:
        self.state.center = None
        self._notify()
        self._schedule_if_changed()

    def select_area(self, area: Optional[AdministrativeArea]) -> Optional[Region]:
        """Select an area and return the viewport the map should move to.

        Returns None when the area carries no geometry; the caller keeps its
        current viewport while the area still scopes the search.
        """
        self.set_selected_area(area)
        if area is None:
            return default_region()
        return region_from_area(area)

    def update_viewport(self, region: Region, radius_km: Optional[float] = None) -> Region:
        """Apply a pan/zoom event; moves the search center only past the threshold."""
        sanitized = sanitize_region(region, self.viewport)
        if sanitized is self.viewport:
            return self.viewport
        self.viewport = sanitized
        if not has_moved_enough(self.last_fetched_viewport, sanitized):
            return sanitized
        self.set_center(sanitized.latitude, sanitized.longitude, self._search_radius(radius_km))
        return sanitized

    def _search_radius(self, radius_km: Optional[float]) -> float:
        candidates = [radius_km]
        if self.state.selected_area is not None:
            candidates.append(self.state.selected_area.default_radius_km)
        if self.state.center is not None:
            candidates.append(self.state.center.radius_km)
        for value in candidates:
            if value is not None and math.isfinite(value) and value > 0:
                return float(value)
        return config.DEFAULT_VIEW_RADIUS_KM

    # --- query construction ---

    def current_query_key(self) -> str:
        area = self.state.selected_area
        return make_query_key(
            area.id if area else None,
            self.state.filters,
            self.state.center,
            decimals=config.CENTER_KEY_DECIMALS,
        )

    def build_params(self, page: int = 1) -> dict:
        area = self.state.selected_area
        return build_search_params(
            self.stream,
            self.state.filters,
            page=page,
            center=self.state.center,
            area_id=area.id if area else None,
            area_radius_km=area.default_radius_km if area else None,
        )

    def _schedule_if_changed(self) -> None:
        query_key = self.current_query_key()
        if query_key == self._query_key:
            return
        self._query_key = query_key
        self.coordinator.schedule(self.key, self.stream.debounce_ms, self._load_first)

    # --- actions ---

    async def fetch_first(self) -> None:
        self._query_key = self.current_query_key()
        await self.coordinator.run_now(self.key, self._load_first)

    def fetch_first_debounced(self) -> None:
        self._query_key = self.current_query_key()
        self.coordinator.schedule(self.key, self.stream.debounce_ms, self._load_first)

    async def fetch_next(self) -> None:
        if self.state.loading or self.state.refreshing or not self.state.has_more:
            return
        await self.coordinator.run_now(self.key, self._load_next)

    async def refresh(self) -> None:
        self._query_key = self.current_query_key()
        await self.coordinator.run_now(self.key, self._load_refresh)

    def refresh_debounced(self) -> None:
        self._query_key = self.current_query_key()
        self.coordinator.schedule(self.key, self.stream.debounce_ms, self._load_refresh)

    def clear(self) -> None:
        self.coordinator.cancel(self.key)
        self.state.items = []
        self.state.page = 1
        self.state.total = 0
        self.state.has_more = False
        self.state.loading = False
        self.state.refreshing = False
        self.state.error = None
        self._notify()

    def close(self) -> None:
        """Screen teardown: drop the pending timer and abort the in-flight request."""
        self.coordinator.cancel(self.key)
        self._listeners.clear()

    async def wait_idle(self) -> None:
        await self.coordinator.wait_idle(self.key)

    # --- loaders (run under the coordinator) ---

    async def _load_first(self, ticket: FetchTicket) -> None:
        await self._load_page_one(ticket, flag="loading")

    async def _load_refresh(self, ticket: FetchTicket) -> None:
        await self._load_page_one(ticket, flag="refreshing")

    async def _load_page_one(self, ticket: FetchTicket, flag: str) -> None:
        params = self.build_params(page=1)
        viewport = self.viewport
        # the latest load owns both flags
        self.state.loading = False
        self.state.refreshing = False
        setattr(self.state, flag, True)
        self.state.error = None
        self.state.page = 1
        self._notify()

        try:
            result = await self.client.search(self.stream, params)
        except TransportError as exc:
            ticket.ensure_current()
            logger.info("%s page 1 failed: %s", self.key, exc)
            setattr(self.state, flag, False)
            self.state.error = str(exc) or "Failed to load"
            self._notify()
            return
        ticket.ensure_current()

        self.state.items = list(result.items)
        self.state.page = 1
        self.state.total = result.total
        self.state.has_more = self.state.per_page < result.total
        setattr(self.state, flag, False)
        self.state.error = None
        self.last_fetched_viewport = viewport
        self._notify()

    async def _load_next(self, ticket: FetchTicket) -> None:
        next_page = self.state.page + 1
        params = self.build_params(page=next_page)
        self.state.refreshing = False
        self.state.loading = True
        self.state.error = None
        self._notify()

        try:
            result = await self.client.search(self.stream, params)
        except TransportError as exc:
            ticket.ensure_current()
            logger.info("%s page %s failed: %s", self.key, next_page, exc)
            self.state.loading = False
            self.state.error = str(exc) or "Failed to load"
            self._notify()
            return
        ticket.ensure_current()

        merged = merge_by_id(self.state.items, result.items)
        total = result.total if result.has_total else len(merged)
        self.state.items = merged
        self.state.page = next_page
        self.state.total = total
        self.state.has_more = next_page * self.state.per_page < total
        self.state.loading = False
        self._notify()


def create_map_store(client: SearchClient, coordinator: Optional[QueryCoordinator] = None) -> DiscoveryStore:
    return DiscoveryStore(client, map_stream(), coordinator=coordinator)


def create_list_store(client: SearchClient, coordinator: Optional[QueryCoordinator] = None) -> DiscoveryStore:
    return DiscoveryStore(client, list_stream(), coordinator=coordinator)
