import asyncio
import dataclasses
from typing import Any, Callable, Dict, List

import pytest

from discovery.geo import Region, km_to_lat_delta, km_to_lng_delta
from discovery.http import TransportError
from discovery.models import AdministrativeArea, ResultPage, SearchFilters
from discovery.search_client import list_stream, map_stream
from discovery.store import DiscoveryStore

Responder = Callable[[Dict[str, Any], int], Any]

ALGIERS = AdministrativeArea.from_api(
    {
        "id": 16,
        "code": "ALG",
        "number": 16,
        "en": "Algiers",
        "center_lat": 36.7525,
        "center_lng": 3.04197,
        "default_radius_km": 30,
    }
)


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def paged(total: int, per_page: int = 20) -> Responder:
    def respond(params, index):
        page = params["page"]
        start = (page - 1) * per_page + 1
        stop = min(page * per_page, total)
        items = [{"id": i} for i in range(start, stop + 1)]
        return ResultPage(items=items, page=page, per_page=per_page, total=total)

    return respond


class ScenarioSearchClient:
    """Records calls; a gate per call index holds that response back."""

    def __init__(self, responder: Responder):
        self.responder = responder
        self.calls: List[Dict[str, Any]] = []
        self.gates: Dict[int, asyncio.Event] = {}
        self.ignore_cancel: set = set()

    async def search(self, stream, params):
        index = len(self.calls)
        self.calls.append(dict(params))
        gate = self.gates.get(index)
        if gate is not None:
            try:
                await gate.wait()
            except asyncio.CancelledError:
                if index not in self.ignore_cancel:
                    raise
                await gate.wait()
        result = self.responder(params, index)
        if isinstance(result, Exception):
            raise result
        return result


def fast_map_stream():
    return dataclasses.replace(map_stream(), debounce_ms=10)


def make_store(responder: Responder, stream=None) -> DiscoveryStore:
    return DiscoveryStore(ScenarioSearchClient(responder), stream or list_stream())


@pytest.mark.asyncio
async def test_burst_of_debounced_fetches_sends_one_request():
    store = make_store(paged(5), fast_map_stream())
    for rating in (1, 2, 3, 4):
        store.set_filters(SearchFilters(min_rating=rating))
        store.fetch_first_debounced()
    await store.wait_idle()

    calls = store.client.calls
    assert len(calls) == 1
    assert calls[0]["min_rating"] == 4
    assert store.state.filters.min_rating == 4


@pytest.mark.asyncio
async def test_area_filter_and_pan_burst_collapse_into_one_fetch():
    store = make_store(paged(3), fast_map_stream())
    store.set_selected_area(ALGIERS)
    store.update_viewport(Region(36.70, 3.0, 0.5, 0.6))
    store.set_filters(SearchFilters(is_free=True))
    await store.wait_idle()

    assert len(store.client.calls) == 1
    assert store.client.calls[0]["is_free"] is True
    assert store.client.calls[0]["lat"] == 36.70


@pytest.mark.asyncio
async def test_unchanged_query_does_not_refetch():
    store = make_store(paged(3), fast_map_stream())
    store.set_filters(SearchFilters(is_free=True))
    await store.wait_idle()
    store.set_filters(SearchFilters(is_free=True))
    store.set_center(36.752500001, 3.04197, 30)
    store.set_center(36.752500002, 3.04197, 30)
    await store.wait_idle()

    assert len(store.client.calls) == 2


@pytest.mark.asyncio
async def test_superseded_response_is_never_applied():
    def respond(params, index):
        if index == 0:
            return ResultPage(items=[{"id": "a1"}, {"id": "a2"}], page=1, per_page=20, total=2)
        return ResultPage(items=[{"id": "b1"}], page=1, per_page=20, total=1)

    store = make_store(respond)
    client = store.client
    gate_a = asyncio.Event()
    client.gates[0] = gate_a
    client.ignore_cancel.add(0)

    task_a = asyncio.create_task(store.fetch_first())
    await settle()
    store.state.filters = SearchFilters(is_free=True)
    await store.fetch_first()
    gate_a.set()
    await task_a

    assert [i["id"] for i in store.state.items] == ["b1"]
    assert store.state.total == 1
    assert store.state.loading is False
    assert store.state.error is None
    assert client.calls[1]["is_free"] is True


@pytest.mark.asyncio
async def test_cancelled_request_keeps_loading_for_newer_request():
    store = make_store(paged(3))
    client = store.client
    client.gates[0] = asyncio.Event()
    gate_b = asyncio.Event()
    client.gates[1] = gate_b

    task_a = asyncio.create_task(store.fetch_first())
    await settle()
    task_b = asyncio.create_task(store.fetch_first())
    await settle()
    await task_a

    assert store.state.loading is True
    assert store.state.error is None

    gate_b.set()
    await task_b
    assert store.state.loading is False
    assert len(store.state.items) == 3


@pytest.mark.asyncio
async def test_pagination_scenario_20_of_45():
    store = make_store(paged(45))
    await store.fetch_first()
    assert len(store.state.items) == 20
    assert store.state.has_more is True

    await store.fetch_next()
    assert store.client.calls[-1]["page"] == 2
    assert len(store.state.items) == 40
    assert store.state.page == 2
    assert store.state.has_more is True

    await store.fetch_next()
    assert store.client.calls[-1]["page"] == 3
    assert len(store.state.items) == 45
    assert store.state.has_more is False

    await store.fetch_next()
    assert len(store.client.calls) == 3


@pytest.mark.asyncio
async def test_fetch_next_dedupes_and_grows_monotonically():
    def respond(params, index):
        page = params["page"]
        # consecutive pages overlap by five ids
        start = max(1, (page - 1) * 20 - 4)
        items = [{"id": i} for i in range(start, min(start + 20, 61))]
        return ResultPage(items=items, page=page, per_page=20, total=60)

    store = make_store(respond)
    await store.fetch_first()
    sizes = [len(store.state.items)]
    while store.state.has_more:
        await store.fetch_next()
        sizes.append(len(store.state.items))

    ids = [i["id"] for i in store.state.items]
    assert len(ids) == len(set(ids))
    assert sizes == sorted(sizes)
    assert store.state.page * store.state.per_page >= store.state.total


@pytest.mark.asyncio
async def test_fetch_next_is_noop_while_loading():
    store = make_store(paged(45))
    await store.fetch_first()
    store.client.gates[1] = asyncio.Event()
    task = asyncio.create_task(store.fetch_next())
    await settle()
    await store.fetch_next()
    assert len(store.client.calls) == 2
    store.client.gates[1].set()
    await task
    assert store.state.page == 2


@pytest.mark.asyncio
async def test_network_failure_keeps_items_and_sets_error():
    def respond(params, index):
        if index == 0:
            return paged(45)(params, index)
        return TransportError("Network Error")

    store = make_store(respond)
    await store.fetch_first()
    await store.fetch_next()

    assert len(store.state.items) == 20
    assert store.state.error == "Network Error"
    assert store.state.loading is False
    assert store.state.page == 1

    store.client.responder = paged(45)
    await store.fetch_next()
    assert store.state.error is None
    assert len(store.state.items) == 40


@pytest.mark.asyncio
async def test_refresh_uses_refreshing_flag_and_replaces_items():
    store = make_store(paged(45))
    await store.fetch_first()
    await store.fetch_next()
    seen = []
    store.subscribe(lambda state: seen.append((state.loading, state.refreshing)))

    await store.refresh()

    assert (False, True) in seen
    assert all(not loading for loading, _ in seen)
    assert len(store.state.items) == 20
    assert store.state.page == 1
    assert store.state.refreshing is False


@pytest.mark.asyncio
async def test_clear_resets_results():
    store = make_store(paged(45))
    await store.fetch_first()
    store.state.error = "stale"
    store.clear()
    s = store.state
    assert (s.items, s.page, s.total, s.has_more, s.error) == ([], 1, 0, False, None)


@pytest.mark.asyncio
async def test_missing_total_stops_paging():
    store = make_store(
        lambda params, index: ResultPage(
            items=[{"id": i} for i in range(20)], page=1, per_page=20, total=20, has_total=False
        )
    )
    await store.fetch_first()
    assert store.state.total == 20
    assert store.state.has_more is False


@pytest.mark.asyncio
async def test_select_algiers_then_free_filter_scenario():
    store = make_store(paged(3), fast_map_stream())
    region = store.select_area(ALGIERS)

    assert region.latitude == 36.7525
    assert region.longitude == 3.04197
    assert region.latitude_delta == pytest.approx(km_to_lat_delta(60))
    assert region.longitude_delta == pytest.approx(km_to_lng_delta(60, 36.7525))

    store.update_viewport(region)
    store.set_filters(SearchFilters(is_free=True))
    await store.wait_idle()

    assert len(store.client.calls) == 1
    params = store.client.calls[0]
    assert params["is_free"] is True
    assert "wilaya_id" not in params
    assert params["radius_km"] == 30


@pytest.mark.asyncio
async def test_area_without_center_sends_area_id():
    store = make_store(paged(3))
    store.select_area(ALGIERS)
    store.set_filters(SearchFilters(is_free=True))
    await store.wait_idle()

    assert len(store.client.calls) == 1
    assert store.client.calls[0]["wilaya_id"] == 16
    assert store.client.calls[0]["is_free"] is True


@pytest.mark.asyncio
async def test_small_pan_after_fetch_does_not_move_center():
    store = make_store(paged(3), fast_map_stream())
    store.update_viewport(Region(36.7538, 3.0588, 0.06, 0.06))
    await store.wait_idle()
    assert len(store.client.calls) == 1

    store.update_viewport(Region(36.7545, 3.0588, 0.06, 0.06))
    await store.wait_idle()
    assert len(store.client.calls) == 1

    store.update_viewport(Region(36.7600, 3.0588, 0.06, 0.06))
    await store.wait_idle()
    assert len(store.client.calls) == 2
    assert store.client.calls[1]["lat"] == 36.76


@pytest.mark.asyncio
async def test_invalid_viewport_never_reaches_state():
    store = make_store(paged(3), fast_map_stream())
    before = store.viewport
    assert store.update_viewport(Region(float("nan"), 3.0, 0.1, 0.1)) is before
    store.set_center(float("nan"), 3.0, 30)
    assert store.state.center is None
    assert not store.coordinator.has_pending(store.key)


@pytest.mark.asyncio
async def test_close_cancels_pending_debounce():
    store = make_store(paged(3), fast_map_stream())
    store.set_filters(SearchFilters(is_free=False))
    store.close()
    await asyncio.sleep(0.03)
    assert store.client.calls == []


@pytest.mark.asyncio
async def test_listeners_receive_updates_and_can_unsubscribe():
    store = make_store(paged(3))
    updates = []
    unsubscribe = store.subscribe(lambda state: updates.append(state.filters))
    store.set_filters(SearchFilters(access_method="public"))
    unsubscribe()
    store.set_filters(SearchFilters(access_method="code"))
    await store.wait_idle()
    assert updates == [SearchFilters(access_method="public")]


@pytest.mark.asyncio
async def test_refresh_superseding_first_load_clears_loading():
    store = make_store(paged(45))
    store.client.gates[0] = asyncio.Event()

    first = asyncio.create_task(store.fetch_first())
    await settle()
    await store.refresh()
    await first

    assert store.state.loading is False
    assert store.state.refreshing is False
    assert len(store.state.items) == 20

    await store.fetch_next()
    assert len(store.client.calls) == 3
    assert store.client.calls[-1]["page"] == 2
    assert len(store.state.items) == 40


@pytest.mark.asyncio
async def test_first_load_superseding_refresh_clears_refreshing():
    store = make_store(paged(45))
    await store.fetch_first()
    store.client.gates[1] = asyncio.Event()

    refreshing = asyncio.create_task(store.refresh())
    await settle()
    assert store.state.refreshing is True
    store.set_filters(SearchFilters(is_free=True))
    await store.wait_idle()
    await refreshing

    assert store.state.refreshing is False
    assert store.state.loading is False
    assert store.client.calls[-1]["is_free"] is True

    await store.fetch_next()
    assert store.client.calls[-1]["page"] == 2


@pytest.mark.asyncio
async def test_refresh_superseding_next_page_clears_loading():
    store = make_store(paged(45))
    await store.fetch_first()
    store.client.gates[1] = asyncio.Event()

    next_page = asyncio.create_task(store.fetch_next())
    await settle()
    assert store.state.loading is True
    await store.refresh()
    await next_page

    assert store.state.loading is False
    assert store.state.refreshing is False
    assert store.state.page == 1

    await store.fetch_next()
    assert store.client.calls[-1]["page"] == 2
    assert len(store.state.items) == 40


@pytest.mark.asyncio
async def test_clear_center_falls_back_to_area_id():
    store = make_store(paged(3))
    store.set_selected_area(ALGIERS)
    store.set_center(36.70, 3.0, 10)
    await store.wait_idle()
    assert "wilaya_id" not in store.client.calls[-1]

    store.clear_center()
    await store.wait_idle()

    assert store.state.center is None
    params = store.client.calls[-1]
    assert params["wilaya_id"] == 16
    assert params["radius_km"] == 30
    assert "lat" not in params


@pytest.mark.asyncio
async def test_refresh_debounced_collapses_to_one_refresh():
    store = make_store(paged(45), fast_map_stream())
    await store.fetch_first()
    await store.fetch_next()
    seen = []
    store.subscribe(lambda state: seen.append(state.refreshing))

    for _ in range(3):
        store.refresh_debounced()
    assert store.coordinator.has_pending(store.key)
    await store.wait_idle()

    assert len(store.client.calls) == 3
    assert store.client.calls[-1]["page"] == 1
    assert True in seen
    assert store.state.refreshing is False
    assert len(store.state.items) == 20
