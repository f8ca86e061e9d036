"""CLI entrypoint."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, List, Optional

from dotenv import load_dotenv as _load_dotenv

from discovery import config
from discovery.http import AsyncHttpClient, HttpClient, RequestMetrics, TransportError
from discovery.models import AreaCatalog, SearchFilters
from discovery.nearby import NearbyListSheet
from discovery.search_client import SearchClient
from discovery.store import DiscoveryStore, create_list_store, create_map_store
from discovery.taxonomy_client import TaxonomyClient

logger = logging.getLogger("discovery.cli")


def _repo_root() -> Path:
    return Path(__file__).resolve().parent


def load_env(path: str = ".env", root_dir: Optional[Path] = None) -> None:
    """Optionally load a repo-root .env file without overriding real env vars."""
    root = Path(root_dir) if root_dir else _repo_root()
    env_path = (root / path).resolve()
    if not env_path.exists():
        return
    _load_dotenv(dotenv_path=env_path, override=False)


def _env_token() -> Optional[str]:
    token = (os.environ.get("DISCOVERY_API_TOKEN") or "").strip()
    return token or None


def _split_csv(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [part.strip() for part in raw.split(",") if part.strip()]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Discover nearby public toilets")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--preflight", action="store_true", help="Run offline checks only")
    group.add_argument(
        "--preflight-online",
        action="store_true",
        help="Run offline checks + one taxonomy call",
    )
    group.add_argument("--areas", action="store_true", help="List administrative areas and exit")
    group.add_argument(
        "--nearby",
        action="store_true",
        help="List toilets near --lat/--lng using the fixed anchor radius",
    )
    parser.add_argument("--mode", choices=["list", "map"], default="list")
    parser.add_argument("--area", type=str, default=None, help="Area code, id or number")
    parser.add_argument("--lat", type=float, default=None)
    parser.add_argument("--lng", type=float, default=None)
    parser.add_argument("--radius-km", type=float, default=None)
    free = parser.add_mutually_exclusive_group()
    free.add_argument("--free", dest="is_free", action="store_true", default=None)
    free.add_argument("--paid", dest="is_free", action="store_false")
    parser.add_argument("--access-method", type=str, default=None)
    parser.add_argument("--pricing-model", type=str, default=None)
    parser.add_argument("--min-rating", type=float, default=None)
    parser.add_argument("--amenities", type=str, default=None, help="Comma-separated amenity codes")
    parser.add_argument("--categories", type=str, default=None, help="Comma-separated category codes")
    parser.add_argument("--pages", type=int, default=1, help="Number of pages to load (default: 1)")
    parser.add_argument("--lang", type=str, default="en", help="Area label language (en, fr, ar)")
    parser.add_argument("--base-url", type=str, default=None)
    return parser.parse_args(argv)


def filters_from_args(args: argparse.Namespace) -> SearchFilters:
    return SearchFilters(
        is_free=args.is_free,
        access_method=args.access_method,
        pricing_model=args.pricing_model,
        min_rating=args.min_rating,
        amenities=tuple(_split_csv(args.amenities)),
        categories=tuple(_split_csv(args.categories)),
    )


def fetch_catalog(base_url: str) -> AreaCatalog:
    http_client = HttpClient(
        base_url,
        token_provider=_env_token,
        timeout=config.HTTP_TIMEOUT_SECONDS,
        retry_max=config.HTTP_RETRY_MAX,
        backoff_base=config.HTTP_BACKOFF_BASE,
        backoff_max=config.HTTP_BACKOFF_MAX,
    )
    try:
        return TaxonomyClient(http_client).fetch_areas()
    finally:
        http_client.close()


def run_preflight(base_url: str, online: bool) -> int:
    ok = True
    print(f"API base URL: {base_url}")
    print(f"DISCOVERY_API_TOKEN length: {len(_env_token() or '')}")
    print(
        "Debounce: map={map_ms}ms, list={list_ms}ms; move threshold: {m}m / {pct:.0%}".format(
            map_ms=config.MAP_DEBOUNCE_MS,
            list_ms=config.LIST_DEBOUNCE_MS,
            m=config.MOVE_THRESHOLD_M,
            pct=config.DELTA_CHANGE_THRESHOLD,
        )
    )

    if online:
        try:
            catalog = fetch_catalog(base_url)
            print(f"Online taxonomy call: OK ({len(catalog)} areas)")
        except TransportError as exc:
            print(f"Online taxonomy call: FAIL ({exc})")
            ok = False

    print("Preflight: PASS" if ok else "Preflight: FAIL")
    return 0 if ok else 1


def _to_jsonable(item: Any) -> Any:
    if is_dataclass(item):
        return asdict(item)
    return item


async def run_search(
    args: argparse.Namespace,
    search_client: SearchClient,
    catalog: Optional[AreaCatalog] = None,
) -> DiscoveryStore:
    if args.mode == "map":
        store = create_map_store(search_client)
    else:
        store = create_list_store(search_client)

    try:
        if args.area and catalog is not None:
            area = catalog.find(args.area)
            if area is None:
                raise ValueError(f"Unknown area: {args.area}")
            region = store.select_area(area)
            # the list screen searches by area id; the map follows the area's viewport
            if args.mode == "map" and region is not None and args.lat is None:
                store.update_viewport(region, radius_km=args.radius_km)
        if args.lat is not None and args.lng is not None:
            store.set_center(args.lat, args.lng, args.radius_km or config.DEFAULT_VIEW_RADIUS_KM)
        store.set_filters(filters_from_args(args))
        await store.wait_idle()

        for _ in range(max(0, args.pages - 1)):
            if not store.state.has_more or store.state.error:
                break
            await store.fetch_next()
    finally:
        store.close()
    return store


async def run_nearby(args: argparse.Namespace, search_client: SearchClient) -> NearbyListSheet:
    sheet = NearbyListSheet(search_client, filters=filters_from_args(args))
    try:
        await sheet.open_at(args.lat, args.lng)
        for _ in range(max(0, args.pages - 1)):
            if not sheet.state.has_more or sheet.state.error:
                break
            await sheet.load_more()
    finally:
        sheet.close()
    return sheet


async def _run_async(args: argparse.Namespace, base_url: str, catalog: Optional[AreaCatalog]) -> int:
    metrics = RequestMetrics()
    http_client = AsyncHttpClient(
        base_url,
        token_provider=_env_token,
        timeout=config.HTTP_TIMEOUT_SECONDS,
        metrics=metrics,
    )
    search_client = SearchClient(http_client)
    try:
        if args.nearby:
            sheet = await run_nearby(args, search_client)
            error = sheet.state.error
            items, total = sheet.state.items, sheet.state.total
        else:
            store = await run_search(args, search_client, catalog)
            error = store.state.error
            items, total = store.state.items, store.state.total
    finally:
        await search_client.aclose()

    if error:
        print(f"Error: {error}", file=sys.stderr)
        return 1
    payload = {
        "total": total,
        "count": len(items),
        "items": [_to_jsonable(i) for i in items],
        "requests": dict(metrics.network),
    }
    print(json.dumps(payload, ensure_ascii=False, indent=2))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    load_env()
    config.load_discovery_config()
    args = parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    base_url = args.base_url or config.API_BASE_URL

    if args.preflight or args.preflight_online:
        return run_preflight(base_url, online=args.preflight_online)

    catalog: Optional[AreaCatalog] = None
    if args.areas or args.area:
        try:
            catalog = fetch_catalog(base_url)
        except TransportError as exc:
            print(f"Taxonomy error: {exc}", file=sys.stderr)
            return 1

    if args.areas:
        for area in catalog or []:
            print(f"{area.id}\t{area.code}\t{area.label(args.lang)}")
        return 0

    if args.nearby and (args.lat is None or args.lng is None):
        print("--nearby requires --lat and --lng", file=sys.stderr)
        return 1

    try:
        return asyncio.run(_run_async(args, base_url, catalog))
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
