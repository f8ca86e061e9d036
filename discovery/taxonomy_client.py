"""Taxonomy client: administrative areas for the area picker."""
from __future__ import annotations

from . import config
from .http import HttpClient
from .models import AreaCatalog, parse_area_catalog


class TaxonomyClient:
    def __init__(self, http_client: HttpClient) -> None:
        self.http = http_client

    def fetch_areas(self) -> AreaCatalog:
        response = self.http.get_json(config.TAXONOMY_PATH, kind="taxonomy")
        return parse_area_catalog(response)
