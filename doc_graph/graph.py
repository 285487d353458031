"""Whole-graph views for visualisation clients.

Rendering is left to the client; these return plain ``NetworkGraph`` data.
"""

from __future__ import annotations

import logging

from .models import NetworkGraph, SearchOptions
from .search import SearchAPI
from .storage import StorageBackend

logger = logging.getLogger(__name__)


class GraphService:
    def __init__(self, storage: StorageBackend, search: SearchAPI) -> None:
        self.storage = storage
        self.search = search

    def graph_from_search(self, query: str, depth: int = 2) -> NetworkGraph:
        """Neighbourhood graph of the best entity match for *query*."""
        hits = self.search.search_entities(query, SearchOptions(limit=1))
        if not hits:
            logger.debug("No entity matches %r, empty graph", query)
            return NetworkGraph()
        return self.search.get_entity_graph(hits[0].item.id, depth=depth)

    def full_graph(self) -> NetworkGraph:
        """Every active entity and every relationship."""
        return NetworkGraph(
            nodes=self.storage.get_entities(include_merged=False),
            edges=self.storage.get_all_relationships(),
        )
