from __future__ import annotations

import logging

from depfleet.adapters.base import RegistryClient
from depfleet.core.errors import InvalidArgument
from depfleet.core.inventory import InventoryStore
from depfleet.core.models import DEPENDENCY_TYPE_NODE, Dependency, SearchPage

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """Joins registry search results with the fleet inventory.

    Output order is the registry's result order; inventory data is attached
    by name where the fleet has the package installed.
    """

    def __init__(
        self,
        registry: RegistryClient,
        inventory: InventoryStore,
        dependency_type: str = DEPENDENCY_TYPE_NODE,
    ) -> None:
        self.registry = registry
        self.inventory = inventory
        self.dependency_type = dependency_type

    def search(self, query: str, page: int = 1, page_size: int = 20) -> SearchPage:
        if not query:
            raise InvalidArgument("empty query")
        if page < 1:
            raise InvalidArgument(f"page must be >= 1, got {page}")
        if page_size < 1:
            raise InvalidArgument(f"page size must be >= 1, got {page_size}")

        hits, total = self.registry.search(query, (page - 1) * page_size, page_size)
        if total == 0:
            return SearchPage(items=[], total=0)

        deps = [
            Dependency(name=hit.name, type=self.dependency_type, latest_version=hit.latest_version)
            for hit in hits
        ]
        results = self.inventory.aggregate_by_name(self.dependency_type, [d.name for d in deps])
        for dep in deps:
            dep.result = results.get(dep.name)

        logger.debug(
            "search %r page %d: %d hits, %d installed in fleet", query, page, len(deps), len(results)
        )
        return SearchPage(items=deps, total=total)
