from __future__ import annotations

import pytest

from conftest import FakeRegistry
from depfleet.core.errors import InvalidArgument, UpstreamError
from depfleet.core.inventory import InventoryStore
from depfleet.core.reconcile import ReconciliationEngine


def test_empty_query_never_reaches_registry(store: InventoryStore) -> None:
    registry = FakeRegistry(hits=[("lodash", "4.17.21")])
    engine = ReconciliationEngine(registry, store)

    with pytest.raises(InvalidArgument):
        engine.search("", page=1, page_size=20)

    assert registry.search_calls == []


def test_search_annotates_with_fleet_inventory(store: InventoryStore) -> None:
    store.upsert_node_inventory("node1", "node", [("lodash", "4.17.20")])
    registry = FakeRegistry(hits=[("lodash", "4.17.21")], total=1)
    engine = ReconciliationEngine(registry, store)

    page = engine.search("lodash", page=1, page_size=20)

    assert page.total == 1
    assert len(page.items) == 1
    dep = page.items[0]
    assert dep.name == "lodash"
    assert dep.type == "node"
    assert dep.latest_version == "4.17.21"
    assert dep.result.node_ids == {"node1"}
    assert dep.result.versions == {"4.17.20"}


def test_search_preserves_registry_order_and_leaves_missing_unannotated(store: InventoryStore) -> None:
    store.upsert_node_inventory("node1", "node", [("b-pkg", "1.0.0")])
    store.upsert_node_inventory("node2", "node", [("b-pkg", "1.1.0"), ("c-pkg", "2.0.0")])
    registry = FakeRegistry(hits=[("c-pkg", "2.1.0"), ("a-pkg", "0.3.0"), ("b-pkg", "1.2.0")], total=57)
    engine = ReconciliationEngine(registry, store)

    page = engine.search("pkg", page=1, page_size=3)

    assert [d.name for d in page.items] == ["c-pkg", "a-pkg", "b-pkg"]
    assert page.items[0].result.node_ids == {"node2"}
    assert page.items[1].result is None
    assert page.items[2].result.versions == {"1.0.0", "1.1.0"}
    assert page.total == 57


def test_search_offset_from_page(store: InventoryStore) -> None:
    registry = FakeRegistry(hits=[("x", "1.0.0")], total=100)
    engine = ReconciliationEngine(registry, store)

    engine.search("x", page=3, page_size=20)

    assert registry.search_calls == [("x", 40, 20)]


def test_zero_total_is_empty_success(store: InventoryStore) -> None:
    engine = ReconciliationEngine(FakeRegistry(hits=[], total=0), store)

    page = engine.search("no-such-package-anywhere", page=1, page_size=20)

    assert page.items == []
    assert page.total == 0


@pytest.mark.parametrize("page,size", [(0, 20), (1, 0), (-1, 10)])
def test_invalid_paging(store: InventoryStore, page: int, size: int) -> None:
    registry = FakeRegistry(hits=[("x", "1.0.0")])
    with pytest.raises(InvalidArgument):
        ReconciliationEngine(registry, store).search("x", page=page, page_size=size)
    assert registry.search_calls == []


def test_upstream_error_propagates(store: InventoryStore) -> None:
    registry = FakeRegistry(error=UpstreamError("registry HTTP 500", status=500, body="oops"))
    with pytest.raises(UpstreamError) as info:
        ReconciliationEngine(registry, store).search("lodash")
    assert info.value.body == "oops"
