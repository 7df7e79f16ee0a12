from __future__ import annotations

import pytest

from conftest import FakeRegistry
from depfleet.adapters.none.adapter import NoneAdapter
from depfleet.core.app import create_app
from depfleet.core.config import AppConfig
from depfleet.core.errors import UpstreamError


def _config(db_path: str) -> AppConfig:
    return AppConfig(
        host="127.0.0.1",
        port=0,
        debug=False,
        db_path=db_path,
        node_id="node-local",
        package_manager="none",
        package_manager_cmd="npm",
        registry_search_url="http://registry.invalid/v2/search",
        registry_detail_url="http://registry.invalid/v2/package",
        search_timeout_sec=15,
        detail_timeout_sec=60,
        page_size=20,
        max_workers=2,
        proxy_with_default_config=True,
        user_agent="depfleet-test",
        log_level="DEBUG",
        log_json=False,
    )


@pytest.fixture
def registry() -> FakeRegistry:
    return FakeRegistry(hits=[("lodash", "4.17.21"), ("lodash-es", "4.17.21")], total=2, latest={"lodash": "4.17.21"})


@pytest.fixture
def app(db_path, registry):
    app = create_app(_config(db_path), registry=registry, manager=NoneAdapter())
    yield app
    app.extensions["depfleet"].orchestrator.shutdown()


@pytest.fixture
def client(app):
    return app.test_client()


def test_health(client) -> None:
    body = client.get("/health").get_json()
    assert body["status"] == "ok"
    assert body["node_id"] == "node-local"


def test_search_merges_fleet_inventory(client) -> None:
    resp = client.put(
        "/api/nodes/node-a/dependencies",
        json={"dependencies": [{"name": "lodash", "version": "4.17.20"}]},
    )
    assert resp.status_code == 200
    assert resp.get_json()["updated"] == 1

    body = client.get("/api/dependencies/search?query=lodash&page=1&size=20").get_json()

    assert body["total"] == 2
    assert [d["name"] for d in body["data"]] == ["lodash", "lodash-es"]
    assert body["data"][0]["result"] == {"name": "lodash", "node_ids": ["node-a"], "versions": ["4.17.20"]}
    assert body["data"][1]["result"] is None


def test_search_empty_query_is_bad_request(client, registry) -> None:
    resp = client.get("/api/dependencies/search?query=")
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "INVALID_ARGUMENT"
    assert registry.search_calls == []


def test_search_non_integer_page(client) -> None:
    assert client.get("/api/dependencies/search?query=x&page=two").status_code == 400


def test_search_upstream_error_includes_body(client, registry) -> None:
    registry.error = UpstreamError("registry HTTP 503", status=503, body="maintenance")
    resp = client.get("/api/dependencies/search?query=lodash")
    assert resp.status_code == 502
    assert resp.get_json()["upstream_body"] == "maintenance"


def test_latest_version(client) -> None:
    body = client.get("/api/dependencies/lodash/latest").get_json()
    assert body == {"name": "lodash", "latest_version": "4.17.21"}


def test_report_rejects_malformed_inventory(client) -> None:
    resp = client.put("/api/nodes/node-a/dependencies", json={"dependencies": [{"name": "lodash"}]})
    assert resp.status_code == 400


def test_install_task_lifecycle(client, app) -> None:
    resp = client.post("/api/node/install", json={"names": ["typescript", "zod"], "upgrade": True})
    assert resp.status_code == 202
    task_id = resp.get_json()["task_id"]

    app.extensions["depfleet"].orchestrator.wait(task_id, timeout=30)

    task = client.get(f"/api/tasks/{task_id}").get_json()["task"]
    assert task["status"] == "succeeded"
    assert task["action"] == "install"
    logs = client.get(f"/api/tasks/{task_id}/logs").get_json()["logs"]
    assert "dry-run: npm install -g typescript@latest zod@latest" in [log["line"] for log in logs]

    deps = client.get("/api/nodes/node-local/dependencies").get_json()["dependencies"]
    assert [d["name"] for d in deps] == ["typescript", "zod"]

    tail = client.get(f"/api/tasks/{task_id}/logs?tail=1").get_json()["logs"]
    assert len(tail) == 1


def test_uninstall_and_update(client, app) -> None:
    orchestrator = app.extensions["depfleet"].orchestrator
    task_id = client.post("/api/node/install", json={"names": ["typescript"]}).get_json()["task_id"]
    orchestrator.wait(task_id, timeout=30)

    task_id = client.post("/api/node/uninstall", json={"names": ["typescript"]}).get_json()["task_id"]
    orchestrator.wait(task_id, timeout=30)

    body = client.post("/api/node/update", json={}).get_json()
    assert body == {"ok": True, "node_id": "node-local", "updated": 0}


def test_install_requires_names(client) -> None:
    resp = client.post("/api/node/install", json={"names": []})
    assert resp.status_code == 400


def test_unknown_task(client) -> None:
    assert client.get("/api/tasks/does-not-exist").status_code == 404
    assert client.post("/api/tasks/does-not-exist/cancel").status_code == 404


def test_cancel_finished_task(client, app) -> None:
    task_id = client.post("/api/node/install", json={"names": ["zod"]}).get_json()["task_id"]
    app.extensions["depfleet"].orchestrator.wait(task_id, timeout=30)

    body = client.post(f"/api/tasks/{task_id}/cancel").get_json()
    assert body == {"task_id": task_id, "cancelled": False}
