"""Pytest configuration for test suite.

Ensures the project root is on ``sys.path`` so imports like ``import src``
resolve correctly regardless of the working directory pytest chooses, and
provides in-memory stand-ins for the metadata store, the Grafana database and
the Grafana HTTP API.
"""

from __future__ import annotations

import copy
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import httpx
import pytest


def _ensure_project_root_on_syspath() -> None:
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)
    if project_root_str not in sys.path:
        # Prepend to prefer local sources over site-packages
        sys.path.insert(0, project_root_str)


_ensure_project_root_on_syspath()

from src.adapters.context import SyncContext  # noqa: E402
from src.adapters.grafana import GrafanaClient  # noqa: E402
from src.config.models import SyncSettings  # noqa: E402
from src.domain.models import GrafanaInstance, new_document_id  # noqa: E402
from src.utils.timestamps import utc_now  # noqa: E402

GRAFANA_LABEL = "default"
GRAFANA_URL = "http://grafana.test"


# ---------------- Metadata store ----------------
def _is_operator_dict(cond: Any) -> bool:
    return isinstance(cond, dict) and bool(cond) and all(k.startswith("$") for k in cond)


def _matches(doc: Mapping[str, Any], query: Mapping[str, Any]) -> bool:
    for key, cond in query.items():
        if key == "$and":
            if not all(_matches(doc, sub) for sub in cond):
                return False
            continue
        value = doc.get(key)
        if _is_operator_dict(cond):
            for op, arg in cond.items():
                if op == "$in":
                    ok = value in arg
                elif op == "$gte":
                    ok = value is not None and value >= arg
                elif op == "$gt":
                    ok = value is not None and value > arg
                elif op == "$lte":
                    ok = value is not None and value <= arg
                else:
                    raise NotImplementedError(f"query operator {op}")
                if not ok:
                    return False
        elif value != cond and not (isinstance(value, list) and cond in value):
            return False
    return True


def _apply_update(doc: Dict[str, Any], update: Mapping[str, Any], inserting: bool) -> None:
    for op, fields in update.items():
        if op == "$set":
            doc.update(copy.deepcopy(fields))
        elif op == "$setOnInsert":
            if inserting:
                doc.update(copy.deepcopy(fields))
        elif op == "$addToSet":
            for key, value in fields.items():
                current = list(doc.get(key) or [])
                if value not in current:
                    current.append(value)
                doc[key] = current
        else:
            raise NotImplementedError(f"update operator {op}")


class InMemoryDocumentStore:
    """Dict-backed implementation of the ``DocumentStore`` protocol."""

    def __init__(self) -> None:
        self.collections: Dict[str, List[Dict[str, Any]]] = {}

    def seed(self, collection: str, *docs: Dict[str, Any]) -> None:
        for doc in docs:
            item = copy.deepcopy(doc)
            item.setdefault("_id", new_document_id())
            self.collections.setdefault(collection, []).append(item)

    def docs(self, collection: str) -> List[Dict[str, Any]]:
        return copy.deepcopy(self.collections.get(collection, []))

    def _matching(self, collection: str, query: Mapping[str, Any]) -> List[Dict[str, Any]]:
        return [d for d in self.collections.get(collection, []) if _matches(d, query)]

    async def find(self, collection: str, query: Mapping[str, Any]) -> List[Dict[str, Any]]:
        return copy.deepcopy(self._matching(collection, query))

    async def find_one(
        self, collection: str, query: Mapping[str, Any]
    ) -> Optional[Dict[str, Any]]:
        found = self._matching(collection, query)
        return copy.deepcopy(found[0]) if found else None

    async def insert_one(self, collection: str, document: Mapping[str, Any]) -> Any:
        item = copy.deepcopy(dict(document))
        item.setdefault("_id", new_document_id())
        self.collections.setdefault(collection, []).append(item)
        return item["_id"]

    async def update_one(
        self, collection: str, query: Mapping[str, Any], update: Mapping[str, Any]
    ) -> int:
        found = self._matching(collection, query)
        if not found:
            return 0
        before = copy.deepcopy(found[0])
        _apply_update(found[0], update, inserting=False)
        return int(before != found[0])

    async def update_many(
        self, collection: str, query: Mapping[str, Any], update: Mapping[str, Any]
    ) -> int:
        modified = 0
        for doc in self._matching(collection, query):
            before = copy.deepcopy(doc)
            _apply_update(doc, update, inserting=False)
            modified += int(before != doc)
        return modified

    async def find_one_and_update(
        self,
        collection: str,
        query: Mapping[str, Any],
        update: Mapping[str, Any],
        *,
        upsert: bool = False,
    ) -> Optional[Dict[str, Any]]:
        found = self._matching(collection, query)
        if found:
            _apply_update(found[0], update, inserting=False)
            return copy.deepcopy(found[0])
        if not upsert:
            return None
        doc = {k: v for k, v in query.items() if not k.startswith("$") and not _is_operator_dict(v)}
        _apply_update(doc, update, inserting=True)
        doc.setdefault("_id", new_document_id())
        self.collections.setdefault(collection, []).append(doc)
        return copy.deepcopy(doc)

    async def delete_one(self, collection: str, query: Mapping[str, Any]) -> int:
        found = self._matching(collection, query)
        if not found:
            return 0
        self.collections[collection].remove(found[0])
        return 1

    async def delete_many(self, collection: str, query: Mapping[str, Any]) -> int:
        found = self._matching(collection, query)
        for doc in found:
            self.collections[collection].remove(doc)
        return len(found)


# ---------------- Grafana database ----------------
class FakeGrafanaDatabase:
    """Canned answers for the Grafana lifecycle queries."""

    def __init__(self) -> None:
        self.created: List[str] = []
        self.updated: List[str] = []
        self.live: List[str] = []
        self.templates: List[str] = []
        self.since: List[datetime] = []

    async def created_or_template_uids(self, since: datetime) -> List[str]:
        self.since.append(since)
        return list(self.created)

    async def updated_uids(self, since: datetime) -> List[str]:
        self.since.append(since)
        return list(self.updated)

    async def live_dashboard_uids(self) -> List[str]:
        return list(self.live)

    async def template_dashboard_uids(self) -> List[str]:
        return list(self.templates)


# ---------------- Grafana HTTP API ----------------
class FakeGrafana:
    """Minimal Grafana HTTP API served through ``httpx.MockTransport``.

    Dashboards live in ``dashboards`` keyed by uid as full API objects
    (``{"dashboard": ..., "meta": ...}``). ``failures`` maps
    ``(method, path)`` to a status code returned instead of the normal answer.
    """

    def __init__(self) -> None:
        self.dashboards: Dict[str, Dict[str, Any]] = {}
        self.folders: List[Dict[str, Any]] = []
        self.datasources: Dict[str, Dict[str, Any]] = {}
        self.influx: Dict[str, List[List[Any]]] = {}
        self.prometheus_series: List[Dict[str, Any]] = []
        self.prometheus_labels: Dict[str, List[str]] = {}
        self.graphite: Dict[str, List[Dict[str, Any]]] = {}
        self.failures: Dict[Tuple[str, str], int] = {}
        self.posted: List[Dict[str, Any]] = []
        self.requests: List[httpx.Request] = []
        self.clock: Optional[str] = None
        self._next_id = 100

    def now(self) -> str:
        return self.clock or utc_now().isoformat()

    def add_dashboard(
        self,
        uid: str,
        title: str,
        *,
        tags: Optional[List[str]] = None,
        templating: Optional[List[Dict[str, Any]]] = None,
        panels: Optional[List[Dict[str, Any]]] = None,
        updated: Optional[str] = None,
        folder_id: int = 0,
        version: int = 1,
    ) -> Dict[str, Any]:
        self._next_id += 1
        api_object = {
            "dashboard": {
                "id": self._next_id,
                "uid": uid,
                "title": title,
                "tags": list(tags or []),
                "version": version,
                "panels": list(panels or []),
                "templating": {"list": list(templating or [])},
            },
            "meta": {
                "updated": updated or self.now(),
                "folderId": folder_id,
                "slug": title.lower().replace(" ", "-"),
                "url": f"/d/{uid}",
            },
        }
        self.dashboards[uid] = api_object
        return api_object

    def add_datasource(self, uid: str, name: str, type_: str, **extra: Any) -> None:
        self.datasources[uid] = {"uid": uid, "name": name, "type": type_, **extra}

    def posted_dashboards(self) -> List[Dict[str, Any]]:
        return [p["dashboard"] for p in self.posted if "dashboard" in p]

    def _search_entry(self, api_object: Dict[str, Any]) -> Dict[str, Any]:
        dashboard = api_object["dashboard"]
        return {
            "id": dashboard["id"],
            "uid": dashboard["uid"],
            "title": dashboard["title"],
            "tags": dashboard.get("tags", []),
            "type": "dash-db",
        }

    def _post_dashboard(self, body: Dict[str, Any]) -> httpx.Response:
        dashboard = dict(body["dashboard"])
        uid = dashboard.get("uid") or new_document_id(9)
        existing = self.dashboards.get(uid)
        if existing is not None and not body.get("overwrite"):
            return httpx.Response(
                412, json={"message": "A dashboard with the same uid already exists", "status": "name-exists"}
            )
        self.posted.append(copy.deepcopy(body))
        if existing is not None:
            dashboard_id = existing["dashboard"]["id"]
        else:
            self._next_id += 1
            dashboard_id = self._next_id
        dashboard.update(uid=uid, id=dashboard_id)
        self.dashboards[uid] = {
            "dashboard": dashboard,
            "meta": {
                "updated": self.now(),
                "folderId": body.get("folderId", 0),
                "slug": str(dashboard.get("title", "")).lower().replace(" ", "-"),
                "url": f"/d/{uid}",
            },
        }
        return httpx.Response(200, json={"status": "success", "uid": uid, "id": dashboard_id})

    def _datasource(self, key: str, value: str) -> httpx.Response:
        for record in self.datasources.values():
            if record.get(key) == value:
                return httpx.Response(200, json=record)
        return httpx.Response(404, json={"message": "Data source not found"})

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        method = request.method
        params = request.url.params

        status = self.failures.get((method, path))
        if status is not None:
            return httpx.Response(status, json={"message": "injected failure"})

        if method == "GET" and path == "/api/health":
            return httpx.Response(200, json={"database": "ok", "version": "10.4.0"})
        if method == "GET" and path.startswith("/api/dashboards/uid/"):
            uid = path.rsplit("/", 1)[1]
            if uid not in self.dashboards:
                return httpx.Response(404, json={"message": "Dashboard not found"})
            return httpx.Response(200, json=self.dashboards[uid])
        if method == "POST" and path == "/api/dashboards/db":
            return self._post_dashboard(json.loads(request.content))
        if method == "GET" and path == "/api/search":
            if params.get("type") == "dash-folder":
                # Grafana matches folder titles by case-insensitive substring
                query = params.get("query", "").lower()
                return httpx.Response(
                    200, json=[f for f in self.folders if query in f["title"].lower()]
                )
            uids = params.get_list("dashboardUIDs")
            return httpx.Response(
                200,
                json=[self._search_entry(self.dashboards[u]) for u in uids if u in self.dashboards],
            )
        if method == "GET" and path.startswith("/api/folders/"):
            uid = path.rsplit("/", 1)[1]
            for folder in self.folders:
                if folder["uid"] == uid:
                    return httpx.Response(200, json=folder)
            return httpx.Response(404, json={"message": "folder not found"})
        if method == "POST" and path == "/api/folders":
            body = json.loads(request.content)
            if any(f["uid"] == body["uid"] for f in self.folders):
                return httpx.Response(
                    409, json={"message": "a folder with the same uid already exists"}
                )
            self._next_id += 1
            folder = {"id": self._next_id, "uid": body["uid"], "title": body["title"]}
            self.folders.append(folder)
            return httpx.Response(200, json=folder)
        if method == "GET" and path.startswith("/api/datasources/uid/"):
            return self._datasource("uid", path.rsplit("/", 1)[1])
        if method == "GET" and path.startswith("/api/datasources/name/"):
            return self._datasource("name", path.rsplit("/", 1)[1])
        if method == "GET" and path.startswith("/api/datasources/proxy/uid/"):
            return self._proxy(path, params)
        return httpx.Response(404, json={"message": f"no route for {method} {path}"})

    def _proxy(self, path: str, params: httpx.QueryParams) -> httpx.Response:
        if path.endswith("/query"):
            rows = self.influx.get(params.get("q", ""))
            if rows is None:
                return httpx.Response(200, json={"results": [{"statement_id": 0}]})
            return httpx.Response(
                200, json={"results": [{"series": [{"name": "m", "values": rows}]}]}
            )
        if path.endswith("/api/v1/series"):
            return httpx.Response(200, json={"status": "success", "data": self.prometheus_series})
        if "/api/v1/label/" in path:
            label = path.split("/api/v1/label/", 1)[1].split("/", 1)[0]
            return httpx.Response(
                200, json={"status": "success", "data": self.prometheus_labels.get(label, [])}
            )
        if path.endswith("/metrics/find"):
            return httpx.Response(200, json=self.graphite.get(params.get("query", ""), []))
        return httpx.Response(404, json={"message": "unknown proxy path"})

    def client(self, instance: GrafanaInstance) -> GrafanaClient:
        client = GrafanaClient(instance, timeout=5, max_retries=0)
        client.inject_http_client_for_testing(
            httpx.AsyncClient(
                transport=httpx.MockTransport(self.handler), base_url=instance.base_url
            )
        )
        return client


# ---------------- Fixtures ----------------
@pytest.fixture
def store() -> InMemoryDocumentStore:
    """Empty metadata store with the ``default`` Grafana instance registered."""
    memory = InMemoryDocumentStore()
    memory.seed("grafanas", {"label": GRAFANA_LABEL, "serverUrl": GRAFANA_URL, "apiKey": "key"})
    return memory


@pytest.fixture
def grafana_db() -> FakeGrafanaDatabase:
    return FakeGrafanaDatabase()


@pytest.fixture
def grafana() -> FakeGrafana:
    return FakeGrafana()


@pytest.fixture
def settings() -> SyncSettings:
    return SyncSettings(
        _env_file=None,
        mongo_url="mongodb://localhost:27017/perfana-test",
        sync_interval=1000,
        auto_config_lookback_minutes=5,
        parallel_get_dashboard_calls=2,
    )


@pytest.fixture
def context(store, grafana_db, grafana, settings) -> SyncContext:
    """Context wired to the in-memory store and the fake Grafana instance."""
    return SyncContext(
        store=store,
        grafana_db=grafana_db,
        settings=settings,
        client_factory=lambda instance, _settings: grafana.client(instance),
    )


@pytest.fixture
def grafana_client(grafana) -> GrafanaClient:
    return grafana.client(GrafanaInstance(label=GRAFANA_LABEL, server_url=GRAFANA_URL))
