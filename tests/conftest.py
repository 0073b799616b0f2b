"""
Shared pytest fixtures for convo-memory tests.

The Chroma server is replaced by an in-process fake served through
``httpx.MockTransport``, and embeddings come from a deterministic fake
embedding function, so tests run fast without a server or any ML model.
"""

from __future__ import annotations

import hashlib
import json
import uuid

import httpx
import pytest

from convo_memory.config import Settings
from convo_memory.context import clear_identity
from convo_memory.log_store import LogStore
from convo_memory.memory import MemoryManager
from convo_memory.store import ChromaIndex

CHROMA_URL = "http://chroma.test"


class FakeEmbeddingFunction:
    """
    Deterministic embedding function that maps text to a unit vector
    derived from its MD5 hash.  Fast and reproducible – no model download.
    """

    def name(self) -> str:
        return "fake-md5-embedding"

    def _embed(self, texts: list[str]) -> list[list[float]]:
        embeddings = []
        for text in texts:
            digest = hashlib.md5(text.encode()).digest()
            # 16-byte digest → 16-dim float vector in [-1, 1]
            vec = [(b - 128) / 128.0 for b in digest]
            norm = sum(x * x for x in vec) ** 0.5 or 1.0
            embeddings.append([x / norm for x in vec])
        return embeddings

    def __call__(self, input: list[str]) -> list[list[float]]:  # noqa: A002
        return self._embed(input)


def _matches(meta: dict, where: dict | None) -> bool:
    if not where:
        return True
    if "$and" in where:
        return all(_matches(meta, clause) for clause in where["$and"])
    if "$or" in where:
        return any(_matches(meta, clause) for clause in where["$or"])
    for key, cond in where.items():
        value = meta.get(key)
        if isinstance(cond, dict):
            if "$in" in cond and value not in cond["$in"]:
                return False
            if "$eq" in cond and value != cond["$eq"]:
                return False
        elif value != cond:
            return False
    return True


class FakeChroma:
    """Just enough of Chroma's v2 HTTP API to exercise ChromaIndex."""

    def __init__(self) -> None:
        self.alive = True
        self.fail_queries = False
        self.fail_writes = False
        self.collection_status: int | None = None
        self.transient_failures = 0
        self.tenants: set[str] = set()
        self.databases: set[tuple[str, str]] = set()
        self.collections: dict[tuple[str, str, str], dict] = {}
        self.requests: list[tuple[str, str]] = []
        self.queries: list[dict] = []

    # Helpers for assertions ------------------------------------------------

    @property
    def records(self) -> dict[str, dict]:
        merged: dict[str, dict] = {}
        for collection in self.collections.values():
            merged.update(collection["records"])
        return merged

    def _by_id(self, collection_id: str) -> dict | None:
        for collection in self.collections.values():
            if collection["id"] == collection_id:
                return collection
        return None

    # Transport ---------------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append((request.method, request.url.path))
        if not self.alive:
            raise httpx.ConnectError("connection refused", request=request)
        if self.transient_failures:
            self.transient_failures -= 1
            raise httpx.ConnectError("connection reset", request=request)

        parts = request.url.path.strip("/").split("/")[2:]  # drop "api/v2"
        body = json.loads(request.content) if request.content else {}

        if parts == ["heartbeat"]:
            return httpx.Response(200, json={"nanosecond heartbeat": 1})
        if parts == ["tenants"]:
            return self._create(self.tenants, body["name"])
        if len(parts) == 3 and parts[2] == "databases":
            return self._create(self.databases, (parts[1], body["name"]))
        if len(parts) >= 5 and parts[4] == "collections":
            tenant, database = parts[1], parts[3]
            rest = parts[5:]
            if not rest:
                return self._create_collection(tenant, database, body)
            if len(rest) == 1 and request.method == "GET":
                collection = self.collections.get((tenant, database, rest[0]))
                if collection is None:
                    return httpx.Response(404, json={"error": "NotFound"})
                return httpx.Response(200, json={"id": collection["id"], "name": collection["name"]})
            if len(rest) == 2:
                collection = self._by_id(rest[0])
                if collection is None:
                    return httpx.Response(404, json={"error": "NotFound"})
                return self._collection_op(collection, rest[1], body)
        return httpx.Response(404, json={"error": f"no route {request.url.path}"})

    def _create(self, registry: set, key) -> httpx.Response:
        if key in registry:
            return httpx.Response(409, json={"error": "AlreadyExists"})
        registry.add(key)
        return httpx.Response(200, json={})

    def _create_collection(self, tenant: str, database: str, body: dict) -> httpx.Response:
        if self.collection_status is not None:
            return httpx.Response(self.collection_status, json={"error": "nope"})
        key = (tenant, database, body["name"])
        if key not in self.collections:
            self.collections[key] = {"id": str(uuid.uuid4()), "name": body["name"], "records": {}}
        collection = self.collections[key]
        return httpx.Response(200, json={"id": collection["id"], "name": collection["name"]})

    def _collection_op(self, collection: dict, op: str, body: dict) -> httpx.Response:
        records = collection["records"]
        if op in ("add", "upsert"):
            if self.fail_writes:
                return httpx.Response(500, json={"error": "write failed"})
            metadatas = body.get("metadatas") or [{}] * len(body["ids"])
            for i, record_id in enumerate(body["ids"]):
                if op == "add" and record_id in records:
                    continue
                records[record_id] = {
                    "document": body["documents"][i],
                    "embedding": body["embeddings"][i],
                    "metadata": metadatas[i],
                }
            return httpx.Response(201, json={})
        if op == "query":
            self.queries.append(body)
            if self.fail_queries:
                return httpx.Response(500, json={"error": "query failed"})
            query_vec = body["query_embeddings"][0]
            hits = []
            for record_id, rec in records.items():
                if not _matches(rec["metadata"], body.get("where")):
                    continue
                dot = sum(a * b for a, b in zip(query_vec, rec["embedding"]))
                hits.append((1.0 - dot, record_id, rec))
            hits.sort(key=lambda h: h[0])
            hits = hits[: body["n_results"]]
            return httpx.Response(200, json={
                "ids": [[h[1] for h in hits]],
                "documents": [[h[2]["document"] for h in hits]],
                "metadatas": [[h[2]["metadata"] for h in hits]],
                "distances": [[h[0] for h in hits]],
            })
        if op == "get":
            ids = [k for k, v in records.items() if _matches(v["metadata"], body.get("where"))]
            return httpx.Response(200, json={"ids": ids})
        if op == "delete":
            for record_id in [k for k, v in records.items() if _matches(v["metadata"], body.get("where"))]:
                del records[record_id]
            return httpx.Response(200, json=[])
        if op == "count":
            return httpx.Response(200, json=len(records))
        return httpx.Response(404, json={"error": op})


@pytest.fixture(autouse=True)
def _reset_identity():
    clear_identity()
    yield
    clear_identity()


@pytest.fixture()
def chroma() -> FakeChroma:
    return FakeChroma()


@pytest.fixture()
async def index(chroma: FakeChroma):
    """ChromaIndex wired to the fake server (not yet provisioned)."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(chroma.handler), base_url=CHROMA_URL)
    idx = ChromaIndex(base_url=CHROMA_URL, _client=client, _embedding_function=FakeEmbeddingFunction())
    yield idx
    await client.aclose()


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        memory_dir=str(tmp_path / "memory"),
        chroma_url=CHROMA_URL,
        heartbeat_timeout=0,
        heartbeat_interval=0,
    )


@pytest.fixture()
def log_store(settings: Settings) -> LogStore:
    return LogStore(settings.memory_dir)


@pytest.fixture()
async def manager(settings: Settings, index: ChromaIndex) -> MemoryManager:
    """MemoryManager with a ready vector index."""
    m = MemoryManager(settings=settings, _index=index)
    await m.initialize()
    return m


@pytest.fixture()
async def json_manager(settings: Settings) -> MemoryManager:
    """MemoryManager running JSON-only."""
    settings.chroma_enabled = False
    m = MemoryManager(settings=settings)
    await m.initialize()
    return m
