"""
Vector index adapter for a remote Chroma server.

Talks to Chroma's v2 HTTP API, addressed tenant -> database -> collection.
Embeddings are computed client-side with a Chroma embedding function, so the
server only stores vectors and answers nearest-neighbour queries.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx
from chromadb.utils import embedding_functions
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    wait_fixed,
)

from .records import SearchResult

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v2"

#: Status codes that mean "created" or "already exists".
_PROVISIONED = (200, 201, 409)

_QUERY_INCLUDE = ["documents", "metadatas", "distances"]


class VectorIndexError(Exception):
    """Any failure talking to the vector index."""


def get_embedding_function(
    model_name: str = "all-MiniLM-L6-v2",
) -> embedding_functions.SentenceTransformerEmbeddingFunction:
    """Return a sentence-transformer embedding function for ChromaDB."""
    return embedding_functions.SentenceTransformerEmbeddingFunction(
        model_name=model_name
    )


class ChromaIndex:
    """
    Async client for one Chroma collection.

    Uses cosine distance, so query distances fall in ``[0, 2]`` with lower
    meaning more similar.  Transport errors are retried ``retries`` times;
    every failure is raised as :class:`VectorIndexError`.
    """

    def __init__(
        self,
        base_url: str = "http://127.0.0.1:8000",
        tenant: str = "default_tenant",
        database: str = "default_database",
        collection_name: str = "llm_conversation_memory",
        embedding_model: str = "all-MiniLM-L6-v2",
        timeout: float = 5.0,
        retries: int = 1,
        _client: httpx.AsyncClient | None = None,
        _embedding_function: Any | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.tenant = tenant
        self.database = database
        self.collection_name = collection_name
        self.embedding_model = embedding_model
        self.retries = retries
        self.client = _client or httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
        self._embedding_function = _embedding_function
        self.collection_id: str | None = None

    # ------------------------------------------------------------------
    # Liveness and provisioning
    # ------------------------------------------------------------------

    async def heartbeat(self) -> bool:
        """Return ``True`` if the server answers its heartbeat endpoint."""
        try:
            response = await self.client.get(f"{API_PREFIX}/heartbeat")
        except httpx.HTTPError as exc:
            logger.debug("Chroma heartbeat failed: %s", exc)
            return False
        return response.status_code == 200

    async def wait_until_ready(self, timeout: float = 60.0, interval: float = 1.0) -> bool:
        """Poll :meth:`heartbeat` every *interval* seconds for up to *timeout*."""
        retrying = AsyncRetrying(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(interval),
            retry=retry_if_result(lambda alive: not alive),
        )
        try:
            return await retrying(self.heartbeat)
        except RetryError:
            return False

    async def ensure_tenant(self) -> None:
        response = await self._request("POST", f"{API_PREFIX}/tenants", json={"name": self.tenant})
        self._expect(response, _PROVISIONED, f"ensure_tenant({self.tenant})")

    async def ensure_database(self) -> None:
        response = await self._request(
            "POST",
            f"{API_PREFIX}/tenants/{quote(self.tenant, safe='')}/databases",
            json={"name": self.database},
        )
        self._expect(response, _PROVISIONED, f"ensure_database({self.database})")

    async def ensure_collection(self, name: str | None = None) -> str:
        """Create the collection if needed and return its server-side id."""
        name = name or self.collection_name
        response = await self._request(
            "POST",
            self._db_path("/collections"),
            json={"name": name, "metadata": {"hnsw:space": "cosine"}, "get_or_create": True},
        )
        self._expect(response, _PROVISIONED, f"ensure_collection({name})")

        descriptor = await self.get_collection(name)
        collection_id = descriptor.get("id")
        if not collection_id:
            raise VectorIndexError(f"collection {name!r} descriptor has no id")
        self.collection_name = name
        self.collection_id = str(collection_id)
        return self.collection_id

    async def get_collection(self, name: str) -> dict[str, Any]:
        response = await self._request("GET", self._db_path(f"/collections/{quote(name, safe='')}"))
        self._expect(response, (200,), f"get_collection({name})")
        return self._json(response)

    async def provision(self) -> str:
        """Ensure tenant, database and collection exist, in that order."""
        await self.ensure_tenant()
        await self.ensure_database()
        return await self.ensure_collection()

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def add(self, id: str, document: str, metadata: dict | None = None) -> None:
        """Insert one document."""
        await self._write("add", id, document, metadata)

    async def upsert(self, id: str, document: str, metadata: dict | None = None) -> None:
        """Insert or overwrite one document."""
        await self._write("upsert", id, document, metadata)

    async def delete(self, where: dict[str, Any]) -> None:
        """Delete every document matching *where*."""
        response = await self._request("POST", self._collection_path("/delete"), json={"where": where})
        self._expect(response, (200, 201), "delete")

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def query(
        self,
        query_text: str,
        where: dict[str, Any] | None = None,
        n_results: int = 5,
    ) -> list[SearchResult]:
        """Nearest neighbours of *query_text*, closest first."""
        path = self._collection_path("/query")
        body: dict[str, Any] = {
            "query_embeddings": self._embed([query_text]),
            "n_results": n_results,
            "include": _QUERY_INCLUDE,
        }
        if where:
            body["where"] = where
        response = await self._request("POST", path, json=body)
        self._expect(response, (200,), "query")
        data = self._json(response)

        try:
            documents = (data.get("documents") or [[]])[0] or []
            metadatas = (data.get("metadatas") or [[]])[0] or [{}] * len(documents)
            distances = (data.get("distances") or [[]])[0] or [0.0] * len(documents)
            return [
                SearchResult(content=doc, metadata=metadatas[i] or {}, distance=float(distances[i]))
                for i, doc in enumerate(documents)
            ]
        except (AttributeError, IndexError, TypeError, ValueError) as exc:
            raise VectorIndexError(f"malformed query response: {exc}") from exc

    async def ids(self, where: dict[str, Any]) -> list[str]:
        """Ids of every document matching *where*."""
        response = await self._request(
            "POST", self._collection_path("/get"), json={"where": where, "include": []}
        )
        self._expect(response, (200,), "get")
        data = self._json(response)
        try:
            return [str(i) for i in data.get("ids") or []]
        except (AttributeError, TypeError) as exc:
            raise VectorIndexError(f"malformed get response: {exc}") from exc

    async def count(self) -> int:
        response = await self._request("GET", self._collection_path("/count"))
        self._expect(response, (200,), "count")
        return int(self._json(response))

    async def aclose(self) -> None:
        await self.client.aclose()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @property
    def embedding_function(self) -> Any:
        if self._embedding_function is None:
            self._embedding_function = get_embedding_function(self.embedding_model)
        return self._embedding_function

    def _embed(self, texts: list[str]) -> list[list[float]]:
        try:
            vectors = self.embedding_function(texts)
        except Exception as exc:  # noqa: BLE001
            raise VectorIndexError(f"embedding failed: {exc}") from exc
        return [[float(x) for x in vec] for vec in vectors]

    async def _write(self, op: str, id: str, document: str, metadata: dict | None) -> None:
        path = self._collection_path(f"/{op}")
        body: dict[str, Any] = {
            "ids": [id],
            "documents": [document],
            "embeddings": self._embed([document]),
        }
        if metadata:
            body["metadatas"] = [metadata]
        response = await self._request("POST", path, json=body)
        self._expect(response, (200, 201), f"{op}({id})")

    def _db_path(self, suffix: str) -> str:
        return (
            f"{API_PREFIX}/tenants/{quote(self.tenant, safe='')}"
            f"/databases/{quote(self.database, safe='')}{suffix}"
        )

    def _collection_path(self, suffix: str) -> str:
        if self.collection_id is None:
            raise VectorIndexError("collection has not been provisioned")
        return self._db_path(f"/collections/{self.collection_id}{suffix}")

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retries + 1),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        )
        try:
            return await retrying(self.client.request, method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise VectorIndexError(f"{method} {path} failed: {exc!r}") from exc

    @staticmethod
    def _expect(response: httpx.Response, ok: tuple[int, ...], what: str) -> None:
        if response.status_code not in ok:
            raise VectorIndexError(f"{what} -> {response.status_code} {response.text[:200]}")

    @staticmethod
    def _json(response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise VectorIndexError(f"invalid JSON from {response.request.url}: {exc}") from exc
