"""Qdrant access for the sync coordinator.

Only the handful of calls the sync needs are exposed.  Every call goes
through the retry policy and surfaces failures as
:class:`~qdrantsync.errors.VectorStoreError`.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeVar, runtime_checkable

from qdrant_client import AsyncQdrantClient, models
from qdrant_client.http.exceptions import ResponseHandlingException, UnexpectedResponse

from qdrantsync.errors import VectorStoreError
from qdrantsync.retry import RetryExhaustedError, RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

HASH_FIELD = "content_hash"
SCROLL_PAGE_SIZE = 256

_DISTANCES = {
    "cosine": models.Distance.COSINE,
    "dot": models.Distance.DOT,
    "euclid": models.Distance.EUCLID,
    "manhattan": models.Distance.MANHATTAN,
}

_TRANSIENT_STATUS = {408, 429}


@dataclass
class Point:
    """One record to persist: id, vector and payload."""

    id: str | int
    vector: list[float]
    payload: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class VectorStore(Protocol):
    """Collection and point operations used by the sync coordinator."""

    async def collection_exists(self) -> bool: ...

    async def collection_dimension(self) -> int | None: ...

    async def create_collection(self, dimension: int, distance: str = "cosine") -> None: ...

    async def delete_collection(self) -> None: ...

    async def list_point_hashes(self) -> dict[str | int, str | None]: ...

    async def upsert(self, points: Sequence[Point]) -> None: ...

    async def delete_points(self, ids: Sequence[str | int]) -> None: ...

    async def close(self) -> None: ...


def is_transient_qdrant_error(exc: BaseException) -> bool:
    """Transport failures, timeouts, 429 and 5xx responses are worth retrying."""
    if isinstance(exc, ResponseHandlingException):
        return True
    if isinstance(exc, UnexpectedResponse):
        status = exc.status_code or 0
        return status in _TRANSIENT_STATUS or status >= 500
    return isinstance(exc, (TimeoutError, ConnectionError))


def distance_for(name: str) -> models.Distance:
    try:
        return _DISTANCES[name.strip().lower()]
    except KeyError:
        raise ValueError(
            f"Unknown distance metric {name!r}; expected one of {sorted(_DISTANCES)}"
        ) from None


class QdrantVectorStore:
    """A single Qdrant collection reached over the REST API."""

    def __init__(
        self,
        url: str,
        api_key: str | None,
        collection_name: str,
        retry_policy: RetryPolicy | None = None,
        timeout: int = 30,
        client: AsyncQdrantClient | None = None,
    ):
        self.collection_name = collection_name
        self.retry_policy = (retry_policy or RetryPolicy()).with_classifier(
            is_transient_qdrant_error
        )
        self._client = client or AsyncQdrantClient(
            url=url, api_key=api_key or None, timeout=timeout
        )

    async def _call(self, operation: str, fn: Callable[[], Awaitable[T]]) -> T:
        description = f"Qdrant {operation} on '{self.collection_name}'"
        try:
            return await self.retry_policy.call(fn, description)
        except RetryExhaustedError as e:
            raise VectorStoreError(str(e), operation=operation, transient=True) from e
        except Exception as e:
            raise VectorStoreError(
                f"{description} failed: {type(e).__name__}: {e}",
                operation=operation,
                transient=False,
            ) from e

    async def collection_exists(self) -> bool:
        return await self._call(
            "collection_exists",
            lambda: self._client.collection_exists(self.collection_name),
        )

    async def collection_dimension(self) -> int | None:
        """Vector size of the collection, or None for named-vector layouts."""
        info = await self._call(
            "get_collection",
            lambda: self._client.get_collection(self.collection_name),
        )
        vectors = info.config.params.vectors
        if isinstance(vectors, models.VectorParams):
            return vectors.size
        return None

    async def create_collection(self, dimension: int, distance: str = "cosine") -> None:
        params = models.VectorParams(size=dimension, distance=distance_for(distance))
        await self._call(
            "create_collection",
            lambda: self._client.create_collection(
                collection_name=self.collection_name, vectors_config=params
            ),
        )

    async def delete_collection(self) -> None:
        await self._call(
            "delete_collection",
            lambda: self._client.delete_collection(self.collection_name),
        )

    async def list_point_hashes(self) -> dict[str | int, str | None]:
        """Map every stored point id to its payload content hash.

        Ids keep the type Qdrant returned: integer ids stay integers so they
        can be passed back to :meth:`delete_points` unchanged.
        """
        hashes: dict[str | int, str | None] = {}
        offset: Any = None
        while True:
            records, offset = await self._call(
                "scroll",
                lambda offset=offset: self._client.scroll(
                    collection_name=self.collection_name,
                    limit=SCROLL_PAGE_SIZE,
                    offset=offset,
                    with_payload=[HASH_FIELD],
                    with_vectors=False,
                ),
            )
            for record in records:
                payload = record.payload or {}
                hashes[record.id] = payload.get(HASH_FIELD)
            if offset is None:
                return hashes

    async def upsert(self, points: Sequence[Point]) -> None:
        async def send():
            structs = [
                models.PointStruct(id=p.id, vector=p.vector, payload=p.payload)
                for p in points
            ]
            await self._client.upsert(
                collection_name=self.collection_name, points=structs, wait=True
            )

        await self._call("upsert", send)

    async def delete_points(self, ids: Sequence[str | int]) -> None:
        if not ids:
            return
        selector = models.PointIdsList(points=list(ids))
        await self._call(
            "delete",
            lambda: self._client.delete(
                collection_name=self.collection_name,
                points_selector=selector,
                wait=True,
            ),
        )

    async def close(self) -> None:
        await self._client.close()
