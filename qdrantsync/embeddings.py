"""Embedding generation through an OpenAI-compatible embeddings API.

:class:`EmbeddingClient` owns batching, retries and dimension checks; the
provider it wraps only has to turn one list of strings into one list of
vectors.  Tests substitute an in-memory provider.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

import numpy as np
import openai
from openai import AsyncOpenAI

from qdrantsync.errors import ConsistencyError, EmbeddingProviderError
from qdrantsync.retry import RetryExhaustedError, RetryPolicy

logger = logging.getLogger(__name__)

# Native output sizes of the OpenAI embedding models
MODEL_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

_TRANSIENT_STATUS = {408, 409, 429}


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Anything that can embed a batch of texts."""

    dimension: int

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per text, in input order."""
        ...


def is_transient_openai_error(exc: BaseException) -> bool:
    """Rate limits, timeouts, connection drops and 5xx are worth retrying."""
    if isinstance(exc, openai.APIConnectionError):  # includes APITimeoutError
        return True
    if isinstance(exc, openai.APIStatusError):
        return exc.status_code in _TRANSIENT_STATUS or exc.status_code >= 500
    return False


class OpenAIEmbeddingProvider:
    """Embeds texts with ``AsyncOpenAI.embeddings.create``.

    The SDK's own retries are disabled (``max_retries=0``) so the retry
    policy in :class:`EmbeddingClient` is the only one in effect.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        dimension: int,
        base_url: str | None = None,
        request_dimensions: bool = False,
        timeout: float = 60.0,
    ):
        self.model = model
        self.dimension = dimension
        self._request_dimensions = request_dimensions
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=base_url or None,
            max_retries=0,
            timeout=timeout,
        )

    async def embed(self, texts: list[str]) -> list[list[float]]:
        kwargs = {}
        if self._request_dimensions:
            kwargs["dimensions"] = self.dimension
        response = await self._client.embeddings.create(
            model=self.model, input=texts, **kwargs
        )
        ordered = sorted(response.data, key=lambda item: item.index)
        return [list(item.embedding) for item in ordered]

    async def close(self) -> None:
        await self._client.close()


class EmbeddingClient:
    """Batches texts through a provider and validates what comes back."""

    def __init__(
        self,
        provider: EmbeddingProvider,
        batch_size: int = 100,
        retry_policy: RetryPolicy | None = None,
        expected_dimension: int | None = None,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.provider = provider
        self.batch_size = batch_size
        self.retry_policy = (retry_policy or RetryPolicy()).with_classifier(
            is_transient_openai_error
        )
        self.expected_dimension = expected_dimension or provider.dimension

    async def embed_documents(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed *texts* in groups of at most ``batch_size``.

        Raises:
            EmbeddingProviderError: Permanent failure, or transient failures
                that outlasted the retry policy.
            ConsistencyError: Wrong vector count or dimension.
        """
        vectors: list[list[float]] = []
        for offset in range(0, len(texts), self.batch_size):
            group = list(texts[offset : offset + self.batch_size])
            description = (
                f"Embedding texts {offset}-{offset + len(group) - 1} "
                f"of {len(texts)}"
            )
            vectors.extend(await self._embed_group(group, description))
        return vectors

    async def _embed_group(self, group: list[str], description: str) -> list[list[float]]:
        try:
            result = await self.retry_policy.call(
                lambda: self.provider.embed(group), description
            )
        except RetryExhaustedError as e:
            raise EmbeddingProviderError(str(e), transient=True) from e
        except Exception as e:
            raise EmbeddingProviderError(
                f"{description} failed: {type(e).__name__}: {e}", transient=False
            ) from e

        self._check(result, len(group), description)
        return result

    def _check(self, vectors: list[list[float]], expected_count: int, description: str) -> None:
        if len(vectors) != expected_count:
            raise ConsistencyError(
                f"{description}: provider returned {len(vectors)} vectors "
                f"for {expected_count} texts"
            )
        for i, vector in enumerate(vectors):
            if len(vector) != self.expected_dimension:
                raise ConsistencyError(
                    f"{description}: vector {i} has dimension {len(vector)}, "
                    f"collection expects {self.expected_dimension}"
                )
        if vectors and not np.isfinite(np.asarray(vectors, dtype=np.float64)).all():
            raise ConsistencyError(f"{description}: provider returned non-finite values")

    async def close(self) -> None:
        close = getattr(self.provider, "close", None)
        if close is not None:
            await close()
