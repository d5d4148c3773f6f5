"""Synchronize a source tree into a Qdrant collection.

A run walks through these states::

    IDLE -> VALIDATING -> RESETTING_COLLECTION -> SCANNING -> CHUNKING
         -> EMBEDDING <-> UPSERTING -> DONE

and ends in FAILED if anything unrecoverable happens on the way.

Two policies decide what happens to the existing collection:

- ``full``: delete the collection if it exists, recreate it, upload every
  chunk.
- ``incremental``: keep the collection, compare each chunk's content hash
  with the one stored in the point payload, upload only new or changed
  chunks and delete points that no longer correspond to a chunk.

Point ids are derived from ``(path, chunk index)``, so both policies produce
the same ids for the same tree and a repeated run is a no-op (incremental)
or an identical rebuild (full).

Embedding and upserting go one batch at a time.  A failed batch aborts the
run but keeps earlier batches: the next run repairs the collection.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any

from qdrantsync.chunker import Chunk, TextChunker
from qdrantsync.config import POLICIES, POLICY_FULL, POLICY_INCREMENTAL, Settings
from qdrantsync.embeddings import EmbeddingClient, OpenAIEmbeddingProvider
from qdrantsync.errors import (
    ConfigurationError,
    ConsistencyError,
    FilesystemError,
    SyncCancelledError,
    SyncError,
)
from qdrantsync.vectorstore import HASH_FIELD, Point, QdrantVectorStore, VectorStore
from qdrantsync.walker import Document, walk_corpus

logger = logging.getLogger(__name__)

_DRY = {"dry_run": True}


class SyncState(str, enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    RESETTING_COLLECTION = "resetting_collection"
    SCANNING = "scanning"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    UPSERTING = "upserting"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS = {
    SyncState.IDLE: {SyncState.VALIDATING},
    SyncState.VALIDATING: {SyncState.RESETTING_COLLECTION},
    SyncState.RESETTING_COLLECTION: {SyncState.SCANNING},
    SyncState.SCANNING: {SyncState.CHUNKING},
    SyncState.CHUNKING: {SyncState.EMBEDDING},
    SyncState.EMBEDDING: {SyncState.UPSERTING},
    SyncState.UPSERTING: {SyncState.EMBEDDING, SyncState.DONE},
    SyncState.DONE: set(),
    SyncState.FAILED: set(),
}

_TERMINAL = {SyncState.DONE, SyncState.FAILED}


@dataclass
class SyncReport:
    """Counts of what a run did, filled in as it progresses."""

    policy: str
    dry_run: bool = False
    state: SyncState = SyncState.IDLE
    states: list[SyncState] = field(default_factory=lambda: [SyncState.IDLE])
    files_processed: int = 0
    files_skipped: int = 0
    chunks_created: int = 0
    chunks_pending: int = 0
    chunks_uploaded: int = 0
    chunks_unchanged: int = 0
    points_stale: int = 0
    points_deleted: int = 0
    batches_total: int = 0
    batches_completed: int = 0
    duration: float = 0.0
    error: SyncError | None = None

    @property
    def ok(self) -> bool:
        return self.state is SyncState.DONE

    def summary(self) -> str:
        parts = [
            f"{self.files_processed} files processed",
            f"{self.files_skipped} skipped",
            f"{self.chunks_created} chunks created",
            f"{self.chunks_uploaded}/{self.chunks_pending} chunks uploaded",
        ]
        if self.policy == POLICY_INCREMENTAL:
            parts.append(f"{self.chunks_unchanged} unchanged")
            parts.append(f"{self.points_deleted}/{self.points_stale} stale points deleted")
        parts.append(f"{self.batches_completed}/{self.batches_total} batches")
        return ", ".join(parts)


def build_payload(chunk: Chunk) -> dict[str, Any]:
    """Point payload stored alongside each vector."""
    return {
        "text": chunk.text,
        "metadata": {
            "path": chunk.source_path,
            "chunk": chunk.index,
            "totalChunks": chunk.total_chunks,
        },
        HASH_FIELD: chunk.content_hash,
    }


class SyncCoordinator:
    """Runs one sync of ``settings.root`` into ``settings.collection``.

    Args:
        settings: Resolved configuration.
        embedder: Embedding client; built from *settings* after validation
            when omitted.
        store: Vector store; built from *settings* after validation when
            omitted.
        dry_run: Make read-only calls only, logging every mutation instead.
        policy: ``"full"`` or ``"incremental"``; defaults to
            ``settings.policy``.
    """

    def __init__(
        self,
        settings: Settings,
        embedder: EmbeddingClient | None = None,
        store: VectorStore | None = None,
        dry_run: bool = False,
        policy: str | None = None,
    ):
        self.settings = settings
        self.embedder = embedder
        self.store = store
        self.dry_run = dry_run
        self.policy = policy or settings.policy
        self.report = SyncReport(policy=self.policy, dry_run=dry_run)
        self._owned_clients: list[Any] = []
        self._cancelled = False

    @property
    def state(self) -> SyncState:
        return self.report.state

    def cancel(self) -> None:
        """Stop before the next batch.  Batches already upserted are kept."""
        if not self._cancelled:
            logger.warning("Cancellation requested; stopping before the next batch")
        self._cancelled = True

    def _transition(self, new_state: SyncState) -> None:
        current = self.report.state
        if new_state is not SyncState.FAILED and new_state not in _TRANSITIONS[current]:
            raise RuntimeError(f"Illegal sync transition {current.value} -> {new_state.value}")
        if new_state is SyncState.FAILED and current in _TERMINAL:
            raise RuntimeError(f"Cannot fail a run that already ended ({current.value})")
        logger.debug("Sync state: %s -> %s", current.value, new_state.value)
        self.report.state = new_state
        self.report.states.append(new_state)

    # ── main flow ─────────────────────────────────────────────────────

    async def run(self) -> SyncReport:
        """Execute the sync.

        Returns:
            The report of a successful run (state DONE).

        Raises:
            SyncError: Any unrecoverable failure.  The run ends FAILED and the
                exception carries the report as ``error.report``.
        """
        started = time.monotonic()
        mode = " (dry run)" if self.dry_run else ""
        logger.info(
            "Starting %s sync of %s into '%s'%s",
            self.policy,
            self.settings.root,
            self.settings.collection,
            mode,
        )
        try:
            self._transition(SyncState.VALIDATING)
            chunker = self._validate()

            self._transition(SyncState.RESETTING_COLLECTION)
            stored_hashes = await self._reset_collection()

            self._transition(SyncState.SCANNING)
            documents = await asyncio.to_thread(self._scan)

            self._transition(SyncState.CHUNKING)
            chunks = self._chunk(chunker, documents)
            pending, stale_ids = self._plan(chunks, stored_hashes)

            await self._upload(pending)
            await self._prune(stale_ids)

            self._transition(SyncState.DONE)
        except SyncError as e:
            self._fail(e)
            raise
        except asyncio.CancelledError:
            self._fail(SyncCancelledError("Sync task was cancelled"))
            raise
        finally:
            self.report.duration = round(time.monotonic() - started, 2)
            await self._close_clients()

        if self.dry_run:
            logger.info("Sync simulation completed: %s", self.report.summary(), extra=_DRY)
        else:
            logger.info(
                "Sync completed in %.2fs: %s",
                self.report.duration,
                self.report.summary(),
                extra={"success": True},
            )
        return self.report

    def _fail(self, error: SyncError) -> None:
        failed_in = self.report.state
        self.report.error = error
        error.report = self.report
        if failed_in not in _TERMINAL:
            self._transition(SyncState.FAILED)
        logger.error("Sync failed while %s: %s", failed_in.value, error)
        logger.error("Completed before the failure: %s", self.report.summary())

    # ── stages ────────────────────────────────────────────────────────

    def _validate(self) -> TextChunker:
        self.settings.validate()
        if self.policy not in POLICIES:
            raise ConfigurationError(
                f"Unknown sync policy {self.policy!r}; expected one of {', '.join(POLICIES)}"
            )
        chunker = self.settings.build_chunker()
        if self.store is None:
            self.store = QdrantVectorStore(
                url=self.settings.qdrant_url,
                api_key=self.settings.qdrant_api_key,
                collection_name=self.settings.collection,
                retry_policy=self.settings.retry,
                timeout=self.settings.qdrant_timeout,
            )
            self._owned_clients.append(self.store)
        if self.embedder is None:
            provider = OpenAIEmbeddingProvider(
                api_key=self.settings.openai_api_key,
                model=self.settings.embedding_model,
                dimension=self.settings.vector_dimension,
                base_url=self.settings.openai_base_url or None,
                request_dimensions=self.settings.embedding_dimensions is not None,
            )
            self.embedder = EmbeddingClient(
                provider,
                batch_size=self.settings.embedding_batch_size,
                retry_policy=self.settings.retry,
                expected_dimension=self.settings.vector_dimension,
            )
            self._owned_clients.append(self.embedder)
        return chunker

    async def _reset_collection(self) -> dict[str | int, str | None]:
        """Prepare the collection; return stored content hashes by point id."""
        name = self.settings.collection
        dimension = self.settings.vector_dimension
        distance = self.settings.distance
        logger.info("Checking if collection '%s' exists...", name)
        exists = await self.store.collection_exists()

        if self.policy == POLICY_FULL:
            if exists:
                if self.dry_run:
                    logger.info("Would delete existing collection '%s'", name, extra=_DRY)
                else:
                    logger.info("Deleting existing collection '%s'...", name)
                    await self.store.delete_collection()
            await self._create_collection(name, dimension, distance)
            return {}

        if not exists:
            await self._create_collection(name, dimension, distance)
            return {}

        stored_dimension = await self.store.collection_dimension()
        if stored_dimension is not None and stored_dimension != dimension:
            raise ConsistencyError(
                f"Collection '{name}' stores {stored_dimension}-dimensional vectors "
                f"but {self.settings.embedding_model} produces {dimension}; "
                "run a full rebuild to recreate it"
            )
        hashes = await self.store.list_point_hashes()
        logger.info("Collection '%s' holds %d points", name, len(hashes))
        return hashes

    async def _create_collection(self, name: str, dimension: int, distance: str) -> None:
        if self.dry_run:
            logger.info(
                "Would create collection '%s' with %d dimensions (%s)",
                name,
                dimension,
                distance,
                extra=_DRY,
            )
            return
        logger.info("Creating collection '%s' (%d dimensions, %s)...", name, dimension, distance)
        await self.store.create_collection(dimension, distance)

    def _scan(self) -> list[Document]:
        root = self.settings.root
        logger.info("Scanning repository at: %s", root.resolve())
        skipped: list[FilesystemError] = []
        documents = list(
            walk_corpus(
                root,
                include_extensions=self.settings.include_extensions,
                exclude_dirs=self.settings.exclude_dirs,
                use_gitignore=self.settings.respect_gitignore,
                skipped=skipped,
            )
        )
        self.report.files_skipped = len(skipped)
        logger.info("Found %d files to process.", len(documents))
        return documents

    def _chunk(self, chunker: TextChunker, documents: Sequence[Document]) -> list[Chunk]:
        chunks: list[Chunk] = []
        for document in documents:
            document_chunks = chunker.chunk_document(document)
            logger.debug("Processing: %s (%d chunks)", document.path, len(document_chunks))
            chunks.extend(document_chunks)
            self.report.files_processed += 1
        self.report.chunks_created = len(chunks)
        logger.info(
            "Created %d document chunks from %d files.", len(chunks), len(documents)
        )
        return chunks

    def _plan(
        self, chunks: list[Chunk], stored_hashes: dict[str | int, str | None]
    ) -> tuple[list[Chunk], list[str | int]]:
        """Split chunks into those to upload, and list stale point ids."""
        if self.policy == POLICY_FULL:
            pending = chunks
            stale_ids: list[str | int] = []
        else:
            # Stored ids may be integers written by other tools; compare as text
            stored = {str(pid): digest for pid, digest in stored_hashes.items()}
            pending = [c for c in chunks if stored.get(c.point_id) != c.content_hash]
            current_ids = {c.point_id for c in chunks}
            stale_ids = sorted(
                (pid for pid in stored_hashes if str(pid) not in current_ids), key=str
            )
            self.report.chunks_unchanged = len(chunks) - len(pending)
            logger.info(
                "%d chunks changed or new, %d unchanged, %d stale points",
                len(pending),
                self.report.chunks_unchanged,
                len(stale_ids),
            )
        batch_size = self.settings.batch_size
        self.report.chunks_pending = len(pending)
        self.report.points_stale = len(stale_ids)
        self.report.batches_total = -(-len(pending) // batch_size)
        return pending, stale_ids

    async def _upload(self, pending: list[Chunk]) -> None:
        self._transition(SyncState.EMBEDDING)
        batch_size = self.settings.batch_size
        total = len(pending)

        if self.dry_run:
            logger.info(
                "Would generate embeddings and upload %d chunks in %d batches of up to %d",
                total,
                self.report.batches_total,
                batch_size,
                extra=_DRY,
            )
            self._transition(SyncState.UPSERTING)
            return

        logger.info("Uploading %d chunks to Qdrant...", total)
        for number, offset in enumerate(range(0, total, batch_size), start=1):
            if self._cancelled:
                raise SyncCancelledError(
                    f"Cancelled before batch {number}/{self.report.batches_total}"
                )
            batch = pending[offset : offset + batch_size]
            if self.report.state is SyncState.UPSERTING:
                self._transition(SyncState.EMBEDDING)
            try:
                vectors = await self.embedder.embed_documents([c.text for c in batch])
                self._transition(SyncState.UPSERTING)
                points = [
                    Point(id=c.point_id, vector=vector, payload=build_payload(c))
                    for c, vector in zip(batch, vectors)
                ]
                await self.store.upsert(points)
            except SyncError:
                paths = sorted({c.source_path for c in batch})
                logger.error(
                    "Batch %d/%d (chunks %d-%d) failed; files in batch: %s",
                    number,
                    self.report.batches_total,
                    offset,
                    offset + len(batch) - 1,
                    ", ".join(paths),
                )
                raise
            self.report.chunks_uploaded += len(batch)
            self.report.batches_completed += 1
            logger.info("Uploaded %d/%d chunks...", self.report.chunks_uploaded, total)

        if self.report.state is SyncState.EMBEDDING:
            self._transition(SyncState.UPSERTING)

    async def _prune(self, stale_ids: list[str | int]) -> None:
        if not stale_ids:
            return
        if self.dry_run:
            logger.info("Would delete %d stale points", len(stale_ids), extra=_DRY)
            return
        if self._cancelled:
            raise SyncCancelledError("Cancelled before deleting stale points")
        batch_size = self.settings.batch_size
        for offset in range(0, len(stale_ids), batch_size):
            group = stale_ids[offset : offset + batch_size]
            await self.store.delete_points(group)
            self.report.points_deleted += len(group)
        logger.info("Deleted %d stale points", self.report.points_deleted)

    async def _close_clients(self) -> None:
        for client in self._owned_clients:
            try:
                await client.close()
            except Exception as e:
                logger.debug("Error closing %s: %s", type(client).__name__, e)
