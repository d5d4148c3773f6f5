"""Recursive, boundary-aware text chunking.

Text is split into pieces on the highest-priority separator present
(paragraph break, then line break, then space).  Pieces that still do not fit
the window are split again with the next separator, down to raw character
cuts.  Fitting pieces are then merged greedily into chunks of at most
``chunk_size`` characters, carrying up to ``chunk_overlap`` characters of
trailing pieces into the next chunk.

Separators stay attached to the end of the piece they terminate, and chunks
are contiguous slices of the input.  Dropping the overlapping prefix of each
chunk therefore rebuilds the input exactly (see :func:`reconstruct`).
"""

from __future__ import annotations

import hashlib
import uuid
from collections import deque
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass

from qdrantsync.errors import ChunkerConfigurationError
from qdrantsync.walker import Document

DEFAULT_SEPARATORS: tuple[str, ...] = ("\n\n", "\n", " ", "")

# Namespace for point ids; changing it changes every id in the collection.
POINT_ID_NAMESPACE = uuid.UUID("6f1c1f0e-5a55-4d0e-9a53-6b2f7c9d4e21")


@dataclass(frozen=True)
class TextSpan:
    """A chunk's position within its source text (``text == source[start:end]``)."""

    start: int
    end: int
    text: str


@dataclass(frozen=True)
class Chunk:
    """One chunk of a document, ready to be embedded."""

    text: str
    index: int
    total_chunks: int
    source_path: str

    @property
    def point_id(self) -> str:
        return point_id_for(self.source_path, self.index)

    @property
    def content_hash(self) -> str:
        hasher = hashlib.md5()
        for part in (self.source_path, str(self.index), str(self.total_chunks)):
            hasher.update(part.encode("utf-8"))
            hasher.update(b"\x00")
        hasher.update(self.text.encode("utf-8"))
        return hasher.hexdigest()


def point_id_for(path: str, index: int) -> str:
    """Return the stable point id for chunk *index* of *path*."""
    return str(uuid.uuid5(POINT_ID_NAMESPACE, f"{path}#{index}"))


class TextChunker:
    """Split text into bounded, overlapping chunks.

    Args:
        chunk_size: Maximum chunk length in characters.
        chunk_overlap: Maximum number of characters shared by consecutive
            chunks.  Must be smaller than ``chunk_size``.
        separators: Boundaries to try, highest priority first.  The empty
            string means "cut anywhere" and should come last.

    Raises:
        ChunkerConfigurationError: If the size/overlap combination is invalid.
    """

    def __init__(
        self,
        chunk_size: int = 1000,
        chunk_overlap: int = 100,
        separators: Sequence[str] = DEFAULT_SEPARATORS,
    ):
        if chunk_size <= 0:
            raise ChunkerConfigurationError(
                f"chunk_size must be positive, got {chunk_size}"
            )
        if chunk_overlap < 0:
            raise ChunkerConfigurationError(
                f"chunk_overlap must not be negative, got {chunk_overlap}"
            )
        if chunk_overlap >= chunk_size:
            raise ChunkerConfigurationError(
                f"chunk_overlap ({chunk_overlap}) must be smaller than "
                f"chunk_size ({chunk_size})"
            )
        self.chunk_size = chunk_size
        self.chunk_overlap = chunk_overlap
        self.separators = tuple(separators)
        if not self.separators or self.separators[-1] != "":
            self.separators += ("",)

    # ── public API ────────────────────────────────────────────────────

    def iter_spans(self, content: str) -> Iterator[TextSpan]:
        """Yield the chunk spans of *content* in order.

        Calling again restarts from the beginning.  Empty input yields nothing.
        """
        if not content:
            return
        for start, end in self._split(content, 0, len(content), self.separators):
            yield TextSpan(start, end, content[start:end])

    def iter_chunks(self, content: str) -> Iterator[str]:
        """Yield the chunk texts of *content* in order."""
        for span in self.iter_spans(content):
            yield span.text

    def split_text(self, content: str) -> list[str]:
        return list(self.iter_chunks(content))

    def chunk_document(self, document: Document) -> list[Chunk]:
        """Chunk a document, numbering chunks from zero."""
        texts = self.split_text(document.content)
        total = len(texts)
        return [
            Chunk(text=text, index=i, total_chunks=total, source_path=document.path)
            for i, text in enumerate(texts)
        ]

    # ── internals ─────────────────────────────────────────────────────

    def _split(
        self, text: str, start: int, end: int, separators: tuple[str, ...]
    ) -> Iterator[tuple[int, int]]:
        """Yield merged chunk spans covering ``text[start:end]``."""
        if end - start <= self.chunk_size:
            yield start, end
            return

        separator = ""
        remaining: tuple[str, ...] = ()
        for i, candidate in enumerate(separators):
            if candidate == "" or text.find(candidate, start, end) != -1:
                separator = candidate
                remaining = separators[i + 1 :]
                break

        if separator == "":
            yield from self._window(start, end)
            return

        fitting: list[tuple[int, int]] = []
        for piece in _pieces(text, start, end, separator):
            if piece[1] - piece[0] <= self.chunk_size:
                fitting.append(piece)
                continue
            if fitting:
                yield from self._merge(fitting)
                fitting = []
            yield from self._split(text, piece[0], piece[1], remaining or ("",))
        if fitting:
            yield from self._merge(fitting)

    def _window(self, start: int, end: int) -> Iterator[tuple[int, int]]:
        """Fixed-size character windows, used when no separator applies."""
        step = self.chunk_size - self.chunk_overlap
        pos = start
        while True:
            stop = min(pos + self.chunk_size, end)
            yield pos, stop
            if stop >= end:
                return
            pos += step

    def _merge(self, pieces: Iterable[tuple[int, int]]) -> Iterator[tuple[int, int]]:
        """Greedily join contiguous pieces into chunks with trailing overlap."""
        current: deque[tuple[int, int]] = deque()
        total = 0
        for piece in pieces:
            length = piece[1] - piece[0]
            if current and total + length > self.chunk_size:
                yield current[0][0], current[-1][1]
                # Keep a tail of at most chunk_overlap characters that still
                # leaves room for the incoming piece.
                while current and (
                    total > self.chunk_overlap or total + length > self.chunk_size
                ):
                    dropped = current.popleft()
                    total -= dropped[1] - dropped[0]
            current.append(piece)
            total += length
        if current:
            yield current[0][0], current[-1][1]


def _pieces(
    text: str, start: int, end: int, separator: str
) -> Iterator[tuple[int, int]]:
    """Split ``text[start:end]`` on *separator*, keeping it on the left piece."""
    pos = start
    while pos < end:
        found = text.find(separator, pos, end)
        if found == -1:
            yield pos, end
            return
        stop = found + len(separator)
        yield pos, stop
        pos = stop


def reconstruct(spans: Iterable[TextSpan]) -> str:
    """Rebuild the source text from consecutive chunk spans.

    Each span contributes only the characters past the end of the previous
    one, so overlapping regions are counted once.
    """
    parts: list[str] = []
    covered = 0
    for span in spans:
        if span.end > covered:
            parts.append(span.text[max(covered - span.start, 0) :])
            covered = span.end
    return "".join(parts)
