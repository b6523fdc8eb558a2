"""Chunk planning: split a file into ordered, contiguous byte ranges."""

from dataclasses import dataclass
from pathlib import Path
from typing import Any

DEFAULT_CHUNK_PREFIX = "chunks"


@dataclass(frozen=True)
class Chunk:
    """A contiguous byte range [start, end) of a source file."""

    index: int
    start: int
    end: int
    path: str = ""

    @property
    def size(self) -> int:
        """Number of bytes in the chunk."""
        return self.end - self.start

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "index": self.index,
            "start": self.start,
            "end": self.end,
            "size": self.size,
            "path": self.path,
        }


def chunk_path(upload_path: str, index: int, prefix: str = DEFAULT_CHUNK_PREFIX) -> str:
    """Build the storage key for a chunk.

    Args:
        upload_path: Per-upload path (e.g. "<owner_id>/<uuid>")
        index: 0-based chunk index
        prefix: Key prefix under which chunks are stored

    Returns:
        Key like "chunks/<owner_id>/<uuid>/chunk_3"
    """
    base = upload_path.strip("/")
    if prefix:
        base = f"{prefix.strip('/')}/{base}"
    return f"{base}/chunk_{index}"


def plan_chunks(
    file_size: int,
    chunk_size: int,
    upload_path: str | None = None,
    prefix: str = DEFAULT_CHUNK_PREFIX,
) -> list[Chunk]:
    """Partition [0, file_size) into ordered chunks of at most chunk_size bytes.

    Args:
        file_size: Total size of the file in bytes
        chunk_size: Maximum chunk size in bytes
        upload_path: If given, each chunk gets its storage key filled in
        prefix: Key prefix passed to chunk_path()

    Returns:
        List of chunks; empty for a zero-byte file

    Raises:
        ValueError: If chunk_size <= 0 or file_size < 0
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if file_size < 0:
        raise ValueError(f"file_size must not be negative, got {file_size}")

    chunks: list[Chunk] = []
    for index, start in enumerate(range(0, file_size, chunk_size)):
        end = min(start + chunk_size, file_size)
        path = chunk_path(upload_path, index, prefix) if upload_path is not None else ""
        chunks.append(Chunk(index=index, start=start, end=end, path=path))
    return chunks


def read_chunk(local_path: str | Path, chunk: Chunk) -> bytes:
    """Read exactly the bytes of one chunk from a local file."""
    with open(local_path, "rb") as f:
        f.seek(chunk.start)
        data = f.read(chunk.size)
    if len(data) != chunk.size:
        raise OSError(
            f"Short read for chunk {chunk.index}: expected {chunk.size} bytes, got {len(data)}"
        )
    return data
