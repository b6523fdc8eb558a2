"""Tests for chunk planning."""

from pathlib import Path

import pytest

from app.services.chunk_planner import Chunk, chunk_path, plan_chunks, read_chunk


class TestPlanChunks:
    """Tests for plan_chunks."""

    @pytest.mark.parametrize(
        "file_size,chunk_size",
        [(1, 1), (10, 3), (100, 10), (101, 10), (99, 100), (250, 7)],
    )
    def test_ranges_partition_the_file(self, file_size: int, chunk_size: int) -> None:
        """Chunks are contiguous, ordered, and cover [0, file_size) exactly."""
        chunks = plan_chunks(file_size, chunk_size)

        assert len(chunks) == -(-file_size // chunk_size)
        assert chunks[0].start == 0
        assert chunks[-1].end == file_size
        for i, chunk in enumerate(chunks):
            assert chunk.index == i
            assert 0 < chunk.size <= chunk_size
        for prev, nxt in zip(chunks, chunks[1:]):
            assert prev.end == nxt.start
        assert sum(c.size for c in chunks) == file_size

    def test_zero_byte_file_has_no_chunks(self) -> None:
        assert plan_chunks(0, 10) == []

    def test_exact_multiple_has_no_empty_tail(self) -> None:
        chunks = plan_chunks(30, 10)
        assert [c.size for c in chunks] == [10, 10, 10]

    def test_deterministic(self) -> None:
        assert plan_chunks(1234, 100, "u/1") == plan_chunks(1234, 100, "u/1")

    @pytest.mark.parametrize("chunk_size", [0, -5])
    def test_rejects_non_positive_chunk_size(self, chunk_size: int) -> None:
        with pytest.raises(ValueError):
            plan_chunks(10, chunk_size)

    def test_rejects_negative_file_size(self) -> None:
        with pytest.raises(ValueError):
            plan_chunks(-1, 10)

    def test_paths_filled_when_upload_path_given(self) -> None:
        chunks = plan_chunks(25, 10, "owner/abc")
        assert [c.path for c in chunks] == [
            "chunks/owner/abc/chunk_0",
            "chunks/owner/abc/chunk_1",
            "chunks/owner/abc/chunk_2",
        ]

    def test_paths_empty_without_upload_path(self) -> None:
        assert all(c.path == "" for c in plan_chunks(25, 10))


class TestChunkPath:
    """Tests for chunk_path."""

    def test_default_prefix(self) -> None:
        assert chunk_path("user-1/uuid-2", 3) == "chunks/user-1/uuid-2/chunk_3"

    def test_custom_and_empty_prefix(self) -> None:
        assert chunk_path("/a/b/", 0, prefix="tmp/") == "tmp/a/b/chunk_0"
        assert chunk_path("a/b", 1, prefix="") == "a/b/chunk_1"


class TestReadChunk:
    """Tests for read_chunk."""

    def test_reads_exact_range(self, tmp_path: Path) -> None:
        path = tmp_path / "data.bin"
        data = bytes(range(256)) * 4
        path.write_bytes(data)

        pieces = [read_chunk(path, c) for c in plan_chunks(len(data), 100)]

        assert b"".join(pieces) == data
        assert pieces[3] == data[300:400]

    def test_short_read_raises(self, tmp_path: Path) -> None:
        path = tmp_path / "short.bin"
        path.write_bytes(b"abc")

        with pytest.raises(OSError, match="Short read"):
            read_chunk(path, Chunk(index=0, start=0, end=10))

    def test_to_dict(self) -> None:
        chunk = Chunk(index=2, start=20, end=25, path="p")
        assert chunk.to_dict() == {"index": 2, "start": 20, "end": 25, "size": 5, "path": "p"}
