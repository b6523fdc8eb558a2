"""Tests for the progress tracker."""

import threading

from app.services.progress_tracker import ProgressSnapshot, ProgressTracker


class TestProgressTracker:
    """Tests for ProgressTracker."""

    def test_initial_snapshot(self) -> None:
        tracker = ProgressTracker(total_bytes=100, total_chunks=4)

        snap = tracker.snapshot()

        assert snap.bytes_uploaded == 0
        assert snap.percentage == 0.0
        assert snap.status == "pending"

    def test_record_chunk_accumulates(self) -> None:
        seen: list[ProgressSnapshot] = []
        tracker = ProgressTracker(total_bytes=300, total_chunks=3, callback=seen.append)

        tracker.start()
        tracker.record_chunk(100)
        tracker.record_chunk(100)

        assert [s.status for s in seen] == ["uploading", "uploading", "uploading"]
        assert seen[-1].bytes_uploaded == 200
        assert seen[-1].current_chunk == 2
        assert seen[-1].percentage == 66.67

    def test_concurrent_updates_are_monotonic(self) -> None:
        seen: list[ProgressSnapshot] = []
        tracker = ProgressTracker(total_bytes=64 * 10, total_chunks=64, callback=seen.append)

        def worker() -> None:
            for _ in range(8):
                tracker.record_chunk(10)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert [s.bytes_uploaded for s in seen] == list(range(10, 641, 10))
        assert [s.percentage for s in seen] == sorted(s.percentage for s in seen)
        assert seen[-1].percentage == 100.0

    def test_complete_reports_full_progress(self) -> None:
        seen: list[ProgressSnapshot] = []
        tracker = ProgressTracker(total_bytes=50, total_chunks=1, callback=seen.append)

        tracker.record_chunk(50)
        tracker.complete()

        assert seen[-1].status == "completed"
        assert seen[-1].percentage == 100.0

    def test_zero_byte_upload_completes_at_100(self) -> None:
        tracker = ProgressTracker(total_bytes=0, total_chunks=0)

        assert tracker.snapshot().percentage == 0.0
        snap = tracker.complete()

        assert snap is not None
        assert snap.percentage == 100.0
        assert snap.status == "completed"

    def test_fail_freezes_tracker(self) -> None:
        seen: list[ProgressSnapshot] = []
        tracker = ProgressTracker(total_bytes=100, total_chunks=2, callback=seen.append)

        tracker.record_chunk(50)
        tracker.fail("chunk 1 failed")
        tracker.record_chunk(50)
        tracker.complete()

        assert [s.status for s in seen] == ["uploading", "error"]
        assert seen[-1].error == "chunk 1 failed"
        assert tracker.frozen is True
        assert tracker.snapshot().bytes_uploaded == 50

    def test_cancel_is_silent_and_final(self) -> None:
        seen: list[ProgressSnapshot] = []
        tracker = ProgressTracker(total_bytes=100, total_chunks=2, callback=seen.append)

        tracker.record_chunk(50)
        tracker.cancel()
        tracker.record_chunk(50)
        tracker.fail("late error")

        assert len(seen) == 1
        assert tracker.snapshot().status == "cancelled"

    def test_snapshot_to_dict(self) -> None:
        tracker = ProgressTracker(total_bytes=2048, total_chunks=2)
        tracker.record_chunk(1024)

        data = tracker.snapshot().to_dict()

        assert data["percentage"] == 50.0
        assert data["current_chunk"] == 1
        assert data["total_chunks"] == 2
        assert "KB" in data["total_bytes_formatted"]
