"""Upload API routes for media_upload"""

import json
import logging
import shutil
import tempfile
import threading
import time
from collections import deque
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

from flask import Blueprint, Response, jsonify, request
from werkzeug.utils import secure_filename

from app.services.errors import UploadError, ValidationError
from app.services.job_store import get_job_store
from app.services.progress_tracker import ProgressSnapshot
from app.services.upload_manager import UploadSession, get_upload_manager

logger = logging.getLogger(__name__)

upload_bp = Blueprint("upload", __name__)

OWNER_HEADER = "X-Owner-Id"
TERMINAL_STATUSES = ("completed", "error", "cancelled")

# Store for SSE clients per job
_sse_queues: dict[str, list[deque[dict[str, Any]]]] = {}
_sse_lock = threading.Lock()


def send_sse_event(job_id: str, data: dict[str, Any]) -> None:
    """Send an SSE event to all clients listening for a job."""
    with _sse_lock:
        queues = _sse_queues.get(job_id, [])
        for q in queues:
            q.append(data)


def _make_progress_callback(holder: dict[str, str]) -> Callable[[ProgressSnapshot], None]:
    """Create a tracker callback that forwards snapshots as SSE events.

    The job id is only known after prepare_upload() returns, so it is read
    from holder at call time.
    """

    def callback(snapshot: ProgressSnapshot) -> None:
        job_id = holder.get("job_id")
        if job_id:
            send_sse_event(job_id, {"type": "progress", "job_id": job_id, **snapshot.to_dict()})

    return callback


def _stored_job_event(job_id: str) -> str:
    """SSE message for a job this process holds no live session for."""
    job = get_job_store().get_job(job_id)
    if job is None:
        return 'data: {"error": "Job not found"}\n\n'
    data = {"type": "job", "job_id": job_id, "status": job.status.value, "job": job.to_dict()}
    return f"data: {json.dumps(data)}\n\n"


def _run_in_background(session: UploadSession) -> None:
    manager = get_upload_manager()

    def run_upload() -> None:
        try:
            manager.run_upload(session)
        except UploadError as e:
            # Already recorded on the job and in the event log
            logger.info("Upload %s ended: %s", session.job_id, e)
        except Exception:
            logger.exception("Upload %s crashed", session.job_id)
        finally:
            if session.cancelled:
                send_sse_event(
                    session.job_id,
                    {"type": "progress", "job_id": session.job_id, "status": "cancelled"},
                )

    thread = threading.Thread(target=run_upload, daemon=True)
    thread.start()


@upload_bp.route("", methods=["POST"])
def start_upload() -> tuple[Response, int]:
    """Start a chunked upload.

    Accepts multipart/form-data with a single "file" part, or JSON with
    {"file_path": ...} for a file already on this machine. The owner is
    taken from the X-Owner-Id header. Returns immediately (202 Accepted);
    progress is streamed on /api/upload/progress/<job_id>.

    Returns:
        JSON response with job_id and the initial session state
    """
    owner_id = request.headers.get(OWNER_HEADER, "").strip()
    if not owner_id:
        return jsonify({"error": "Authentication required"}), 401

    manager = get_upload_manager()

    local_path: str | None = None
    file_name: str | None = None
    temp_dir: str | None = None

    # Handle file uploads (multipart/form-data)
    if request.files:
        uploaded = request.files.get("file")
        if uploaded and uploaded.filename:
            file_name = secure_filename(uploaded.filename) or "upload.bin"
            temp_dir = tempfile.mkdtemp(prefix="media_upload_")
            temp_path = Path(temp_dir) / file_name
            uploaded.save(temp_path)
            local_path = str(temp_path)

    # Handle JSON with a local file path
    elif request.is_json:
        data = request.get_json(silent=True) or {}
        if data.get("file_path"):
            local_path = str(data["file_path"])
            file_name = data.get("file_name")

    if not local_path:
        return jsonify({"error": "No file provided"}), 400

    holder: dict[str, str] = {}
    try:
        session = manager.prepare_upload(
            local_path,
            owner_id,
            progress_callback=_make_progress_callback(holder),
            file_name=file_name,
            cleanup_path=temp_dir,
        )
    except ValidationError as e:
        if temp_dir:
            shutil.rmtree(temp_dir, ignore_errors=True)
        return jsonify({"error": str(e)}), 400

    holder["job_id"] = session.job_id
    _run_in_background(session)

    return jsonify(
        {
            "job_id": session.job_id,
            "status": "pending",
            "session": session.to_dict(),
        }
    ), 202


@upload_bp.route("/progress/<job_id>", methods=["GET"])
def get_progress(job_id: str) -> Response:
    """Stream progress updates for a job via Server-Sent Events.

    Args:
        job_id: The job ID to monitor

    Returns:
        SSE stream of progress snapshots
    """
    manager = get_upload_manager()

    def generate() -> Generator[str, None, None]:
        # Create a queue for this client
        queue: deque[dict[str, Any]] = deque()
        with _sse_lock:
            _sse_queues.setdefault(job_id, []).append(queue)

        try:
            # Send initial state
            snapshot = manager.get_progress(job_id)
            if snapshot is None:
                # Finished sessions are evicted; the job itself is persisted
                yield _stored_job_event(job_id)
                return
            initial = {"type": "progress", "job_id": job_id, **snapshot.to_dict()}
            yield f"data: {json.dumps(initial)}\n\n"
            if snapshot.status in TERMINAL_STATUSES:
                return

            # Stream updates
            while True:
                while queue:
                    data = queue.popleft()
                    yield f"data: {json.dumps(data)}\n\n"
                    if data.get("status") in TERMINAL_STATUSES:
                        return

                # Small delay to prevent busy waiting
                time.sleep(0.1)

                session = manager.get_session(job_id)
                if session is None:
                    yield _stored_job_event(job_id)
                    return
        finally:
            with _sse_lock:
                if job_id in _sse_queues and queue in _sse_queues[job_id]:
                    _sse_queues[job_id].remove(queue)
                    if not _sse_queues[job_id]:
                        del _sse_queues[job_id]

    return Response(
        generate(),
        mimetype="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@upload_bp.route("/status/<job_id>", methods=["GET"])
def get_status(job_id: str) -> tuple[Response, int]:
    """Get the persisted job plus live progress, if this process is uploading it.

    Args:
        job_id: The job ID to check

    Returns:
        JSON response with job status
    """
    job = get_job_store().get_job(job_id)
    if not job:
        return jsonify({"error": "Job not found"}), 404

    session = get_upload_manager().get_session(job_id)
    return jsonify(
        {
            "job": job.to_dict(),
            "session": session.to_dict() if session else None,
        }
    ), 200


@upload_bp.route("/cancel/<job_id>", methods=["POST"])
def cancel_upload(job_id: str) -> tuple[Response, int]:
    """Cancel an in-flight upload.

    Args:
        job_id: The job ID to cancel

    Returns:
        JSON response with cancellation status
    """
    manager = get_upload_manager()

    if manager.cancel_upload(job_id):
        send_sse_event(job_id, {"type": "progress", "job_id": job_id, "status": "cancelled"})
        job = get_job_store().get_job(job_id)
        return jsonify(
            {
                "success": True,
                "job_id": job_id,
                "job": job.to_dict() if job else None,
            }
        ), 200
    else:
        return jsonify({"error": "No active upload for this job"}), 404
