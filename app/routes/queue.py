"""Processing queue API routes for media_upload"""

from flask import Blueprint, Response, jsonify, request

from app.config import get_settings
from app.services.job_store import QueueStatus, get_job_store
from app.services.log_service import get_log_service
from app.services.reassembler import ChunkReassembler

queue_bp = Blueprint("queue", __name__)

MAX_PROCESS_WORKERS = 32


@queue_bp.route("", methods=["GET"])
def list_queue() -> tuple[Response, int]:
    """List processing queue items.

    Query params:
        status: Filter by status (queued/processing/completed/failed)
        limit: Maximum items to return (default 100)

    Returns:
        JSON with items list
    """
    status_arg = request.args.get("status")
    status: QueueStatus | None = None
    if status_arg:
        try:
            status = QueueStatus(status_arg)
        except ValueError:
            return jsonify({"error": f"Unknown status: {status_arg}"}), 400

    try:
        limit = max(1, min(1000, int(request.args.get("limit", "100"))))
    except ValueError:
        limit = 100

    items = get_job_store().list_queue_items(status=status, limit=limit)
    return jsonify({"items": [i.to_dict() for i in items], "count": len(items)}), 200


@queue_bp.route("/<item_id>", methods=["GET"])
def get_queue_item(item_id: str) -> tuple[Response, int]:
    """Get one queue item with its job."""
    store = get_job_store()
    item = store.get_queue_item(item_id)
    if not item:
        return jsonify({"error": "Queue item not found"}), 404

    job = store.get_job(item.job_id)
    return jsonify({"item": item.to_dict(), "job": job.to_dict() if job else None}), 200


@queue_bp.route("/process", methods=["POST"])
def process_queue() -> tuple[Response, int]:
    """Reassemble queued items now, in this request.

    Request body (optional):
        workers: Number of parallel workers (default: reassembler_workers,
            clamped to 1..MAX_PROCESS_WORKERS)

    Returns:
        JSON with one result per processed item
    """
    settings = get_settings()
    if not settings.s3_bucket:
        return jsonify({"success": False, "error": "S3 bucket not configured"}), 400

    workers = settings.reassembler_workers
    if request.is_json:
        data = request.get_json(silent=True) or {}
        try:
            workers = int(data.get("workers", workers))
        except (TypeError, ValueError):
            return jsonify({"error": "workers must be an integer"}), 400
    workers = max(1, min(MAX_PROCESS_WORKERS, workers))

    log = get_log_service()
    try:
        reassembler = ChunkReassembler.from_settings()
        results = reassembler.drain(workers)
    except Exception as e:
        log.error(
            "reassembly",
            "queue_process_failed",
            f"Queue processing failed: {e}",
            {"error": str(e)},
        )
        return jsonify({"success": False, "error": str(e)}), 500

    return jsonify(
        {
            "success": all(r["success"] for r in results),
            "processed": len(results),
            "results": results,
        }
    ), 200
