"""Settings API routes for media_upload"""

from typing import Any

from flask import Blueprint, Response, jsonify, request

from app.config import DEFAULT_SETTINGS, get_package_version, get_settings
from app.services import s3_service
from app.services.log_service import get_log_service
from app.services.upload_manager import reset_upload_manager

settings_bp = Blueprint("settings", __name__)

# Storage and database locations are fixed for the life of the process
READ_ONLY_KEYS = {"database_path"}


def _validate_value(key: str, value: Any) -> str | None:
    """Check a submitted value against the type of its default.

    Returns:
        An error message, or None if the value is acceptable
    """
    default = DEFAULT_SETTINGS[key]
    if isinstance(default, bool):
        return None if isinstance(value, bool) else f"{key} must be a boolean"
    if isinstance(default, int | float):
        if isinstance(value, bool) or not isinstance(value, int | float):
            return f"{key} must be a number"
        if value < 0:
            return f"{key} must not be negative"
        if key in ("chunk_size", "max_concurrent_uploads", "reassembler_workers") and value < 1:
            return f"{key} must be at least 1"
        return None
    if isinstance(default, list):
        if not isinstance(value, list) or not all(
            isinstance(v, int | float) and not isinstance(v, bool) and v >= 0 for v in value
        ):
            return f"{key} must be a list of non-negative numbers"
        return None
    return None if isinstance(value, str) else f"{key} must be a string"


@settings_bp.route("", methods=["GET"])
def get_all_settings() -> tuple[Response, int]:
    """Get all current settings.

    Returns:
        JSON response with all settings
    """
    settings = get_settings()
    return jsonify({**settings.all(), "version": get_package_version()}), 200


@settings_bp.route("", methods=["PUT"])
def update_settings() -> tuple[Response, int]:
    """Update settings.

    Request body:
        JSON object with settings to update

    Returns:
        JSON response with updated settings
    """
    if not request.is_json:
        return jsonify({"error": "JSON body required"}), 400

    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Empty body"}), 400

    allowed_keys = set(DEFAULT_SETTINGS) - READ_ONLY_KEYS
    filtered_data = {k: v for k, v in data.items() if k in allowed_keys}

    if not filtered_data:
        return jsonify({"error": "No valid settings provided"}), 400

    errors = []
    for key, value in filtered_data.items():
        error = _validate_value(key, value)
        if error:
            errors.append(error)
    if errors:
        return jsonify({"error": "; ".join(errors)}), 400

    settings = get_settings()
    settings.update(filtered_data)
    # The upload manager snapshots settings when built; rebuild it once idle
    reset_upload_manager()

    log = get_log_service()
    log.info(
        "settings",
        "settings_updated",
        f"Updated settings: {', '.join(filtered_data.keys())}",
        {"changed_keys": list(filtered_data.keys())},
    )

    return jsonify(settings.all()), 200


@settings_bp.route("/validate", methods=["POST"])
def validate_connection() -> tuple[Response, int]:
    """Validate S3 connection with current or provided settings.

    Request body (optional):
        aws_profile: AWS profile to test
        aws_region: AWS region to test
        s3_bucket: S3 bucket to test

    Returns:
        JSON response with validation result
    """
    settings = get_settings()

    # Use provided values or fall back to current settings
    data = (request.get_json(silent=True) or {}) if request.is_json else {}
    profile = data.get("aws_profile", settings.aws_profile)
    region = data.get("aws_region", settings.aws_region)
    bucket = data.get("s3_bucket", settings.s3_bucket)

    if not bucket:
        return jsonify({"error": "S3 bucket not specified"}), 400

    log = get_log_service()
    meta = {"bucket": bucket, "profile": profile, "region": region}
    try:
        client = s3_service.create_s3_client(profile, region)
        result = s3_service.validate_bucket_access(client, bucket)
    except Exception as e:
        log.error(
            "settings",
            "connection_test",
            f"Connection test error for bucket '{bucket}': {e}",
            {**meta, "error": str(e)},
        )
        return jsonify({"success": False, "error": str(e)}), 200

    if result["success"]:
        log.info(
            "settings",
            "connection_test",
            f"Connection test succeeded for bucket '{bucket}'",
            {**meta, "success": True},
        )
        return jsonify(
            {"success": True, "message": f"Successfully connected to bucket '{bucket}'"}
        ), 200

    log.warning(
        "settings",
        "connection_test",
        f"Connection test failed for bucket '{bucket}': {result['error']}",
        {**meta, "success": False, "error": result["error"]},
    )
    return jsonify({"success": False, "error": result["error"]}), 200
