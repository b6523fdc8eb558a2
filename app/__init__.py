"""Flask application factory for the chunked media upload service."""

import os

from flask import Flask

from app.config import get_package_version, get_settings


def create_app() -> Flask:
    """Create and configure the Flask application."""
    app = Flask(__name__)

    # Load configuration
    settings = get_settings()
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key-change-in-production")
    # Multipart uploads are staged to disk before chunking
    app.config["MAX_CONTENT_LENGTH"] = settings.max_file_size + 1024 * 1024

    # Store settings in app config for easy access
    app.config["SETTINGS"] = settings

    # Register blueprints
    from app.routes.logs import logs_bp
    from app.routes.queue import queue_bp
    from app.routes.settings import settings_bp
    from app.routes.upload import upload_bp

    app.register_blueprint(upload_bp, url_prefix="/api/upload")
    app.register_blueprint(queue_bp, url_prefix="/api/queue")
    app.register_blueprint(settings_bp, url_prefix="/api/settings")
    app.register_blueprint(logs_bp, url_prefix="/api/logs")

    # Log application startup
    from app.services.log_service import get_log_service

    log = get_log_service()
    log.info(
        "app",
        "app_started",
        f"Application started (v{get_package_version()})",
        {"version": get_package_version(), "reassembler_enabled": settings.reassembler_enabled},
    )

    if settings.reassembler_enabled and settings.s3_bucket:
        from app.services.reassembler import start_background_workers

        app.config["REASSEMBLER_STOP"] = start_background_workers()
        log.info(
            "reassembly",
            "reassembler_started",
            f"Started {settings.reassembler_workers} reassembler workers",
            {"workers": settings.reassembler_workers},
        )

    return app
