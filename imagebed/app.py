import atexit
import logging
import mimetypes
import shutil
import sys
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, Iterator, Optional

from flask import Blueprint, Flask, Response, current_app, g, jsonify, request, send_file
from werkzeug.datastructures import FileStorage
from werkzeug.exceptions import HTTPException

from .admission import AdmissionGate, resolve_client_address
from .auth import AuthGate
from .config import Settings, load_settings
from .errors import ConfigError, ImageBedError, StorageError, ValidationError
from .ingest import NO_FILE_MESSAGE, UPLOAD_FIELD, UploadIngest
from .logs import configure_logging, lifecycle_logger, sanitize_log_value
from .retention import RetentionScheduler, RetentionSweeper
from .storage import ObjectStore

LIVENESS_TEXT = "Image Bed Backend Service is running!"
EXTENSION_KEY = "imagebed"

bp = Blueprint("imagebed", __name__)


@dataclass
class Services:
    settings: Settings
    store: ObjectStore
    admission: AdmissionGate
    auth: AuthGate
    ingest: UploadIngest
    sweeper: RetentionSweeper
    scheduler: RetentionScheduler


def _services() -> Services:
    return current_app.extensions[EXTENSION_KEY]


def _client_address() -> str:
    settings = _services().settings
    return resolve_client_address(
        request.headers, request.remote_addr, settings.trust_forwarded_for
    )


@contextmanager
def closing_upload(file_storage: FileStorage) -> Iterator[BinaryIO]:
    """Yield the upload stream and close it once the store is done with it."""

    try:
        yield file_storage.stream
    finally:
        try:
            file_storage.close()
        except OSError as error:
            lifecycle_logger.warning(
                "upload_close_failed filename=%s error=%s",
                sanitize_log_value(file_storage.filename),
                error,
            )


@bp.before_app_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@bp.after_app_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@bp.after_app_request
def add_response_headers(response: Response):
    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    # The static front-end is served from a different origin by the proxy.
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@bp.app_errorhandler(ImageBedError)
def handle_imagebed_error(error: ImageBedError):
    if isinstance(error, StorageError):
        lifecycle_logger.error(
            "storage_error path=%s error=%s", sanitize_log_value(request.path), error
        )
    return jsonify(error.to_payload()), error.status_code


@bp.app_errorhandler(413)
def handle_file_too_large(error):
    return jsonify({"message": "File too large."}), 413


@bp.app_errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    return jsonify({"message": error.description or error.name}), error.code or 500


@bp.route("/")
def index():
    return LIVENESS_TEXT


@bp.route("/health")
def health_check():
    services = _services()
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        services.store.ensure_root()
        usage = shutil.disk_usage(services.store.root)
        checks["disk_space_gb"] = round(usage.free / (1024 ** 3), 2)
        check_file = services.store.root / f".health_check_{uuid.uuid4().hex}"
        check_file.write_text("health_check", encoding="utf-8")
        check_file.unlink(missing_ok=True)
        checks["uploads_writable"] = "ok"
    except OSError as error:
        checks["uploads_writable"] = f"error: {str(error)[:100]}"
        healthy = False

    scheduler = services.scheduler
    checks["scheduler_running"] = scheduler.running
    if not services.sweeper.enabled:
        checks["cleanup"] = "disabled"
    else:
        next_run = scheduler.next_run_time()
        if next_run is not None:
            checks["cleanup"] = "scheduled"
            checks["cleanup_next_run"] = next_run.isoformat()
        else:
            checks["cleanup"] = "not_scheduled"

    status = "healthy" if healthy else "unhealthy"
    code = 200 if healthy else 503
    return jsonify({"status": status, "timestamp": time.time(), "checks": checks}), code


@bp.route("/upload", methods=["POST"])
def upload():
    services = _services()
    client_ip = _client_address()
    services.admission.authorize(client_ip)

    upload_storage = request.files.get(UPLOAD_FIELD)
    if not isinstance(upload_storage, FileStorage) or not upload_storage.filename:
        lifecycle_logger.warning("upload_failed reason=no_file ip=%s", sanitize_log_value(client_ip))
        raise ValidationError(NO_FILE_MESSAGE)

    with closing_upload(upload_storage) as stream:
        stored = services.ingest.ingest(stream, upload_storage.filename)

    lifecycle_logger.info(
        "upload_completed name=%s size=%d original=%s",
        stored.name,
        stored.size,
        sanitize_log_value(upload_storage.filename),
    )
    return jsonify({"message": "Image uploaded successfully!", "imageUrl": stored.url})


@bp.route("/uploads/<name>")
def serve_upload(name: str):
    handle = _services().store.open(name)
    mimetype = mimetypes.guess_type(name)[0] or "application/octet-stream"
    return send_file(handle, mimetype=mimetype, download_name=name, as_attachment=False)


@bp.route("/api/list-images", methods=["POST"])
def list_images():
    services = _services()
    payload = request.get_json(silent=True)
    password = payload.get("password") if isinstance(payload, dict) else None
    if not password:
        raise ValidationError("Please provide a password.")

    services.auth.require(password, _client_address())

    try:
        objects = services.store.list()
    except StorageError as error:
        raise StorageError("Could not retrieve image list.") from error

    return jsonify(
        {
            "message": "Image list retrieved successfully!",
            "images": [stored.name for stored in objects],
        }
    )


def create_app(
    settings: Optional[Settings] = None,
    *,
    store: Optional[ObjectStore] = None,
    start_scheduler: bool = True,
) -> Flask:
    """Build the Flask application around one immutable :class:`Settings`.

    Raises :class:`ConfigError` when settings are loaded from the environment
    and required values are missing.
    """

    settings = settings if settings is not None else load_settings()
    store = store if store is not None else ObjectStore(settings.uploads_dir)
    store.ensure_root()

    sweeper = RetentionSweeper(store, settings.retention_max_age_ms)
    services = Services(
        settings=settings,
        store=store,
        admission=AdmissionGate(settings.allowed_ip),
        auth=AuthGate(settings.admin_password_hash),
        ingest=UploadIngest(store),
        sweeper=sweeper,
        scheduler=RetentionScheduler(sweeper, settings.cleanup_interval_minutes),
    )

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = settings.max_content_length
    app.extensions[EXTENSION_KEY] = services
    app.register_blueprint(bp)

    if start_scheduler:
        services.scheduler.start()
        atexit.register(services.scheduler.shutdown)

    lifecycle_logger.info(
        "app_configured allowed_ip=%s uploads_dir=%s retention_months=%d",
        settings.allowed_ip,
        store.root,
        settings.retention_months,
    )
    return app


def main() -> None:
    try:
        settings = load_settings()
    except ConfigError as error:
        configure_logging()
        logging.getLogger("imagebed.config").critical("startup_failed error=%s", error)
        sys.exit(1)

    configure_logging(settings.log_level, settings.logs_dir)
    app = create_app(settings)
    app.run(host="0.0.0.0", port=settings.port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
