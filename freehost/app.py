import atexit
import logging
import mimetypes
import os
import re
import shutil
import time
import uuid
from contextlib import ExitStack, contextmanager
from logging.handlers import RotatingFileHandler
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Iterator, List, Optional, Tuple

from apscheduler.schedulers.background import BackgroundScheduler
from flask import (
    Flask,
    Response,
    g,
    has_request_context,
    jsonify,
    render_template,
    request,
    send_file,
)
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.datastructures import FileStorage

from .storage import (
    BYTES_PER_MB,
    LOGS_DIR,
    MAX_FILE_SIZE_MB,
    MAX_REQUEST_SIZE_MB,
    PROJECT_TYPES,
    PUBLIC_DIR,
    PathTraversalError,
    ProjectNotFoundError,
    StorageError,
    _safe_int_env,
    build_project_record,
    cleanup_temp_files,
    discard_project_dir,
    ensure_directories,
    format_megabytes,
    get_storage_statistics,
    is_canonical_project_name,
    list_project_files,
    list_projects,
    previous_created_at,
    project_lock,
    resolve_project_file,
    sanitize_project_name,
    save_project_files,
    write_project_metadata,
)

SERVER_NAME = "FreeHost File Server"
START_TIME = time.time()

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
TEMP_CLEANUP_INTERVAL_MINUTES = 60

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

PUBLIC_BASE_URL = os.environ.get("FREEHOST_PUBLIC_URL", "").strip().rstrip("/")
# Abuse protection only; 0 (the default) leaves uploads unthrottled.
UPLOAD_RATE_LIMIT_PER_HOUR = _safe_int_env(
    "FREEHOST_RATE_LIMIT_UPLOADS_PER_HOUR", 0, min_value=0
)
MAX_FILENAME_LENGTH = _safe_int_env("FREEHOST_MAX_FILENAME_LENGTH", 255)
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")

ALLOWED_MIME_TYPES = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "text/html",
        "text/css",
        "application/javascript",
        "text/javascript",
        "application/zip",
        "application/x-zip-compressed",
        "video/mp4",
        "video/webm",
        "application/x-apk",
        "application/vnd.android.package-archive",
    }
)


class UploadValidationError(ValueError):
    """Raised when an upload request is missing data or names are unusable."""

    def __init__(self, message: str, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class UnsupportedMediaError(ValueError):
    """Raised when a file part is rejected at intake for its type or size."""

    def __init__(self, message: str, reason: str, status_code: int) -> None:
        super().__init__(message)
        self.reason = reason
        self.status_code = status_code


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value


def normalize_upload_filename(raw_name: Optional[str]) -> str:
    """Return the base name of a client supplied file name."""

    return PurePosixPath((raw_name or "").replace("\\", "/")).name


def validate_filename(filename: str) -> tuple[bool, Optional[str]]:
    """Validate filenames for length and disallowed characters."""

    if not filename:
        return False, "Filename cannot be empty"

    if len(filename) > MAX_FILENAME_LENGTH:
        return (
            False,
            f"Filename exceeds maximum length of {MAX_FILENAME_LENGTH} characters",
        )

    if _CONTROL_CHAR_PATTERN.search(filename):
        return False, "Filename contains invalid characters"

    if filename.startswith("."):
        return False, "Hidden file names are not allowed"

    return True, None


def validate_upload_mimetype(filename: str, declared_type: Optional[str]) -> bool:
    """Check for suspicious mismatches between filename and declared type."""

    if not filename or not declared_type:
        return True

    declared_type = declared_type.strip().lower()
    guessed_type, _ = mimetypes.guess_type(filename)
    if not guessed_type:
        return True

    guessed_type = guessed_type.lower()
    if declared_type == guessed_type:
        return True

    declared_major = declared_type.split("/", 1)[0]
    guessed_major = guessed_type.split("/", 1)[0]

    # Permit text types to be interchangeable (e.g., text/plain vs text/css).
    if declared_major == "text" and guessed_major == "text":
        return True

    return declared_major == guessed_major


def is_allowed_content_type(content_type: Optional[str]) -> bool:
    if not content_type:
        return False
    return content_type.lower().split(";")[0].strip() in ALLOWED_MIME_TYPES


def measure_upload_size(upload: FileStorage) -> Optional[int]:
    """Return the byte size of a parsed upload part without consuming it."""

    stream = upload.stream
    try:
        position = stream.tell()
        stream.seek(0, os.SEEK_END)
        size = stream.tell()
        stream.seek(position)
        return size
    except (AttributeError, OSError, ValueError):
        return upload.content_length or None


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def debug(self, msg: str, *args, **kwargs) -> None:
        self._logger.debug(self._with_request(msg), *args, **kwargs)

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs) -> None:
        self._logger.exception(self._with_request(msg), *args, **kwargs)

    def __getattr__(self, name: str):  # pragma: no cover - passthrough
        return getattr(self._logger, name)


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    ensure_directories()
    log_path = LOGS_DIR / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()

app = Flask(__name__)

CORS(
    app,
    resources={r"/api/*": {"origins": "*"}, r"/projects/*": {"origins": "*"}},
    send_wildcard=True,
)

limiter = Limiter(
    key_func=get_remote_address,
    app=app,
    storage_uri=os.environ.get("FREEHOST_RATE_LIMIT_STORAGE", "memory://"),
)


def upload_rate_limit_string() -> str:
    return f"{max(UPLOAD_RATE_LIMIT_PER_HOUR, 1)} per hour"


def upload_rate_limit_disabled() -> bool:
    return UPLOAD_RATE_LIMIT_PER_HOUR <= 0


app.config["MAX_FILE_SIZE_BYTES"] = MAX_FILE_SIZE_MB * BYTES_PER_MB
app.config["MAX_CONTENT_LENGTH"] = MAX_REQUEST_SIZE_MB * BYTES_PER_MB
app.logger.setLevel(numeric_level)

_base_lifecycle_logger = logging.getLogger("freehost.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)


def _close_stream_safely(stream: Any, context: str) -> None:
    """Close an upload/input stream while logging failures."""

    if stream is None or not hasattr(stream, "close"):
        return

    try:
        stream.close()
    except OSError as error:
        lifecycle_logger.warning(
            "stream_close_failed context=%s error=%s",
            context,
            sanitize_log_value(str(error)),
        )


@contextmanager
def upload_stream_handler(file_storage: FileStorage) -> Iterator[FileStorage]:
    """Ensure uploaded file streams are always closed."""

    try:
        yield file_storage
    finally:
        _close_stream_safely(
            getattr(file_storage, "stream", None),
            f"upload_stream_handler filename={sanitize_log_value(getattr(file_storage, 'filename', 'unknown'))}",
        )


def public_base_url() -> str:
    """Scheme and host clients should use to reach hosted projects."""

    if PUBLIC_BASE_URL:
        return PUBLIC_BASE_URL
    return request.host_url.rstrip("/")


def _wants_json() -> bool:
    return request.path.startswith("/api/") or (
        request.accept_mimetypes.accept_json and not request.accept_mimetypes.accept_html
    )


def _upload_error(message: str, status_code: int) -> Tuple[Response, int]:
    return jsonify({"success": False, "message": message}), status_code


def _collect_upload_parts() -> List[FileStorage]:
    parts = request.files.getlist("files") + request.files.getlist("files[]")
    return [
        part
        for part in parts
        if isinstance(part, FileStorage) and part and part.filename
    ]


def preflight_uploads(uploads: List[FileStorage]) -> List[Tuple[FileStorage, str]]:
    """Check every part before anything touches the project directory.

    Raises :class:`UploadValidationError` or :class:`UnsupportedMediaError`;
    one bad part fails the whole request.
    """

    max_bytes = app.config.get("MAX_FILE_SIZE_BYTES")
    accepted: List[Tuple[FileStorage, str]] = []
    for upload in uploads:
        filename = normalize_upload_filename(upload.filename)
        is_valid_name, name_error = validate_filename(filename)
        if not is_valid_name:
            raise UploadValidationError(
                f"{name_error}: {upload.filename!r}", "invalid_filename"
            )

        if not is_allowed_content_type(upload.mimetype):
            raise UnsupportedMediaError(
                f"Invalid file type '{upload.mimetype or 'unknown'}' for {filename}",
                "unsupported_media_type",
                415,
            )
        if not validate_upload_mimetype(filename, upload.mimetype):
            lifecycle_logger.warning(
                "upload_suspicious_mimetype filename=%s declared=%s",
                sanitize_log_value(filename),
                upload.mimetype,
            )

        size = measure_upload_size(upload)
        if max_bytes and size is not None and size > max_bytes:
            raise UnsupportedMediaError(
                f"File {filename} exceeds the {format_megabytes(max_bytes)} limit",
                "too_large",
                413,
            )
        accepted.append((upload, filename))
    return accepted


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_security_headers(response: Response):
    """Attach security-focused response headers."""

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
    if request.path.startswith("/projects/"):
        # Hosted sites decide their own framing and script policy.
        return response
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Content-Security-Policy"] = (
        "default-src 'self'; "
        "script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data:; "
        "connect-src 'self';"
    )
    return response


@app.after_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    return response


@app.errorhandler(413)
def handle_file_too_large(error):
    lifecycle_logger.warning(
        "upload_failed reason=request_too_large length=%s",
        request.content_length,
    )
    return _upload_error("File too large", 413)


@app.errorhandler(429)
def handle_rate_limit(error):
    description = getattr(error, "description", "Too many requests")
    return jsonify(
        {"success": False, "message": "Rate limit exceeded", "detail": str(description)}
    ), 429


@app.errorhandler(404)
def not_found(error):
    if _wants_json():
        return jsonify({"error": "Not found"}), 404
    return Response("File not found", status=404, mimetype="text/plain")


@app.errorhandler(500)
def internal_error(error):
    if _wants_json():
        return jsonify({"success": False, "message": "Internal server error"}), 500
    return Response("Internal server error", status=500, mimetype="text/plain")


@app.route("/")
def index():
    return render_template(
        "index.html",
        project_types=PROJECT_TYPES,
        max_file_size_mb=MAX_FILE_SIZE_MB,
    )


@app.route("/help")
def help_page():
    return render_template(
        "help.html",
        allowed_types=sorted(ALLOWED_MIME_TYPES),
        max_file_size_mb=MAX_FILE_SIZE_MB,
    )


@app.route("/health")
def health_check():
    """Report whether this instance can accept and serve projects."""

    checks: Dict[str, Any] = {}
    healthy = True

    try:
        ensure_directories()
        probe_path = PUBLIC_DIR / f".health.{uuid.uuid4().hex}.tmp"
        probe_path.write_bytes(b"")
        probe_path.unlink(missing_ok=True)
        checks["public_dir"] = "writable"
    except OSError as error:
        checks["public_dir"] = f"unwritable: {sanitize_log_value(str(error))[:100]}"
        healthy = False

    max_file_bytes = int(app.config.get("MAX_FILE_SIZE_BYTES") or 0)
    try:
        free_bytes = shutil.disk_usage(PUBLIC_DIR).free
        checks["free_space"] = format_megabytes(free_bytes)
        # Room for at least one full-size part.
        if free_bytes < max_file_bytes:
            checks["upload_headroom"] = "insufficient"
            healthy = False
        else:
            checks["upload_headroom"] = "ok"
    except OSError as error:
        checks["free_space"] = None
        checks["upload_headroom"] = f"unknown: {sanitize_log_value(str(error))[:100]}"
        healthy = False

    job = scheduler.get_job("cleanup_temp_files")
    if scheduler.running and job and job.next_run_time:
        checks["temp_sweep"] = job.next_run_time.isoformat()
    else:
        checks["temp_sweep"] = "stopped"

    if not healthy:
        lifecycle_logger.warning("health_check_failed checks=%s", checks)

    return jsonify(
        {
            "status": "healthy" if healthy else "unhealthy",
            "server": SERVER_NAME,
            "uptime": round(time.time() - START_TIME, 3),
            "checks": checks,
        }
    ), (200 if healthy else 503)


@app.route("/api/upload", methods=["POST"])
@limiter.limit(
    lambda: upload_rate_limit_string(),
    exempt_when=lambda: upload_rate_limit_disabled(),
)
def api_upload():
    uploads = _collect_upload_parts()
    with ExitStack() as streams:
        for upload in uploads:
            streams.enter_context(upload_stream_handler(upload))

        try:
            if not uploads:
                raise UploadValidationError("No files uploaded", "no_files")
            raw_name = request.form.get("projectName", "")
            project_name = sanitize_project_name(raw_name)
            if not is_canonical_project_name(project_name):
                raise UploadValidationError(
                    "Project name must contain at least one letter or digit",
                    "invalid_project_name",
                )
            accepted = preflight_uploads(uploads)
        except UploadValidationError as error:
            app.logger.warning("upload_failed reason=%s", error.reason)
            return _upload_error(str(error), 400)
        except UnsupportedMediaError as error:
            lifecycle_logger.warning(
                "upload_rejected reason=%s detail=%s",
                error.reason,
                sanitize_log_value(str(error)),
            )
            return _upload_error(str(error), error.status_code)

        project_type = (request.form.get("projectType") or "").strip()
        base_url = public_base_url()
        try:
            with project_lock(project_name):
                stored, created = save_project_files(project_name, accepted)
                record = build_project_record(
                    project_name,
                    project_type,
                    stored,
                    base_url,
                    created_at=None if created else previous_created_at(project_name),
                )
                try:
                    write_project_metadata(project_name, record)
                except StorageError:
                    if created:
                        discard_project_dir(project_name)
                    raise
        except StorageError:
            lifecycle_logger.exception(
                "project_upload_failed project=%s files=%d",
                project_name,
                len(accepted),
            )
            return _upload_error("Upload failed", 500)

    lifecycle_logger.info(
        "project_uploaded project=%s type=%s files=%d created=%s",
        project_name,
        sanitize_log_value(project_type),
        len(stored),
        created,
    )
    return jsonify(
        {
            "success": True,
            "message": "Files uploaded successfully",
            "project": record,
            "url": record["url"],
        }
    )


@app.route("/api/projects")
def api_projects():
    try:
        projects = list_projects()
    except OSError:
        lifecycle_logger.exception("project_listing_failed")
        return jsonify({"success": False, "message": "Failed to list projects"}), 500
    return jsonify(projects)


@app.route("/api/projects/<name>/files")
def api_project_files(name: str):
    try:
        files = list_project_files(name, public_base_url())
    except ProjectNotFoundError:
        lifecycle_logger.info("project_files_missing project=%s", sanitize_log_value(name))
        return jsonify({"error": "Project not found"}), 404
    except OSError:
        lifecycle_logger.exception("project_files_failed project=%s", sanitize_log_value(name))
        return jsonify({"error": "Failed to list project files"}), 500
    return jsonify(files)


@app.route("/api/stats")
def api_stats():
    try:
        stats = get_storage_statistics()
    except OSError:
        lifecycle_logger.exception("stats_failed")
        return jsonify({"error": "Failed to collect statistics"}), 500
    return jsonify(
        {
            "server": SERVER_NAME,
            "uptime": round(time.time() - START_TIME, 3),
            "projects": stats["projects"],
            "totalFiles": stats["total_files"],
            "totalSize": format_megabytes(stats["total_bytes"]),
            "totalBytes": stats["total_bytes"],
            "publicUrl": public_base_url(),
        }
    )


@app.route("/projects/<name>/", defaults={"relative_path": ""})
@app.route("/projects/<name>/<path:relative_path>")
def serve_project_file(name: str, relative_path: str):
    try:
        file_path = resolve_project_file(name, relative_path)
    except PathTraversalError:
        lifecycle_logger.warning(
            "path_traversal_attempt project=%s path=%s ip=%s",
            sanitize_log_value(name),
            sanitize_log_value(relative_path),
            request.remote_addr or "unknown",
        )
        return Response("File not found", status=404, mimetype="text/plain")
    except ProjectNotFoundError:
        return Response("File not found", status=404, mimetype="text/plain")

    try:
        return send_file(file_path, conditional=True)
    except FileNotFoundError:
        lifecycle_logger.warning(
            "project_file_missing_race project=%s path=%s",
            sanitize_log_value(name),
            sanitize_log_value(relative_path),
        )
        return Response("File not found", status=404, mimetype="text/plain")


scheduler_logger = logging.getLogger("freehost.scheduler")


def run_temp_cleanup() -> int:
    """Scheduled sweep of temporary files left by interrupted uploads."""

    try:
        removed = cleanup_temp_files()
    except OSError:
        scheduler_logger.exception("temp_cleanup_job_failed")
        return 0
    if removed:
        scheduler_logger.info("temp_cleanup_job_finished removed=%d", removed)
    return removed


scheduler = BackgroundScheduler(daemon=True)
scheduler.add_job(
    func=run_temp_cleanup,
    trigger="interval",
    minutes=TEMP_CLEANUP_INTERVAL_MINUTES,
    id="cleanup_temp_files",
    name="Clean up temporary upload files",
    replace_existing=True,
)
scheduler.start()


def _shutdown_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)


atexit.register(_shutdown_scheduler)

run_temp_cleanup()


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "3000")), debug=False, threaded=True)
