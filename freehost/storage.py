import json
import logging
import os
import re
import shutil
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Dict, Generator, Iterable, List, Optional
from urllib.parse import quote

from werkzeug.datastructures import FileStorage


BASE_DIR = Path(__file__).resolve().parent

logger = logging.getLogger("freehost.storage")


def _resolve_env_path(env_key: str, default: Path) -> Path:
    """Resolve an environment-provided path or fall back to *default*."""

    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser().resolve()
    return default.resolve()


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    try:
        return max(min_value, int(os.environ.get(key, str(default))))
    except (TypeError, ValueError):
        logging.getLogger("freehost.config").warning(
            "Invalid value for %s: %s. Using default: %d",
            key, os.environ.get(key), default
        )
        return default


STORAGE_ROOT = _resolve_env_path("FREEHOST_STORAGE_ROOT", BASE_DIR)
PUBLIC_DIR = _resolve_env_path("FREEHOST_PUBLIC_DIR", STORAGE_ROOT / "public")
LOGS_DIR = _resolve_env_path("FREEHOST_LOGS_DIR", STORAGE_ROOT / "logs")

METADATA_FILENAME = ".project-info.json"
TEMP_SUFFIX = ".tmp"

# Constants for file operations
CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
BYTES_PER_MB = 1024 * 1024

MAX_FILE_SIZE_MB = _safe_int_env("FREEHOST_MAX_FILE_SIZE_MB", 50)
# Transport bound on the whole multipart body, independent of file count.
MAX_REQUEST_SIZE_MB = _safe_int_env("FREEHOST_MAX_REQUEST_MB", 2048)
MAX_PROJECT_NAME_LENGTH = 128
TEMP_FILE_MAX_AGE_MINUTES = _safe_int_env("FREEHOST_TEMP_FILE_MAX_AGE_MINUTES", 60)

PROJECT_TYPES = ("website", "images", "videos", "apk", "zip")

_DISALLOWED_NAME_CHARS = re.compile(r"[^A-Za-z0-9]")


class StorageError(RuntimeError):
    """Raised when the filesystem refuses a write needed by an upload."""


class ProjectNotFoundError(LookupError):
    """Raised when a project or a file inside it does not exist."""


class PathTraversalError(ProjectNotFoundError):
    """Raised when a requested path would leave its project directory."""


class MetadataParseError(ValueError):
    """Raised when a project sidecar cannot be read as a JSON object."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Unreadable project metadata at {path}: {reason}")
        self.path = path
        self.reason = reason


def ensure_directories() -> None:
    PUBLIC_DIR.mkdir(parents=True, exist_ok=True)
    LOGS_DIR.mkdir(parents=True, exist_ok=True)


def isoformat_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


def sanitize_project_name(raw_name: Optional[str]) -> str:
    """Return the canonical project identifier for user supplied *raw_name*.

    Every character outside ``[A-Za-z0-9]`` becomes a hyphen and the result is
    lowercased, then capped at ``MAX_PROJECT_NAME_LENGTH`` characters. The
    function is total and idempotent.
    """

    replaced = _DISALLOWED_NAME_CHARS.sub("-", raw_name or "")
    return replaced.lower()[:MAX_PROJECT_NAME_LENGTH]


def is_canonical_project_name(name: str) -> bool:
    """True when *name* is non-empty, already sanitized and has an alphanumeric."""

    if not name or sanitize_project_name(name) != name:
        return False
    return any(char.isalnum() for char in name)


def get_project_dir(name: str) -> Path:
    return PUBLIC_DIR / name


def get_metadata_path(name: str) -> Path:
    return get_project_dir(name) / METADATA_FILENAME


def is_internal_name(filename: str) -> bool:
    """Hidden entries (sidecar, temporary upload files) are never public."""

    return filename.startswith(".")


def discard_project_dir(name: str) -> None:
    """Remove a project directory that never received a sidecar."""

    project_dir = get_project_dir(name)
    try:
        resolved = project_dir.resolve()
    except FileNotFoundError:
        return

    if resolved.parent != PUBLIC_DIR.resolve():
        return
    shutil.rmtree(resolved, ignore_errors=True)


_registry_lock = threading.Lock()
_project_locks: Dict[str, List] = {}


@contextmanager
def project_lock(name: str) -> Generator[None, None, None]:
    """Serialize writers of the same canonical project name.

    Locks are reference counted so the registry only holds names that have an
    upload in flight.
    """

    with _registry_lock:
        entry = _project_locks.get(name)
        if entry is None:
            entry = [threading.Lock(), 0]
            _project_locks[name] = entry
        entry[1] += 1

    lock = entry[0]
    lock.acquire()
    try:
        yield
    finally:
        lock.release()
        with _registry_lock:
            entry[1] -= 1
            if entry[1] <= 0:
                _project_locks.pop(name, None)


def _temp_path_for(directory: Path, label: str) -> Path:
    return directory / f".{label}.{uuid.uuid4().hex}{TEMP_SUFFIX}"


def _write_json_atomic(path: Path, payload: Dict[str, object]) -> None:
    temp_path = _temp_path_for(path.parent, path.name.lstrip("."))
    try:
        with temp_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2)
            handle.flush()
            # Ensure data is written to disk
            os.fsync(handle.fileno())

        # Atomic rename on POSIX systems (overwrites destination)
        temp_path.replace(path)
    except Exception:
        # Clean up temp file if write failed
        if temp_path.exists():
            try:
                temp_path.unlink()
            except OSError:
                pass
        raise


def _copy_upload(upload: FileStorage, destination: Path) -> int:
    """Stream *upload* into *destination* through a hidden temp file."""

    temp_path = _temp_path_for(destination.parent, "upload")
    written = 0
    if hasattr(upload.stream, "seek"):
        try:
            upload.stream.seek(0)
        except (OSError, IOError):
            pass
    try:
        with temp_path.open("wb") as handle:
            while True:
                chunk = upload.stream.read(CHUNK_SIZE_BYTES)
                if not chunk:
                    break
                handle.write(chunk)
                written += len(chunk)
        temp_path.replace(destination)
    except Exception:
        temp_path.unlink(missing_ok=True)
        raise
    return written


def save_project_files(
    name: str, uploads: Iterable[tuple[FileStorage, str]]
) -> tuple[List[str], bool]:
    """Persist every ``(upload, filename)`` pair into the project directory.

    Returns the stored file names in order and whether the directory was
    created by this call. On failure a directory created here is removed
    again; files already renamed into a pre-existing directory stay in place.
    Callers are expected to hold :func:`project_lock` for *name*.
    """

    ensure_directories()
    project_dir = get_project_dir(name)
    created = not project_dir.exists()
    stored: List[str] = []
    try:
        project_dir.mkdir(parents=True, exist_ok=True)
        for upload, filename in uploads:
            size = _copy_upload(upload, project_dir / filename)
            stored.append(filename)
            logger.debug(
                "project_file_stored project=%s filename=%s size=%d",
                name,
                filename,
                size,
            )
    except OSError as error:
        if created:
            discard_project_dir(name)
        elif stored:
            logger.warning(
                "project_partially_written project=%s stored=%d error=%s",
                name,
                len(stored),
                error,
            )
        raise StorageError(f"Failed to store files for project {name}") from error
    return stored, created


def build_project_record(
    name: str,
    project_type: Optional[str],
    files: List[str],
    base_url: str,
    created_at: Optional[str] = None,
) -> Dict[str, object]:
    now = isoformat_utc(time.time())
    project_url = f"{base_url.rstrip('/')}/projects/{name}"
    record: Dict[str, object] = {
        "name": name,
        "type": project_type or "",
        "files": list(files),
        "fileCount": len(files),
        "createdAt": created_at or now,
        "updatedAt": now,
        "url": project_url,
    }
    if any(filename.lower() == "index.html" for filename in files):
        record["mainUrl"] = f"{project_url}/index.html"
    return record


def read_project_metadata(name: str) -> Dict[str, object]:
    """Load the sidecar for *name*.

    Raises :class:`ProjectNotFoundError` when there is no sidecar and
    :class:`MetadataParseError` when it cannot be parsed into an object.
    """

    path = get_metadata_path(name)
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError as error:
        raise ProjectNotFoundError(name) from error
    except (json.JSONDecodeError, UnicodeDecodeError) as error:
        raise MetadataParseError(path, str(error)) from error
    except OSError as error:
        raise MetadataParseError(path, str(error)) from error

    if not isinstance(data, dict):
        raise MetadataParseError(path, "expected a JSON object")
    return data


def previous_created_at(name: str) -> Optional[str]:
    """Return ``createdAt`` from an existing readable sidecar, if any."""

    try:
        existing = read_project_metadata(name)
    except (ProjectNotFoundError, MetadataParseError):
        return None
    value = existing.get("createdAt")
    return value if isinstance(value, str) and value else None


def write_project_metadata(name: str, record: Dict[str, object]) -> Path:
    path = get_metadata_path(name)
    try:
        _write_json_atomic(path, record)
    except OSError as error:
        raise StorageError(f"Failed to write metadata for project {name}") from error
    return path


def list_projects() -> List[Dict[str, object]]:
    """Return the parsed sidecar of every project under PUBLIC_DIR.

    Directories without a sidecar are skipped; unreadable sidecars are logged
    and skipped so one bad project does not hide the rest.
    """

    ensure_directories()
    projects: List[Dict[str, object]] = []
    for entry in sorted(PUBLIC_DIR.iterdir(), key=lambda item: item.name):
        if not entry.is_dir() or is_internal_name(entry.name):
            continue
        if not (entry / METADATA_FILENAME).is_file():
            continue
        try:
            projects.append(read_project_metadata(entry.name))
        except MetadataParseError as error:
            logger.warning(
                "project_metadata_unreadable project=%s reason=%s",
                entry.name,
                error.reason,
            )
        except ProjectNotFoundError:
            # Sidecar vanished between the check and the read.
            continue
    return projects


def list_project_files(name: str, base_url: str) -> List[Dict[str, object]]:
    """Return ``{name, url, size}`` for each public file of project *name*."""

    if not is_canonical_project_name(name):
        raise ProjectNotFoundError(name)
    project_dir = get_project_dir(name)
    if not project_dir.is_dir():
        raise ProjectNotFoundError(name)

    prefix = f"{base_url.rstrip('/')}/projects/{name}"
    files: List[Dict[str, object]] = []
    for entry in sorted(project_dir.iterdir(), key=lambda item: item.name):
        if is_internal_name(entry.name):
            continue
        try:
            if not entry.is_file():
                continue
            size = entry.stat().st_size
        except OSError:
            continue
        files.append({"name": entry.name, "url": f"{prefix}/{quote(entry.name)}", "size": size})
    return files


def _find_index_file(directory: Path) -> Optional[Path]:
    exact = directory / "index.html"
    if exact.is_file():
        return exact
    for entry in sorted(directory.iterdir(), key=lambda item: item.name):
        if entry.name.lower() == "index.html" and entry.is_file():
            return entry
    return None


def resolve_project_file(name: str, relative_path: str = "") -> Path:
    """Resolve *relative_path* inside project *name* to an existing file.

    The resolved path must stay inside the resolved project directory, and no
    segment may be hidden. Directories resolve to their ``index.html``. Any
    violation raises :class:`ProjectNotFoundError`, escapes raise the
    :class:`PathTraversalError` subclass.
    """

    if not is_canonical_project_name(name):
        raise ProjectNotFoundError(name)
    project_dir = get_project_dir(name)
    if not project_dir.is_dir():
        raise ProjectNotFoundError(name)

    requested = f"{name}/{relative_path}"
    normalized = (relative_path or "").replace("\\", "/").strip("/")
    candidate_parts = PurePosixPath(normalized).parts if normalized else ()
    if any(part in {".", ".."} for part in candidate_parts):
        raise PathTraversalError(requested)
    if any(is_internal_name(part) or "\x00" in part for part in candidate_parts):
        raise ProjectNotFoundError(requested)

    root = project_dir.resolve()
    try:
        resolved = root.joinpath(*candidate_parts).resolve()
    except (OSError, RuntimeError, ValueError) as error:
        raise ProjectNotFoundError(requested) from error
    if resolved != root and root not in resolved.parents:
        raise PathTraversalError(requested)

    if resolved.is_dir():
        index_file = _find_index_file(resolved)
        if index_file is None:
            raise ProjectNotFoundError(requested)
        resolved = index_file.resolve()
        if root not in resolved.parents:
            raise PathTraversalError(requested)

    if not resolved.is_file():
        raise ProjectNotFoundError(requested)
    return resolved


def format_megabytes(num_bytes: int) -> str:
    return f"{num_bytes / BYTES_PER_MB:.2f} MB"


def get_storage_statistics() -> Dict[str, int]:
    """Return project, file and byte counts by walking PUBLIC_DIR."""

    ensure_directories()
    project_count = 0
    file_count = 0
    total_bytes = 0

    for entry in PUBLIC_DIR.iterdir():
        if entry.is_dir() and not is_internal_name(entry.name):
            project_count += 1

    for dirpath, dirnames, filenames in os.walk(PUBLIC_DIR):
        dirnames[:] = [item for item in dirnames if not is_internal_name(item)]
        for filename in filenames:
            if is_internal_name(filename):
                continue
            try:
                total_bytes += os.stat(os.path.join(dirpath, filename)).st_size
            except OSError:
                continue
            file_count += 1

    return {
        "projects": project_count,
        "total_files": file_count,
        "total_bytes": total_bytes,
    }


def cleanup_temp_files(max_age_minutes: Optional[int] = None) -> int:
    """Remove hidden temporary files left behind by interrupted uploads."""

    ensure_directories()
    removed = 0
    age_minutes = TEMP_FILE_MAX_AGE_MINUTES if max_age_minutes is None else max_age_minutes
    cutoff = time.time() - age_minutes * 60

    for temp_file in PUBLIC_DIR.glob(f"*/.*{TEMP_SUFFIX}"):
        try:
            if temp_file.is_file() and temp_file.stat().st_mtime < cutoff:
                temp_file.unlink()
                removed += 1
                logger.info("temp_file_removed path=%s", temp_file)
        except OSError as error:
            logger.warning(
                "temp_cleanup_failed path=%s error=%s",
                temp_file,
                error,
            )

    return removed
