"""
Permanent upload storage: validation of incoming files, collision-resistant names, writes with
size verification, and deletion/lookup restricted to the upload categories.

Layout under the upload root: avatars/, thumbnails/, videos/ (public paths /uploads/<category>/<name>)
and temp/ for in-flight chunks.
"""
import logging
import math
import os
import re
import secrets
import time
from pathlib import Path

from fastapi import UploadFile, status

from coursecompass.config import get_settings, upload_root
from coursecompass.core import errors
from coursecompass.core.errors import UploadError
from coursecompass.schemas.upload import StoredFile

logger = logging.getLogger(__name__)

AVATARS = "avatars"
THUMBNAILS = "thumbnails"
VIDEOS = "videos"
TEMP = "temp"
PUBLIC_CATEGORIES = (AVATARS, THUMBNAILS, VIDEOS)
ALLOWED_DIRS = PUBLIC_CATEGORIES + (TEMP,)

PUBLIC_PREFIX = "/uploads"
MAX_FILE_NAME_LENGTH = 100
CHUNK_SIZE = 1024 * 1024  # 1 MB

MIME_BY_EXTENSION = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
    ".gif": "image/gif",
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".mov": "video/quicktime",
    ".avi": "video/x-msvideo",
}

# Executable / macro-capable containers that never belong in an upload.
DANGEROUS_SIGNATURES = (
    bytes.fromhex("4d5a"),  # Windows PE
    bytes.fromhex("7f454c46"),  # ELF
    bytes.fromhex("d0cf11e0a1b11ae1"),  # OLE2 (legacy Office)
)


def file_types() -> dict[str, dict]:
    """Per-kind rules. Sizes come from settings so they can be tuned per deployment."""
    settings = get_settings()
    return {
        "image": {
            "extensions": (".jpg", ".jpeg", ".png", ".webp", ".gif"),
            "mime_types": ("image/jpeg", "image/png", "image/webp", "image/gif"),
            "max_size": settings.image_max_size,
        },
        "video": {
            "extensions": (".mp4", ".webm", ".mov", ".avi"),
            "mime_types": ("video/mp4", "video/webm", "video/quicktime", "video/x-msvideo"),
            "max_size": settings.video_max_size,
        },
        "avatar": {
            "extensions": (".jpg", ".jpeg", ".png", ".webp"),
            "mime_types": ("image/jpeg", "image/png", "image/webp"),
            "max_size": settings.avatar_max_size,
        },
    }


def format_bytes(size: int) -> str:
    units = ["B", "KB", "MB", "GB"]
    if size <= 0:
        return "0 B"
    i = min(int(math.floor(math.log(size, 1024))), len(units) - 1)
    return f"{size / (1024 ** i):.1f} {units[i]}"


# ---------- Validation ----------


def validate_file_type(file_name: str, mime_type: str, rule: dict) -> None:
    ext = Path(file_name).suffix.lower()
    if ext not in rule["extensions"]:
        raise UploadError(
            errors.INVALID_FILE_TYPE,
            f"Invalid file extension. Allowed: {', '.join(rule['extensions'])}",
        )
    ct = (mime_type or "").split(";")[0].strip().lower()
    if ct not in rule["mime_types"]:
        raise UploadError(
            errors.INVALID_FILE_TYPE,
            f"Invalid file type. Allowed: {', '.join(rule['mime_types'])}",
        )


def validate_file_size(size: int, max_size: int) -> None:
    if size > max_size:
        raise UploadError(
            errors.FILE_TOO_LARGE,
            f"File too large. Maximum size: {format_bytes(max_size)}",
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
        )


def sanitize_file_name(file_name: str) -> str:
    """Strip directories and unsafe characters. Raises INVALID_FILE_NAME if nothing usable is left."""
    base = re.split(r"[\\/]", file_name or "")[-1]
    if len(base) > MAX_FILE_NAME_LENGTH:
        raise UploadError(
            errors.INVALID_FILE_NAME,
            f"File name too long. Maximum: {MAX_FILE_NAME_LENGTH} characters",
        )
    sanitized = re.sub(r"[^a-zA-Z0-9._-]", "_", base)
    sanitized = re.sub(r"\.+", ".", sanitized)
    sanitized = re.sub(r"_+", "_", sanitized)
    sanitized = sanitized.strip("._-")
    if not sanitized:
        raise UploadError(errors.INVALID_FILE_NAME, "Invalid file name after sanitization")
    return sanitized


def scan_file(data: bytes) -> None:
    """Reject payloads starting with an executable signature."""
    head = data[:10]
    for signature in DANGEROUS_SIGNATURES:
        if head.startswith(signature):
            raise UploadError(errors.MALICIOUS_FILE_DETECTED, "Potentially dangerous file type detected")


def validate_upload_file(data: bytes, file_name: str, mime_type: str, rule: dict) -> str:
    """Type, size, name and signature checks in one pass. Returns the sanitized file name."""
    validate_file_type(file_name, mime_type, rule)
    validate_file_size(len(data), rule["max_size"])
    sanitized = sanitize_file_name(file_name)
    scan_file(data)
    return sanitized


def read_upload(file: UploadFile) -> bytes:
    """Read a multipart file part fully (sync; routes run in the threadpool)."""
    file.file.seek(0)
    return file.file.read()


def count_file_parts(files: list[UploadFile | None]) -> None:
    present = [f for f in files if f is not None]
    limit = get_settings().max_files_per_request
    if len(present) > limit:
        raise UploadError(errors.TOO_MANY_FILES, f"Too many files. Maximum: {limit}")


# ---------- Names & paths ----------


def generate_secure_file_name(original_name: str, prefix: str | None = None) -> str:
    """`{prefix}_{epoch_ms}_{16 hex}{ext}`; the prefix lets file serving map a file back to its owner."""
    ext = Path(original_name).suffix.lower()
    if not re.fullmatch(r"\.[a-z0-9]{1,8}", ext or ""):
        ext = ""
    stamp = int(time.time() * 1000)
    rand = secrets.token_hex(8)
    lead = f"{prefix}_" if prefix else ""
    return f"{lead}{stamp}_{rand}{ext}"


def upload_dir(category: str) -> Path:
    if category not in ALLOWED_DIRS:
        raise UploadError(errors.PATH_TRAVERSAL_ATTEMPT, f"Invalid upload directory: {category}")
    return upload_root() / category


def ensure_upload_dir(category: str) -> Path:
    path = upload_dir(category)
    try:
        path.mkdir(parents=True, exist_ok=True, mode=0o755)
    except OSError as e:
        logger.error("Failed to create upload directory %s: %s", path, e)
        raise errors.storage_error(f"Failed to create upload directory {category}") from e
    if not os.access(path, os.R_OK | os.W_OK):
        raise errors.storage_error(f"Upload directory {category} is not writable")
    return path


def public_path(category: str, file_name: str) -> str:
    return f"{PUBLIC_PREFIX}/{category}/{file_name}"


def resolve_public_path(url: str | None, category: str | None = None) -> Path | None:
    """
    Map a public path (/uploads/<category>/<name>) to a file under the upload root.
    None for external URLs, other categories, or anything that escapes the category directory.
    """
    if not url or not url.startswith(PUBLIC_PREFIX + "/"):
        return None
    parts = url[len(PUBLIC_PREFIX) + 1:].split("/")
    if len(parts) != 2 or parts[0] not in PUBLIC_CATEGORIES:
        return None
    if category is not None and parts[0] != category:
        return None
    return resolve_in_category(parts[0], parts[1])


def resolve_in_category(category: str, file_name: str) -> Path | None:
    base = upload_dir(category).resolve()
    try:
        full = (base / file_name).resolve()
        full.relative_to(base)  # raises ValueError if path escaped
    except (ValueError, OSError):
        return None
    return full


def mime_type_for(file_name: str) -> str:
    return MIME_BY_EXTENSION.get(Path(file_name).suffix.lower(), "application/octet-stream")


# ---------- Write / delete ----------


def write_verified(path: Path, data: bytes, mode: int = 0o644) -> int:
    """Write `data` to `path` and check the size on disk. Removes the file and raises on mismatch."""
    with path.open("wb") as f:
        f.write(data)
    os.chmod(path, mode)
    size = path.stat().st_size
    if size != len(data):
        path.unlink(missing_ok=True)
        raise UploadError(
            errors.CORRUPTION_DETECTED,
            f"Size mismatch writing {path.name}: expected {len(data)}, got {size}",
            status.HTTP_500_INTERNAL_SERVER_ERROR,
        )
    return size


def save_file(data: bytes, file_name: str, category: str) -> StoredFile:
    """Write a new file under `category`. Never overwrites; verifies the written size."""
    directory = ensure_upload_dir(category)
    path = directory / file_name
    if path.exists():
        raise UploadError(errors.FILE_ALREADY_EXISTS, "File already exists", status.HTTP_409_CONFLICT)
    try:
        size = write_verified(path, data)
    except OSError as e:
        logger.error("File save error for %s: %s", path, e, exc_info=True)
        path.unlink(missing_ok=True)
        raise errors.storage_error("Failed to save file") from e
    return StoredFile(url=public_path(category, file_name), file_name=file_name, size=size)


def delete_file(url: str | None, category: str | None = None) -> bool:
    """Delete a stored file by public path. Only files under the upload categories; False if nothing removed."""
    path = resolve_public_path(url, category)
    if path is None:
        if url:
            logger.warning("Refusing to delete file outside upload directories: %s", url)
        return False
    try:
        if path.is_file():
            path.unlink()
            return True
    except OSError as e:
        logger.warning("File deletion error for %s: %s", path, e)
    return False


def get_file_info(category: str, file_name: str) -> dict | None:
    """Size, MIME type and mtime of a stored file, or None if it does not exist."""
    if category not in PUBLIC_CATEGORIES:
        return None
    path = resolve_in_category(category, file_name)
    if path is None or not path.is_file():
        return None
    st = path.stat()
    return {
        "path": path,
        "size": st.st_size,
        "mime_type": mime_type_for(file_name),
        "mtime": st.st_mtime,
    }
