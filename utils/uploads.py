import logging
import os
import re
import time
import uuid

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {".pdf", ".jpg", ".jpeg", ".png"}
ALLOWED_MIME_TYPES = {"application/pdf", "image/jpeg", "image/jpg", "image/png"}

# Leading bytes expected for each declared MIME type
SIGNATURES = {
    "application/pdf": b"%PDF-",
    "image/png": b"\x89PNG",
    "image/jpeg": b"\xff\xd8\xff",
    "image/jpg": b"\xff\xd8\xff",
}

DOWNLOAD_NAME_MAX = 120
_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def file_extension(filename) -> str:
    return os.path.splitext(filename or "")[1].lower()


def is_allowed_upload(file_storage) -> bool:
    """Extension and declared MIME type must both be on the allow-lists."""
    ext = file_extension(file_storage.filename)
    mime = (file_storage.mimetype or "").lower()
    return ext in ALLOWED_EXTENSIONS and mime in ALLOWED_MIME_TYPES


def save_upload(file_storage, root: str) -> dict:
    os.makedirs(root, exist_ok=True)
    ext = file_extension(file_storage.filename)
    stored_name = f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:16]}{ext}"
    full_path = os.path.join(root, stored_name)
    file_storage.save(full_path)
    size = os.path.getsize(full_path)
    logger.info(f"Stored upload {stored_name} ({size} bytes)")
    return {
        "stored_name": stored_name,
        "full_path": full_path,
        "original_name": file_storage.filename,
        "mime": (file_storage.mimetype or "").lower(),
        "size": size,
    }


def matches_signature(full_path: str, mime: str) -> bool:
    signature = SIGNATURES.get((mime or "").lower())
    if signature is None:
        return False
    with open(full_path, "rb") as fh:
        head = fh.read(len(signature))
    return head == signature


def remove_file(full_path):
    if not full_path:
        return
    try:
        os.remove(full_path)
        logger.info(f"Removed stored file {os.path.basename(full_path)}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error(f"Failed to remove stored file {full_path}: {str(e)}")


def resolve_attachment_path(root: str, stored_name):
    """Absolute path of a stored attachment, or None if it would leave ``root``."""
    if not stored_name:
        return None
    base = os.path.realpath(root)
    candidate = os.path.realpath(os.path.join(base, stored_name))
    if os.path.commonpath([base, candidate]) != base or candidate == base:
        return None
    return candidate


def remove_attachments(root: str, stored_names):
    """Delete stored attachments by name; names that resolve outside ``root`` are skipped."""
    for stored_name in stored_names:
        path = resolve_attachment_path(root, stored_name)
        if path:
            remove_file(path)


def safe_download_name(name, fallback="attachment") -> str:
    cleaned = _UNSAFE_NAME_CHARS.sub("_", name or "")[:DOWNLOAD_NAME_MAX]
    return cleaned or fallback
