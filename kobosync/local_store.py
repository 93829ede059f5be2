import hashlib
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

from PIL import Image, UnidentifiedImageError
from pydantic import ValidationError

from kobosync.errors import ImageInfoError, InvalidStateError
from kobosync.models import AttachmentState

logger = logging.getLogger(__name__)

STATE_SUFFIX = ".json"


# -----------------------------
# Attachment state store
# -----------------------------

def state_path(attachments_map: Path, asset_uid: str, record_id: int, field: str) -> Path:
    """
    .attachments_map/{assetId}/{recordId}/{field}.json
    """
    return attachments_map / asset_uid / str(record_id) / f"{field}{STATE_SUFFIX}"


def load_state(path: Path) -> Optional[AttachmentState]:
    """
    Load the state saved with the last download of a field. Returns None when
    there is none; raises InvalidStateError when the file exists but does not
    hold a complete, correctly typed record.
    """
    if not path.is_file():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            return AttachmentState.model_validate_json(f.read())
    except (OSError, ValidationError) as e:
        raise InvalidStateError(f"attachment map wasn't ok: {path}: {e}") from e


def save_state(path: Path, state: AttachmentState):
    """
    Write the state record, replacing any previous one in a single rename.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        f.write(state.model_dump_json(by_alias=True))
    os.replace(tmp, path)


# -----------------------------
# File content
# -----------------------------

def hash_file(path: Path) -> str:
    """SHA-256 hex digest of the file bytes (streams 1MB chunks)."""
    hasher = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1024 * 1024), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def is_valid_file_hash(path: Path, expected: str) -> bool:
    return hash_file(path) == expected


def size_label(size: int) -> str:
    """Bytes as megabytes (base 1000, two decimals at most): 4132284 -> '4.13MB'."""
    value = ("%.2f" % (size / (1000 * 1000))).rstrip("0").rstrip(".")
    return f"{value}MB"


def get_img_info(path: Path) -> Dict[str, Any]:
    """
    Hash and dimensions of a saved image.
    """
    try:
        with Image.open(path) as img:
            width, height = img.size
    except (UnidentifiedImageError, OSError) as e:
        raise ImageInfoError(f"loading image fails - on image file: {path} - {e}") from e

    return {
        "hash": hash_file(path),
        "width": width,
        "height": height,
        "dimensions": f"width: {width} pixels, height: {height} pixels",
    }


# -----------------------------
# Freshness
# -----------------------------

def is_up_to_date(image_path: Path, state: Optional[AttachmentState], image_name: str, attachment_id: int) -> bool:
    """
    An existing image needs no download only when its saved state names the
    same file and the same attachment, and the bytes on disk still hash to
    the saved value.
    """
    if state is None or not image_path.is_file():
        return False
    if state.image_name != image_name:
        logger.debug("%s: saved name %s differs", image_name, state.image_name)
        return False
    if state.attachment_id != attachment_id:
        logger.debug("%s: saved attachment %d, current %d", image_name, state.attachment_id, attachment_id)
        return False
    if not is_valid_file_hash(image_path, state.img_info.hash):
        logger.debug("%s: hash differs from saved state", image_name)
        return False
    return True


# -----------------------------
# Local file operations
# -----------------------------

def delete_local_file(path: Path):
    """
    Delete a local file if it exists.
    """
    if path.exists():
        path.unlink()
        logger.debug("Deleted local file: %s", path)


def unique_filename(path: Path) -> Path:
    """
    If 'path' already exists, append (1), (2), etc. until we find a free name.
    """
    if not path.exists():
        return path
    base = path.stem
    ext = path.suffix
    counter = 1
    while True:
        new_name = f"{base}({counter}){ext}"
        new_path = path.with_name(new_name)
        if not new_path.exists():
            return new_path
        counter += 1


def move_local_file(old_path: Path, new_path: Path) -> Path:
    """
    Move a local file from old_path to new_path without overwriting anything
    already there. Returns the path actually used.
    """
    new_path.parent.mkdir(parents=True, exist_ok=True)
    new_path = unique_filename(new_path)
    logger.debug("Moving file from %s to %s", old_path, new_path)
    os.replace(old_path, new_path)
    return new_path


def safe_dirname(name: str) -> str:
    """Asset names are user text; keep them to a single path component."""
    cleaned = name.replace("/", "_").replace("\\", "_").strip()
    return cleaned if cleaned not in ("", ".", "..") else "_"
