"""
ZIP Package Helpers
===================

Shared reading/writing for the ZIP-based containers (CHARX and Voxta), plus
the extension/MIME tables both use to describe bundled assets.
"""

import logging
import posixpath
import re
import zipfile
from dataclasses import dataclass
from io import BytesIO
from typing import Dict, Iterable, Optional, Tuple

from .errors import InvalidCardStructure, UnrecognizedFormat

logger = logging.getLogger(__name__)

ZIP_SIGNATURES = (b"PK\x03\x04", b"PK\x05\x06")

MIME_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
    "avif": "image/avif",
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "ogg": "audio/ogg",
    "flac": "audio/flac",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "json": "application/json",
    "risum": "application/octet-stream",
}


def is_zip(data: bytes) -> bool:
    """Check for a local-file or empty-archive signature."""
    return data[:4] in ZIP_SIGNATURES


def mime_for_ext(ext: str) -> str:
    """MIME type for a file extension, with or without the dot."""
    return MIME_TYPES.get(ext.lower().lstrip("."), "application/octet-stream")


def category_for_mime(mimetype: str) -> str:
    """CHARX asset folder for a MIME type."""
    if mimetype.startswith("image/"):
        return "images"
    if mimetype.startswith("audio/"):
        return "audio"
    if mimetype.startswith("video/"):
        return "video"
    return "other"


def split_filename(path: str) -> Tuple[str, str]:
    """'a/b/Happy_Idle_01.webp' -> ('Happy_Idle_01', 'webp')"""
    filename = posixpath.basename(path)
    stem, dot, ext = filename.rpartition(".")
    if not dot:
        return filename, "bin"
    return stem, ext.lower()


def sanitize_asset_name(name: str, ext: str) -> str:
    """Filesystem-safe asset stem: extension stripped, punctuation collapsed to '-'."""
    safe = name
    if ext and safe.lower().endswith(f".{ext.lower()}"):
        safe = safe[:-(len(ext) + 1)]
    safe = re.sub(r"[._]", "-", safe)
    safe = re.sub(r"[^a-zA-Z0-9-]", "-", safe)
    safe = re.sub(r"-+", "-", safe).strip("-")
    return safe or "asset"


@dataclass
class ZipLimits:
    """Safety limits applied while reading untrusted archives."""
    max_entry_size: int = 50 * 1024 * 1024
    max_total_size: int = 200 * 1024 * 1024
    max_entries: int = 2000


def _is_unsafe_path(name: str) -> bool:
    normalized = name.replace("\\", "/")
    if normalized.startswith("/") or re.match(r"^[A-Za-z]:", normalized):
        return True
    return ".." in normalized.split("/")


def read_zip(data: bytes, limits: Optional[ZipLimits] = None) -> Dict[str, bytes]:
    """
    Read every file entry of an archive into memory.

    Args:
        data: ZIP bytes
        limits: Size/count limits (defaults apply when omitted)

    Returns:
        Mapping of entry path -> bytes, in archive order. Directories are skipped.

    Raises:
        UnrecognizedFormat: If the bytes are not a readable ZIP archive
        InvalidCardStructure: If an entry escapes the archive root or a limit is exceeded
    """
    limits = limits or ZipLimits()
    try:
        archive = zipfile.ZipFile(BytesIO(data))
    except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
        raise UnrecognizedFormat(f"Not a readable ZIP archive: {e}") from e

    entries: Dict[str, bytes] = {}
    with archive:
        infos = [info for info in archive.infolist() if not info.is_dir()]
        if len(infos) > limits.max_entries:
            raise InvalidCardStructure(f"Archive has {len(infos)} entries (limit {limits.max_entries})")

        total = 0
        for info in infos:
            if _is_unsafe_path(info.filename):
                raise InvalidCardStructure(f"Unsafe path in archive: {info.filename}")
            if info.file_size > limits.max_entry_size:
                raise InvalidCardStructure(f"Archive entry {info.filename} exceeds maximum size")
            total += info.file_size
            if total > limits.max_total_size:
                raise InvalidCardStructure("Archive exceeds maximum total uncompressed size")
            try:
                entries[info.filename.replace("\\", "/")] = archive.read(info)
            except (zipfile.BadZipFile, OSError) as e:
                raise UnrecognizedFormat(f"Corrupt archive entry {info.filename}: {e}") from e

    logger.debug(f"Read {len(entries)} entries ({total} bytes) from archive")
    return entries


def write_zip(entries: Iterable[Tuple[str, bytes]]) -> bytes:
    """Build a deflate-compressed archive. Later duplicates of a path are skipped."""
    output = BytesIO()
    seen = set()
    with zipfile.ZipFile(output, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for path, payload in entries:
            if path in seen:
                logger.warning(f"Skipping duplicate archive path: {path}")
                continue
            seen.add(path)
            archive.writestr(path, payload)
    return output.getvalue()
