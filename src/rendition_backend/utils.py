"""
Utility functions for filesystem paths, object keys and mime classification.
"""

from __future__ import annotations

import re
from pathlib import Path

from .models import AssetType

# Pattern to match characters that are not safe in object keys or file names
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

PDF_MIME = "application/pdf"

# Substrings identifying office document families, legacy and open-document included
WORD_PROCESSING_MARKERS = ("wordprocessingml", "msword", "opendocument.text")
SPREADSHEET_MARKERS = ("spreadsheetml", "ms-excel", "opendocument.spreadsheet")
PRESENTATION_MARKERS = ("presentationml", "ms-powerpoint", "opendocument.presentation")

ALLOWED_MIME_TYPES = frozenset(
    {
        "image/jpeg",
        "image/png",
        "image/gif",
        "image/webp",
        "image/tiff",
        "image/bmp",
        PDF_MIME,
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "application/vnd.openxmlformats-officedocument.presentationml.presentation",
        "application/msword",
        "application/vnd.ms-excel",
        "application/vnd.ms-powerpoint",
        "application/vnd.oasis.opendocument.text",
        "application/vnd.oasis.opendocument.spreadsheet",
        "application/vnd.oasis.opendocument.presentation",
        "video/mp4",
        "video/webm",
        "video/ogg",
        "audio/mpeg",
        "audio/wav",
        "audio/ogg",
    }
)

# Media families are accepted wholesale
ALLOWED_MIME_PREFIXES = ("image/", "video/", "audio/")

# Executable and script extensions are refused whatever mime the client claims
BLOCKED_EXTENSIONS = frozenset(
    {".exe", ".bat", ".cmd", ".com", ".scr", ".vbs", ".js", ".jar", ".app", ".dmg", ".pkg", ".deb", ".rpm", ".sh"}
)


def sanitize_filename(name: str, fallback: str = "file") -> str:
    """
    Generate an object-key-safe file name from user input.

    Example:
        >>> sanitize_filename("Quarterly Report (final).pdf")
        "Quarterly-Report-final-.pdf"
        >>> sanitize_filename("@#$")
        "file"
    """
    # Drop any directory components the client may have sent
    base = name.replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = SANITIZE_PATTERN.sub("-", base.strip())
    cleaned = cleaned.strip("-_.")
    return cleaned or fallback


def ensure_directory(path: Path) -> Path:
    """
    Create a directory if it doesn't exist, including parent directories.

    Returns:
        The same path object for chaining
    """
    path.mkdir(parents=True, exist_ok=True)
    return path


def normalize_mime(mime: str) -> str:
    """Lowercase a mime type and drop parameters such as ``; charset=``."""
    return mime.split(";", 1)[0].strip().lower()


def is_office_mime(mime: str) -> bool:
    mime = normalize_mime(mime)
    markers = WORD_PROCESSING_MARKERS + SPREADSHEET_MARKERS + PRESENTATION_MARKERS
    return any(marker in mime for marker in markers)


def asset_type_for_mime(mime: str) -> AssetType:
    mime = normalize_mime(mime)
    if mime.startswith("image/"):
        return AssetType.IMAGE
    if mime.startswith("video/"):
        return AssetType.VIDEO
    if mime.startswith("audio/"):
        return AssetType.AUDIO
    if mime == PDF_MIME:
        return AssetType.PDF
    if any(marker in mime for marker in WORD_PROCESSING_MARKERS):
        return AssetType.DOC
    if any(marker in mime for marker in SPREADSHEET_MARKERS):
        return AssetType.XLS
    if any(marker in mime for marker in PRESENTATION_MARKERS):
        return AssetType.PPT
    return AssetType.OTHER


def is_allowed_upload(mime: str, file_name: str) -> bool:
    """
    Whether an upload of this type may be accepted.

    Example:
        >>> is_allowed_upload("image/x-canon-cr2", "IMG_0001.CR2")
        True
        >>> is_allowed_upload("image/png", "payload.png.exe")
        False
    """
    extension = Path(file_name.replace("\\", "/").rsplit("/", 1)[-1]).suffix.lower()
    if extension in BLOCKED_EXTENSIONS:
        return False
    mime = normalize_mime(mime)
    return mime in ALLOWED_MIME_TYPES or mime.startswith(ALLOWED_MIME_PREFIXES)
