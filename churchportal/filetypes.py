"""
Upload allow-list and type classification.
An upload is accepted only when its extension is listed and its MIME type is
one of the types registered for that same extension.
"""
import os

from churchportal.models import FileType


ALLOWED_TYPES = {
    # images
    ".jpg": {"image/jpeg", "image/pjpeg"},
    ".jpeg": {"image/jpeg", "image/pjpeg"},
    ".png": {"image/png"},
    ".gif": {"image/gif"},
    # documents
    ".pdf": {"application/pdf"},
    ".doc": {"application/msword"},
    ".docx": {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"},
    ".xls": {"application/vnd.ms-excel"},
    ".xlsx": {"application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"},
    ".ppt": {"application/vnd.ms-powerpoint"},
    ".pptx": {"application/vnd.openxmlformats-officedocument.presentationml.presentation"},
    # audio
    ".mp3": {"audio/mpeg", "audio/mp3"},
    ".wav": {"audio/wav", "audio/x-wav", "audio/wave"},
    ".ogg": {"audio/ogg", "application/ogg"},
    # video
    ".mp4": {"video/mp4"},
    ".mpeg": {"video/mpeg"},
    ".mpg": {"video/mpeg"},
    ".mov": {"video/quicktime"},
    ".avi": {"video/x-msvideo", "video/avi"},
    ".wmv": {"video/x-ms-wmv"},
    ".flv": {"video/x-flv"},
    ".webm": {"video/webm"},
    ".mkv": {"video/x-matroska"},
    # archives
    ".zip": {"application/zip", "application/x-zip-compressed"},
    ".rar": {"application/vnd.rar", "application/x-rar-compressed"},
}

TYPE_BY_EXTENSION = {
    ".pdf": FileType.PDF,
    ".doc": FileType.DOCX,
    ".docx": FileType.DOCX,
    ".xls": FileType.XLSX,
    ".xlsx": FileType.XLSX,
    ".ppt": FileType.PPTX,
    ".pptx": FileType.PPTX,
    ".jpg": FileType.IMAGE,
    ".jpeg": FileType.IMAGE,
    ".png": FileType.IMAGE,
    ".gif": FileType.IMAGE,
    ".mp3": FileType.AUDIO,
    ".wav": FileType.AUDIO,
    ".ogg": FileType.AUDIO,
    ".mp4": FileType.VIDEO,
    ".mpeg": FileType.VIDEO,
    ".mpg": FileType.VIDEO,
    ".mov": FileType.VIDEO,
    ".avi": FileType.VIDEO,
    ".wmv": FileType.VIDEO,
    ".flv": FileType.VIDEO,
    ".webm": FileType.VIDEO,
    ".mkv": FileType.VIDEO,
    ".zip": FileType.ZIP,
    ".rar": FileType.RAR,
}


def get_extension(filename: str) -> str:
    """Lower-cased extension including the dot, or an empty string."""
    return os.path.splitext(filename or "")[1].lower()


def normalize_mime(content_type: str) -> str:
    """Strip parameters such as ``; charset=`` and lower-case the MIME type."""
    return (content_type or "").split(";", 1)[0].strip().lower()


def is_allowed(filename: str, content_type: str) -> bool:
    mimes = ALLOWED_TYPES.get(get_extension(filename))
    if not mimes:
        return False
    return normalize_mime(content_type) in mimes


def classify(path: str) -> FileType:
    """Derive the type classification from a stored reference's extension."""
    return TYPE_BY_EXTENSION.get(get_extension(path), FileType.OTHER)
