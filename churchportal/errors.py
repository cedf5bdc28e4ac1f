"""
Error taxonomy for the church portal API.
Every error carries a client-facing message, a stable code and an HTTP status.
"""
from typing import Optional


class PortalError(Exception):
    """Base class for errors surfaced to API clients as ``{message, code}``."""

    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self) -> dict:
        return {"message": self.message, "code": self.code}


class ValidationError(PortalError):
    status_code = 400
    default_code = "VALIDATION_ERROR"


class AuthenticationError(PortalError):
    status_code = 401
    default_code = "AUTHENTICATION_FAILED"


class AuthorizationError(PortalError):
    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(PortalError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(PortalError):
    status_code = 409
    default_code = "CONFLICT"


class UnsupportedMediaError(PortalError):
    """Upload rejected before anything is kept on the content store."""

    status_code = 400
    default_code = "UPLOAD_REJECTED"


class PayloadTooLarge(UnsupportedMediaError):
    default_code = "LIMIT_FILE_SIZE"

    def __init__(self, max_bytes: int):
        max_mb = max_bytes // (1024 * 1024)
        super().__init__(f"The file is too large (maximum {max_mb}MB).")
        self.max_bytes = max_bytes


class UnsupportedType(UnsupportedMediaError):
    default_code = "UNSUPPORTED_TYPE"

    def __init__(self, content_type: str, extension: str):
        super().__init__(
            f"File type not allowed (mime '{content_type or 'unknown'}', "
            f"extension '{extension or 'none'}'). Allowed: images (jpg, jpeg, png, gif), "
            "documents (pdf, doc, docx, xls, xlsx, ppt, pptx), audio (mp3, wav, ogg), "
            "video (mp4, mpeg, mpg, mov, avi, wmv, flv, webm, mkv) and archives (zip, rar)."
        )
        self.content_type = content_type
        self.extension = extension


class StorageIOError(PortalError):
    status_code = 500
    default_code = "STORAGE_IO_ERROR"


class DatabaseError(PortalError):
    status_code = 500
    default_code = "DATABASE_ERROR"
