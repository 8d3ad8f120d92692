"""
Error taxonomy for Stream Archiver.
Classifies fetch/publish failures into retryable vs terminal categories.
"""

import asyncio
import errno
from enum import Enum
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError


class ErrorClass(Enum):
    """How a failure should be handled."""
    RETRYABLE = "retryable"  # Transient: network, 5xx, rate limiting
    AUTH = "auth"            # Authentication/authorization: terminal, still trips breaker
    FATAL = "fatal"          # Content gone or invalid input: terminal
    STORAGE = "storage"      # Disk or database: terminal, logged as critical


class ArchiverError(Exception):
    """Base exception for the archiver."""
    
    error_class: Optional[ErrorClass] = None


class FetchError(ArchiverError):
    """Download of a recording failed."""


class PublishError(ArchiverError):
    """Republishing a recording failed."""
    
    def __init__(self, message: str, fatal: bool = False):
        super().__init__(message)
        if fatal:
            self.error_class = ErrorClass.FATAL


class AuthError(ArchiverError):
    """Credentials were rejected or the content requires a login."""
    
    error_class = ErrorClass.AUTH


class StorageError(ArchiverError):
    """Local disk or database failure."""
    
    error_class = ErrorClass.STORAGE


# Checked in order; first match wins.
_SERVER_ERROR_PATTERNS = (
    "500", "502", "503", "504",
    "internal server error", "bad gateway",
    "service unavailable", "gateway timeout",
)

_AUTH_PATTERNS = (
    "subscriber-only", "only available to subscribers",
    "must be logged into", "login required", "authentication required",
    "401", "403", "access denied", "unauthorized",
)

_FATAL_PATTERNS = (
    "404", "not found", "deleted", "no longer available", "does not exist",
    "no video formats found", "unable to extract",
    "invalid url", "malformed url", "invalid video id", "unsupported url",
    "drm protected", "protected content", "encrypted content",
    "invalid or empty video title", "invalidtitle",
)

_STORAGE_PATTERNS = (
    "no space left on device", "disk full", "read-only file system",
    "disk quota exceeded",
)

_STORAGE_ERRNOS = {errno.ENOSPC, errno.EROFS, errno.EDQUOT, errno.EIO}


def classify_error(exc: BaseException) -> ErrorClass:
    """
    Classify an exception raised by a fetch or publish operation.
    
    Explicit error classes on ArchiverError subclasses take precedence; then
    storage failures are recognized by type, then the message is matched
    against known yt-dlp/HTTP patterns. Unknown errors are retryable.
    
    Args:
        exc: The exception to classify.
        
    Returns:
        ErrorClass for the exception.
    """
    explicit = getattr(exc, 'error_class', None)
    if isinstance(explicit, ErrorClass):
        return explicit
    
    if isinstance(exc, SQLAlchemyError):
        return ErrorClass.STORAGE
    if isinstance(exc, OSError) and exc.errno in _STORAGE_ERRNOS:
        return ErrorClass.STORAGE
    if isinstance(exc, PermissionError):
        return ErrorClass.STORAGE
    if isinstance(exc, asyncio.TimeoutError):
        return ErrorClass.RETRYABLE
    
    lower = str(exc).lower()
    
    if any(p in lower for p in _STORAGE_PATTERNS):
        return ErrorClass.STORAGE
    # Server errors before auth so "503" is not shadowed by broader patterns
    if any(p in lower for p in _SERVER_ERROR_PATTERNS):
        return ErrorClass.RETRYABLE
    if any(p in lower for p in _AUTH_PATTERNS):
        return ErrorClass.AUTH
    # "service unavailable" was handled above as a server error
    if "video" in lower and ("unavailable" in lower or "not available" in lower):
        return ErrorClass.FATAL
    if any(p in lower for p in _FATAL_PATTERNS):
        return ErrorClass.FATAL
    
    return ErrorClass.RETRYABLE


def describe_error(exc: BaseException, limit: int = 1000) -> str:
    """Short text for the recording's last-error column."""
    text = str(exc).strip() or exc.__class__.__name__
    if len(text) > limit:
        text = text[:limit - 3] + "..."
    return text
