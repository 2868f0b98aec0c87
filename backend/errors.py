# errors.py — MBEE error hierarchy and HTTP status mapping
import logging
from typing import Optional

logger = logging.getLogger("mbee.errors")

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


class MBEEError(Exception):
    """Base class for every error raised by the MBEE API.

    If a log level is given the message is logged when the error is created,
    so call sites do not need a separate logger call.
    """

    status_code = 500

    def __init__(self, message: str, level: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if level:
            self.log(level)

    def log(self, level: str) -> None:
        numeric = _LOG_LEVELS.get(level)
        if numeric is not None:
            logger.log(numeric, self.message)

    def __str__(self) -> str:
        return self.message


# 400
class DataFormatError(MBEEError):
    status_code = 400


class ValidationError(DataFormatError):
    """A single field failed validation."""

    def __init__(self, field: str, message: str, level: Optional[str] = "warn"):
        self.field = field
        super().__init__(message, level)


# 401
class AuthorizationError(MBEEError):
    status_code = 401


# 403
class PermissionDeniedError(MBEEError):
    status_code = 403


class OperationError(MBEEError):
    status_code = 403


# 404
class NotFoundError(MBEEError):
    status_code = 404


# 500
class ServerError(MBEEError):
    status_code = 500


class DatabaseError(MBEEError):
    status_code = 500


def get_status_code(error: Exception) -> int:
    """Return the HTTP status code for an error; anything unknown is a 500."""
    if not isinstance(error, Exception):
        raise ServerError("Invalid Error Format")
    return error.status_code if isinstance(error, MBEEError) else 500


def capture_error(error: Exception) -> MBEEError:
    """Make sure an error is an MBEE error, wrapping it in a ServerError if not."""
    if isinstance(error, MBEEError):
        return error
    wrapped = ServerError(str(error), "warn")
    wrapped.__cause__ = error
    return wrapped
