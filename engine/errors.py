"""
Error taxonomy for the transcoding engine plus helpers for sanitizing
messages before they are stored on a job row.

Raw backend diagnostics (stderr, full paths) are logged; only short,
user-safe messages are persisted and returned to callers.
"""

import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)


class TranscodeError(Exception):
    """Base class for engine errors.

    ``user_message`` is what ends up on the job row; ``str(exc)`` may carry
    internal detail and is only logged.
    """

    user_message = "Media processing failed."

    def __init__(self, message: str = "", user_message: Optional[str] = None):
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class ConfigurationError(TranscodeError):
    """No usable backend exists for the requested operation."""

    user_message = "No media backend is available on this server."


class InputNotFoundError(TranscodeError):
    """The source media file does not exist."""

    user_message = "Source file not found."


class BackendUnavailableError(TranscodeError):
    """The backend executable could not be launched (missing or not executable).

    Raised at spawn time; the selector answers it with one fallback attempt.
    """

    user_message = "Media backend is unavailable."


class BackendExecutionError(TranscodeError):
    """Non-zero exit, timeout, or unparseable output from a backend."""

    user_message = "Media processing failed."

    def __init__(
        self,
        message: str = "",
        returncode: Optional[int] = None,
        stderr: str = "",
        user_message: Optional[str] = None,
    ):
        super().__init__(message, user_message=user_message)
        self.returncode = returncode
        self.stderr = stderr


class OutputVerificationError(TranscodeError):
    """Backend reported success but the expected artifact is missing or invalid."""

    user_message = "Processing finished but produced no usable output."


class MissingDurationError(TranscodeError):
    """Operation needs a known, non-zero media duration."""

    user_message = "Could not determine media duration."


class JobNotFoundError(TranscodeError):
    user_message = "Job not found."


class InvalidTransitionError(TranscodeError):
    """Requested state change is not allowed from the job's current status."""

    user_message = "Job can no longer be changed."


# Patterns that indicate internal details
INTERNAL_PATTERNS = [
    r"/home/\w+/",
    r"/mnt/\w+/",
    r"/tmp/\w+",
    r"/var/\w+/",
    r"line \d+",
    r'File "[^"]+\.py"',
    r"Permission denied",
    r"No such file or directory",
    r"sqlite3?\.",
]

# Generic user-friendly messages for common error types
ERROR_MESSAGES = {
    "timeout": "Media processing timed out.",
    "probe": "Could not read media file. The file may be corrupted or in an unsupported format.",
    "duration": "Could not determine media duration. The file may be corrupted.",
    "source_not_found": "Source file not found.",
    "transcode_failed": "Media transcoding failed.",
    "database": "A database error occurred. Please try again.",
    "permission": "A file access error occurred.",
    "general": "An error occurred while processing media.",
}


def truncate_string(value: Optional[str], max_length: int) -> Optional[str]:
    """Truncate ``value`` to ``max_length`` characters, ending with '...' when cut."""
    if value is None:
        return None
    if len(value) <= max_length:
        return value
    if max_length < 4:
        return value[:max_length]
    return value[: max_length - 3] + "..."


def truncate_error(error: Optional[str], max_length: Optional[int] = None) -> Optional[str]:
    """Truncate an error message to the configured detail length."""
    if max_length is None:
        from config import ERROR_DETAIL_MAX_LENGTH

        max_length = ERROR_DETAIL_MAX_LENGTH
    return truncate_string(error, max_length)


def sanitize_error_message(
    error: Optional[str],
    log_original: bool = True,
    context: str = "",
) -> Optional[str]:
    """
    Sanitize an error message for storage on a job row.

    Args:
        error: The original error message (may contain internal details)
        log_original: Whether to log the original message before sanitizing
        context: Additional context for logging (e.g., "job_id=123")

    Returns:
        A short user-facing message, or None if input was None
    """
    if error is None:
        return None

    if log_original and error:
        log_msg = "Original error"
        if context:
            log_msg += f" ({context})"
        log_msg += f": {error}"
        logger.warning(log_msg)

    error_lower = error.lower()

    if "timeout" in error_lower or "timed out" in error_lower:
        return ERROR_MESSAGES["timeout"]

    if "ffmpeg" in error_lower or "transcode" in error_lower:
        return ERROR_MESSAGES["transcode_failed"]

    if "ffprobe" in error_lower or "probe" in error_lower:
        return ERROR_MESSAGES["probe"]

    if "duration" in error_lower:
        return ERROR_MESSAGES["duration"]

    if "not found" in error_lower:
        return ERROR_MESSAGES["source_not_found"]

    if "sqlite" in error_lower or "database" in error_lower:
        return ERROR_MESSAGES["database"]

    if "permission" in error_lower:
        return ERROR_MESSAGES["permission"]

    for pattern in INTERNAL_PATTERNS:
        if re.search(pattern, error, re.IGNORECASE):
            return ERROR_MESSAGES["general"]

    if len(error) < 100 and "/" not in error and "\\" not in error:
        return error

    return ERROR_MESSAGES["general"]


def user_message_for(exc: BaseException, context: str = "") -> str:
    """Message to store on a job row for ``exc``.

    Engine errors carry a prepared ``user_message``; anything else goes
    through :func:`sanitize_error_message`.
    """
    if isinstance(exc, TranscodeError):
        logger.warning(f"{type(exc).__name__} ({context}): {truncate_error(str(exc))}")
        return exc.user_message
    return sanitize_error_message(str(exc) or type(exc).__name__, context=context) or ERROR_MESSAGES["general"]
