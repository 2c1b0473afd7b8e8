"""
Error Handling - Exception taxonomy and error policies.

Every failure the store surfaces is a FeatureStoreError subclass carrying an
ErrorCode, so front ends can map them onto protocol responses. Filesystem
errors met while walking directories go through ERROR_POLICIES instead of
aborting the walk.
"""

import logging
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Any, Dict, List, Optional


logger = logging.getLogger(__name__)


class ErrorCode(Enum):
    """Machine-readable error codes."""
    NOT_FOUND = "NOT_FOUND"
    TOO_LARGE = "TOO_LARGE"
    EXTRACTION_FAILED = "EXTRACTION_FAILED"
    INVALID_INPUT = "INVALID_INPUT"
    STORAGE_ERROR = "STORAGE_ERROR"


class FeatureStoreError(Exception):
    """Base exception for feature store errors."""

    code = ErrorCode.EXTRACTION_FAILED

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": type(self).__name__,
            "code": self.code.value,
            "message": self.message,
            "provider": self.provider,
            "context": self.context,
        }


class NotFound(FeatureStoreError):
    """Resource, feature or provider does not exist."""
    code = ErrorCode.NOT_FOUND


class TooLarge(FeatureStoreError):
    """Resource exceeds the configured size cap."""
    code = ErrorCode.TOO_LARGE

    def __init__(self, message: str, size: int, limit: int, **kwargs):
        super().__init__(message, **kwargs)
        self.size = size
        self.limit = limit


class ExtractionFailed(FeatureStoreError):
    """Resource could not be loaded, or every applicable provider failed."""
    code = ErrorCode.EXTRACTION_FAILED

    def __init__(
        self,
        message: str,
        causes: Optional[List[BaseException]] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.causes = list(causes or [])

    @property
    def cause(self) -> Optional[BaseException]:
        return self.causes[0] if self.causes else None

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["causes"] = [str(c) for c in self.causes]
        return data


class InvalidInput(FeatureStoreError):
    """Malformed request options or locator."""
    code = ErrorCode.INVALID_INPUT


class StorageError(FeatureStoreError):
    """Underlying datastore operation failed."""
    code = ErrorCode.STORAGE_ERROR


class ErrorAction(Enum):
    """What to do when an error occurs."""
    SKIP = auto()           # Skip this item, continue processing
    ABORT = auto()          # Stop the entire walk


@dataclass
class ErrorPolicy:
    """Policy for handling a specific error type."""
    action: ErrorAction
    log_level: int
    message_template: str = "{path}: {error}"


# Error type to policy mapping (checked in order, first isinstance match wins)
ERROR_POLICIES: dict[type, ErrorPolicy] = {
    PermissionError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Permission denied: {path}"
    ),
    FileNotFoundError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="Path vanished during walk: {path}"
    ),
    NotADirectoryError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Expected directory, got file: {path}"
    ),
    OSError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="OS error listing {path}: {error}"
    ),
    StorageError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="Storage failure while processing {path}: {error}"
    ),
}


def handle_error(
    error: BaseException,
    path: Optional[Path] = None,
    context: str = "",
) -> ErrorAction:
    """
    Log an error according to the defined policies.

    Args:
        error: The exception that occurred
        path: Path being processed (if applicable)
        context: Additional context for logging

    Returns:
        The action to take (SKIP or ABORT)
    """
    policy = None
    for error_type, p in ERROR_POLICIES.items():
        if isinstance(error, error_type):
            policy = p
            break

    if policy is None:
        policy = ErrorPolicy(
            action=ErrorAction.SKIP,
            log_level=logging.ERROR,
            message_template="Unexpected error: {path} - {error}"
        )

    path_str = str(path) if path else "<unknown>"
    message = policy.message_template.format(path=path_str, error=str(error))
    if context:
        message = f"[{context}] {message}"

    logger.log(policy.log_level, message)

    return policy.action
