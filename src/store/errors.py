"""
Civitai Mirror - Error Taxonomy

Closed set of errors raised or returned by the local artifact store, plus the
``Ok`` / ``Err`` result pair returned by the public engine operations.

Usage:
    result = reconciler.perform_incremental_scan()
    if isinstance(result, Err):
        logger.error(result.error)
    else:
        print(result.value.new_records_added)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Generic, List, Literal, Optional, TypeVar, Union


T = TypeVar("T")
E = TypeVar("E", bound=BaseException)


# =============================================================================
# Result
# =============================================================================

@dataclass(frozen=True)
class Ok(Generic[T]):
    """Successful outcome."""
    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        return self.value


@dataclass(frozen=True)
class Err(Generic[E]):
    """Failed outcome carrying a store error."""
    error: E

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    def unwrap(self):
        raise self.error


Result = Union[Ok[T], Err[E]]


# =============================================================================
# Base
# =============================================================================

class StoreError(Exception):
    """Base exception for store errors."""
    pass


# =============================================================================
# Layout Errors
# =============================================================================

class UnknownFileError(StoreError):
    """File id is not declared on the in-memory model version."""

    def __init__(self, version_id: int, file_id: int):
        super().__init__(f"Model version {version_id} has no file id: {file_id}")
        self.version_id = version_id
        self.file_id = file_id


class UnknownMediaError(StoreError):
    """Image id is not declared on the in-memory model version."""

    def __init__(self, version_id: int, image_id: int):
        super().__init__(f"Model version {version_id} has no media with id: {image_id}")
        self.version_id = version_id
        self.image_id = image_id


class UnknownVersionError(StoreError):
    """Version id is neither on the model nor saved on disk."""

    def __init__(self, model_id: int, version_id: int, detail: str = ""):
        message = f"Model {model_id} has no version id: {version_id}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)
        self.model_id = model_id
        self.version_id = version_id


class ImageIdError(StoreError):
    """Image id cannot be derived from its URL."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"Cannot extract image id from URL {url}: {reason}")
        self.url = url


# =============================================================================
# Scan Errors
# =============================================================================

ScanOperation = Literal[
    "scan",
    "json-parse",
    "database",
    "file-not-found",
    "directory-structure",
]


class ScanError(StoreError):
    """Generic, operation-tagged scan failure."""

    def __init__(
        self,
        message: str,
        operation: ScanOperation = "scan",
        path: Optional[str] = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.path = path


class JsonParseError(ScanError):
    """Manifest exists but is not valid JSON or fails schema validation."""

    def __init__(self, message: str, path: str, validation_errors: str):
        super().__init__(message, operation="json-parse", path=path)
        self.validation_errors = validation_errors


class DatabaseError(StoreError):
    """Database write or read failed for a model version."""

    def __init__(
        self,
        message: str,
        model_id: Optional[int] = None,
        version_id: Optional[int] = None,
    ):
        super().__init__(message)
        self.model_id = model_id
        self.version_id = version_id


# =============================================================================
# Deletion Errors
# =============================================================================

class ModelVersionDeleteError(StoreError):
    """Deleting (or preparing to delete) a model version failed."""

    def __init__(self, message: str, model_id: int, version_id: int):
        super().__init__(message)
        self.model_id = model_id
        self.version_id = version_id


ConfirmationFailure = Literal["missing", "expired", "invalid"]


class DeleteConfirmationError(StoreError):
    """Confirmation token is missing, expired or not usable here."""

    def __init__(
        self,
        message: str,
        reason: ConfirmationFailure,
        token: Optional[str] = None,
    ):
        super().__init__(message)
        self.reason = reason
        self.token = token


class BatchDeleteError(StoreError):
    """At least one item of a batch deletion failed."""

    def __init__(
        self,
        message: str,
        total: int,
        succeeded: int,
        failed: int,
        failed_items: List[Dict[str, Any]],
        results: Optional[List[Any]] = None,
    ):
        super().__init__(message)
        self.total = total
        self.succeeded = succeeded
        self.failed = failed
        self.failed_items = failed_items
        self.results = results or []


# =============================================================================
# Catalog Errors
# =============================================================================

class CatalogError(StoreError):
    """Catalog lookup failed."""
    pass
