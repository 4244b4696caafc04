"""
Civitai Mirror - Deletion Service

Two-phase removal of model versions from the database and the disk.

1. Request: compute what would be removed and hand out a confirmation token.
2. Confirm: redeem the token once, then delete database rows first and the
   version directory second.

Tokens live in process memory and expire after a configurable TTL.
"""

from __future__ import annotations

import logging
import secrets
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .database import DatabasePort
from .errors import (
    BatchDeleteError,
    DatabaseError,
    DeleteConfirmationError,
    Err,
    ModelVersionDeleteError,
    Ok,
    Result,
    UnknownVersionError,
)
from .layout import MirrorLayout
from .models import (
    BatchDeleteResult,
    BatchItemResult,
    ConfirmationStats,
    DeletionConfirmation,
    DeletionDetails,
    Model,
    VersionDeleteResult,
)

logger = logging.getLogger(__name__)

DEFAULT_TTL_MINUTES = 30
TOKEN_PREFIX = "delete_"

DeleteItem = Tuple[Model, int]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Confirmation Store
# =============================================================================

@dataclass
class PendingItem:
    model: Model
    details: DeletionDetails

    @property
    def version_id(self) -> int:
        return self.details.version_id


@dataclass
class PendingConfirmation:
    expires_at: datetime
    items: List[PendingItem] = field(default_factory=list)


class ConfirmationStore:
    """
    Thread-safe token -> pending deletion map.

    Expired tokens are removed when touched and on every sweep.
    """

    def __init__(self, ttl: timedelta, clock: Callable[[], datetime] = utc_now):
        self.ttl = ttl
        self.clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[str, PendingConfirmation] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, token: str) -> bool:
        with self._lock:
            return token in self._entries

    def create(self, items: List[PendingItem]) -> Tuple[str, datetime]:
        token = f"{TOKEN_PREFIX}{secrets.token_urlsafe(24)}"
        expires_at = self.clock() + self.ttl
        with self._lock:
            self._entries[token] = PendingConfirmation(expires_at=expires_at, items=items)
            self._sweep_locked()
        return token, expires_at

    def claim(self, token: str, single: bool = False) -> PendingConfirmation:
        """
        Remove and return a pending confirmation.

        With ``single`` a token covering several items is rejected and left
        in place, so it can still be redeemed through the batch path.

        Raises:
            DeleteConfirmationError: missing, expired or invalid token.
        """
        with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                raise DeleteConfirmationError("Confirmation token not found", "missing", token)
            if entry.expires_at < self.clock():
                del self._entries[token]
                raise DeleteConfirmationError("Confirmation token expired", "expired", token)
            if single and len(entry.items) != 1:
                raise DeleteConfirmationError(
                    "Invalid confirmation token for single deletion", "invalid", token
                )
            return self._entries.pop(token)

    def sweep(self) -> int:
        with self._lock:
            return self._sweep_locked()

    def _sweep_locked(self) -> int:
        now = self.clock()
        expired = [t for t, entry in self._entries.items() if entry.expires_at < now]
        for token in expired:
            del self._entries[token]
        if expired:
            logger.debug(f"[DeleteService] Swept {len(expired)} expired token(s)")
        return len(expired)

    def stats(self) -> ConfirmationStats:
        with self._lock:
            self._sweep_locked()
            entries = list(self._entries.values())
        if not entries:
            return ConfirmationStats()
        expirations = [e.expires_at for e in entries]
        return ConfirmationStats(
            active_tokens=len(entries),
            total_items=sum(len(e.items) for e in entries),
            oldest_expiration=min(expirations),
            newest_expiration=max(expirations),
        )

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


# =============================================================================
# Deletion Service
# =============================================================================

class DeletionService:
    """
    Confirmation-gated and direct deletion of model versions.

    Args:
        layout: Mirror root the version directories live under.
        database: Database port implementation.
        ttl_minutes: Lifetime of confirmation tokens.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        layout: MirrorLayout,
        database: DatabasePort,
        ttl_minutes: float = DEFAULT_TTL_MINUTES,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.layout = layout
        self.database = database
        self.confirmations = ConfirmationStore(timedelta(minutes=ttl_minutes), clock)

    # =========================================================================
    # Details
    # =========================================================================

    def get_deletion_details(self, model: Model, version_id: int) -> DeletionDetails:
        """
        Describe what deleting a version would remove. Read-only.

        Raises:
            ModelVersionDeleteError: If the version is unknown.
        """
        model_layout = self.layout.model_layout(model)
        try:
            version = model_layout.find_version(version_id)
        except UnknownVersionError as e:
            raise ModelVersionDeleteError(
                f"Model version {version_id} not found in model data: {e}", model.id, version_id
            ) from e

        directory = model_layout.version_path(version_id)
        return DeletionDetails(
            version_id=version_id,
            model_id=model.id,
            model_name=model.name,
            version_name=version.name,
            directory_path=str(directory),
            file_count=len(version.files),
            image_count=len(version.images),
            exists=directory.is_dir(),
        )

    # =========================================================================
    # Request
    # =========================================================================

    def create_deletion_confirmation(
        self, model: Model, version_id: int
    ) -> Result[DeletionConfirmation, ModelVersionDeleteError]:
        return self.create_batch_deletion_confirmation([(model, version_id)])

    def create_batch_deletion_confirmation(
        self, items: Sequence[DeleteItem]
    ) -> Result[DeletionConfirmation, ModelVersionDeleteError]:
        """
        Issue one token for several versions.

        All-or-nothing: if any item cannot be described no token is created.
        """
        pending: List[PendingItem] = []
        for model, version_id in items:
            try:
                details = self.get_deletion_details(model, version_id)
            except ModelVersionDeleteError as e:
                logger.warning(f"[DeleteService] Cannot prepare deletion: {e}")
                return Err(e)
            pending.append(PendingItem(model=model, details=details))

        token, expires_at = self.confirmations.create(pending)
        logger.info(
            f"[DeleteService] Issued confirmation for {len(pending)} version(s), "
            f"expires {expires_at.isoformat()}"
        )
        return Ok(DeletionConfirmation(
            token=token,
            expires_at=expires_at,
            items=[p.details for p in pending],
        ))

    # =========================================================================
    # Confirm
    # =========================================================================

    def confirm_and_delete_model_version(
        self, token: str
    ) -> Result[VersionDeleteResult, Exception]:
        """Redeem a single-item token. Errors: DeleteConfirmationError, ModelVersionDeleteError."""
        try:
            confirmation = self.confirmations.claim(token, single=True)
        except DeleteConfirmationError as e:
            logger.warning(f"[DeleteService] {e} ({e.reason})")
            return Err(e)

        item = confirmation.items[0]
        try:
            return Ok(self._delete(item.model, item.version_id, item.details.exists))
        except DatabaseError as e:
            return Err(ModelVersionDeleteError(
                f"Failed to delete model version: {e}", item.model.id, item.version_id
            ))

    def confirm_and_delete_batch_model_versions(
        self, token: str
    ) -> Result[BatchDeleteResult, Exception]:
        """Redeem a token item by item. Errors: DeleteConfirmationError, BatchDeleteError."""
        try:
            confirmation = self.confirmations.claim(token)
        except DeleteConfirmationError as e:
            logger.warning(f"[DeleteService] {e} ({e.reason})")
            return Err(e)

        return self._delete_many(
            [(item.model, item.version_id, item.details.exists) for item in confirmation.items]
        )

    # =========================================================================
    # Direct
    # =========================================================================

    def delete_model_version_completely(
        self, model: Model, version_id: int
    ) -> Result[VersionDeleteResult, ModelVersionDeleteError]:
        """Delete without a token, same ordering as a confirmed deletion."""
        try:
            files_exist = self.layout.model_layout(model).version_path(version_id).is_dir()
            return Ok(self._delete(model, version_id, files_exist))
        except DatabaseError as e:
            return Err(ModelVersionDeleteError(
                f"Failed to delete model version completely: {e}", model.id, version_id
            ))

    def delete_batch_model_versions_completely(
        self, items: Sequence[DeleteItem]
    ) -> Result[BatchDeleteResult, BatchDeleteError]:
        return self._delete_many([
            (model, version_id, self.layout.model_layout(model).version_path(version_id).is_dir())
            for model, version_id in items
        ])

    def get_confirmation_stats(self) -> ConfirmationStats:
        return self.confirmations.stats()

    # =========================================================================
    # Internals
    # =========================================================================

    def _delete(self, model: Model, version_id: int, files_exist: bool) -> VersionDeleteResult:
        """
        Database row first, then the version directory.

        The directory is only touched when it existed when the deletion was
        prepared; its path is derived again from the layout.

        Raises:
            DatabaseError: If removing the row fails. Files are left alone.
        """
        record = self.database.delete_model_version(version_id, model.id)
        if not record.deleted:
            logger.info(f"[DeleteService] Version {version_id} had no database record")

        files_deleted = False
        if files_exist:
            directory = self.layout.model_layout(model).version_path(version_id)
            try:
                if directory.exists():
                    shutil.rmtree(directory)
                files_deleted = True
            except OSError as e:
                logger.warning(f"[DeleteService] Could not remove {directory}: {e}")

        logger.info(
            f"[DeleteService] Deleted version {version_id} of model {model.id} "
            f"(db={record.deleted}, files={files_deleted}, model={record.model_deleted})"
        )
        return VersionDeleteResult(
            version_id=version_id,
            database_deleted=record.deleted,
            files_deleted=files_deleted,
            model_deleted=record.model_deleted,
            deleted_files=record.file_count,
            deleted_images=record.image_count,
        )

    def _delete_many(
        self, items: Sequence[Tuple[Model, int, bool]]
    ) -> Result[BatchDeleteResult, BatchDeleteError]:
        results: List[BatchItemResult] = []
        for model, version_id, files_exist in items:
            try:
                outcome = self._delete(model, version_id, files_exist)
            except DatabaseError as e:
                logger.warning(f"[DeleteService] Batch item {version_id} failed: {e}")
                results.append(BatchItemResult(version_id=version_id, success=False, error=str(e)))
                continue
            results.append(BatchItemResult(
                version_id=version_id,
                success=True,
                database_deleted=outcome.database_deleted,
                files_deleted=outcome.files_deleted,
                model_deleted=outcome.model_deleted,
                deleted_files=outcome.deleted_files,
                deleted_images=outcome.deleted_images,
            ))

        succeeded = sum(1 for r in results if r.success)
        failed = len(results) - succeeded
        summary = BatchDeleteResult(total=len(items), succeeded=succeeded, failed=failed, results=results)

        if failed:
            return Err(BatchDeleteError(
                f"Batch deletion partially failed: {failed} items failed",
                total=summary.total,
                succeeded=succeeded,
                failed=failed,
                failed_items=[
                    {"version_id": r.version_id, "error": r.error or "Unknown error"}
                    for r in results if not r.success
                ],
                results=results,
            ))
        return Ok(summary)
