"""
Civitai Mirror Store - Main Entry Point

This module provides the Store facade wiring the layout, database,
reconciler and deletion service for one mirror.

Usage:
    from src.store import Store

    store = Store(base_path="~/civitai-models")

    # Index newly downloaded versions
    result = store.scan()

    # Verify and repair the index
    reports = store.check_consistency()
    store.repair()

    # Two-phase deletion
    confirmation = store.request_deletion([200]).unwrap()
    store.confirm_deletion(confirmation.token)
"""

import math
from pathlib import Path
from typing import TYPE_CHECKING, Callable, List, Optional, Sequence, Tuple, Union

from .database import DatabasePort, SqlDatabase
from .delete_service import ConfirmationStore, DeletionService
from .errors import (
    BatchDeleteError,
    CatalogError,
    DatabaseError,
    DeleteConfirmationError,
    Err,
    ImageIdError,
    JsonParseError,
    ModelVersionDeleteError,
    Ok,
    Result,
    ScanError,
    StoreError,
    UnknownFileError,
    UnknownMediaError,
    UnknownVersionError,
)
from .layout import MirrorLayout, ModelLayout, VersionLayout
from .manifest import ManifestReader, write_manifests
from .models import (
    BatchDeleteResult,
    ConfirmationStats,
    ConsistencyReport,
    DeletionConfirmation,
    Model,
    ModelType,
    ModelVersion,
    RepairResult,
    ScanOptions,
    ScanResult,
    VersionDeleteResult,
    VersionOnDisk,
    VersionPage,
    VersionRecord,
)
from .reconciler import Reconciler
from .scanner import SUPPORTED_MODEL_EXTENSIONS, DiscoveryScanner

if TYPE_CHECKING:
    from ..clients.civitai_client import CatalogPort


__all__ = [
    # Main facade
    "Store",

    # Layout
    "MirrorLayout",
    "ModelLayout",
    "VersionLayout",

    # Services
    "DiscoveryScanner",
    "ManifestReader",
    "Reconciler",
    "DeletionService",
    "ConfirmationStore",
    "DatabasePort",
    "SqlDatabase",
    "write_manifests",

    # Models
    "Model",
    "ModelType",
    "ModelVersion",
    "VersionPage",
    "VersionRecord",

    # Results
    "Ok",
    "Err",
    "Result",
    "ScanOptions",
    "ScanResult",
    "ConsistencyReport",
    "RepairResult",
    "DeletionConfirmation",
    "VersionDeleteResult",
    "BatchDeleteResult",
    "ConfirmationStats",
    "VersionOnDisk",

    # Errors
    "StoreError",
    "ScanError",
    "JsonParseError",
    "DatabaseError",
    "ModelVersionDeleteError",
    "DeleteConfirmationError",
    "BatchDeleteError",
    "CatalogError",
    "ImageIdError",
    "UnknownFileError",
    "UnknownMediaError",
    "UnknownVersionError",
]


class Store:
    """
    Main facade for the local artifact store.

    Scans, consistency checks and repairs operate on what is on disk;
    deletion requests by version id go through the catalog to get the
    canonical model data first.
    """

    def __init__(
        self,
        base_path: Optional[Union[str, Path]] = None,
        database_url: Optional[str] = None,
        catalog: Optional["CatalogPort"] = None,
        database: Optional[DatabasePort] = None,
        extensions: Optional[Sequence[str]] = None,
        confirmation_ttl_minutes: Optional[float] = None,
        clock: Optional[Callable] = None,
    ):
        """
        Initialize the store.

        Args:
            base_path: Mirror base directory. Defaults to the configured one.
            database_url: SQLAlchemy URL. Defaults to the configured one.
            catalog: Catalog port. A CivitaiClient is created on first
                     use if omitted.
            database: Database port; overrides database_url.
            extensions: Model file extensions recognized by scans.
            confirmation_ttl_minutes: Lifetime of deletion tokens.
            clock: Returns the current UTC time; injectable for tests.
        """
        from config.settings import get_config

        self.config = get_config()
        self.layout = MirrorLayout(
            base_path or self.config.base_path,
            lock_timeout=self.config.scan.lock_timeout,
        )
        self.database = database or SqlDatabase(database_url or self.config.resolved_database_url)
        self._catalog = catalog

        extra = {"clock": clock} if clock else {}
        self.reconciler = Reconciler(
            self.layout,
            self.database,
            extensions or self.config.scan.extensions or SUPPORTED_MODEL_EXTENSIONS,
            **extra,
        )
        self.deletion_service = DeletionService(
            self.layout,
            self.database,
            ttl_minutes=(
                confirmation_ttl_minutes
                if confirmation_ttl_minutes is not None
                else self.config.deletion.confirmation_ttl_minutes
            ),
            **extra,
        )

    @property
    def catalog(self) -> "CatalogPort":
        if self._catalog is None:
            from ..clients.civitai_client import CivitaiClient

            self._catalog = CivitaiClient(
                api_key=self.config.api.civitai_token,
                requests_per_minute=self.config.api.requests_per_minute,
                timeout=self.config.api.timeout,
                base_url=self.config.api.civitai_base_url,
            )
        return self._catalog

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def scan(
        self,
        incremental: bool = True,
        check_consistency: bool = False,
        repair: bool = False,
    ) -> Result[ScanResult, ScanError]:
        """Scan the mirror and index versions not in the database yet."""
        return self.reconciler.perform_incremental_scan(ScanOptions(
            incremental=incremental,
            check_consistency=check_consistency,
            repair_database=repair,
        ))

    def check_consistency(self) -> Result[List[ConsistencyReport], ScanError]:
        return self.reconciler.perform_consistency_check()

    def repair(self) -> Result[RepairResult, ScanError]:
        return self.reconciler.repair_database_records()

    def list_versions(self) -> List[VersionRecord]:
        return self.database.list_versions()

    def query_versions(self, page: int = 1, page_size: int = 20) -> VersionPage:
        """One page of indexed versions; pages are 1-based."""
        if page < 1 or page_size < 1:
            raise ValueError(f"Invalid page {page} / page size {page_size}")
        total = self.database.count_versions()
        items = self.database.list_versions(offset=(page - 1) * page_size, limit=page_size)
        return VersionPage(
            items=items,
            page=page,
            page_size=page_size,
            total_items=total,
            total_pages=math.ceil(total / page_size),
        )

    def disk_status(self, model_id: int) -> List[VersionOnDisk]:
        """
        Versions of a catalog model with files on disk.

        Raises:
            CatalogError: If the model cannot be fetched.
        """
        model = self.catalog.get_model(model_id)
        return self.reconciler.check_model_on_disk(model)

    # =========================================================================
    # Deletion
    # =========================================================================

    def resolve_versions(self, version_ids: Sequence[int]) -> List[Tuple[Model, int]]:
        """
        Fetch the canonical model for each version id.

        The parent model id comes from the index when the version is
        indexed, otherwise from the catalog's version payload.

        Raises:
            CatalogError: If a model or version cannot be fetched.
        """
        items: List[Tuple[Model, int]] = []
        models = {}
        for version_id in version_ids:
            record = self.database.find_version(version_id)
            if record is not None:
                model_id = record.model_id
            else:
                version = self.catalog.get_model_version(version_id)
                if version.model_id is None:
                    raise CatalogError(f"Model version {version_id} has no modelId")
                model_id = version.model_id

            if model_id not in models:
                models[model_id] = self.catalog.get_model(model_id)
            items.append((models[model_id], version_id))
        return items

    def request_deletion(self, version_ids: Sequence[int]) -> Result[DeletionConfirmation, StoreError]:
        """Issue one confirmation token covering all given versions."""
        try:
            items = self.resolve_versions(version_ids)
        except (CatalogError, DatabaseError) as e:
            return Err(e)
        return self.deletion_service.create_batch_deletion_confirmation(items)

    def confirm_deletion(self, token: str) -> Result[BatchDeleteResult, StoreError]:
        return self.deletion_service.confirm_and_delete_batch_model_versions(token)

    def confirm_single_deletion(self, token: str) -> Result[VersionDeleteResult, StoreError]:
        return self.deletion_service.confirm_and_delete_model_version(token)

    def delete_versions(self, version_ids: Sequence[int]) -> Result[BatchDeleteResult, StoreError]:
        """Delete without a confirmation token."""
        try:
            items = self.resolve_versions(version_ids)
        except (CatalogError, DatabaseError) as e:
            return Err(e)
        return self.deletion_service.delete_batch_model_versions_completely(items)

    def confirmation_stats(self) -> ConfirmationStats:
        return self.deletion_service.get_confirmation_stats()
