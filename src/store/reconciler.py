"""
Civitai Mirror - Reconciler

Keeps the on-disk layout, the manifest sidecars and the database index in
agreement:

- perform_incremental_scan: discover new files and index their versions
- perform_consistency_check: compare every indexed version with disk + manifests
- repair_database_records: re-sync inconsistent versions from their manifests
"""

from __future__ import annotations

import logging
import os
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from .database import DatabasePort
from .errors import DatabaseError, Err, ImageIdError, Ok, Result, ScanError, StoreError
from .layout import MirrorLayout, VersionLayout, sanitize_filename
from .manifest import InvalidManifest, ManifestOk, ManifestReader, MissingManifest
from .models import (
    ConsistencyReport,
    FailedFile,
    Model,
    ModelImage,
    ModelVersion,
    RepairResult,
    ScanCandidate,
    ScanOptions,
    ScanResult,
    VersionOnDisk,
    VersionRecord,
)
from .scanner import SUPPORTED_MODEL_EXTENSIONS, DiscoveryScanner, check_model_on_disk

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Reconciler:
    """
    Scan, consistency and repair engine for one mirror.

    Args:
        layout: Mirror root.
        database: Database port implementation.
        extensions: Model file extensions recognized by discovery.
        clock: Returns the current UTC time; injectable for tests.
    """

    def __init__(
        self,
        layout: MirrorLayout,
        database: DatabasePort,
        extensions: Iterable[str] = SUPPORTED_MODEL_EXTENSIONS,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.layout = layout
        self.database = database
        self.scanner = DiscoveryScanner(layout, extensions)
        self.manifests = ManifestReader(layout.base)
        self.clock = clock

    # =========================================================================
    # Scan
    # =========================================================================

    def perform_incremental_scan(self, options: Optional[ScanOptions] = None) -> Result[ScanResult, ScanError]:
        """
        Discover model files and index versions not yet in the database.

        Existing rows are never overwritten here; use repair for that.
        Per-file problems end up in ``skipped_files`` / ``failed_files``;
        only a missing base directory or a held scan lock is an ``Err``.
        """
        options = options or ScanOptions()
        if not self.layout.exists():
            return Err(ScanError(
                f"Base directory does not exist: {self.layout.base}",
                operation="directory-structure",
                path=str(self.layout.base),
            ))

        try:
            with self.layout.lock():
                return Ok(self._scan(options))
        except ScanError as e:
            logger.error(f"[Reconciler] Scan aborted: {e}")
            return Err(e)

    def _scan(self, options: ScanOptions) -> ScanResult:
        started = time.monotonic()
        started_at = self.clock()

        previous = self.scanner.read_watermark()
        since = previous if options.incremental else None
        candidates = self.scanner.discover(since=since)

        logger.info(
            f"[Reconciler] {'Incremental' if options.incremental else 'Full'} scan of "
            f"{self.layout.base}: {len(candidates)} file(s)"
        )

        result = ScanResult(files_scanned=len(candidates), incremental=options.incremental)
        handled: Set[int] = set()
        for candidate in candidates:
            if candidate.version_id in handled:
                continue
            handled.add(candidate.version_id)
            self._process_candidate(candidate, result)

        # Scan start, so files written during this scan are seen next time
        watermark = max(started_at, previous) if previous else started_at
        try:
            self.scanner.write_watermark(watermark)
            result.watermark = watermark.isoformat()
        except OSError as e:
            logger.warning(f"[Reconciler] Could not write watermark: {e}")

        if options.check_consistency:
            reports = self._consistency_check()
            if isinstance(reports, Ok):
                result.consistency = reports.value
            else:
                logger.warning(f"[Reconciler] Consistency check failed: {reports.error}")

        if options.repair_database:
            repair = self._repair()
            if isinstance(repair, Ok):
                result.repaired_records = repair.value.repaired
            else:
                logger.warning(f"[Reconciler] Repair failed: {repair.error}")

        result.scan_duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"[Reconciler] Scan done in {result.scan_duration_ms}ms: "
            f"{result.new_records_added} new, {result.existing_records_found} existing, "
            f"{len(result.skipped_files)} skipped, {len(result.failed_files)} failed"
        )
        return result

    def _process_candidate(self, candidate: ScanCandidate, result: ScanResult) -> None:
        manifest = self.manifests.read(candidate.model_type, candidate.model_id, candidate.version_id)
        if isinstance(manifest, (MissingManifest, InvalidManifest)):
            logger.warning(f"[Reconciler] Skipping {candidate.path}: {manifest.reason}")
            result.skipped_files.append(FailedFile(path=candidate.path, reason=manifest.reason))
            return

        try:
            if self.database.find_version(candidate.version_id) is not None:
                logger.debug(f"[Reconciler] Version {candidate.version_id} already indexed")
                result.existing_records_found += 1
                return

            file_presence, image_presence = self._probe(manifest.model, manifest.version)
            written = self.database.upsert_model_version(
                manifest.model,
                manifest.version,
                overwrite=False,
                file_presence=file_presence,
                image_presence=image_presence,
            )
        except (ImageIdError, DatabaseError) as e:
            logger.warning(f"[Reconciler] Failed to index {candidate.path}: {e}")
            result.failed_files.append(FailedFile(path=candidate.path, reason=str(e)))
            return

        if written:
            logger.debug(f"[Reconciler] Indexed version {candidate.version_id} of model {candidate.model_id}")
            result.new_records_added += 1
        else:
            result.existing_records_found += 1

    def _probe(self, model: Model, version: ModelVersion) -> Tuple[Dict[int, bool], Dict[int, bool]]:
        existence = VersionLayout(self.layout.base, model.type, model.id, version).check_files_and_images()
        return (
            {entry.id: entry.exists for entry in existence.files},
            {entry.id: entry.exists for entry in existence.images},
        )

    # =========================================================================
    # Consistency
    # =========================================================================

    def perform_consistency_check(self) -> Result[List[ConsistencyReport], ScanError]:
        """One report per indexed model version."""
        return self._consistency_check()

    def _consistency_check(self) -> Result[List[ConsistencyReport], ScanError]:
        try:
            records = self.database.list_versions()
        except DatabaseError as e:
            return Err(ScanError(str(e), operation="database"))

        reports = [self._check_version(record) for record in records]
        inconsistent = sum(1 for r in reports if not r.is_consistent)
        logger.info(f"[Reconciler] Consistency check: {len(reports)} version(s), {inconsistent} inconsistent")
        return Ok(reports)

    def _check_version(self, record: VersionRecord) -> ConsistencyReport:
        report = ConsistencyReport(
            model_id=record.model_id,
            version_id=record.version_id,
            json_valid=False,
            database_record_exists=True,
        )

        try:
            manifest = self.manifests.read(record.model_type, record.model_id, record.version_id)
            if isinstance(manifest, MissingManifest):
                report.missing_files = [
                    f"manifest: {os.path.relpath(path, self.layout.base)}" for path in manifest.paths
                ]
                return report
            if isinstance(manifest, InvalidManifest):
                report.missing_files = [f"error: {manifest.reason}"]
                return report

            report.missing_files, report.extra_files = self._compare(record, manifest)
            report.json_valid = True
        except (StoreError, OSError, ValueError) as e:
            logger.warning(f"[Reconciler] Consistency check failed for version {record.version_id}: {e}")
            report.json_valid = False
            report.missing_files.append(f"error: {e}")

        return report

    def _compare(self, record: VersionRecord, manifest: ManifestOk) -> Tuple[List[str], List[str]]:
        version = manifest.version
        version_layout = VersionLayout(self.layout.base, manifest.model.type, record.model_id, version)
        existence = version_layout.check_files_and_images()
        file_exists = {entry.id: entry.exists for entry in existence.files}
        image_exists = {entry.id: entry.exists for entry in existence.images}

        missing: List[str] = []
        extra: List[str] = []

        declared_files = set()
        for model_file in version.files:
            declared_files.add(model_file.id)
            if model_file.id in record.files_on_disk and not file_exists.get(model_file.id, False):
                missing.append(f"files/{version_layout.file_name(model_file.id)}")

        declared_images = set()
        for image in version.images:
            try:
                image_id = image.resolve_id()
            except ImageIdError as e:
                missing.append(f"error: {e}")
                continue
            declared_images.add(image_id)
            if image_id in record.images_on_disk and not image_exists.get(image_id, False):
                missing.append(f"media/{image.media_filename()}")

        for file_id in record.file_ids:
            if file_id not in declared_files:
                extra.append(f"files/{sanitize_filename(record.file_names.get(file_id, str(file_id)))}")

        for image_id in record.image_ids:
            if image_id not in declared_images:
                url = record.image_urls.get(image_id, "")
                extra.append(f"media/{ModelImage(id=image_id, url=url).media_filename()}")

        return missing, extra

    # =========================================================================
    # Repair
    # =========================================================================

    def repair_database_records(self) -> Result[RepairResult, ScanError]:
        """Re-upsert, with overwrite, every version the consistency check flags."""
        try:
            with self.layout.lock():
                return self._repair()
        except ScanError as e:
            logger.error(f"[Reconciler] Repair aborted: {e}")
            return Err(e)

    def _repair(self) -> Result[RepairResult, ScanError]:
        try:
            records = self.database.list_versions()
        except DatabaseError as e:
            return Err(ScanError(str(e), operation="database"))

        result = RepairResult()
        for record in records:
            report = self._check_version(record)
            if report.is_consistent:
                continue

            result.total += 1
            manifest = self.manifests.read(record.model_type, record.model_id, record.version_id)
            if not isinstance(manifest, ManifestOk):
                result.failed += 1
                result.errors.append(f"Version {record.version_id}: {manifest.reason}")
                continue

            try:
                file_presence, image_presence = self._probe(manifest.model, manifest.version)
                self.database.upsert_model_version(
                    manifest.model,
                    manifest.version,
                    overwrite=True,
                    file_presence=file_presence,
                    image_presence=image_presence,
                )
            except (ImageIdError, DatabaseError) as e:
                logger.warning(f"[Reconciler] Repair failed for version {record.version_id}: {e}")
                result.failed += 1
                result.errors.append(f"Version {record.version_id}: {e}")
                continue

            logger.debug(f"[Reconciler] Repaired version {record.version_id}")
            result.repaired += 1

        logger.info(
            f"[Reconciler] Repair: {result.repaired} repaired, {result.failed} failed "
            f"of {result.total} inconsistent"
        )
        return Ok(result)

    # =========================================================================
    # Disk Status
    # =========================================================================

    def check_model_on_disk(self, model: Model) -> List[VersionOnDisk]:
        return check_model_on_disk(self.layout.base, model)
