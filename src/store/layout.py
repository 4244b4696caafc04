"""
Civitai Mirror - Storage Layout

Maps catalog identities to the on-disk mirror layout:

- <base>/<Type>/<modelId>/<modelId>.manifest.json            (model manifest)
- <base>/<Type>/<modelId>/<versionId>/<versionId>.manifest.json
- <base>/<Type>/<modelId>/<versionId>/files/<fileName>
- <base>/<Type>/<modelId>/<versionId>/media/<imageId>.<ext>
- <base>/.scan-watermark                                      (last scan time)
- <base>/.scan.lock

Path functions are pure. The inverse, ``parse_artifact_path``, recovers
(type, modelId, versionId, name) from a file path under ``files/`` or ``media/``.
"""

from __future__ import annotations

import json
import logging
import os
import re
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Generator, Hashable, List, Mapping, Optional, Union

import filelock
from pydantic import ValidationError

from .errors import (
    ImageIdError,
    ScanError,
    UnknownFileError,
    UnknownMediaError,
    UnknownVersionError,
)
from .models import (
    ExistenceEntry,
    Model,
    ModelFile,
    ModelImage,
    ModelType,
    ModelVersion,
    VersionExistence,
)

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

MANIFEST_SUFFIX = ".manifest.json"
FILES_DIR = "files"
MEDIA_DIR = "media"
WATERMARK_FILE = ".scan-watermark"
SCAN_LOCK_FILE = ".scan.lock"

_INVALID_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
_RESERVED_NAMES = {
    "CON", "PRN", "AUX", "NUL",
    *(f"COM{i}" for i in range(1, 10)),
    *(f"LPT{i}" for i in range(1, 10)),
}


# =============================================================================
# File Names
# =============================================================================

def is_valid_filename(name: str) -> bool:
    """Check that a name is usable as a file name on common filesystems."""
    if not name or name in (".", ".."):
        return False
    if len(name.encode("utf-8")) > 255:
        return False
    if _INVALID_FILENAME_CHARS.search(name):
        return False
    if name.endswith((".", " ")):
        return False
    if name.split(".")[0].upper() in _RESERVED_NAMES:
        return False
    return True


def sanitize_filename(name: str, replacement: str = "_") -> str:
    """
    Turn a declared file name into a filesystem-safe one.

    Valid names are returned unchanged; otherwise invalid characters are
    replaced, trailing dots/spaces trimmed and reserved device names prefixed.
    """
    if is_valid_filename(name):
        return name
    cleaned = _INVALID_FILENAME_CHARS.sub(replacement, name)
    cleaned = cleaned.rstrip(". ")
    if not cleaned or cleaned in (".", ".."):
        cleaned = replacement
    if cleaned.split(".")[0].upper() in _RESERVED_NAMES:
        cleaned = f"{replacement}{cleaned}"
    encoded = cleaned.encode("utf-8")
    if len(encoded) > 255:
        cleaned = encoded[:255].decode("utf-8", errors="ignore")
    return cleaned


def manifest_filename(entity_id: int) -> str:
    return f"{entity_id}{MANIFEST_SUFFIX}"


def _type_name(model_type: Union[str, ModelType]) -> str:
    return model_type.value if isinstance(model_type, ModelType) else str(model_type)


# =============================================================================
# Path Functions
# =============================================================================

def model_path(base: PathLike, model_type: Union[str, ModelType], model_id: int) -> Path:
    """<base>/<Type>/<modelId>"""
    return Path(os.path.normpath(str(base))) / _type_name(model_type) / str(model_id)


def version_path(
    base: PathLike, model_type: Union[str, ModelType], model_id: int, version_id: int
) -> Path:
    """<base>/<Type>/<modelId>/<versionId>"""
    return model_path(base, model_type, model_id) / str(version_id)


def model_manifest_path(base: PathLike, model_type: Union[str, ModelType], model_id: int) -> Path:
    return model_path(base, model_type, model_id) / manifest_filename(model_id)


def version_manifest_path(
    base: PathLike, model_type: Union[str, ModelType], model_id: int, version_id: int
) -> Path:
    return version_path(base, model_type, model_id, version_id) / manifest_filename(version_id)


def files_dir(
    base: PathLike, model_type: Union[str, ModelType], model_id: int, version_id: int
) -> Path:
    return version_path(base, model_type, model_id, version_id) / FILES_DIR


def media_dir(
    base: PathLike, model_type: Union[str, ModelType], model_id: int, version_id: int
) -> Path:
    return version_path(base, model_type, model_id, version_id) / MEDIA_DIR


# =============================================================================
# Inverse Mapping
# =============================================================================

@dataclass(frozen=True)
class ArtifactPath:
    """Identity recovered from a file path inside the mirror."""
    model_type: str
    model_id: int
    version_id: int
    kind: str  # "files" or "media"
    name: str


def parse_artifact_path(base: PathLike, path: PathLike) -> Optional[ArtifactPath]:
    """
    Decompose ``<base>/<Type>/<modelId>/<versionId>/{files,media}/<name>``.

    Segments are taken at fixed offsets from the end of the path relative to
    ``base``. Returns None for anything that does not fit the layout.
    """
    base_norm = os.path.normpath(os.path.abspath(str(base)))
    path_norm = os.path.normpath(os.path.abspath(str(path)))
    try:
        rel = os.path.relpath(path_norm, base_norm)
    except ValueError:
        # Different drives on Windows
        return None
    if rel.startswith(os.pardir):
        return None

    parts = Path(rel).parts
    if len(parts) < 5:
        return None

    type_name, model_id, version_id, kind, name = parts[-5:]
    if kind not in (FILES_DIR, MEDIA_DIR):
        return None
    if not model_id.isdigit() or not version_id.isdigit():
        return None
    if not type_name or type_name.startswith("."):
        return None

    return ArtifactPath(
        model_type=type_name,
        model_id=int(model_id),
        version_id=int(version_id),
        kind=kind,
        name=name,
    )


# =============================================================================
# Existence Probes
# =============================================================================

def probe_paths(paths: Mapping[Hashable, Path]) -> Dict[Hashable, bool]:
    """
    Check existence of many paths at once.

    One worker per path; every probe runs to completion and a probe that
    errors counts as "does not exist".
    """
    if not paths:
        return {}

    def _exists(path: Path) -> bool:
        try:
            return path.is_file()
        except OSError as e:
            logger.debug(f"[Layout] Existence probe failed for {path}: {e}")
            return False

    with ThreadPoolExecutor(max_workers=len(paths)) as executor:
        futures = {key: executor.submit(_exists, path) for key, path in paths.items()}
        return {key: future.result() for key, future in futures.items()}


# =============================================================================
# Version / Model Layout
# =============================================================================

class VersionLayout:
    """Paths for one model version of a model."""

    def __init__(self, base: PathLike, model_type: Union[str, ModelType], model_id: int, version: ModelVersion):
        self.base = Path(base)
        self.model_type = _type_name(model_type)
        self.model_id = model_id
        self.version = version

    @property
    def version_path(self) -> Path:
        return version_path(self.base, self.model_type, self.model_id, self.version.id)

    @property
    def manifest_path(self) -> Path:
        return version_manifest_path(self.base, self.model_type, self.model_id, self.version.id)

    @property
    def files_dir(self) -> Path:
        return files_dir(self.base, self.model_type, self.model_id, self.version.id)

    @property
    def media_dir(self) -> Path:
        return media_dir(self.base, self.model_type, self.model_id, self.version.id)

    def find_file(self, file_id: int) -> ModelFile:
        model_file = self.version.find_file(file_id)
        if model_file is None:
            raise UnknownFileError(self.version.id, file_id)
        return model_file

    def file_name(self, file_id: int) -> str:
        return sanitize_filename(self.find_file(file_id).name)

    def file_path(self, file_id: int) -> Path:
        return self.files_dir / self.file_name(file_id)

    def find_media(self, image_id: int) -> ModelImage:
        image = self.version.find_image(image_id)
        if image is None:
            raise UnknownMediaError(self.version.id, image_id)
        return image

    def media_file_name(self, image_id: int) -> str:
        return self.find_media(image_id).media_filename()

    def media_path(self, image_id: int) -> Path:
        return self.media_dir / self.media_file_name(image_id)

    def check_files_on_disk(self) -> List[int]:
        """Ids of declared files present on disk."""
        existence = self.check_files_and_images()
        return [entry.id for entry in existence.files if entry.exists]

    def check_files_and_images(self) -> VersionExistence:
        """Existence of every declared file and image."""
        probes: Dict[Hashable, Path] = {}
        for model_file in self.version.files:
            probes[("file", model_file.id)] = self.file_path(model_file.id)

        unresolved_images = 0
        for image in self.version.images:
            try:
                image_id = image.resolve_id()
            except ImageIdError as e:
                logger.warning(f"[Layout] {e}")
                unresolved_images += 1
                continue
            probes[("image", image_id)] = self.media_dir / image.media_filename()

        results = probe_paths(probes)
        files = [
            ExistenceEntry(id=key[1], exists=exists)
            for key, exists in results.items() if key[0] == "file"
        ]
        images = [
            ExistenceEntry(id=key[1], exists=exists)
            for key, exists in results.items() if key[0] == "image"
        ]
        images.extend(ExistenceEntry(id=0, exists=False) for _ in range(unresolved_images))
        return VersionExistence(files=files, images=images)


class ModelLayout:
    """Paths for a model and access to its version layouts."""

    def __init__(self, base: PathLike, model: Model):
        self.base = Path(base)
        self.model = model

    @property
    def model_path(self) -> Path:
        return model_path(self.base, self.model.type, self.model.id)

    @property
    def manifest_path(self) -> Path:
        return model_manifest_path(self.base, self.model.type, self.model.id)

    def find_version(self, version_id: int) -> ModelVersion:
        """
        Find a version on the model, falling back to its saved manifest.

        Saved model manifests carry no versions, so the version manifest on
        disk is read, validated and cached on the model.
        """
        version = self.model.find_version(version_id)
        if version is not None:
            return version

        path = version_manifest_path(self.base, self.model.type, self.model.id, version_id)
        if not path.is_file():
            raise UnknownVersionError(self.model.id, version_id, "version manifest not found on disk")
        try:
            version = ModelVersion.model_validate(read_json(path))
        except (OSError, ValueError, ValidationError) as e:
            raise UnknownVersionError(self.model.id, version_id, f"cannot read {path}: {e}")

        self.model.model_versions.append(version)
        return version

    def version_layout(self, version_id: int) -> VersionLayout:
        return VersionLayout(self.base, self.model.type, self.model.id, self.find_version(version_id))

    def version_path(self, version_id: int) -> Path:
        """Version directory; does not require the version to be known."""
        return version_path(self.base, self.model.type, self.model.id, version_id)


# =============================================================================
# Mirror Root
# =============================================================================

class MirrorLayout:
    """
    Root of the on-disk mirror.

    Owns the watermark and scan lock files and provides atomic JSON I/O.
    """

    LOCK_TIMEOUT = 30.0  # seconds

    def __init__(self, base: PathLike, lock_timeout: float = LOCK_TIMEOUT):
        self.base = Path(base).expanduser().resolve()
        self.lock_timeout = lock_timeout

    @property
    def watermark_path(self) -> Path:
        return self.base / WATERMARK_FILE

    @property
    def lock_file_path(self) -> Path:
        return self.base / SCAN_LOCK_FILE

    def exists(self) -> bool:
        return self.base.is_dir()

    def model_layout(self, model: Model) -> ModelLayout:
        return ModelLayout(self.base, model)

    def model_manifest_path(self, model_type: Union[str, ModelType], model_id: int) -> Path:
        return model_manifest_path(self.base, model_type, model_id)

    def version_manifest_path(self, model_type: Union[str, ModelType], model_id: int, version_id: int) -> Path:
        return version_manifest_path(self.base, model_type, model_id, version_id)

    def version_path(self, model_type: Union[str, ModelType], model_id: int, version_id: int) -> Path:
        return version_path(self.base, model_type, model_id, version_id)

    # =========================================================================
    # Locking
    # =========================================================================

    @contextmanager
    def lock(self, timeout: Optional[float] = None) -> Generator[None, None, None]:
        """
        Acquire the scan lock.

        Raises:
            ScanError: If the lock cannot be acquired.
        """
        if timeout is None:
            timeout = self.lock_timeout

        self.base.mkdir(parents=True, exist_ok=True)
        lock = filelock.FileLock(str(self.lock_file_path))
        try:
            lock.acquire(timeout=timeout)
        except filelock.Timeout:
            raise ScanError(
                f"Could not acquire scan lock within {timeout}s. "
                "Another scan may be in progress.",
                operation="scan",
                path=str(self.lock_file_path),
            )
        try:
            yield
        finally:
            lock.release()


def write_json(path: Path, data: Dict[str, Any]) -> None:
    """
    Write JSON file atomically.

    Uses write-to-temp-then-rename pattern for atomicity.
    """
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
        tmp_path.replace(path)
    finally:
        if tmp_path.exists():
            tmp_path.unlink()


def read_json(path: Path) -> Any:
    """Read JSON file."""
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)
