"""
Civitai Mirror - Data Models

Pydantic v2 models for catalog snapshots (model / version manifests) and for
the summaries returned by scan, consistency, repair and deletion operations.

Catalog models accept the catalog's camelCase JSON through aliases and keep
unknown keys, so a manifest can be replayed into the database unchanged.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict, Field

from .errors import ImageIdError


# =============================================================================
# Enums
# =============================================================================

class ModelType(str, Enum):
    """Model types known to the catalog."""
    CHECKPOINT = "Checkpoint"
    TEXTUAL_INVERSION = "TextualInversion"
    HYPERNETWORK = "Hypernetwork"
    AESTHETIC_GRADIENT = "AestheticGradient"
    LORA = "LORA"
    CONTROLNET = "Controlnet"
    POSES = "Poses"
    LOCON = "LoCon"
    DORA = "DoRA"
    OTHER = "Other"
    MOTION_MODULE = "MotionModule"
    UPSCALER = "Upscaler"
    VAE = "VAE"
    WILDCARDS = "Wildcards"
    WORKFLOWS = "Workflows"
    DETECTION = "Detection"


class ManifestKind(str, Enum):
    """Which of the two manifests a result refers to."""
    MODEL = "model"
    VERSION = "version"


# =============================================================================
# URL Helpers
# =============================================================================

def extract_filename_from_url(url: str) -> Optional[str]:
    """Last non-empty path segment of a URL, without query or fragment."""
    parsed = urlparse(url)
    if not parsed.scheme or not parsed.netloc:
        return None
    parts = [p for p in parsed.path.split("/") if p.strip()]
    if not parts:
        return None
    return parts[-1]


def remove_file_extension(filename: str) -> str:
    """Strip the last extension; names without a dot are returned as is."""
    dot = filename.rfind(".")
    if dot <= 0:
        return filename
    return filename[:dot]


def extract_id_from_image_url(url: str) -> int:
    """
    Extract the numeric image id from a catalog image URL.

    Example:
        https://image.civitai.com/xG1n/cbe20dcf/width=1024/1743606.jpeg -> 1743606

    Raises:
        ImageIdError: If the URL has no file name or it is not an integer.
    """
    filename = extract_filename_from_url(url)
    if filename is None:
        raise ImageIdError(url, "URL has no file name")
    stem = remove_file_extension(filename)
    try:
        return int(stem)
    except ValueError:
        raise ImageIdError(url, f"'{stem}' is not an integer")


# =============================================================================
# Catalog Models (manifest shapes)
# =============================================================================

class CatalogModel(BaseModel):
    """Base for catalog payloads: camelCase aliases, unknown keys kept."""
    model_config = ConfigDict(
        populate_by_name=True,
        extra="allow",
        protected_namespaces=(),
    )

    def to_json_dict(self) -> Dict[str, Any]:
        """Serialize back to the catalog's JSON shape."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=False)


class FileHashes(CatalogModel):
    sha256: Optional[str] = Field(default=None, alias="SHA256")
    crc32: Optional[str] = Field(default=None, alias="CRC32")
    blake3: Optional[str] = Field(default=None, alias="BLAKE3")
    autov1: Optional[str] = Field(default=None, alias="AutoV1")
    autov2: Optional[str] = Field(default=None, alias="AutoV2")
    autov3: Optional[str] = Field(default=None, alias="AutoV3")


class ModelFile(CatalogModel):
    """A downloadable file of a model version."""
    id: int
    size_kb: float = Field(alias="sizeKB")
    name: str
    type: str = "Model"
    download_url: str = Field(alias="downloadUrl")
    hashes: Optional[FileHashes] = None


class ModelImage(CatalogModel):
    """A preview image or video of a model version."""
    id: Optional[int] = None
    url: str
    width: int = 0
    height: int = 0
    hash: Optional[str] = None
    nsfw_level: int = Field(default=0, alias="nsfwLevel")
    type: Literal["image", "video"] = "image"

    def resolve_id(self) -> int:
        """Explicit id, or the id parsed from the URL."""
        if self.id is not None:
            return self.id
        return extract_id_from_image_url(self.url)

    def media_filename(self) -> str:
        """On-disk file name under ``media/``: ``<imageId>.<ext>``."""
        image_id = self.resolve_id()
        filename = extract_filename_from_url(self.url)
        ext = ""
        if filename:
            stem = remove_file_extension(filename)
            ext = filename[len(stem):]
        return f"{image_id}{ext or '.jpg'}"


class ModelVersion(CatalogModel):
    """A catalog model version snapshot."""
    id: int
    model_id: Optional[int] = Field(default=None, alias="modelId")
    name: str
    base_model: str = Field(alias="baseModel")
    base_model_type: Optional[str] = Field(default=None, alias="baseModelType")
    nsfw_level: int = Field(default=0, alias="nsfwLevel")
    published_at: Optional[str] = Field(default=None, alias="publishedAt")
    description: Optional[str] = None
    trained_words: List[str] = Field(default_factory=list, alias="trainedWords")
    files: List[ModelFile] = Field(default_factory=list)
    images: List[ModelImage] = Field(default_factory=list)

    def find_file(self, file_id: int) -> Optional[ModelFile]:
        return next((f for f in self.files if f.id == file_id), None)

    def find_image(self, image_id: int) -> Optional[ModelImage]:
        for image in self.images:
            try:
                if image.resolve_id() == image_id:
                    return image
            except ImageIdError:
                continue
        return None


class Creator(CatalogModel):
    username: str
    image: Optional[str] = None


class Model(CatalogModel):
    """A catalog model snapshot."""
    id: int
    name: str
    type: ModelType
    description: Optional[str] = None
    nsfw: bool = False
    nsfw_level: int = Field(default=0, alias="nsfwLevel")
    poi: bool = False
    creator: Optional[Creator] = None
    tags: List[str] = Field(default_factory=list)
    model_versions: List[ModelVersion] = Field(default_factory=list, alias="modelVersions")

    def find_version(self, version_id: int) -> Optional[ModelVersion]:
        return next((v for v in self.model_versions if v.id == version_id), None)


# =============================================================================
# Database Record View
# =============================================================================

class VersionRecord(BaseModel):
    """Detached view of a ModelVersion row and its children."""
    model_config = ConfigDict(protected_namespaces=())

    version_id: int
    model_id: int
    model_type: str
    name: str
    file_ids: List[int] = Field(default_factory=list)
    image_ids: List[int] = Field(default_factory=list)
    # Ids whose row records the artifact as present on disk
    files_on_disk: List[int] = Field(default_factory=list)
    images_on_disk: List[int] = Field(default_factory=list)
    file_names: Dict[int, str] = Field(default_factory=dict)
    image_urls: Dict[int, str] = Field(default_factory=dict)


class VersionPage(BaseModel):
    """One page of indexed versions, ordered by version id."""

    items: List[VersionRecord] = Field(default_factory=list)
    page: int = 1
    page_size: int = 20
    total_items: int = 0
    total_pages: int = 0


class RecordDeleteResult(BaseModel):
    """Outcome of removing one ModelVersion row."""
    model_config = ConfigDict(protected_namespaces=())

    deleted: bool
    model_deleted: bool = False
    file_count: int = 0
    image_count: int = 0


# =============================================================================
# Scan Models
# =============================================================================

class ScanOptions(BaseModel):
    """Options for a scan-and-sync run."""
    incremental: bool = True
    check_consistency: bool = False
    repair_database: bool = False


class ScanCandidate(BaseModel):
    """A model file whose path fits the artifact layout."""
    model_config = ConfigDict(protected_namespaces=())

    model_type: str
    model_id: int
    version_id: int
    file_name: str
    path: str
    mtime: Optional[datetime] = None


class FailedFile(BaseModel):
    path: str
    reason: str


class ConsistencyReport(BaseModel):
    """Consistency state of one tracked model version."""
    model_config = ConfigDict(protected_namespaces=())

    model_id: int
    version_id: int
    missing_files: List[str] = Field(default_factory=list)
    extra_files: List[str] = Field(default_factory=list)
    json_valid: bool
    database_record_exists: bool

    @property
    def is_consistent(self) -> bool:
        return (
            self.json_valid
            and self.database_record_exists
            and not self.missing_files
            and not self.extra_files
        )


class ScanResult(BaseModel):
    """Summary of a scan-and-sync run."""
    files_scanned: int = 0
    new_records_added: int = 0
    existing_records_found: int = 0
    repaired_records: int = 0
    scan_duration_ms: int = 0
    incremental: bool = True
    watermark: Optional[str] = None
    failed_files: List[FailedFile] = Field(default_factory=list)
    skipped_files: List[FailedFile] = Field(default_factory=list)
    consistency: List[ConsistencyReport] = Field(default_factory=list)


class RepairResult(BaseModel):
    """Summary of a repair run."""
    repaired: int = 0
    failed: int = 0
    total: int = 0
    errors: List[str] = Field(default_factory=list)


# =============================================================================
# Disk Status Models
# =============================================================================

class ExistenceEntry(BaseModel):
    id: int
    exists: bool


class VersionExistence(BaseModel):
    files: List[ExistenceEntry] = Field(default_factory=list)
    images: List[ExistenceEntry] = Field(default_factory=list)


class VersionOnDisk(BaseModel):
    """A model version with at least one file on disk."""
    version_id: int
    files_on_disk: List[int] = Field(default_factory=list)


# =============================================================================
# Deletion Models
# =============================================================================

class DeletionDetails(BaseModel):
    """What a deletion of one model version would remove."""
    model_config = ConfigDict(protected_namespaces=())

    version_id: int
    model_id: int
    model_name: str
    version_name: str
    directory_path: str
    file_count: int = 0
    image_count: int = 0
    exists: bool = False


class DeletionConfirmation(BaseModel):
    """Returned by a deletion request; the token is needed to confirm."""
    token: str
    expires_at: datetime
    items: List[DeletionDetails] = Field(default_factory=list)


class VersionDeleteResult(BaseModel):
    """Outcome of deleting one model version."""
    model_config = ConfigDict(protected_namespaces=())

    version_id: int
    database_deleted: bool = False
    files_deleted: bool = False
    model_deleted: bool = False
    deleted_files: int = 0
    deleted_images: int = 0


class BatchItemResult(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    version_id: int
    success: bool
    error: Optional[str] = None
    database_deleted: Optional[bool] = None
    files_deleted: Optional[bool] = None
    model_deleted: Optional[bool] = None
    deleted_files: Optional[int] = None
    deleted_images: Optional[int] = None


class BatchDeleteResult(BaseModel):
    total: int
    succeeded: int
    failed: int
    results: List[BatchItemResult] = Field(default_factory=list)


class ConfirmationStats(BaseModel):
    active_tokens: int = 0
    total_items: int = 0
    oldest_expiration: Optional[datetime] = None
    newest_expiration: Optional[datetime] = None
