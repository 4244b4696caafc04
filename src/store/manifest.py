"""
Civitai Mirror - Manifest Reader

Loads and validates the model and version manifests saved next to downloaded
files. Reading never raises: every outcome is one of ``ManifestOk``,
``MissingManifest`` or ``InvalidManifest``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple, Type, TypeVar, Union

from pydantic import BaseModel, ValidationError

from .errors import JsonParseError
from .layout import PathLike, model_manifest_path, read_json, version_manifest_path, write_json
from .models import ManifestKind, Model, ModelType, ModelVersion

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


@dataclass(frozen=True)
class ManifestOk:
    model: Model
    version: ModelVersion


@dataclass(frozen=True)
class MissingManifest:
    which: List[ManifestKind]
    paths: List[str] = field(default_factory=list)

    @property
    def reason(self) -> str:
        kinds = " and ".join(k.value for k in self.which)
        return f"Missing {kinds} manifest: {', '.join(self.paths)}"


@dataclass(frozen=True)
class InvalidManifest:
    which: ManifestKind
    path: str
    summary: str

    @property
    def reason(self) -> str:
        return f"Invalid {self.which.value} manifest {self.path}: {self.summary}"

    def to_error(self) -> JsonParseError:
        return JsonParseError(self.reason, self.path, self.summary)


ManifestResult = Union[ManifestOk, MissingManifest, InvalidManifest]


def summarize_validation_error(error: ValidationError) -> str:
    """Flatten a pydantic error list into ``loc: message`` pairs."""
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "<root>"
        parts.append(f"{loc}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)


def load_manifest(path: Path, schema: Type[M]) -> Tuple[Optional[M], Optional[str]]:
    """
    Read and validate one manifest.

    Returns:
        (instance, None) on success, (None, summary) on any failure.
    """
    try:
        data = read_json(path)
    except json.JSONDecodeError as e:
        return None, f"invalid JSON: {e}"
    except (OSError, UnicodeDecodeError) as e:
        return None, f"unreadable: {e}"

    try:
        return schema.model_validate(data), None
    except ValidationError as e:
        return None, summarize_validation_error(e)


class ManifestReader:
    """Resolves, reads and validates manifests for a mirror base directory."""

    def __init__(self, base: PathLike):
        self.base = Path(base)

    def paths(self, model_type: str, model_id: int, version_id: int) -> Tuple[Path, Path]:
        return (
            model_manifest_path(self.base, model_type, model_id),
            version_manifest_path(self.base, model_type, model_id, version_id),
        )

    def read(self, model_type: str, model_id: int, version_id: int) -> ManifestResult:
        """
        Load both manifests for a (type, model, version) triple.

        Existence is checked for each manifest independently before either
        is parsed, so a missing result lists every absent manifest.
        """
        model_path, version_path = self.paths(model_type, model_id, version_id)

        missing: List[ManifestKind] = []
        missing_paths: List[str] = []
        if not model_path.is_file():
            missing.append(ManifestKind.MODEL)
            missing_paths.append(str(model_path))
        if not version_path.is_file():
            missing.append(ManifestKind.VERSION)
            missing_paths.append(str(version_path))
        if missing:
            return MissingManifest(which=missing, paths=missing_paths)

        model, summary = load_manifest(model_path, Model)
        if model is None:
            return InvalidManifest(ManifestKind.MODEL, str(model_path), summary or "")
        if model.id != model_id:
            return InvalidManifest(
                ManifestKind.MODEL, str(model_path),
                f"id: manifest declares {model.id}, directory is {model_id}",
            )
        if model.type.value != model_type:
            return InvalidManifest(
                ManifestKind.MODEL, str(model_path),
                f"type: manifest declares {model.type.value}, directory is {model_type}",
            )

        version, summary = load_manifest(version_path, ModelVersion)
        if version is None:
            return InvalidManifest(ManifestKind.VERSION, str(version_path), summary or "")
        if version.id != version_id:
            return InvalidManifest(
                ManifestKind.VERSION, str(version_path),
                f"id: manifest declares {version.id}, directory is {version_id}",
            )
        if version.model_id is not None and version.model_id != model_id:
            return InvalidManifest(
                ManifestKind.VERSION, str(version_path),
                f"modelId: manifest declares {version.model_id}, directory is {model_id}",
            )

        return ManifestOk(model=model, version=version)


def write_manifests(base: PathLike, model: Model, version: ModelVersion) -> Tuple[Path, Path]:
    """
    Save the model and version manifests for a downloaded version.

    The model manifest is stored without versions; each version keeps its
    own manifest.
    """
    model_type = model.type.value if isinstance(model.type, ModelType) else str(model.type)
    model_path = model_manifest_path(base, model_type, model.id)
    version_path = version_manifest_path(base, model_type, model.id, version.id)

    model_data = model.to_json_dict()
    model_data["modelVersions"] = []
    version_data = version.to_json_dict()
    if version_data.get("modelId") is None:
        version_data["modelId"] = model.id

    write_json(model_path, model_data)
    write_json(version_path, version_data)
    logger.debug(f"[Manifest] Saved manifests for model {model.id} version {version.id}")
    return model_path, version_path
