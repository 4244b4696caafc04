"""
Test fixtures and helpers for the Civitai mirror tests.

Provides:
- Deterministic catalog payload builders
- Fake Civitai client for offline testing
- On-disk mirror builder writing manifests, model files and media
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from src.store.errors import CatalogError
from src.store.layout import MirrorLayout
from src.store.manifest import write_manifests
from src.store.models import Model, ModelVersion


def image_url(image_id: int, ext: str = "jpeg") -> str:
    """Catalog-style image URL whose file name is the image id."""
    return f"https://image.civitai.com/xG1nkqKTMzGDvpLrqFT7WA/abc123/width=450/{image_id}.{ext}"


@dataclass
class FakeFile:
    """Fake Civitai file for testing."""
    id: int
    name: str
    size_kb: float = 1024.0
    sha256: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "name": self.name,
            "sizeKB": self.size_kb,
            "type": "Model",
            "downloadUrl": f"https://civitai.com/api/download/models/{self.id}",
        }
        if self.sha256:
            result["hashes"] = {"SHA256": self.sha256.upper()}
        return result


@dataclass
class FakeImage:
    id: int
    ext: str = "jpeg"
    with_id: bool = True
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "url": self.url or image_url(self.id, self.ext),
            "width": 512,
            "height": 768,
            "nsfwLevel": 1,
            "type": "image",
        }
        if self.with_id:
            result["id"] = self.id
        return result


@dataclass
class FakeModelVersion:
    """Fake Civitai model version for testing."""
    id: int
    model_id: int
    name: str = "v1.0"
    base_model: str = "SDXL 1.0"
    trained_words: List[str] = field(default_factory=list)
    files: List[FakeFile] = field(default_factory=list)
    images: List[FakeImage] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "modelId": self.model_id,
            "name": self.name,
            "baseModel": self.base_model,
            "baseModelType": "Standard",
            "nsfwLevel": 1,
            "publishedAt": "2024-01-01T00:00:00.000Z",
            "trainedWords": self.trained_words,
            "files": [f.to_dict() for f in self.files],
            "images": [i.to_dict() for i in self.images],
        }

    def to_version(self) -> ModelVersion:
        return ModelVersion.model_validate(self.to_dict())


@dataclass
class FakeModel:
    """Fake Civitai model for testing."""
    id: int
    name: str
    type: str = "Checkpoint"
    tags: List[str] = field(default_factory=lambda: ["base model", "photorealistic"])
    creator: Optional[str] = "tester"
    versions: List[FakeModelVersion] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "description": f"<p>{self.name}</p>",
            "nsfw": False,
            "nsfwLevel": 1,
            "poi": False,
            "tags": self.tags,
            "modelVersions": [v.to_dict() for v in self.versions],
        }
        if self.creator:
            result["creator"] = {"username": self.creator, "image": None}
        return result

    def to_model(self) -> Model:
        return Model.model_validate(self.to_dict())

    def version(self, version_id: int) -> FakeModelVersion:
        return next(v for v in self.versions if v.id == version_id)


def build_test_model(
    model_id: int = 100,
    version_ids: Sequence[int] = (200,),
    name: str = "TestModel",
    model_type: str = "Checkpoint",
    file_names: Sequence[str] = ("model.safetensors",),
    image_count: int = 1,
) -> FakeModel:
    """
    Build a fake model with deterministic ids.

    File ids are ``version_id * 10 + n``; image ids ``version_id * 100 + n``.
    """
    versions = []
    for version_id in version_ids:
        versions.append(FakeModelVersion(
            id=version_id,
            model_id=model_id,
            name=f"v{version_id}",
            files=[
                FakeFile(id=version_id * 10 + n, name=file_name)
                for n, file_name in enumerate(file_names, start=1)
            ],
            images=[FakeImage(id=version_id * 100 + n) for n in range(1, image_count + 1)],
        ))
    return FakeModel(id=model_id, name=name, type=model_type, versions=versions)


class FakeCivitaiClient:
    """
    Fake Civitai client for offline testing.

    Usage:
        client = FakeCivitaiClient()
        client.add_model(build_test_model(model_id=100, version_ids=[200]))
        model = client.get_model(100)
    """

    def __init__(self):
        self.models: Dict[int, FakeModel] = {}
        self.versions: Dict[int, FakeModelVersion] = {}
        self.calls: List[str] = []

    def add_model(self, model: FakeModel) -> None:
        """Add a fake model."""
        self.models[model.id] = model
        for version in model.versions:
            self.versions[version.id] = version

    def get_model(self, model_id: int) -> Model:
        self.calls.append(f"models/{model_id}")
        if model_id not in self.models:
            raise CatalogError(f"Model not found: {model_id}")
        return self.models[model_id].to_model()

    def get_model_version(self, version_id: int) -> ModelVersion:
        self.calls.append(f"model-versions/{version_id}")
        if version_id not in self.versions:
            raise CatalogError(f"Version not found: {version_id}")
        return self.versions[version_id].to_version()


class TestMirror:
    """
    Builds mirror contents under a base directory.

    Usage:
        mirror = TestMirror(tmp_path / "mirror")
        model = build_test_model()
        mirror.add_version(model, 200)
    """

    __test__ = False

    def __init__(self, base: Path):
        self.base = Path(base)
        self.base.mkdir(parents=True, exist_ok=True)
        self.layout = MirrorLayout(self.base)

    def version_dir(self, model: FakeModel, version_id: int) -> Path:
        return self.layout.version_path(model.type, model.id, version_id)

    def file_path(self, model: FakeModel, version_id: int, file_name: str) -> Path:
        return self.version_dir(model, version_id) / "files" / file_name

    def media_path(self, model: FakeModel, version_id: int, image_id: int, ext: str = "jpeg") -> Path:
        return self.version_dir(model, version_id) / "media" / f"{image_id}.{ext}"

    def write_manifests(self, model: FakeModel, version_id: int) -> None:
        write_manifests(self.base, model.to_model(), model.version(version_id).to_version())

    def add_version(
        self,
        model: FakeModel,
        version_id: int,
        manifests: bool = True,
        files: bool = True,
        images: bool = True,
        mtime: Optional[datetime] = None,
    ) -> List[Path]:
        """
        Write manifests, model files and media for one version.

        Returns:
            Paths of the written model files.
        """
        version = model.version(version_id)
        if manifests:
            self.write_manifests(model, version_id)

        written = []
        if files:
            for model_file in version.files:
                written.append(self.write_file(self.file_path(model, version_id, model_file.name), mtime))
        if images:
            for image in version.images:
                self.write_file(self.media_path(model, version_id, image.id, image.ext), mtime, b"\xff\xd8\xff")
        return written

    @staticmethod
    def write_file(path: Path, mtime: Optional[datetime] = None, content: bytes = b"weights") -> Path:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
        if mtime is not None:
            set_mtime(path, mtime)
        return path


def set_mtime(path: Path, when: datetime) -> None:
    ts = when.timestamp()
    os.utime(path, (ts, ts))


class FakeClock:
    """Settable UTC clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)
