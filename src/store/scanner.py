"""
Civitai Mirror - Discovery Scanner

Finds model files inside the mirror and turns their paths into scan
candidates. Incremental scans only return files modified after the
watermark left by the previous completed scan.
"""

from __future__ import annotations

import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from .layout import FILES_DIR, MirrorLayout, PathLike, parse_artifact_path
from .models import Model, ScanCandidate, VersionOnDisk

logger = logging.getLogger(__name__)

SUPPORTED_MODEL_EXTENSIONS = (
    ".safetensors",
    ".ckpt",
    ".pt",
    ".pth",
    ".bin",
    ".onnx",
    ".gguf",
)


def normalize_extensions(extensions: Iterable[str]) -> tuple:
    """Lowercase, dot-prefixed, de-duplicated extensions."""
    seen = []
    for ext in extensions:
        ext = ext.strip().lower()
        if not ext:
            continue
        if not ext.startswith("."):
            ext = f".{ext}"
        if ext not in seen:
            seen.append(ext)
    return tuple(seen)


def has_model_files(version_dir: Path, extensions: Iterable[str] = SUPPORTED_MODEL_EXTENSIONS) -> bool:
    """Check if a version directory holds at least one model file under files/."""
    exts = normalize_extensions(extensions)
    directory = version_dir / FILES_DIR
    if not directory.is_dir():
        return False
    for entry in directory.iterdir():
        if entry.is_file() and entry.suffix.lower() in exts:
            return True
    return False


def check_model_on_disk(base: PathLike, model: Model) -> List[VersionOnDisk]:
    """
    Report which versions of a catalog model have files on disk.

    Versions without any declared file on disk are left out.
    """
    layout = MirrorLayout(base).model_layout(model)
    on_disk: List[VersionOnDisk] = []
    for version in model.model_versions:
        file_ids = layout.version_layout(version.id).check_files_on_disk()
        if file_ids:
            on_disk.append(VersionOnDisk(version_id=version.id, files_on_disk=file_ids))
    return on_disk


class DiscoveryScanner:
    """
    Walks the mirror base directory for model files.

    Unreadable directories and files are logged and skipped; paths that do
    not fit the artifact layout are silently dropped.
    """

    def __init__(
        self,
        layout: MirrorLayout,
        extensions: Iterable[str] = SUPPORTED_MODEL_EXTENSIONS,
    ):
        self.layout = layout
        self.extensions = normalize_extensions(extensions)

    # =========================================================================
    # Watermark
    # =========================================================================

    def read_watermark(self) -> Optional[datetime]:
        """Time of the last completed scan, or None."""
        path = self.layout.watermark_path
        if not path.exists():
            return None
        try:
            text = path.read_text(encoding="utf-8").strip()
            watermark = datetime.fromisoformat(text)
        except (OSError, ValueError) as e:
            logger.warning(f"[Scanner] Ignoring unreadable watermark {path}: {e}")
            return None
        if watermark.tzinfo is None:
            watermark = watermark.replace(tzinfo=timezone.utc)
        return watermark

    def write_watermark(self, when: datetime) -> None:
        """Persist the watermark atomically."""
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        path = self.layout.watermark_path
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(when.isoformat() + "\n", encoding="utf-8")
        tmp_path.replace(path)

    # =========================================================================
    # Walk
    # =========================================================================

    def iter_model_files(self) -> Iterator[Path]:
        """All files under the base directory with a model extension."""

        def _on_error(error: OSError) -> None:
            logger.warning(f"[Scanner] Cannot read {error.filename}: {error.strerror}")

        for dirpath, _dirnames, filenames in os.walk(self.layout.base, onerror=_on_error):
            for filename in filenames:
                if os.path.splitext(filename)[1].lower() in self.extensions:
                    yield Path(dirpath) / filename

    def discover(self, since: Optional[datetime] = None) -> List[ScanCandidate]:
        """
        Scan for candidates.

        Args:
            since: Only keep files modified strictly after this time.
                   None means a full scan.

        Returns:
            Candidates in walk order.
        """
        candidates: List[ScanCandidate] = []
        for path in self.iter_model_files():
            info = parse_artifact_path(self.layout.base, path)
            if info is None or info.kind != FILES_DIR:
                continue

            try:
                mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            except OSError as e:
                logger.warning(f"[Scanner] Cannot stat {path}: {e}")
                continue

            if since is not None and mtime <= since:
                continue

            candidates.append(ScanCandidate(
                model_type=info.model_type,
                model_id=info.model_id,
                version_id=info.version_id,
                file_name=info.name,
                path=str(path),
                mtime=mtime,
            ))

        logger.debug(
            f"[Scanner] Discovered {len(candidates)} candidate(s) under {self.layout.base}"
            + (f" modified after {since.isoformat()}" if since else "")
        )
        return candidates
