"""
Tests for the mirror layout

Path functions, the inverse path decomposition, name sanitizing and the
existence probes.
"""

import json

import filelock
import pytest

from src.store.errors import (
    ImageIdError,
    ScanError,
    UnknownFileError,
    UnknownMediaError,
    UnknownVersionError,
)
from src.store.layout import (
    ArtifactPath,
    MirrorLayout,
    files_dir,
    is_valid_filename,
    media_dir,
    model_manifest_path,
    model_path,
    parse_artifact_path,
    read_json,
    sanitize_filename,
    version_manifest_path,
    version_path,
    write_json,
)
from src.store.models import ModelType, extract_id_from_image_url
from tests.helpers.fixtures import FakeFile, build_test_model


class TestPathFunctions:
    """Tests for the pure path functions."""

    def test_model_and_version_paths(self, tmp_path):
        assert model_path(tmp_path, "Checkpoint", 100) == tmp_path / "Checkpoint" / "100"
        assert version_path(tmp_path, ModelType.LORA, 100, 200) == tmp_path / "LORA" / "100" / "200"

    def test_manifest_paths(self, tmp_path):
        assert model_manifest_path(tmp_path, "Checkpoint", 100) == (
            tmp_path / "Checkpoint" / "100" / "100.manifest.json"
        )
        assert version_manifest_path(tmp_path, "Checkpoint", 100, 200) == (
            tmp_path / "Checkpoint" / "100" / "200" / "200.manifest.json"
        )

    def test_files_and_media_dirs(self, tmp_path):
        assert files_dir(tmp_path, "VAE", 1, 2) == tmp_path / "VAE" / "1" / "2" / "files"
        assert media_dir(tmp_path, "VAE", 1, 2) == tmp_path / "VAE" / "1" / "2" / "media"

    def test_version_layout_file_and_media_paths(self, tmp_path):
        model = build_test_model().to_model()
        version_layout = MirrorLayout(tmp_path).model_layout(model).version_layout(200)

        assert version_layout.file_path(2001).name == "model.safetensors"
        assert version_layout.file_path(2001).parent == version_layout.files_dir
        assert version_layout.media_path(20001).name == "20001.jpeg"


class TestParseArtifactPath:
    """Tests for the inverse mapping."""

    def test_round_trip_for_every_declared_file(self, tmp_path):
        fake = build_test_model(
            model_type="LORA",
            version_ids=[200, 201],
            file_names=["a.safetensors", "b.pt", "config.yaml"],
        )
        model = fake.to_model()
        model_layout = MirrorLayout(tmp_path).model_layout(model)

        for version in model.model_versions:
            version_layout = model_layout.version_layout(version.id)
            for model_file in version.files:
                parsed = parse_artifact_path(tmp_path, version_layout.file_path(model_file.id))
                assert parsed == ArtifactPath("LORA", 100, version.id, "files", parsed.name)
                assert version.find_file(model_file.id).name == parsed.name

    def test_media_path(self, tmp_path):
        path = tmp_path / "Checkpoint" / "100" / "200" / "media" / "1743606.jpeg"
        parsed = parse_artifact_path(tmp_path, path)
        assert parsed.kind == "media"
        assert parsed.name == "1743606.jpeg"

    def test_nested_base_uses_segments_from_end(self, tmp_path):
        path = tmp_path / "extra" / "Checkpoint" / "100" / "200" / "files" / "m.safetensors"
        parsed = parse_artifact_path(tmp_path, path)
        assert parsed.model_type == "Checkpoint"
        assert parsed.model_id == 100

    @pytest.mark.parametrize("relative", [
        "Checkpoint/100/200/model.safetensors",
        "Checkpoint/abc/200/files/model.safetensors",
        "Checkpoint/100/v2/files/model.safetensors",
        "Checkpoint/100/200/other/model.safetensors",
        "100/200/files/model.safetensors",
        "model.safetensors",
    ])
    def test_non_artifact_paths_return_none(self, tmp_path, relative):
        assert parse_artifact_path(tmp_path, tmp_path / relative) is None

    def test_path_outside_base_returns_none(self, tmp_path):
        outside = tmp_path.parent / "elsewhere" / "Checkpoint" / "1" / "2" / "files" / "m.pt"
        assert parse_artifact_path(tmp_path / "mirror", outside) is None


class TestFilenames:
    """Tests for file name sanitizing."""

    def test_valid_name_unchanged(self):
        assert sanitize_filename("juggernautXL_v9.safetensors") == "juggernautXL_v9.safetensors"

    def test_invalid_characters_replaced(self):
        assert sanitize_filename('bad:name?<1>.safetensors') == "bad_name__1_.safetensors"

    def test_path_separators_replaced(self):
        assert sanitize_filename("sub/dir\\model.pt") == "sub_dir_model.pt"

    def test_trailing_dots_and_spaces_trimmed(self):
        assert sanitize_filename("model. ") == "model"

    def test_reserved_device_name_prefixed(self):
        assert not is_valid_filename("CON.txt")
        assert sanitize_filename("CON.txt") == "_CON.txt"

    def test_file_path_uses_sanitized_name(self, tmp_path):
        fake = build_test_model()
        fake.versions[0].files = [FakeFile(id=1, name="what?.safetensors")]
        version_layout = MirrorLayout(tmp_path).model_layout(fake.to_model()).version_layout(200)

        assert version_layout.file_path(1).name == "what_.safetensors"


class TestUnknownIds:
    """Looking up ids the version does not declare."""

    def test_unknown_file(self, tmp_path):
        version_layout = MirrorLayout(tmp_path).model_layout(build_test_model().to_model()).version_layout(200)
        with pytest.raises(UnknownFileError):
            version_layout.file_path(999)

    def test_unknown_media(self, tmp_path):
        version_layout = MirrorLayout(tmp_path).model_layout(build_test_model().to_model()).version_layout(200)
        with pytest.raises(UnknownMediaError):
            version_layout.media_path(999)

    def test_unknown_version_without_manifest(self, tmp_path):
        model = build_test_model().to_model()
        with pytest.raises(UnknownVersionError):
            MirrorLayout(tmp_path).model_layout(model).version_layout(999)


class TestFindVersionFallback:
    """Saved model manifests carry no versions."""

    def test_version_read_from_disk_and_cached(self, mirror):
        fake = build_test_model()
        mirror.write_manifests(fake, 200)
        model = fake.to_model()
        model.model_versions = []

        model_layout = mirror.layout.model_layout(model)
        version = model_layout.find_version(200)

        assert version.id == 200
        assert model.find_version(200) is version

    def test_corrupt_version_manifest(self, mirror):
        fake = build_test_model()
        mirror.write_manifests(fake, 200)
        mirror.layout.version_manifest_path("Checkpoint", 100, 200).write_text("{not json")
        model = fake.to_model()
        model.model_versions = []

        with pytest.raises(UnknownVersionError):
            mirror.layout.model_layout(model).find_version(200)


class TestExistenceProbes:
    """Tests for per-file and per-image existence."""

    def test_reports_each_declared_artifact(self, mirror):
        fake = build_test_model(file_names=["a.safetensors", "b.safetensors"], image_count=2)
        mirror.add_version(fake, 200, images=False)
        mirror.write_file(mirror.media_path(fake, 200, 20001), content=b"img")
        (mirror.file_path(fake, 200, "b.safetensors")).unlink()

        version_layout = mirror.layout.model_layout(fake.to_model()).version_layout(200)
        existence = version_layout.check_files_and_images()

        assert {e.id: e.exists for e in existence.files} == {2001: True, 2002: False}
        assert {e.id: e.exists for e in existence.images} == {20001: True, 20002: False}
        assert version_layout.check_files_on_disk() == [2001]

    def test_empty_version(self, tmp_path):
        fake = build_test_model(file_names=[], image_count=0)
        version_layout = MirrorLayout(tmp_path).model_layout(fake.to_model()).version_layout(200)

        existence = version_layout.check_files_and_images()
        assert existence.files == []
        assert existence.images == []


class TestImageIds:
    def test_id_from_url(self):
        url = "https://image.civitai.com/xG1n/cbe20dcf/width=1024/1743606.jpeg?token=x#frag"
        assert extract_id_from_image_url(url) == 1743606

    def test_non_numeric_name(self):
        with pytest.raises(ImageIdError):
            extract_id_from_image_url("https://image.civitai.com/a/b/preview.jpeg")

    def test_no_file_name(self):
        with pytest.raises(ImageIdError):
            extract_id_from_image_url("not a url")


class TestMirrorLayout:
    def test_lock_timeout_raises_scan_error(self, tmp_path, monkeypatch):
        def _busy(self, timeout=None, *args, **kwargs):
            raise filelock.Timeout(str(self.lock_file))

        monkeypatch.setattr(filelock.FileLock, "acquire", _busy)
        layout = MirrorLayout(tmp_path)

        with pytest.raises(ScanError) as exc_info:
            with layout.lock(timeout=0.01):
                pass
        assert exc_info.value.operation == "scan"

    def test_lock_released_after_use(self, tmp_path):
        layout = MirrorLayout(tmp_path)
        with layout.lock():
            pass
        with layout.lock(timeout=1):
            pass

    def test_write_json_is_atomic(self, tmp_path):
        path = tmp_path / "a" / "b.json"
        write_json(path, {"id": 1})

        assert read_json(path) == {"id": 1}
        assert not path.with_suffix(".json.tmp").exists()
        assert json.loads(path.read_text())["id"] == 1
