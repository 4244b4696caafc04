"""
Pytest Configuration and Global Fixtures.

This file is automatically loaded by pytest and provides:
- Shared fixtures available to all tests
- Pytest markers configuration
- Isolation from the user's real configuration
"""

import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Generator

import pytest

# Ensure the project root is in Python path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


# =============================================================================
# Re-export fixtures from helpers module
# =============================================================================

from tests.helpers.fixtures import (
    # Classes
    FakeCivitaiClient,
    FakeClock,
    FakeModel,
    FakeModelVersion,
    FakeFile,
    FakeImage,
    TestMirror,
    # Functions
    build_test_model,
    image_url,
    set_mtime,
)


# =============================================================================
# Pytest Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "database: marks tests requiring database setup"
    )


# =============================================================================
# Function-Scoped Fixtures
# =============================================================================

@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch) -> Generator[None, None, None]:
    """Point configuration at a temporary home so no real config is read."""
    from config.settings import reset_config

    monkeypatch.setenv("CIVITAI_MIRROR_HOME", str(tmp_path / "home"))
    monkeypatch.delenv("CIVITAI_MIRROR_BASE_PATH", raising=False)
    monkeypatch.delenv("CIVITAI_MIRROR_DATABASE_URL", raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def base_dir(tmp_path: Path) -> Path:
    """Mirror base directory."""
    path = tmp_path / "mirror"
    path.mkdir()
    return path


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'index.sqlite'}"


@pytest.fixture
def database(db_url: str):
    from src.store.database import SqlDatabase

    db = SqlDatabase(db_url)
    yield db
    db.close()


@pytest.fixture
def mirror(base_dir: Path) -> TestMirror:
    return TestMirror(base_dir)


@pytest.fixture
def layout(base_dir: Path):
    from src.store.layout import MirrorLayout

    return MirrorLayout(base_dir)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def fake_civitai_client() -> FakeCivitaiClient:
    """Create a fresh FakeCivitaiClient instance."""
    return FakeCivitaiClient()


@pytest.fixture
def sample_model(fake_civitai_client: FakeCivitaiClient) -> FakeModel:
    """Checkpoint 100 with version 200, registered with the fake client."""
    model = build_test_model(model_id=100, version_ids=[200])
    fake_civitai_client.add_model(model)
    return model


@pytest.fixture
def store(base_dir: Path, db_url: str, fake_civitai_client: FakeCivitaiClient):
    """Store facade over a temporary mirror, database and fake catalog."""
    from src.store import Store

    instance = Store(base_path=base_dir, database_url=db_url, catalog=fake_civitai_client)
    yield instance
    instance.database.close()
