"""
Civitai Mirror Configuration Module

Central configuration for the mirror: base directory, database URL,
catalog API settings, scan and deletion settings.

Precedence: environment variables, then ~/.civitai-mirror/config.json,
then defaults.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

logger = logging.getLogger(__name__)

DEFAULT_EXTENSIONS = [".safetensors", ".ckpt", ".pt", ".pth", ".bin", ".onnx", ".gguf"]


def _default_data_path() -> Path:
    return Path(os.environ.get("CIVITAI_MIRROR_HOME", str(Path.home() / ".civitai-mirror"))).expanduser()


@dataclass
class APIConfig:
    """API configuration for the catalog."""
    civitai_token: Optional[str] = field(
        default_factory=lambda: os.environ.get("CIVITAI_API_TOKEN") or os.environ.get("CIVITAI_API_KEY")
    )
    civitai_base_url: str = "https://civitai.com/api/v1"

    # Rate limiting
    requests_per_minute: int = 30
    timeout: int = 30


@dataclass
class ScanConfig:
    """Discovery settings."""
    extensions: List[str] = field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    lock_timeout: float = 30.0


@dataclass
class DeletionConfig:
    confirmation_ttl_minutes: float = 30.0


@dataclass
class MirrorConfig:
    """Main configuration container."""
    data_path: Path = field(default_factory=_default_data_path)
    base_path: Path = field(default_factory=lambda: Path.home() / "civitai-models")
    database_url: Optional[str] = None
    api: APIConfig = field(default_factory=APIConfig)
    scan: ScanConfig = field(default_factory=ScanConfig)
    deletion: DeletionConfig = field(default_factory=DeletionConfig)

    @property
    def config_file(self) -> Path:
        return self.data_path / "config.json"

    @property
    def resolved_database_url(self) -> str:
        """Explicit URL or a SQLite file in the data directory."""
        if self.database_url:
            return self.database_url
        return f"sqlite:///{self.data_path / 'index.sqlite'}"

    def to_dict(self) -> dict:
        return {
            "base_path": str(self.base_path),
            "database_url": self.database_url,
            "api": {
                "civitai_token": self.api.civitai_token,
                "civitai_base_url": self.api.civitai_base_url,
                "requests_per_minute": self.api.requests_per_minute,
                "timeout": self.api.timeout,
            },
            "scan": {
                "extensions": self.scan.extensions,
                "lock_timeout": self.scan.lock_timeout,
            },
            "deletion": {
                "confirmation_ttl_minutes": self.deletion.confirmation_ttl_minutes,
            },
        }

    def save(self) -> None:
        """Save configuration to file."""
        self.data_path.mkdir(parents=True, exist_ok=True)
        with open(self.config_file, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, data_path: Optional[Path] = None) -> "MirrorConfig":
        """Load configuration from file, then apply environment overrides."""
        config = cls(data_path=data_path) if data_path else cls()
        if config.config_file.exists():
            try:
                with open(config.config_file) as f:
                    data = json.load(f)
                config._apply(data)
            except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"[Config] Could not load {config.config_file}, using defaults: {e}")

        env_base = os.environ.get("CIVITAI_MIRROR_BASE_PATH")
        if env_base:
            config.base_path = Path(env_base)
        env_db = os.environ.get("CIVITAI_MIRROR_DATABASE_URL")
        if env_db:
            config.database_url = env_db

        config.base_path = config.base_path.expanduser()
        return config

    def _apply(self, data: dict) -> None:
        if data.get("base_path"):
            self.base_path = Path(data["base_path"])
        if data.get("database_url"):
            self.database_url = data["database_url"]

        if "api" in data:
            api_data = data["api"]
            # Saved token wins over env
            if api_data.get("civitai_token"):
                self.api.civitai_token = api_data["civitai_token"]
            self.api.civitai_base_url = api_data.get("civitai_base_url", self.api.civitai_base_url)
            self.api.requests_per_minute = int(api_data.get("requests_per_minute", 30))
            self.api.timeout = int(api_data.get("timeout", 30))

        if "scan" in data:
            scan_data = data["scan"]
            self.scan.extensions = list(scan_data.get("extensions", DEFAULT_EXTENSIONS))
            self.scan.lock_timeout = float(scan_data.get("lock_timeout", 30.0))

        if "deletion" in data:
            self.deletion.confirmation_ttl_minutes = float(
                data["deletion"].get("confirmation_ttl_minutes", 30.0)
            )


# Global configuration instance
_config: Optional[MirrorConfig] = None


def get_config() -> MirrorConfig:
    """Get or create the global configuration instance."""
    global _config
    if _config is None:
        _config = MirrorConfig.load()
    return _config


def reset_config() -> None:
    """Reset global configuration (useful for testing)."""
    global _config
    _config = None
