"""Configuration module for Civitai Mirror."""

from .settings import (
    get_config,
    reset_config,
    MirrorConfig,
    APIConfig,
    ScanConfig,
    DeletionConfig,
)

__all__ = [
    "get_config",
    "reset_config",
    "MirrorConfig",
    "APIConfig",
    "ScanConfig",
    "DeletionConfig",
]
