"""API clients for external services."""

from .civitai_client import CatalogPort, CivitaiClient

__all__ = [
    "CatalogPort",
    "CivitaiClient",
]
