"""
Civitai API Client

Catalog lookups used by the mirror:
- Model and model version lookups, validated into catalog models
- Rate limiting and bearer-token authentication
"""

import logging
import os
import time
from typing import Any, Dict, Optional, Protocol

import requests
from pydantic import ValidationError

from ..store.errors import CatalogError
from ..store.models import Model, ModelVersion

logger = logging.getLogger(__name__)


class CatalogPort(Protocol):
    """Canonical model data source."""

    def get_model(self, model_id: int) -> Model:
        ...

    def get_model_version(self, version_id: int) -> ModelVersion:
        ...


class CivitaiClient:
    """
    Client for the Civitai REST API.

    Every failure (transport, HTTP status, payload shape) surfaces as
    ``CatalogError``.
    """

    BASE_URL = "https://civitai.com/api/v1"

    def __init__(
        self,
        api_key: Optional[str] = None,
        requests_per_minute: int = 30,
        timeout: int = 30,
        base_url: Optional[str] = None,
    ):
        self.api_key = api_key or os.environ.get("CIVITAI_API_TOKEN") or os.environ.get("CIVITAI_API_KEY")
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.requests_per_minute = requests_per_minute
        self.timeout = timeout
        self._last_request_time = 0.0
        self._request_interval = 60.0 / requests_per_minute if requests_per_minute > 0 else 0.0

        self.session = requests.Session()
        self.session.headers.update({
            "User-Agent": "Mozilla/5.0 (compatible; CivitaiMirror/1.0)",
            "Accept": "application/json",
        })
        if self.api_key:
            self.session.headers["Authorization"] = f"Bearer {self.api_key}"

    def _rate_limit(self) -> None:
        """Enforce rate limiting between requests."""
        elapsed = time.time() - self._last_request_time
        if elapsed < self._request_interval:
            time.sleep(self._request_interval - elapsed)
        self._last_request_time = time.time()

    def _get_json(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Make a rate-limited GET request and decode the JSON body."""
        self._rate_limit()

        url = f"{self.base_url}/{endpoint}"
        try:
            response = self.session.request("GET", url, params=params, timeout=self.timeout)
            response.raise_for_status()
            return response.json()
        except requests.HTTPError as e:
            status = e.response.status_code if e.response is not None else "?"
            raise CatalogError(f"Civitai request {endpoint} failed with HTTP {status}") from e
        except requests.RequestException as e:
            raise CatalogError(f"Civitai request {endpoint} failed: {e}") from e
        except ValueError as e:
            raise CatalogError(f"Civitai request {endpoint} returned invalid JSON: {e}") from e

    def get_model(self, model_id: int) -> Model:
        """Fetch a model with all of its versions."""
        data = self._get_json(f"models/{model_id}")
        try:
            return Model.model_validate(data)
        except ValidationError as e:
            raise CatalogError(f"Unexpected model payload for {model_id}: {e.error_count()} error(s)") from e

    def get_model_version(self, version_id: int) -> ModelVersion:
        """Fetch a single model version."""
        data = self._get_json(f"model-versions/{version_id}")
        try:
            return ModelVersion.model_validate(data)
        except ValidationError as e:
            raise CatalogError(f"Unexpected model version payload for {version_id}: {e.error_count()} error(s)") from e
