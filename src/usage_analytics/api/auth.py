"""
API key checks for the ingestion boundary.
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from typing import Dict, Optional

from aiohttp import web

from ..utils.errors import AuthenticationError, AuthorizationError
from ..utils.logging import get_logger

logger = get_logger("usage-analytics.api.auth")

API_KEY_HEADER = "X-API-Key"


def hash_key(key: str) -> str:
    return hashlib.sha256(key.encode()).hexdigest()


class ApiKeyValidator(ABC):
    """Maps an API key to the project it may write to."""

    @abstractmethod
    async def project_for_key(self, key: str) -> Optional[str]:
        """Project id for ``key``, or None when the key is unknown."""

    async def authorize(self, key: Optional[str], project_id: Optional[str]) -> str:
        """
        Check that ``key`` may write to ``project_id``.

        Raises:
            AuthenticationError: Missing or unknown key
            AuthorizationError: Key belongs to another project
        """
        if not key:
            raise AuthenticationError(f"Missing {API_KEY_HEADER} header")
        key_project = await self.project_for_key(key)
        if key_project is None:
            raise AuthenticationError("Invalid API key")
        if project_id is not None and not hmac.compare_digest(key_project, project_id):
            logger.warning("api_key_project_mismatch", key_project=key_project, project_id=project_id)
            raise AuthorizationError("API key is not valid for this project")
        return key_project


class StaticApiKeyValidator(ApiKeyValidator):
    """Validator over a fixed ``key -> project_id`` mapping; keys are kept hashed."""

    def __init__(self, keys: Dict[str, str]):
        self._projects = {hash_key(key): project_id for key, project_id in keys.items()}

    async def project_for_key(self, key: str) -> Optional[str]:
        return self._projects.get(hash_key(key))

    def add_key(self, key: str, project_id: str) -> None:
        self._projects[hash_key(key)] = project_id

    def revoke_key(self, key: str) -> bool:
        return self._projects.pop(hash_key(key), None) is not None


def client_ip(request: web.Request) -> Optional[str]:
    """Client address, preferring proxy headers."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    return request.remote
