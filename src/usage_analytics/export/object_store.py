"""
Object storage for finished export files.
"""

import hashlib
import hmac
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Callable, Dict, Optional, Union
from urllib.parse import quote, urlencode

import aiofiles
import aiofiles.os

from ..utils.errors import StorageError
from ..utils.logging import get_logger

logger = get_logger("usage-analytics.export.storage")


class ObjectStore(ABC):
    """Key/bytes store that can hand out expiring download links."""

    @abstractmethod
    async def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        """Store ``data`` under ``key``, replacing any previous object."""

    @abstractmethod
    async def generate_signed_url(self, key: str, ttl_seconds: int) -> str:
        """Return a download URL valid for ``ttl_seconds``."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove the object; missing keys are ignored."""

    @abstractmethod
    async def read(self, key: str) -> bytes:
        """Return the object's bytes."""


class URLSigner:
    """HMAC-SHA256 signatures over ``key`` and expiry."""

    def __init__(self, secret: str, clock: Optional[Callable[[], float]] = None):
        self.secret = secret.encode()
        self.clock = clock or time.time

    def signature(self, key: str, expires: int) -> str:
        message = f"{key}:{expires}".encode()
        return hmac.new(self.secret, message, hashlib.sha256).hexdigest()

    def sign(self, base_url: str, key: str, ttl_seconds: int) -> str:
        expires = int(self.clock()) + ttl_seconds
        query = urlencode({"expires": expires, "signature": self.signature(key, expires)})
        return f"{base_url.rstrip('/')}/{quote(key)}?{query}"

    def verify(self, key: str, expires: Union[int, str], signature: str) -> bool:
        """True when the signature matches and the link has not expired."""
        try:
            expires = int(expires)
        except (TypeError, ValueError):
            return False
        if expires < self.clock():
            return False
        return hmac.compare_digest(self.signature(key, expires), signature or "")


class InMemoryObjectStore(ObjectStore):
    """Objects held in a dict."""

    def __init__(
        self,
        base_url: str = "memory://exports",
        secret: str = "in-memory",
        clock: Optional[Callable[[], float]] = None
    ):
        self.base_url = base_url
        self.signer = URLSigner(secret, clock)
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, Optional[str]] = {}

    async def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        self.objects[key] = bytes(data)
        self.content_types[key] = content_type

    async def generate_signed_url(self, key: str, ttl_seconds: int) -> str:
        if key not in self.objects:
            raise StorageError(f"Object {key} does not exist")
        return self.signer.sign(self.base_url, key, ttl_seconds)

    async def delete(self, key: str) -> None:
        self.objects.pop(key, None)
        self.content_types.pop(key, None)

    async def read(self, key: str) -> bytes:
        try:
            return self.objects[key]
        except KeyError:
            raise StorageError(f"Object {key} does not exist")

    def verify_signature(self, key: str, expires: Union[int, str], signature: str) -> bool:
        return self.signer.verify(key, expires, signature)


class LocalObjectStore(ObjectStore):
    """Objects written under a local directory, served by the API's download route."""

    def __init__(
        self,
        root: Union[str, Path],
        base_url: str,
        secret: str,
        clock: Optional[Callable[[], float]] = None
    ):
        self.root = Path(root).expanduser()
        self.base_url = base_url
        self.signer = URLSigner(secret, clock)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Invalid object key: {key}")
        return path

    async def upload(self, key: str, data: bytes, content_type: Optional[str] = None) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, 'wb') as f:
                await f.write(data)
        except OSError as e:
            raise StorageError(f"Failed to write {key}", cause=e) from e
        logger.debug("object_uploaded", key=key, size=len(data))

    async def generate_signed_url(self, key: str, ttl_seconds: int) -> str:
        if not self._path(key).exists():
            raise StorageError(f"Object {key} does not exist")
        return self.signer.sign(self.base_url, key, ttl_seconds)

    async def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            await aiofiles.os.remove(path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Failed to delete {key}", cause=e) from e

    async def read(self, key: str) -> bytes:
        path = self._path(key)
        try:
            async with aiofiles.open(path, 'rb') as f:
                return await f.read()
        except FileNotFoundError:
            raise StorageError(f"Object {key} does not exist")

    def verify_signature(self, key: str, expires: Union[int, str], signature: str) -> bool:
        return self.signer.verify(key, expires, signature)


def create_object_store(
    backend: str,
    root: Union[str, Path],
    base_url: str,
    secret: str
) -> ObjectStore:
    if backend == "memory":
        return InMemoryObjectStore(base_url=base_url, secret=secret)
    if backend == "local":
        return LocalObjectStore(root, base_url, secret)
    raise StorageError(f"Unknown object store backend: {backend}")
