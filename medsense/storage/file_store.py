import asyncio
import hashlib
import hmac
import logging
import os
import time
from typing import Optional
from urllib.parse import quote
from medsense.config.settings import StorageConfig, settings
from medsense.core.errors import StorageError
from medsense.storage.base import ObjectStore

logger = logging.getLogger(__name__)

class LocalObjectStore(ObjectStore):
    """
    Implements ObjectStore on the local disk.
    - Stores uploaded report binaries under uploads_path/<key>.
    - Issues expiring HMAC-signed URLs served by the raw-file route.
    """

    def __init__(self, config: Optional[StorageConfig] = None, uploads_path: Optional[str] = None):
        self.config = config or settings.storage
        self.uploads_path = os.path.abspath(uploads_path or self.config.uploads_path)
        os.makedirs(self.uploads_path, exist_ok=True)

    def _path(self, key: str) -> str:
        if not key or key.startswith("/") or ".." in key.split("/"):
            raise StorageError(f"Invalid object key: {key!r}")
        path = os.path.abspath(os.path.join(self.uploads_path, key))
        if not path.startswith(self.uploads_path + os.sep):
            raise StorageError(f"Invalid object key: {key!r}")
        return path

    async def put(self, key: str, data: bytes) -> str:
        path = self._path(key)

        def _write():
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "wb") as f:
                f.write(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as e:
            raise StorageError(f"Could not store object {key}: {e}") from e
        return key

    async def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not os.path.exists(path):
            return None

        def _read():
            with open(path, "rb") as f:
                return f.read()

        try:
            return await asyncio.to_thread(_read)
        except OSError as e:
            raise StorageError(f"Could not read object {key}: {e}") from e

    async def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            if os.path.exists(path):
                await asyncio.to_thread(os.remove, path)
            parent = os.path.dirname(path)
            # Remove the per-document folder once it is empty
            if parent != self.uploads_path and os.path.isdir(parent) and not os.listdir(parent):
                os.rmdir(parent)
        except OSError as e:
            raise StorageError(f"Could not delete object {key}: {e}") from e

    def _signature(self, key: str, expires: int) -> str:
        message = f"{key}:{expires}".encode("utf-8")
        return hmac.new(self.config.signing_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()

    def signed_url(self, key: str, ttl: Optional[int] = None) -> str:
        self._path(key)
        expires = int(time.time()) + int(ttl if ttl is not None else self.config.signed_url_ttl)
        signature = self._signature(key, expires)
        return f"{self.config.signed_url_base.rstrip('/')}/{quote(key)}?expires={expires}&signature={signature}"

    def verify_signature(self, key: str, expires: int, signature: str, now: Optional[float] = None) -> bool:
        if (now if now is not None else time.time()) > expires:
            return False
        return hmac.compare_digest(self._signature(key, expires), signature or "")
