"""Blob storage for post and product images.

Objects are uploaded under a path and addressed afterwards by an opaque
reference, which can be turned into a download URL. Deleting blobs is not
supported: images of deleted posts and products are left in place.
"""

import logging
from abc import ABC, abstractmethod
from pathlib import Path, PurePosixPath
from typing import Dict, Optional

import aiofiles
import aiofiles.os

logger = logging.getLogger(__name__)

class StorageError(Exception):
    """Raised when an upload or URL lookup fails."""
    pass

def normalize_blob_path(path: str) -> str:
    """Validate a relative blob path and return it in canonical form.

    Raises:
        StorageError: If the path is empty, absolute or escapes the root
    """
    pure = PurePosixPath(path)
    if not path or pure.is_absolute() or '..' in pure.parts:
        raise StorageError(f"Invalid blob path: {path!r}")
    return str(pure)

class BlobStore(ABC):
    """Object store used for uploaded images."""

    @abstractmethod
    async def upload(self, path: str, data: bytes) -> str:
        """Store ``data`` under ``path`` and return a reference to it."""

    @abstractmethod
    async def get_download_url(self, ref: str) -> str:
        """Return a URL from which the object can be retrieved."""

    async def upload_and_get_url(self, path: str, data: bytes) -> str:
        ref = await self.upload(path, data)
        return await self.get_download_url(ref)

class LocalBlobStore(BlobStore):
    """Blob store writing files below a root directory."""

    def __init__(self, root: Optional[str] = None, base_url: Optional[str] = None):
        """Initialize the store.

        Args:
            root: Directory holding the blobs, defaults to settings ``blob_root``
            base_url: URL prefix for download URLs, defaults to settings ``blob_base_url``
        """
        from config import settings_conf

        self.root = Path(root or settings_conf['blob_root'])
        self.base_url = (base_url or settings_conf['blob_base_url']).rstrip('/')

    async def upload(self, path: str, data: bytes) -> str:
        ref = normalize_blob_path(path)
        target = self.root / ref
        try:
            await aiofiles.os.makedirs(target.parent, exist_ok=True)
            async with aiofiles.open(target, 'wb') as f:
                await f.write(data)
        except OSError as e:
            logger.error(f"Error writing blob {ref}: {e}")
            raise StorageError(f"Failed to upload {ref}: {e}")

        logger.debug(f"Stored {len(data)} bytes at {target}")
        return ref

    async def get_download_url(self, ref: str) -> str:
        ref = normalize_blob_path(ref)
        if not await aiofiles.os.path.exists(self.root / ref):
            raise StorageError(f"Blob not found: {ref}")
        return f"{self.base_url}/{ref}"

class MemoryBlobStore(BlobStore):
    """Blob store keeping objects in a dict."""

    def __init__(self, base_url: str = 'memory://blobs'):
        self.base_url = base_url.rstrip('/')
        self.objects: Dict[str, bytes] = {}

    async def upload(self, path: str, data: bytes) -> str:
        ref = normalize_blob_path(path)
        self.objects[ref] = bytes(data)
        return ref

    async def get_download_url(self, ref: str) -> str:
        if ref not in self.objects:
            raise StorageError(f"Blob not found: {ref}")
        return f"{self.base_url}/{ref}"

__all__ = [
    'BlobStore',
    'LocalBlobStore',
    'MemoryBlobStore',
    'StorageError',
    'normalize_blob_path'
]
