"""
Object Storage - put/get bytes at a key

Prompt payloads, attached assets and result locators are addressed as
s3://{bucket}/{key} regardless of backend, so downstream workers see one
addressing scheme. LocalObjectStore keeps objects as files under a root
directory; blocking file I/O runs in a worker thread.
"""

import asyncio
import json
import os
from typing import Any, Optional, Protocol

from config import get_logger
from exceptions import StorageError

logger = get_logger(__name__).bind(component="storage")


class ObjectStore(Protocol):
    bucket: str

    async def put_bytes(self, key: str, data: bytes, content_type: str = "application/json") -> str: ...

    async def get_bytes(self, key: str) -> Optional[bytes]: ...

    def url_for(self, key: str) -> str: ...


def encode_json(payload: Any) -> bytes:
    """Deterministic UTF-8 JSON: same payload always yields the same bytes"""
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, indent=2).encode("utf-8")


async def put_json(store: ObjectStore, key: str, payload: Any) -> str:
    return await store.put_bytes(key, encode_json(payload), content_type="application/json")


async def get_json(store: ObjectStore, key: str) -> Optional[Any]:
    data = await store.get_bytes(key)
    if data is None:
        return None
    try:
        return json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise StorageError("Stored object is not valid JSON", key=key, original_error=e) from e


class LocalObjectStore:
    """Filesystem-backed object store

    Args:
        root: Directory that holds one subdirectory per bucket
        bucket: Bucket label used in locators
    """

    def __init__(self, root: str, bucket: str):
        if not bucket or "/" in bucket:
            raise StorageError("Bucket must be a non-empty name without slashes", key=bucket)
        self.root = root
        self.bucket = bucket

    def url_for(self, key: str) -> str:
        return f"s3://{self.bucket}/{key}"

    def _path_for(self, key: str) -> str:
        clean = key.lstrip("/")
        if not clean or ".." in clean.split("/"):
            raise StorageError("Invalid object key", key=key)
        return os.path.join(self.root, self.bucket, *clean.split("/"))

    def _write(self, path: str, data: bytes) -> bool:
        """Write atomically. Returns False when identical content is already stored."""
        if os.path.exists(path):
            with open(path, "rb") as f:
                if f.read() == data:
                    return False
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
        return True

    def _read(self, path: str) -> Optional[bytes]:
        if not os.path.exists(path):
            return None
        with open(path, "rb") as f:
            return f.read()

    async def put_bytes(self, key: str, data: bytes, content_type: str = "application/json") -> str:
        path = self._path_for(key)
        try:
            written = await asyncio.to_thread(self._write, path, data)
        except OSError as e:
            logger.error("object write failed", key=key, error=str(e))
            raise StorageError("Failed to write object", key=key, original_error=e) from e

        logger.debug("object stored", key=key, size=len(data), unchanged=not written, content_type=content_type)
        return self.url_for(key)

    async def get_bytes(self, key: str) -> Optional[bytes]:
        path = self._path_for(key)
        try:
            return await asyncio.to_thread(self._read, path)
        except OSError as e:
            raise StorageError("Failed to read object", key=key, original_error=e) from e
