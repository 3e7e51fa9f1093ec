"""
Persistence for collection documents

Two modes, fixed when an engine is created:

* durable   - the document lives in a blob store and a per-owner pointer
              record says where; every mutation rewrites both.
* transient - the document only exists in process memory under a
              ``memory:<owner>`` location; nothing is written anywhere.

The blob write and the pointer update are not one transaction. A crash
between the two leaves the pointer on the previous blob; nothing here tries
to repair that.
"""

import json
import threading
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Dict, Optional, Protocol
from urllib.parse import unquote, urlparse
from urllib.request import url2pathname

import httpx
from loguru import logger
from pydantic import BaseModel

from .errors import PersistenceError, UpstreamUnavailableError

MEMORY_PREFIX = "memory:"
CONTENT_TYPE = "text/xml"


def memory_location(owner_id: str) -> str:
    return f"{MEMORY_PREFIX}{owner_id}"


def blob_pathname(owner_id: str) -> str:
    return f"collections/{owner_id}/collection.nml"


class PersistenceMode(str, Enum):
    DURABLE = "durable"
    TRANSIENT = "transient"

    @classmethod
    def for_location(cls, location: str) -> "PersistenceMode":
        return cls.TRANSIENT if location.startswith(MEMORY_PREFIX) else cls.DURABLE


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------

class BlobWrite(BaseModel):
    url: str


class BlobStore(Protocol):
    async def put(self, key: str, data: bytes, content_type: str) -> BlobWrite:
        ...


class PointerStore(Protocol):
    async def update(self, owner_id: str, document_location: str) -> None:
        ...

    async def get(self, owner_id: str) -> Optional[str]:
        ...


class LocalBlobStore:
    """Blob store on the local filesystem. Keys are relative paths; writes overwrite."""

    def __init__(self, base_dir: Path) -> None:
        self.base_dir = Path(base_dir).resolve()

    async def put(self, key: str, data: bytes, content_type: str = CONTENT_TYPE) -> BlobWrite:
        target = (self.base_dir / key).resolve()
        if self.base_dir not in target.parents:
            raise ValueError(f"Blob key escapes the store: {key}")
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp = target.with_name(target.name + ".tmp")
        tmp.write_bytes(data)
        tmp.replace(target)
        logger.debug(f"Wrote {len(data)} bytes ({content_type}) to {target}")
        return BlobWrite(url=target.as_uri())


class JsonPointerStore:
    """Owner -> document location records kept in one JSON file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        return json.loads(self.path.read_text(encoding="utf-8"))

    async def update(self, owner_id: str, document_location: str) -> None:
        with self._lock:
            records = self._read()
            records[owner_id] = {
                "collection_path": document_location,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(records, indent=2), encoding="utf-8")

    async def get(self, owner_id: str) -> Optional[str]:
        with self._lock:
            record = self._read().get(owner_id)
        return record["collection_path"] if record else None


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class PersistenceManager:
    """Writes serialized documents through to the blob store and pointer record."""

    def __init__(self, blob_store: BlobStore, pointer_store: PointerStore) -> None:
        self.blob_store = blob_store
        self.pointer_store = pointer_store

    async def write(self, owner_id: str, data: bytes) -> str:
        """Store ``data`` for ``owner_id`` and return its new location."""
        key = blob_pathname(owner_id)
        try:
            blob = await self.blob_store.put(key, data, CONTENT_TYPE)
        except Exception as e:
            logger.error(f"Blob write failed for {owner_id}: {e}")
            raise PersistenceError(f"Failed to store collection: {e}") from e

        try:
            await self.pointer_store.update(owner_id, blob.url)
        except Exception as e:
            logger.error(f"Pointer update failed for {owner_id} (blob at {blob.url}): {e}")
            raise PersistenceError(f"Failed to record collection location: {e}") from e

        logger.info(f"Persisted {len(data)} bytes for {owner_id} to {blob.url}")
        return blob.url


async def fetch_document(location: str) -> bytes:
    """
    Read a stored document from a local path, ``file://`` or ``http(s)://`` URL.

    Raises UpstreamUnavailableError when the document is missing or the
    server answers with an error status.
    """
    if location.startswith(("http://", "https://")):
        logger.info(f"Fetching remote collection from: {location}")
        async with httpx.AsyncClient(timeout=30.0, follow_redirects=True) as client:
            try:
                response = await client.get(location)
            except httpx.HTTPError as e:
                raise UpstreamUnavailableError(f"Could not fetch {location}: {e}") from e
        if not response.is_success:
            raise UpstreamUnavailableError(
                f"Collection missing or unreadable at {location}: HTTP {response.status_code}"
            )
        logger.info(f"Fetched {len(response.content)} bytes")
        return response.content

    if location.startswith("file://"):
        path = Path(url2pathname(unquote(urlparse(location).path)))
    else:
        path = Path(location)
    try:
        return path.read_bytes()
    except FileNotFoundError as e:
        raise UpstreamUnavailableError(f"Collection file missing at {path}") from e
