"""Content-addressed storage for uploaded assets.

Blobs live on disk under their SHA-256 digest and are tracked in the
``assets`` table with a reference count, so identical uploads share one
file and a blob is removed only when its last reference is released.
"""

import hashlib
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

import aiofiles
import aiofiles.os
import aiosqlite
import structlog

from huddle.core.errors import StorageError
from huddle.core.locks import LockManager, asset_key
from huddle.persistence.database import storage_error

if TYPE_CHECKING:
    from huddle.persistence.database import Database

log = structlog.get_logger()


def content_hash(data: bytes) -> str:
    """Return the address of a blob."""
    return hashlib.sha256(data).hexdigest()


@dataclass
class StoredAsset:
    """A stored blob.

    Attributes:
        hash: SHA-256 hex digest of the content
        category: Caller-supplied grouping such as "avatar"
        size: Content length in bytes
        url: Public path the blob is served from
    """

    hash: str
    category: str
    size: int
    url: str

    def to_dict(self) -> dict:
        return {
            "hash": self.hash,
            "category": self.category,
            "size": self.size,
            "url": self.url,
        }


class AssetRegistry:
    """Reference-counted blob store backed by a directory and the database."""

    def __init__(
        self,
        database: Optional["Database"] = None,
        root: Optional[Path] = None,
        url_prefix: str = "/assets",
        lock_timeout: float = 5.0,
    ):
        """Initialize the registry.

        Args:
            database: Database instance (creates default if not provided)
            root: Directory holding blobs (defaults beside the database)
            url_prefix: Prefix for generated asset URLs
            lock_timeout: Seconds to wait for a per-hash lock
        """
        from huddle.persistence.database import Database

        self.db = database or Database()
        self.root = Path(root) if root is not None else self.db.db_path.parent / "assets"
        self.url_prefix = url_prefix.rstrip("/")
        self._locks = LockManager(timeout=lock_timeout)

    def url_for(self, hash: str, category: str = "avatar") -> str:
        return f"{self.url_prefix}/{hash}/{category}"

    def path_for(self, hash: str) -> Path:
        return self.root / hash[:2] / hash

    async def put(self, data: bytes, category: str) -> StoredAsset:
        """Store a blob, or add a reference if identical content exists.

        Args:
            data: Content to store
            category: Grouping recorded with the blob

        Returns:
            StoredAsset describing the blob

        Raises:
            ValueError: If data is empty
            StorageError: If the file or its record cannot be written
        """
        if not data:
            raise ValueError("Cannot store an empty asset")

        digest = content_hash(data)
        path = self.path_for(digest)

        async with self._locks.hold(asset_key(digest)):
            if not await aiofiles.os.path.exists(path):
                await self._write_blob(path, data)

            async with self.db.transaction() as conn:
                try:
                    await conn.execute(
                        """
                        INSERT INTO assets (hash, category, size, ref_count)
                        VALUES (?, ?, ?, 1)
                        ON CONFLICT(hash) DO UPDATE SET ref_count = ref_count + 1
                        """,
                        (digest, category, len(data)),
                    )
                except aiosqlite.Error as e:
                    raise storage_error(e, "put_asset") from e

        log.info("asset_stored", hash=digest[:8], category=category, size=len(data))
        return StoredAsset(
            hash=digest,
            category=category,
            size=len(data),
            url=self.url_for(digest, category),
        )

    async def delete_by_hash(self, hash: str) -> bool:
        """Release one reference to a blob, removing it at zero.

        Args:
            hash: Content hash of the blob

        Returns:
            True if a reference was released, False if the hash is unknown

        Raises:
            StorageError: If the record or file cannot be removed
        """
        async with self._locks.hold(asset_key(hash)):
            remove_file = False
            async with self.db.transaction() as conn:
                try:
                    cursor = await conn.execute(
                        "SELECT ref_count FROM assets WHERE hash = ?", (hash,)
                    )
                    row = await cursor.fetchone()
                    if row is None:
                        return False

                    if row[0] > 1:
                        await conn.execute(
                            "UPDATE assets SET ref_count = ref_count - 1 WHERE hash = ?",
                            (hash,),
                        )
                    else:
                        await conn.execute("DELETE FROM assets WHERE hash = ?", (hash,))
                        remove_file = True
                except aiosqlite.Error as e:
                    raise storage_error(e, "delete_asset") from e

            if remove_file:
                try:
                    await aiofiles.os.remove(self.path_for(hash))
                except FileNotFoundError:
                    log.warning("asset_file_missing", hash=hash[:8])
                except OSError as e:
                    raise StorageError(f"Could not remove asset {hash[:8]}: {e}") from e

        log.info("asset_released", hash=hash[:8], removed=remove_file)
        return True

    async def get(self, hash: str) -> Optional[StoredAsset]:
        """Look up a blob record by hash."""
        try:
            async with self.db.snapshot() as conn:
                cursor = await conn.execute(
                    "SELECT hash, category, size FROM assets WHERE hash = ?", (hash,)
                )
                row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise storage_error(e, "get_asset") from e

        if not row:
            return None
        return StoredAsset(hash=row[0], category=row[1], size=row[2], url=self.url_for(row[0], row[1]))

    async def read(self, hash: str) -> bytes:
        """Read a blob's content.

        Raises:
            FileNotFoundError: If no blob is stored under the hash
        """
        async with aiofiles.open(self.path_for(hash), "rb") as f:
            return await f.read()

    async def _write_blob(self, path: Path, data: bytes) -> None:
        tmp_path = path.with_suffix(".tmp")
        try:
            await aiofiles.os.makedirs(path.parent, exist_ok=True)
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(data)
            await aiofiles.os.replace(tmp_path, path)
        except OSError as e:
            raise StorageError(f"Could not write asset {path.name[:8]}: {e}") from e
