"""
Local archive store laid out with the registry's sharding rule.

Archives are never written in place: bytes go to ``<file>.part`` first, are
hashed while they are written, and only a file whose SHA-256 matches the
record's checksum is renamed onto the final path.
"""
from __future__ import annotations

import asyncio
import hashlib
import logging
import shutil
from pathlib import Path, PurePosixPath
from typing import AsyncIterable, Callable, Optional

import aiofiles

from crates_mirror.domain.crate_paths import record_path
from crates_mirror.domain.errors import ChecksumMismatchError
from crates_mirror.domain.models import CrateRecord, VerifyStatus

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024
PARTIAL_SUFFIX = ".part"


async def sha256_file(path: Path) -> str:
    """Stream a file through SHA-256 without loading it into memory."""
    hasher = hashlib.sha256()
    async with aiofiles.open(path, "rb") as f:
        while True:
            chunk = await f.read(HASH_CHUNK_SIZE)
            if not chunk:
                break
            hasher.update(chunk)
    return hasher.hexdigest()


async def file_matches(path: Path, checksum: str) -> bool:
    """True when ``path`` is a regular file whose SHA-256 equals ``checksum``."""
    if not path.is_file():
        return False
    return await sha256_file(path) == checksum


class CrateStore:
    """Reads and writes crate archives below a single store root."""

    def __init__(self, root: Path):
        self.root = root

    def relative_path(self, record: CrateRecord) -> PurePosixPath:
        return record_path(record)

    def path_for(self, record: CrateRecord) -> Path:
        return self.root.joinpath(*record_path(record).parts)

    def partial_path_for(self, record: CrateRecord) -> Path:
        path = self.path_for(record)
        return path.with_name(path.name + PARTIAL_SUFFIX)

    async def verify(self, record: CrateRecord) -> VerifyStatus:
        """Classify the archive currently stored for ``record``."""
        path = self.path_for(record)
        if not path.is_file():
            return VerifyStatus.MISSING
        try:
            actual = await sha256_file(path)
        except FileNotFoundError:
            return VerifyStatus.MISSING
        if actual != record.checksum:
            return VerifyStatus.INVALID
        return VerifyStatus.VALID

    def discard(self, record: CrateRecord) -> None:
        """Remove whatever is stored for ``record`` (used before replacing a bad archive)."""
        self.path_for(record).unlink(missing_ok=True)
        self.partial_path_for(record).unlink(missing_ok=True)

    async def write_stream(
        self,
        record: CrateRecord,
        chunks: AsyncIterable[bytes],
        on_chunk: Optional[Callable[[int], None]] = None,
    ) -> int:
        """
        Write an archive for ``record`` from an async byte stream.

        Returns the number of bytes written. Raises ChecksumMismatchError if the
        stream does not hash to the record's checksum; the partial file is
        removed on any failure.
        """
        destination = self.path_for(record)
        partial = self.partial_path_for(record)
        destination.parent.mkdir(parents=True, exist_ok=True)

        hasher = hashlib.sha256()
        written = 0
        try:
            async with aiofiles.open(partial, "wb") as f:
                async for chunk in chunks:
                    hasher.update(chunk)
                    await f.write(chunk)
                    written += len(chunk)
                    if on_chunk is not None:
                        on_chunk(len(chunk))
            self._finalize(record, partial, hasher.hexdigest())
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        return written

    async def copy_in(self, record: CrateRecord, source: Path) -> int:
        """Copy an archive found elsewhere on disk into the store, verifying it on the way."""
        destination = self.path_for(record)
        partial = self.partial_path_for(record)
        destination.parent.mkdir(parents=True, exist_ok=True)

        try:
            await asyncio.to_thread(shutil.copyfile, source, partial)
            self._finalize(record, partial, await sha256_file(partial))
        except BaseException:
            partial.unlink(missing_ok=True)
            raise
        return destination.stat().st_size

    def _finalize(self, record: CrateRecord, partial: Path, actual: str) -> None:
        if actual != record.checksum:
            raise ChecksumMismatchError(str(record), record.checksum, actual)
        partial.replace(self.path_for(record))
        logger.debug(f"Stored {record} at {self.relative_path(record)}")
