"""
Fetch crate archives into the store.

Per record the fetcher tries, in order:

1. the store itself (archive present and hash matches -> nothing to do);
2. each configured search path, in order (first matching copy is used);
3. a streamed download from the registry.

Whatever route is taken, bytes only land on the final path after they have
been verified against the record's checksum.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional, Sequence

import httpx

from crates_mirror.domain.crate_paths import download_url
from crates_mirror.domain.errors import ChecksumMismatchError
from crates_mirror.domain.models import (
    CrateRecord,
    FetchOutcome,
    FetchResult,
    FetchSummary,
    RegistryConfig,
)
from crates_mirror.services.mirror.pool import WorkerPool
from crates_mirror.services.mirror.progress import STAGE_FETCH, NullProgress, ProgressObserver
from crates_mirror.storage.crate_store import CrateStore, file_matches

logger = logging.getLogger(__name__)

# Downloads are latency bound, so a wide pool pays off.
FETCH_WORKERS = 20
DOWNLOAD_CHUNK_SIZE = 64 * 1024


def _search_candidates(directory: Path, record: CrateRecord) -> List[Path]:
    return sorted(p for p in directory.rglob(record.filename) if p.is_file())


class CrateFetcher:
    """Runs the per-record fetch state machine over a pool of workers."""

    def __init__(
        self,
        store: CrateStore,
        registry: RegistryConfig,
        client: httpx.AsyncClient,
        search_paths: Sequence[Path] = (),
        workers: int = FETCH_WORKERS,
        download_limit: Optional[int] = None,
        progress: Optional[ProgressObserver] = None,
    ):
        self.store = store
        self.registry = registry
        self.client = client
        self.search_paths = list(search_paths)
        self.workers = workers
        self.download_limit = download_limit
        self.progress = progress or NullProgress()
        self._downloads: List[int] = [0] * workers

    async def fetch(self, records: Sequence[CrateRecord]) -> FetchSummary:
        """Fetch every record and return the outcome counts."""
        summary = FetchSummary(requested=len(records))

        # Two records can only share a path when the index lists conflicting
        # checksums for one version; only the first one gets the path.
        owners: Dict[PurePosixPath, CrateRecord] = {}
        to_fetch: List[CrateRecord] = []
        for record in records:
            relative = self.store.relative_path(record)
            owner = owners.setdefault(relative, record)
            if owner is record:
                to_fetch.append(record)
            else:
                summary.conflicts += 1
                logger.warning(
                    f"Not fetching {record} ({record.checksum}): {relative} already belongs to checksum {owner.checksum}"
                )

        self._downloads = [0] * self.workers
        pool: WorkerPool[CrateRecord, FetchResult] = WorkerPool(
            "fetch",
            self.workers,
            self._handle,
            retire_when=self._limit_reached if self.download_limit else None,
        )

        self.progress.start(STAGE_FETCH, len(to_fetch))
        results = await pool.run(to_fetch)
        self.progress.finish(STAGE_FETCH)

        for result in results:
            if result.outcome is FetchOutcome.LOCAL_HIT:
                summary.local_hits += 1
            elif result.outcome is FetchOutcome.SEARCH_PATH_HIT:
                summary.search_path_hits += 1
            elif result.outcome is FetchOutcome.DOWNLOADED:
                summary.downloaded += 1
                summary.bytes_downloaded += result.bytes_written
            elif result.outcome is FetchOutcome.FAILED:
                summary.failed += 1
        summary.not_attempted = len(to_fetch) - pool.dispatched
        if summary.not_attempted:
            logger.info(f"Download limit reached, {summary.not_attempted} crates left for a later run")

        logger.info(
            f"Fetch complete: {summary.downloaded} downloaded, {summary.local_hits} already present, "
            f"{summary.search_path_hits} copied from search paths, {summary.failed} failed"
        )
        return summary

    def _limit_reached(self, worker: int) -> bool:
        return self.download_limit is not None and self._downloads[worker] >= self.download_limit

    async def _handle(self, worker: int, record: CrateRecord) -> FetchResult:
        result = await self.fetch_one(record, worker)
        self.progress.advance(STAGE_FETCH)
        return result

    async def fetch_one(self, record: CrateRecord, worker: int = 0) -> FetchResult:
        """Bring one record into the store. Disk and network problems give a FAILED result."""
        try:
            return await self._fetch_one(record, worker)
        except OSError as e:
            logger.error(f"Failed mirroring {record}: {e}")
            return FetchResult(record=record, outcome=FetchOutcome.FAILED, error=str(e))

    async def _fetch_one(self, record: CrateRecord, worker: int) -> FetchResult:
        path = self.store.path_for(record)
        if path.is_file():
            if await file_matches(path, record.checksum):
                logger.debug(f"{record} already present")
                return FetchResult(record=record, outcome=FetchOutcome.LOCAL_HIT)
            # A wrong archive must not survive a failed re-fetch.
            self.store.discard(record)

        copied = await self._copy_from_search_paths(record)
        if copied is not None:
            return copied

        self._downloads[worker] += 1
        try:
            written = await self._download(record)
        except (httpx.HTTPError, OSError, ChecksumMismatchError) as e:
            logger.error(f"Failed downloading {record}: {e}")
            return FetchResult(record=record, outcome=FetchOutcome.FAILED, error=str(e))

        logger.info(f"Downloaded {record} ({written} bytes)")
        return FetchResult(
            record=record,
            outcome=FetchOutcome.DOWNLOADED,
            bytes_written=written,
            source="network",
        )

    async def find_in_search_paths(self, record: CrateRecord) -> Optional[Path]:
        """First file named like the record, in search path order, whose hash matches."""
        for directory in self.search_paths:
            try:
                candidates = await asyncio.to_thread(_search_candidates, directory, record)
            except OSError as e:
                logger.warning(f"Unable to search {directory} for {record}: {e}")
                continue
            for candidate in candidates:
                try:
                    if await file_matches(candidate, record.checksum):
                        return candidate
                except OSError as e:
                    logger.warning(f"Skipping unreadable candidate {candidate}: {e}")
        return None

    async def _copy_from_search_paths(self, record: CrateRecord) -> Optional[FetchResult]:
        if not self.search_paths:
            return None
        source = await self.find_in_search_paths(record)
        if source is None:
            return None
        try:
            written = await self.store.copy_in(record, source)
        except (OSError, ChecksumMismatchError) as e:
            logger.warning(f"Copy of {record} from {source} failed, downloading instead: {e}")
            return None
        logger.info(f"Copied {record} from {source}")
        return FetchResult(
            record=record,
            outcome=FetchOutcome.SEARCH_PATH_HIT,
            bytes_written=written,
            source=str(source),
        )

    async def _download(self, record: CrateRecord) -> int:
        url = download_url(self.registry.dl, record)
        logger.debug(f"Downloading {record} from {url}")
        async with self.client.stream("GET", url) as response:
            response.raise_for_status()
            return await self.store.write_stream(
                record,
                response.aiter_bytes(DOWNLOAD_CHUNK_SIZE),
                on_chunk=lambda n: self.progress.add_bytes(STAGE_FETCH, n),
            )
