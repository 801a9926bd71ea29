"""
Reconciliation: drop records that are already correctly mirrored.

Two interchangeable strategies are provided:

* ManifestReconciler trusts an external ``<sha256> <path>`` listing. A record
  whose checksum appears in the listing is considered mirrored, even when the
  listed filename differs (the mismatch is only logged).
* StoreVerifier re-hashes what is actually in the store and keeps records
  whose archive is missing or does not match.

A run uses at most one of them.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from pydantic import ValidationError

from crates_mirror.domain.errors import ManifestError
from crates_mirror.domain.models import (
    CrateRecord,
    ManifestEntry,
    ReconcileSummary,
    VerifyStatus,
)
from crates_mirror.services.mirror.pool import WorkerPool
from crates_mirror.services.mirror.progress import STAGE_VERIFY, NullProgress, ProgressObserver
from crates_mirror.storage.crate_store import CrateStore

logger = logging.getLogger(__name__)

VERIFY_WORKERS = 8


@dataclass
class ReconcileResult:
    records: List[CrateRecord]
    summary: ReconcileSummary


class Reconciler(ABC):
    """
    Abstract base class for reconciliation strategies.
    """

    name: str = "none"

    @abstractmethod
    async def reconcile(self, records: List[CrateRecord]) -> ReconcileResult:
        """Return the records that still need to be fetched."""
        pass


class PassThroughReconciler(Reconciler):
    """Keeps everything; the fetcher's own local check does the work."""

    name = "none"

    async def reconcile(self, records: List[CrateRecord]) -> ReconcileResult:
        summary = ReconcileSummary(strategy=self.name, considered=len(records))
        return ReconcileResult(records=list(records), summary=summary)


# ---------------------------------------------------------------------------
# Manifest strategy
# ---------------------------------------------------------------------------


def parse_manifest_line(line: str) -> Optional[ManifestEntry]:
    """
    Parse ``<sha256><whitespace><path>``. Blank lines give None; anything else
    that does not fit raises ValueError.
    """
    stripped = line.strip()
    if not stripped:
        return None
    parts = stripped.split(None, 1)
    if len(parts) != 2:
        raise ValueError(f"Expected '<checksum> <path>', got {line!r}")
    return ManifestEntry(checksum=parts[0], path=parts[1])


def load_manifest(path: Path) -> Dict[str, ManifestEntry]:
    """Load a manifest file into a checksum -> entry mapping."""
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise ManifestError(f"Unable to read manifest {path}: {e}") from e

    entries: Dict[str, ManifestEntry] = {}
    for lineno, line in enumerate(content.splitlines(), start=1):
        try:
            entry = parse_manifest_line(line)
        except (ValueError, ValidationError) as e:
            logger.warning(f"Ignoring malformed manifest line {path}:{lineno}: {e}")
            continue
        if entry is not None:
            entries[entry.checksum] = entry

    logger.info(f"Loaded {len(entries)} entries from manifest {path}")
    return entries


class ManifestReconciler(Reconciler):
    """Drops every record whose checksum is listed in the manifest."""

    name = "manifest"

    def __init__(self, entries: Dict[str, ManifestEntry]):
        self.entries = entries

    @classmethod
    def from_file(cls, path: Path) -> "ManifestReconciler":
        return cls(load_manifest(path))

    async def reconcile(self, records: List[CrateRecord]) -> ReconcileResult:
        summary = ReconcileSummary(strategy=self.name, considered=len(records))
        remaining: List[CrateRecord] = []

        for record in records:
            entry = self.entries.get(record.checksum)
            if entry is None:
                remaining.append(record)
                continue
            if entry.filename != record.filename:
                summary.filename_mismatches += 1
                logger.warning(
                    f"Name mismatch for checksum {record.checksum}: "
                    f"index has {record.filename}, manifest has {entry.filename}"
                )
            summary.dropped += 1

        summary.missing = len(remaining)
        if summary.dropped:
            logger.info(f"Removed {summary.dropped} crates already listed in the manifest")
        return ReconcileResult(records=remaining, summary=summary)


# ---------------------------------------------------------------------------
# Verify-on-disk strategy
# ---------------------------------------------------------------------------


class StoreVerifier(Reconciler):
    """Hashes existing archives in parallel and keeps records that are missing or invalid."""

    name = "verify"

    def __init__(
        self,
        store: CrateStore,
        workers: int = VERIFY_WORKERS,
        progress: Optional[ProgressObserver] = None,
    ):
        self.store = store
        self.workers = workers
        self.progress = progress or NullProgress()

    async def reconcile(self, records: List[CrateRecord]) -> ReconcileResult:
        summary = ReconcileSummary(strategy=self.name, considered=len(records))
        missing: List[CrateRecord] = []

        def existing() -> Iterator[CrateRecord]:
            # Records without a file never reach a worker.
            for record in records:
                if self.store.path_for(record).is_file():
                    yield record
                else:
                    missing.append(record)
                    self.progress.advance(STAGE_VERIFY)

        async def handle(_worker: int, record: CrateRecord) -> Tuple[CrateRecord, VerifyStatus]:
            try:
                status = await self.store.verify(record)
            except OSError as e:
                # Left to the fetcher, which replaces it or reports it failed.
                logger.warning(f"{record} - Unable to read stored crate, treating as invalid: {e}")
                status = VerifyStatus.INVALID
            self.progress.advance(STAGE_VERIFY)
            return record, status

        self.progress.start(STAGE_VERIFY, len(records))
        pool: WorkerPool[CrateRecord, Tuple[CrateRecord, VerifyStatus]] = WorkerPool(
            "verify", self.workers, handle
        )
        checked = await pool.run(existing())
        self.progress.finish(STAGE_VERIFY)

        invalid: List[CrateRecord] = []
        for record, status in checked:
            if status is VerifyStatus.INVALID:
                logger.warning(f"{record} - Checksum incorrect, downloading crate again")
                invalid.append(record)
            elif status is VerifyStatus.MISSING:
                missing.append(record)

        summary.missing = len(missing)
        summary.invalid = len(invalid)
        summary.dropped = len(records) - len(missing) - len(invalid)
        logger.info(
            f"Verified store: {summary.dropped} valid, {summary.missing} missing, {summary.invalid} invalid"
        )
        return ReconcileResult(records=missing + invalid, summary=summary)
