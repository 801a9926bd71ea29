"""
Parse the registry index into CrateRecords with a small pool of workers.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Dict, List, Optional, Set, Tuple

import aiofiles
from pydantic import ValidationError

from crates_mirror.domain.errors import IndexReadError
from crates_mirror.domain.models import CrateRecord, ParseSummary
from crates_mirror.services.mirror.index_walker import walk_index
from crates_mirror.services.mirror.pool import WorkerPool
from crates_mirror.services.mirror.progress import (
    STAGE_PARSE,
    STAGE_WALK,
    NullProgress,
    ProgressObserver,
)

logger = logging.getLogger(__name__)

# Parsing is dominated by opening many small files; a handful of workers is enough.
PARSE_WORKERS = 4


@dataclass
class FileParseResult:
    path: Path
    records: List[CrateRecord] = field(default_factory=list)
    skipped_lines: int = 0
    retracted: int = 0


@dataclass
class ParsedIndex:
    records: List[CrateRecord]
    summary: ParseSummary


def parse_index_line(line: bytes) -> Optional[CrateRecord]:
    """
    Parse one index line. Blank lines give None; malformed lines raise ValidationError.
    """
    if not line.strip():
        return None
    return CrateRecord.model_validate_json(line)


class IndexParser:
    """Walks an index tree and turns every line of every file into a CrateRecord."""

    def __init__(self, workers: int = PARSE_WORKERS, progress: Optional[ProgressObserver] = None):
        self.workers = workers
        self.progress = progress or NullProgress()

    async def parse_file(self, path: Path) -> FileParseResult:
        """Parse a single metadata file, dropping malformed lines and yanked versions."""
        try:
            async with aiofiles.open(path, "rb") as f:
                content = await f.read()
        except OSError as e:
            raise IndexReadError(path, str(e)) from e

        result = FileParseResult(path=path)
        for lineno, line in enumerate(content.splitlines(), start=1):
            try:
                record = parse_index_line(line)
            except ValidationError as e:
                logger.debug(f"Skipping {path}:{lineno}: {e.error_count()} validation error(s)")
                result.skipped_lines += 1
                continue
            if record is None:
                continue
            if record.retracted:
                result.retracted += 1
                continue
            result.records.append(record)

        self.progress.advance(STAGE_PARSE, len(result.records))
        return result

    async def parse(self, root: Path) -> ParsedIndex:
        """Parse every metadata file under ``root`` and merge the results."""
        self.progress.start(STAGE_WALK)
        self.progress.start(STAGE_PARSE)

        async def handle(_worker: int, path: Path) -> FileParseResult:
            return await self.parse_file(path)

        pool: WorkerPool[Path, FileParseResult] = WorkerPool("parse", self.workers, handle)
        results = await pool.run(self._walk(root))

        self.progress.finish(STAGE_WALK)
        self.progress.finish(STAGE_PARSE)

        parsed = merge_parse_results(results)
        summary = parsed.summary
        logger.info(
            f"Parsed {summary.records} records from {summary.files} files "
            f"({summary.retracted} yanked, {summary.skipped_lines} malformed lines skipped, "
            f"{summary.duplicates} duplicates, {summary.conflicts} conflicts)"
        )
        return parsed

    async def _walk(self, root: Path) -> AsyncIterator[Path]:
        # Directory listing blocks, so each step of the walk runs off the event loop.
        walker = walk_index(root)
        while True:
            path = await asyncio.to_thread(next, walker, None)
            if path is None:
                return
            self.progress.advance(STAGE_WALK)
            yield path


def merge_parse_results(results: List[FileParseResult]) -> ParsedIndex:
    """
    Collapse per-file results into one record list.

    Identical (name, version, checksum) records are kept once. A second
    checksum for the same (name, version) is a conflict: it is logged and both
    records are kept.
    """
    summary = ParseSummary(files=len(results))
    records: List[CrateRecord] = []
    seen: Set[Tuple[str, str, str]] = set()
    first_checksum: Dict[Tuple[str, str], str] = {}

    for result in results:
        summary.skipped_lines += result.skipped_lines
        summary.retracted += result.retracted
        for record in result.records:
            identity = (record.name, record.version, record.checksum)
            if identity in seen:
                summary.duplicates += 1
                continue
            seen.add(identity)

            known = first_checksum.setdefault(record.key, record.checksum)
            if known != record.checksum:
                summary.conflicts += 1
                logger.warning(
                    f"Conflicting checksums for {record}: {known} and {record.checksum}"
                )
            records.append(record)

    summary.records = len(records)
    return ParsedIndex(records=records, summary=summary)
