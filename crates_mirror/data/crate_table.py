from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from crates_mirror.domain.crate_paths import record_path
from crates_mirror.domain.models import CrateRecord

logger = logging.getLogger(__name__)


class CrateTable:
    """
    Read-only (name, version) -> store-relative path map used by the server.

    Built once from a record set. If the index lists conflicting checksums for
    a version, the first record wins, matching which archive the fetcher
    stores.
    """

    def __init__(self, records: Iterable[CrateRecord] = ()):
        self._paths: Dict[Tuple[str, str], PurePosixPath] = {}
        for record in records:
            self._paths.setdefault(record.key, record_path(record))

    def lookup(self, name: str, version: str) -> Optional[PurePosixPath]:
        return self._paths.get((name, version))

    def __len__(self) -> int:
        return len(self._paths)

    def __contains__(self, key: object) -> bool:
        return key in self._paths


def save_snapshot(records: Iterable[CrateRecord], path: Path) -> int:
    """Write records as JSON lines in the index's own field format."""
    path.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with path.open("w", encoding="utf-8") as f:
        for record in records:
            f.write(record.model_dump_json(by_alias=True))
            f.write("\n")
            count += 1
    logger.info(f"Wrote {count} records to snapshot {path}")
    return count


def load_snapshot(path: Path) -> List[CrateRecord]:
    """Read a snapshot written by save_snapshot. Unparseable lines are skipped."""
    records: List[CrateRecord] = []
    with path.open("r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                records.append(CrateRecord.model_validate_json(line))
            except ValidationError as e:
                logger.warning(f"Skipping snapshot line {path}:{lineno}: {e.error_count()} validation error(s)")
    logger.info(f"Loaded {len(records)} records from snapshot {path}")
    return records
