"""
Pydantic models for the crates mirror.

This module defines all data models used throughout the application, including:
- Index records and the registry configuration
- Manifest entries describing previously verified archives
- Mirror run settings
- Per-record outcomes and the per-stage run report

All models use Pydantic for validation, serialization, and type safety.
"""

from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from crates_mirror.domain.crate_paths import crate_filename


SHA256_HEX_LENGTH = 64
_SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def normalize_checksum(value: str) -> str:
    """Lower-case a SHA-256 hex digest, rejecting anything that is not one."""
    checksum = value.strip().lower()
    if not _SHA256_PATTERN.match(checksum):
        raise ValueError(f"Not a SHA-256 hex digest: {value!r}")
    return checksum


# ---------------------------------------------------------------------------
# Index Models
# ---------------------------------------------------------------------------


class CrateRecord(BaseModel):
    """
    One published version of one crate, as listed in the metadata index.

    Index lines use the registry's field names (``vers``, ``cksum``,
    ``yanked``); they are accepted as aliases so a raw index line validates
    directly. Records are immutable and hashable, identity being the full
    (name, version, checksum, retracted) tuple.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    name: str = Field(min_length=1, description="Crate name.")
    version: str = Field(alias="vers", min_length=1, description="Published version string.")
    checksum: str = Field(alias="cksum", description="Lower-case SHA-256 of the .crate archive.")
    retracted: bool = Field(default=False, alias="yanked", description="True when the version was yanked.")

    @field_validator("checksum")
    @classmethod
    def _check_checksum(cls, value: str) -> str:
        return normalize_checksum(value)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.name, self.version)

    @property
    def filename(self) -> str:
        return crate_filename(self.name, self.version)

    def __str__(self) -> str:
        return f"{self.name}-{self.version}"


class RegistryConfig(BaseModel):
    """
    The registry's ``config.json`` found at the root of the index.

    ``dl`` is the download endpoint template. The raw file text is kept so the
    serving side can hand it back unchanged.
    """

    model_config = ConfigDict(extra="allow")

    dl: str = Field(min_length=1, description="Download URL or URL template.")
    api: Optional[str] = Field(default=None, description="Registry web API root, if any.")
    raw: str = Field(default="", exclude=True, description="Original config.json contents.")


class ManifestEntry(BaseModel):
    """
    A single ``<checksum> <path>`` line from a manifest of already mirrored archives.
    """

    checksum: str
    path: str = Field(description="Path exactly as written in the manifest.")

    @field_validator("checksum")
    @classmethod
    def _check_checksum(cls, value: str) -> str:
        return normalize_checksum(value)

    @property
    def filename(self) -> str:
        return Path(self.path).name


# ---------------------------------------------------------------------------
# Settings Models
# ---------------------------------------------------------------------------


class MirrorSettings(BaseModel):
    """
    Settings for one mirror run.

    The manifest and verify-on-disk reconciliation strategies are mutually
    exclusive; leaving both unset skips reconciliation entirely and lets the
    fetcher's own local checks decide.
    """

    index_dir: Path = Field(
        default=Path("crates.io-index"),
        description="Checked-out metadata index.",
    )
    store_dir: Path = Field(
        default=Path("crates"),
        description="Root of the local archive store.",
    )
    manifest_path: Optional[Path] = Field(
        default=None,
        description="Optional '<sha256> <path>' listing of archives known to be mirrored.",
    )
    verify_store: bool = Field(
        default=False,
        description="Re-hash every existing archive in the store before fetching.",
    )
    search_paths: List[Path] = Field(
        default_factory=list,
        description="Directories searched, in order, for archives before hitting the network.",
    )
    parse_workers: int = Field(default=4, ge=1)
    verify_workers: int = Field(default=8, ge=1)
    fetch_workers: int = Field(default=20, ge=1)
    download_limit: Optional[int] = Field(
        default=None,
        ge=1,
        description="Approximate cap on downloads, applied to each fetch worker independently.",
    )
    request_timeout: Optional[float] = Field(
        default=60.0,
        gt=0,
        description="Per-request timeout in seconds. None waits forever.",
    )
    diff_path: Optional[Path] = Field(
        default=None,
        description="Write the store-relative paths still needing a fetch to this file.",
    )
    snapshot_path: Optional[Path] = Field(
        default=None,
        description="Write (mirror) or read (serve) the parsed record set as JSON lines.",
    )
    user_agent: str = Field(default="crates-mirror/0.1.0")

    @model_validator(mode="after")
    def _check_strategies(self) -> "MirrorSettings":
        if self.manifest_path is not None and self.verify_store:
            raise ValueError("manifest_path and verify_store cannot be combined")
        return self


# ---------------------------------------------------------------------------
# Outcome / Report Models
# ---------------------------------------------------------------------------


class VerifyStatus(str, Enum):
    VALID = "valid"
    MISSING = "missing"
    INVALID = "invalid"


class FetchOutcome(str, Enum):
    LOCAL_HIT = "local_hit"
    SEARCH_PATH_HIT = "search_path_hit"
    DOWNLOADED = "downloaded"
    FAILED = "failed"
    CONFLICT = "conflict"


class FetchResult(BaseModel):
    """Outcome of processing one record in the fetch pipeline."""

    record: CrateRecord
    outcome: FetchOutcome
    bytes_written: int = 0
    source: Optional[str] = None
    error: Optional[str] = None


class ParseSummary(BaseModel):
    files: int = 0
    records: int = 0
    skipped_lines: int = 0
    retracted: int = 0
    duplicates: int = 0
    conflicts: int = 0


class ReconcileSummary(BaseModel):
    strategy: str = "none"
    considered: int = 0
    dropped: int = 0
    missing: int = 0
    invalid: int = 0
    filename_mismatches: int = 0


class FetchSummary(BaseModel):
    requested: int = 0
    local_hits: int = 0
    search_path_hits: int = 0
    downloaded: int = 0
    failed: int = 0
    conflicts: int = 0
    not_attempted: int = 0
    bytes_downloaded: int = 0


class MirrorReport(BaseModel):
    """Counts gathered at each stage boundary of a mirror run."""

    parse: ParseSummary = Field(default_factory=ParseSummary)
    reconcile: ReconcileSummary = Field(default_factory=ReconcileSummary)
    fetch: FetchSummary = Field(default_factory=FetchSummary)

    @property
    def complete(self) -> bool:
        """True only when every requested record ended up correctly in the store."""
        return (
            self.fetch.failed == 0
            and self.fetch.conflicts == 0
            and self.fetch.not_attempted == 0
        )
