"""
Exceptions raised by the mirror.

Fatal errors (index, registry config, manifest, settings) abort a run before
any download starts. ChecksumMismatchError is per record and only ever
fails the record it belongs to.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional


class MirrorError(Exception):
    """Base class for all mirror errors."""


class IndexReadError(MirrorError):
    """The metadata index (or part of it) could not be read."""

    def __init__(self, path: Path, reason: str):
        self.path = path
        super().__init__(f"Unable to read index at {path}: {reason}")


class RegistryConfigError(MirrorError):
    """The registry's config.json is missing or unusable."""


class ManifestError(MirrorError):
    """An explicitly requested manifest of existing checksums could not be read."""


class SettingsError(MirrorError):
    """Settings file or settings combination is invalid."""


class ChecksumMismatchError(MirrorError):
    """Bytes written for a record do not hash to the record's checksum."""

    def __init__(self, crate: str, expected: str, actual: Optional[str]):
        self.crate = crate
        self.expected = expected
        self.actual = actual
        super().__init__(f"Checksum mismatch for {crate}: expected {expected}, got {actual}")
