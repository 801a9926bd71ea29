"""
Store sharding and download URL rules.

Every place that needs to know where a crate lives goes through these
functions, so reconciliation, fetching and serving always agree on a path.
"""
from __future__ import annotations

from pathlib import PurePosixPath
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from crates_mirror.domain.models import CrateRecord


CRATE_EXTENSION = ".crate"

# Markers understood in the registry's `dl` template. Without any of them the
# registry expects `<dl>/<name>/<version>/download`.
DOWNLOAD_URL_MARKERS = (
    "{crate}",
    "{name}",
    "{version}",
    "{prefix}",
    "{lowerprefix}",
    "{sha256-checksum}",
)


def crate_filename(name: str, version: str) -> str:
    return f"{name}-{version}{CRATE_EXTENSION}"


def crate_path(name: str, version: str) -> PurePosixPath:
    """
    Store-relative path of a crate archive.

    1 char   -> 1/<file>
    2 chars  -> 2/<file>
    3 chars  -> 3/<first two>/<file>
    4+ chars -> <first two>/<next two>/<file>
    """
    if not name:
        raise ValueError("Crate name must not be empty")

    filename = crate_filename(name, version)
    length = len(name)
    if length == 1:
        return PurePosixPath("1", filename)
    if length == 2:
        return PurePosixPath("2", filename)
    if length == 3:
        return PurePosixPath("3", name[0:2], filename)
    return PurePosixPath(name[0:2], name[2:4], filename)


def record_path(record: "CrateRecord") -> PurePosixPath:
    return crate_path(record.name, record.version)


def index_prefix(name: str) -> str:
    """The registry's own index directory prefix, used by the `{prefix}` marker."""
    if not name:
        raise ValueError("Crate name must not be empty")
    if len(name) == 1:
        return "1"
    if len(name) == 2:
        return "2"
    if len(name) == 3:
        return f"3/{name[0]}"
    return f"{name[0:2]}/{name[2:4]}"


def download_url(dl: str, record: "CrateRecord") -> str:
    """Build the download URL for a record from the registry's `dl` setting."""
    if not any(marker in dl for marker in DOWNLOAD_URL_MARKERS):
        return f"{dl.rstrip('/')}/{record.name}/{record.version}/download"

    prefix = index_prefix(record.name)
    return (
        dl.replace("{crate}", record.name)
        .replace("{name}", record.name)
        .replace("{version}", record.version)
        .replace("{lowerprefix}", prefix.lower())
        .replace("{prefix}", prefix)
        .replace("{sha256-checksum}", record.checksum)
    )
