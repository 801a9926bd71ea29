"""
Enumerate the metadata files of a checked-out registry index.
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterator

from crates_mirror.domain.errors import IndexReadError

logger = logging.getLogger(__name__)

# The download endpoint configuration at the index root; it is not crate metadata.
REGISTRY_CONFIG_FILE = "config.json"


def walk_index(root: Path) -> Iterator[Path]:
    """
    Yield every metadata file below ``root``.

    Entries whose name starts with a dot (``.git``, ``.github``, dotfiles) are
    skipped, as is the root-level ``config.json``. Order is whatever the
    filesystem returns. An unreadable directory raises IndexReadError rather
    than being skipped.
    """
    if not root.is_dir():
        raise IndexReadError(root, "not a directory")
    yield from _walk(root, root)


def _walk(directory: Path, root: Path) -> Iterator[Path]:
    try:
        with os.scandir(directory) as it:
            entries = list(it)
    except OSError as e:
        raise IndexReadError(directory, str(e)) from e

    for entry in entries:
        if entry.name.startswith("."):
            logger.debug(f"Ignored {entry.path}")
            continue
        try:
            is_dir = entry.is_dir(follow_symlinks=False)
        except OSError as e:
            raise IndexReadError(Path(entry.path), str(e)) from e

        if is_dir:
            yield from _walk(Path(entry.path), root)
        elif directory == root and entry.name == REGISTRY_CONFIG_FILE:
            continue
        else:
            yield Path(entry.path)

