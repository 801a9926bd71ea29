from __future__ import annotations

from pathlib import Path

import pytest

from factories import write_registry_config


@pytest.fixture
def index_dir(tmp_path: Path) -> Path:
    root = tmp_path / "index"
    root.mkdir()
    write_registry_config(root)
    return root


@pytest.fixture
def store_dir(tmp_path: Path) -> Path:
    root = tmp_path / "store"
    root.mkdir()
    return root
