from __future__ import annotations

import logging
from typing import Optional

from crates_mirror.core.settings import load_registry_config, load_settings
from crates_mirror.data.crate_table import CrateTable, load_snapshot
from crates_mirror.domain.models import MirrorSettings, RegistryConfig
from crates_mirror.services.mirror.index_parser import IndexParser
from crates_mirror.storage.crate_store import CrateStore

logger = logging.getLogger(__name__)

_settings: Optional[MirrorSettings] = None
_store: Optional[CrateStore] = None
_registry_config: Optional[RegistryConfig] = None
_crate_table: Optional[CrateTable] = None


def get_settings() -> MirrorSettings:
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def set_settings(settings: MirrorSettings) -> None:
    """Install settings built elsewhere (the CLI) before the server starts."""
    global _settings, _store, _registry_config, _crate_table
    _settings = settings
    _store = None
    _registry_config = None
    _crate_table = None


def get_store() -> CrateStore:
    global _store
    if _store is None:
        _store = CrateStore(get_settings().store_dir)
    return _store


def get_registry_config() -> RegistryConfig:
    global _registry_config
    if _registry_config is None:
        _registry_config = load_registry_config(get_settings().index_dir)
    return _registry_config


def get_crate_table() -> CrateTable:
    """
    Return the lookup table. Empty until initialize_crate_table() has run.
    """
    if _crate_table is None:
        return CrateTable()
    return _crate_table


async def initialize_crate_table() -> CrateTable:
    """
    Build the lookup table once, from a snapshot when one exists, otherwise by
    parsing the index.
    """
    global _crate_table
    settings = get_settings()

    snapshot = settings.snapshot_path
    if snapshot is not None and snapshot.is_file():
        records = load_snapshot(snapshot)
    else:
        parsed = await IndexParser(settings.parse_workers).parse(settings.index_dir)
        records = parsed.records

    _crate_table = CrateTable(records)
    logger.info(f"Serving {len(_crate_table)} crate versions from {settings.store_dir}")
    return _crate_table
