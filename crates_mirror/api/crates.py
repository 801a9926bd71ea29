"""
Registry-compatible download endpoints backed by the local store.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import FileResponse, Response

from crates_mirror.core.dependencies import get_crate_table, get_registry_config, get_store
from crates_mirror.data.crate_table import CrateTable
from crates_mirror.domain.models import RegistryConfig
from crates_mirror.storage.crate_store import CrateStore

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/v1/crates/{name}/{version}/download")
async def download_crate(
    name: str,
    version: str,
    table: CrateTable = Depends(get_crate_table),
    store: CrateStore = Depends(get_store),
) -> FileResponse:
    """
    Serve the archive for one crate version.
    """
    relative = table.lookup(name, version)
    if relative is None:
        raise HTTPException(status_code=404, detail="Crate version not found")

    path = store.root.joinpath(*relative.parts)
    if not path.is_file():
        logger.debug(f"{name}-{version} is indexed but not mirrored ({relative})")
        raise HTTPException(status_code=404, detail="Crate file not found on disk")

    return FileResponse(
        path=str(path),
        filename=path.name,
        media_type="application/octet-stream",
    )


@router.get("/config.json")
async def config_json(config: RegistryConfig = Depends(get_registry_config)) -> Response:
    """
    Hand the registry's config.json back unchanged.
    """
    return Response(content=config.raw, media_type="application/json")
