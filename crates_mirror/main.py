import logging

from fastapi import FastAPI

from crates_mirror.api.crates import router as crates_router
from crates_mirror.core.dependencies import initialize_crate_table

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


app = FastAPI(
    title="Offline Crates Mirror",
    version="0.1.0",
    description="Serves crate archives mirrored from a crates.io-style registry.",
)


@app.on_event("startup")
async def startup_event() -> None:
    """
    Build the in-memory (name, version) -> archive table.
    """
    await initialize_crate_table()


@app.get("/")
async def index() -> dict:
    """
    Minimal landing response so you can see something in a browser.
    """
    return {"name": "Offline Crates Mirror"}


@app.get("/health")
async def health() -> dict:
    """
    Lightweight health check endpoint.
    """
    return {"status": "ok"}


app.include_router(crates_router, tags=["crates"])


if __name__ == "__main__":
    """
    Allow running `python -m crates_mirror.main` to start the Uvicorn development server.
    """
    import uvicorn

    uvicorn.run(
        "crates_mirror.main:app",
        host="0.0.0.0",
        port=8000,
        reload=True,
    )
