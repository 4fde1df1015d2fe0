# pgcleanup/main.py

from fastapi import FastAPI

from pgcleanup import __version__
from pgcleanup.routers import admin_cleanup_router

app = FastAPI(title="Backtest Results Cleanup", version=__version__)

# /v1/admin/cleanup/* (X-API-Key protected)
app.include_router(admin_cleanup_router)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@app.get("/health")
def health() -> dict:
    return {"status": "ok", "service": "postgres-cleanup", "version": __version__}
