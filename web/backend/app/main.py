"""FastAPI application for the appset operator surface.

Provides REST API endpoints wrapping the appset controller for:
- Application state, health and sync history
- Generator rule status and projects
- Manual refresh and Git push webhooks
"""

from __future__ import annotations

import sys
from pathlib import Path

# Ensure the appset package is importable by adding the project root to sys.path.
_project_root = str(Path(__file__).resolve().parents[3])
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from appset import __version__
from web.backend.app.routers import applications, sources

app = FastAPI(
    title="appset API",
    description=(
        "REST API for the appset reconciliation engine. "
        "Provides endpoints for application status, sync history, "
        "generator rules, projects and refresh notifications."
    ),
    version=__version__,
)

# ---------------------------------------------------------------------------
# CORS middleware (allow all origins for development)
# ---------------------------------------------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ---------------------------------------------------------------------------
# Include routers
# ---------------------------------------------------------------------------
app.include_router(applications.router)
app.include_router(sources.router)


# ---------------------------------------------------------------------------
# Root and health-check endpoints
# ---------------------------------------------------------------------------


@app.get("/", tags=["meta"])
async def root():
    """Return basic API information."""
    return {
        "name": "appset API",
        "version": __version__,
        "description": "Directory-discovery GitOps reconciliation REST API",
        "docs": "/docs",
        "openapi": "/openapi.json",
    }


@app.get("/health", tags=["meta"])
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy"}
