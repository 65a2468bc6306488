"""Liveness endpoint."""
from __future__ import annotations

import logging
import sqlite3

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ... import __version__
from ..deps.providers import get_job_store
from ..jobs.store import JobStore
from ..schemas.envelope import ApiResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/api/health")
async def quick_health(store: JobStore = Depends(get_job_store)):
    try:
        store_ok = await store.ping()
    except sqlite3.Error as exc:
        logger.warning("Health check could not reach the job store: %s", exc)
        store_ok = False
    data = {"status": "ok" if store_ok else "degraded", "store": store_ok, "version": __version__}
    if not store_ok:
        return JSONResponse(status_code=503, content=ApiResponse.success(data).model_dump())
    return ApiResponse.success(data)
