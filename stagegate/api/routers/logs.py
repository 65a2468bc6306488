"""Recent service log records, filterable by job or project for audit correlation."""
from __future__ import annotations

import logging
from collections import deque
from typing import Any, Deque, Dict, Optional

from fastapi import APIRouter, Query

from ...admission.errors import ValidationError
from ..schemas.envelope import ApiResponse

router = APIRouter(prefix="/api/logs", tags=["logs"])

_BUFFER_SIZE = 500
_records: Deque[Dict[str, Any]] = deque(maxlen=_BUFFER_SIZE)


class RecentRecordsHandler(logging.Handler):
    """Keeps the last records of the ``stagegate`` logger tree in memory.

    ``job_id`` / ``project_id`` passed through ``extra=`` are lifted into
    the entry so a job's admission and lifecycle lines can be pulled
    together next to its audit rows.
    """

    def emit(self, record: logging.LogRecord) -> None:
        _records.append({
            "ts": record.created,
            "level": record.levelname,
            "levelno": record.levelno,
            "logger": record.name,
            "message": record.getMessage(),
            "jobId": getattr(record, "job_id", None),
            "projectId": getattr(record, "project_id", None),
        })


_handler = RecentRecordsHandler(level=logging.INFO)


def setup_log_buffer() -> None:
    root = logging.getLogger("stagegate")
    if _handler not in root.handlers:
        root.addHandler(_handler)


def teardown_log_buffer() -> None:
    logging.getLogger("stagegate").removeHandler(_handler)
    _records.clear()


@router.get("")
async def get_logs(
    last_n: int = Query(default=100, ge=1, le=_BUFFER_SIZE),
    level: Optional[str] = Query(default=None, description="Minimum level, e.g. WARNING"),
    job_id: Optional[str] = Query(default=None, alias="jobId"),
    project_id: Optional[str] = Query(default=None, alias="projectId"),
) -> ApiResponse:
    min_level = logging.getLevelName(level.upper()) if level else logging.NOTSET
    if not isinstance(min_level, int):
        raise ValidationError(f"Unknown log level: {level}", {"level": level})
    matched = [
        {k: v for k, v in entry.items() if k != "levelno"}
        for entry in _records
        if entry["levelno"] >= min_level
        and (job_id is None or entry["jobId"] == job_id)
        and (project_id is None or entry["projectId"] == project_id)
    ]
    return ApiResponse.success(matched[-last_n:])
