"""Caller identification for user and worker endpoints."""
from __future__ import annotations

import hmac
import logging

from fastapi import Depends, Request

from ...admission.errors import Unauthorized
from ..config import ApiSettings
from .providers import get_settings

logger = logging.getLogger(__name__)


def _bearer_token(request: Request) -> str | None:
    """Read the token from ``Authorization: Bearer <token>`` or ``X-API-Key``."""
    token: str | None = None
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
    if not token:
        token = request.headers.get("X-API-Key", "").strip() or None
    return token


def _check_token(request: Request, expected: str, label: str) -> None:
    if not expected:
        logger.warning("Auth is enabled but no %s is configured; rejecting request.", label)
        raise Unauthorized("Server auth token not configured")
    token = _bearer_token(request)
    if not token:
        raise Unauthorized("Missing authentication token")
    if not hmac.compare_digest(token, expected):
        raise Unauthorized("Invalid authentication token")


async def require_user(request: Request, settings: ApiSettings = Depends(get_settings)) -> str:
    """FastAPI dependency returning the calling user's id.

    The service token is checked when auth is enabled; the user id comes
    from the ``X-User-Id`` header set by the fronting session layer.

    Raises
    ------
    Unauthorized
        If the token is missing or wrong, or no user id was supplied.
    """
    if settings.auth_enabled:
        _check_token(request, settings.api_token, "api_token")
    user_id = request.headers.get("X-User-Id", "").strip()
    if not user_id:
        raise Unauthorized("Missing X-User-Id header")
    return user_id


async def require_worker(request: Request, settings: ApiSettings = Depends(get_settings)) -> None:
    """FastAPI dependency guarding the worker outcome endpoints."""
    if not settings.auth_enabled:
        return
    _check_token(request, settings.worker_token, "worker_token")
