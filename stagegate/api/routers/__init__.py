"""Route modules, imported lazily by the app factory."""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter

logger = logging.getLogger(__name__)

# Module paths that provide a ``router`` attribute.
_ROUTER_MODULES = [
    "stagegate.api.routers.system_health",
    "stagegate.api.routers.projects",
    "stagegate.api.routers.runs",
    "stagegate.api.routers.pipeline",
    "stagegate.api.routers.jobs",
    "stagegate.api.routers.dead_letter",
    "stagegate.api.routers.config_mgmt",
    "stagegate.api.routers.logs",
]


def all_routers() -> List[APIRouter]:
    """Import and return every router.

    Unlike optional dashboards, every module here is part of the admission
    surface, so an import failure is raised rather than skipped.
    """
    import importlib

    routers: List[APIRouter] = []
    for mod_path in _ROUTER_MODULES:
        mod = importlib.import_module(mod_path)
        routers.append(mod.router)
    logger.debug("Loaded %d routers", len(routers))
    return routers
