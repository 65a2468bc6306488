"""API server entry point.

Usage:
    python run_server.py

    # Custom host/port:
    python run_server.py --host 0.0.0.0 --port 9000

    # Rehearse admissions without dispatching work:
    python run_server.py --sweep
"""
from __future__ import annotations

import argparse
import logging

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Stagegate API Server")
    parser.add_argument("--host", default="0.0.0.0", help="Bind address (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Port (default: 8000)")
    parser.add_argument("--db", default=None, help="SQLite database path (default: STAGEGATE_DB_PATH or stagegate.db)")
    parser.add_argument("--sweep", action="store_true", help="Force dry-run admission for every request")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    parser.add_argument("--log-level", default="info", choices=["debug", "info", "warning", "error"])
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper()),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    import uvicorn

    from stagegate.api.config import ApiSettings
    from stagegate.api.main import create_app

    overrides = {"host": args.host, "port": args.port, "log_level": args.log_level}
    if args.db:
        overrides["db_path"] = args.db
    if args.sweep:
        overrides["sweep_mode"] = True
    settings = ApiSettings(**overrides)

    if args.reload:
        # uvicorn's reloader needs an import string; settings then come from the environment.
        uvicorn.run(
            "stagegate.api.main:create_app",
            factory=True,
            host=settings.host,
            port=settings.port,
            reload=True,
            log_level=args.log_level,
        )
        return

    app = create_app(settings)
    logger.info("Serving stagegate API on %s:%s", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=args.log_level)


if __name__ == "__main__":
    main()
