"""
Main entrypoint: scoring engine + FastAPI server.

The engine (scheduler sweep thread, per-user worker pool) is started by the
API lifespan and stopped on SIGINT/SIGTERM when uvicorn shuts down.

Env: DB_PATH (SQLite file; unset = in-memory store), API_HOST, API_PORT,
LOG_LEVEL and the engine tunables read by backend_credit.config.get_settings.

Equivalent: uvicorn backend_credit.api_server.server:app --host 0.0.0.0 --port 8000
"""

import os

# Configure structured JSON logging before other imports that may log
from backend_credit.credit_logging import get_logger

logger = get_logger("main")


def main() -> None:
    """Load settings and run the FastAPI server in the main thread."""
    from backend_credit.config import get_settings

    settings = get_settings()

    from backend_credit.api_server.server import app
    import uvicorn

    logger.info(
        "main_server_starting",
        host=settings.api_host,
        port=settings.api_port,
        store="sqlite" if settings.db_path else "memory",
        workers=settings.worker_count,
    )
    uvicorn.run(
        app,
        host=settings.api_host,
        port=settings.api_port,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
