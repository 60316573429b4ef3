"""Main entry point for the FastAPI server."""

import os
from pathlib import Path

import uvicorn

from .config.settings import Settings
from .lib.logging_config import setup_logging


def main():
    """Start the FastAPI server."""
    setup_logging(
        log_dir=Path(Settings.LOG_DIR),
        log_level=Settings.LOG_LEVEL,
        enable_json=Settings.LOG_JSON,
    )
    reload = os.getenv("API_RELOAD", "false").lower() == "true"
    workers = int(os.getenv("API_WORKERS", "1"))

    # Workers and reload are mutually exclusive
    if reload:
        workers = None

    uvicorn.run(
        "mapping_engine.api.endpoints:app",
        host=Settings.API_HOST,
        port=Settings.API_PORT,
        reload=reload,
        workers=workers,
        timeout_keep_alive=300,
        log_level=Settings.LOG_LEVEL.lower()
    )


if __name__ == "__main__":
    main()
