#!/usr/bin/env python3
# backend/run.py
"""
Development server runner.

Serves the API on port 8000 with auto-reload. Point DATABASE_URL at the
database you want to use; the default is a local SQLite file.
"""
import os
from pathlib import Path

import uvicorn

from marketplace.core.logging_config import setup_logging

if __name__ == "__main__":
    os.chdir(Path(__file__).parent)
    os.environ.setdefault("ENVIRONMENT", "development")
    setup_logging()

    uvicorn.run(
        "marketplace.main:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
        reload=True,
        reload_delay=0.5,
        log_level="info",
        timeout_graceful_shutdown=5,
    )
