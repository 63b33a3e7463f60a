#!/usr/bin/env python3
# backend/run_celery_worker.py
"""
Development Celery worker runner.

Consumes the settlement queue and, unless CELERY_NO_BEAT is set, embeds
beat so the hourly, daily and weekly job sets fire locally.
"""
import os
from pathlib import Path
import subprocess
import sys

if __name__ == "__main__":
    os.chdir(Path(__file__).parent)
    queues = os.getenv("CELERY_QUEUES", "settlement,celery")
    print(f"Starting Celery worker on queues: {queues}")

    cmd = [
        sys.executable,
        "-m",
        "celery",
        "-A",
        "marketplace.tasks.celery_app",
        "worker",
        "--loglevel=info",
        "--concurrency=2",
        "--max-tasks-per-child=100",
        "-Q",
        queues,
    ]
    if not os.getenv("CELERY_NO_BEAT"):
        cmd.append("--beat")

    subprocess.run(cmd)
