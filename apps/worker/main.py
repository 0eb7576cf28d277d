"""
Celery worker entry point.

Runs both the worker and the beat scheduler for delivery ticks:

    celery -A main worker --beat --loglevel=info

The API package provides the Celery app and task definitions.
"""
import os
import sys

sys.path.insert(0, os.getenv("API_PATH", "/api"))

from core.logging import setup_logging  # noqa: E402
from tasks import celery_app  # noqa: E402

setup_logging()

celery_app.autodiscover_tasks(["tasks"])
