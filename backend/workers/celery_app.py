"""
Celery application configuration.

This configures Celery with Redis as the broker and result backend.
The beat schedule triggers the periodic Jira sync.
"""
from __future__ import annotations

import sys
from datetime import timedelta
from pathlib import Path

# Ensure backend directory is in Python path for Celery workers
backend_dir = Path(__file__).resolve().parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

# Load .env BEFORE importing config so workers see the same DATABASE_URL as the API
from dotenv import load_dotenv
env_file = backend_dir / ".env"
if not env_file.exists():
    env_file = backend_dir.parent / ".env"
if env_file.exists():
    load_dotenv(env_file)

from celery import Celery
from kombu import Exchange, Queue

from config import settings

# Create Celery app
celery_app = Celery(
    "jira_sync",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=[
        "workers.tasks.sync",
    ],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    # Task settings
    task_track_started=True,
    task_time_limit=30 * 60,  # 30 minutes max per task
    task_soft_time_limit=25 * 60,  # Soft limit at 25 minutes

    # Result settings
    result_expires=60 * 60 * 24,  # Results expire after 24 hours

    # One sync at a time per worker; writes within a run are serialized anyway
    worker_prefetch_multiplier=1,
    worker_concurrency=1,

    # Queue configuration
    task_queues=(
        Queue("default", Exchange("default"), routing_key="default"),
        Queue("sync", Exchange("sync"), routing_key="sync.#"),
    ),
    task_default_queue="default",
    task_default_exchange="default",
    task_default_routing_key="default",

    # Route tasks to specific queues
    task_routes={
        "workers.tasks.sync.*": {"queue": "sync"},
    },
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "periodic-jira-sync": {
        "task": "workers.tasks.sync.scheduled_jira_sync",
        "schedule": timedelta(minutes=settings.SYNC_INTERVAL_MINUTES),
        "options": {"queue": "sync"},
    },
}
