"""Celery configuration from environment variables."""

import os

# Broker and backend (Redis)
broker_url = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379/0")
result_backend = os.getenv("CELERY_RESULT_BACKEND", "redis://localhost:6379/0")

# Serialization
task_serializer = "json"
result_serializer = "json"
accept_content = ["json"]

# Timezone
timezone = "UTC"
enable_utc = True

# Task settings
task_track_started = True
task_time_limit = 3600  # full sync timeout plus margin
task_soft_time_limit = 3300

# Queue settings
task_default_queue = "default"
task_queues = {
    "default": {},
    "sync": {},
}

SYNC_INTERVAL_MINUTES = int(os.getenv("SYNC_INTERVAL_MINUTES", "60"))

# Beat schedule (periodic tasks)
beat_schedule = {
    "dispatch-scheduled-syncs": {
        "task": "devops_insights.workers.tasks.dispatch_scheduled_syncs",
        "schedule": SYNC_INTERVAL_MINUTES * 60.0,
        "options": {"queue": "default"},
    },
}
