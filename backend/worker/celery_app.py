"""Celery application configuration.

This module sets up the Celery app with:
- Redis as broker and result backend
- Task routing: execution processing on ``workflows``, scheduling on ``scheduler``
- Late acknowledgement so an item whose worker died before claiming it
  is redelivered. Items claimed by a dead worker are recovered by the
  resume poller once the execution lease expires.
- Beat schedule for the resume poller and scheduled automation rules
"""

from celery import Celery

from app.config import get_settings

settings = get_settings()

celery_app = Celery(
    "automation_engine",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",

    # Timezone
    timezone="UTC",
    enable_utc=True,

    task_routes={
        "worker.tasks.workflow.*": {"queue": "workflows"},
        "worker.tasks.scheduler.*": {"queue": "scheduler"},
        "worker.tasks.*": {"queue": "default"},
    },
    task_default_queue="default",

    # Queue items carry no useful return value
    task_ignore_result=True,
    result_expires=3600,

    # Execution limits. A single engine run stops at the next suspension,
    # so runs are short even for long-lived workflows.
    task_soft_time_limit=300,
    task_time_limit=600,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_reject_on_worker_lost=True,
    task_acks_on_failure_or_timeout=True,

    beat_schedule={
        "poll-due-executions": {
            "task": "worker.tasks.scheduler.poll_due_executions",
            "schedule": float(settings.SCHEDULER_POLL_INTERVAL),
            "options": {"queue": "scheduler"},
        },
        "run-scheduled-rules": {
            "task": "worker.tasks.scheduler.run_scheduled_rules",
            "schedule": 60.0,
            "options": {"queue": "scheduler"},
        },
    },

    include=[
        "worker.tasks.workflow",
        "worker.tasks.scheduler",
    ],
)
