"""
tasks/celery_app.py
Celery application instance shared by all task modules.

Workers are started with:
    celery -A tasks.celery_app worker --loglevel=info --concurrency=4

Beat scheduler (periodic tasks):
    celery -A tasks.celery_app beat --loglevel=info
"""

from celery import Celery

from config.settings import settings

celery_app = Celery(
    "medical_booking",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=[
        "tasks.payment_tasks",
    ],
)

# ── Configuration ─────────────────────────────────────────────────────────────

celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="Asia/Kolkata",
    enable_utc=True,

    # Acknowledge after execution so a dying worker does not lose a refund
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    result_expires=3600,

    task_routes={
        "tasks.payment_tasks.*": {"queue": "payments"},
    },

    worker_prefetch_multiplier=1,
)

# ── Periodic Tasks (Beat Schedule) ────────────────────────────────────────────

celery_app.conf.beat_schedule = {
    # Pick up cancelled bookings whose refund never went through
    "sweep-unreconciled-refunds": {
        "task": "tasks.payment_tasks.sweep_unreconciled_refunds",
        "schedule": 1800,  # every 30 minutes
    },
}
