import os
from celery import Celery
from celery.schedules import crontab

# Set the default Django settings module for the 'celery' program.
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'reconciler.settings')

app = Celery('reconciler')

# Using a string here means the worker doesn't have to serialize
# the configuration object to child processes.
app.config_from_object('django.conf:settings', namespace='CELERY')

# Load task modules from all registered Django apps.
app.autodiscover_tasks()

# Billing work runs on its own queue, notifications on a separate one so slow
# gateways never delay the cleanup sweeps.
app.conf.task_routes = {
    "billing.tasks.cleanup_expired_idempotency_keys": {"queue": "billing"},
    "billing.tasks.cleanup_expired_rate_limit_buckets": {"queue": "billing"},
    "billing.tasks.cleanup_webhook_event_logs": {"queue": "billing"},
    "billing.tasks.expire_trials": {"queue": "billing"},
    "billing.tasks.expire_grace_periods": {"queue": "billing"},
    "billing.tasks.deliver_account_notification": {"queue": "notifications"},

    # Default queue
    '*': {'queue': 'default'},
}

app.conf.task_default_queue = 'default'

app.conf.update(
    # Serialization settings
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',

    # Timezone settings
    timezone='UTC',
    enable_utc=True,

    # Task execution settings
    task_track_started=True,
    task_time_limit=10 * 60,
    task_soft_time_limit=8 * 60,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,

    # Retry settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,

    task_queues={
        'default': {
            'exchange': 'default',
            'routing_key': 'default',
        },
        'billing': {
            'exchange': 'billing',
            'routing_key': 'billing',
        },
        'notifications': {
            'exchange': 'notifications',
            'routing_key': 'notifications',
        },
    },

    task_ignore_result=False,
    task_store_errors_even_if_ignored=True,
)

app.conf.task_annotations = {
    'billing.tasks.deliver_account_notification': {
        'rate_limit': '120/m',
        'time_limit': 60,
        'soft_time_limit': 45,
    },
}

# Celery Beat schedule configuration
app.conf.beat_schedule = {
    "cleanup_expired_idempotency_keys_hourly": {
        "task": "billing.tasks.cleanup_expired_idempotency_keys",
        "schedule": crontab(minute=5),
        "options": {"queue": "billing"},
    },
    "cleanup_expired_rate_limit_buckets_hourly": {
        "task": "billing.tasks.cleanup_expired_rate_limit_buckets",
        "schedule": crontab(minute=10),
        "options": {"queue": "billing"},
    },
    "cleanup_webhook_logs_daily": {
        "task": "billing.tasks.cleanup_webhook_event_logs",
        "schedule": crontab(hour=4, minute=0),
        "options": {"queue": "billing"},
    },
    "expire_trials_daily": {
        "task": "billing.tasks.expire_trials",
        "schedule": crontab(hour=0, minute=0),
        "options": {"queue": "billing"},
    },
    "expire_grace_periods_daily": {
        "task": "billing.tasks.expire_grace_periods",
        "schedule": crontab(hour=0, minute=15),
        "options": {"queue": "billing"},
    },
}


# System health check task
@app.task(bind=True)
def health_check(self):
    """System health check task"""
    from django.db import connection

    try:
        with connection.cursor() as cursor:
            cursor.execute("SELECT 1")

        return {
            'status': 'healthy',
            'timestamp': app.now(),
            'worker_id': self.request.id,
        }
    except Exception as e:
        return {
            'status': 'unhealthy',
            'error': str(e),
            'timestamp': app.now(),
        }
