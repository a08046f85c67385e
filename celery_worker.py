# celery_worker.py
from app import create_app
from celery_config import create_celery_app
from logging_config import get_logger

logger = get_logger(__name__)

# Create Celery instance with shared configuration
celery = create_celery_app(__name__)

# The Flask app gives tasks their context (and the service registry)
flask_app = create_app()


# Set the custom Task class to ensure tasks run within the Flask app context.
class ContextTask(celery.Task):
    def __call__(self, *args, **kwargs):
        with flask_app.app_context():
            return self.run(*args, **kwargs)


celery.Task = ContextTask

# --- Celery Beat Schedule ---
poll_interval = float(flask_app.config.get('JOURNEY_POLL_INTERVAL_SECONDS', 60))

celery.conf.beat_schedule = {
    'process-journey-executions': {
        'task': 'tasks.journey_tasks.process_pending_journey_executions',
        # Claims due PENDING executions; a cycle stops itself after its time budget
        'schedule': poll_interval,
        # Drop runs that sat in the queue past the next tick
        'options': {'expires': poll_interval - 5},
    },
    'timeout-stuck-journey-calls': {
        'task': 'tasks.journey_tasks.timeout_stuck_call_executions',
        'schedule': 60.0,
    },
    'flush-journey-reschedules': {
        'task': 'tasks.journey_tasks.flush_journey_reschedules',
        'schedule': 60.0,
    },
}
celery.conf.timezone = 'UTC'

# Import tasks to ensure they're registered with Celery
with flask_app.app_context():
    import tasks.journey_tasks  # noqa: E402,F401
    logger.info("Registered celery tasks", tasks=sorted(celery.tasks.keys()))
