from celery import Celery
from kombu import Queue
from app.config import settings

# Only used when TASK_RUNNER=celery. Task state lives in the task store, the Celery
# result backend just records that a job ran.
celery_app = Celery(
    "image_edit_bff",
    broker=settings.redis_url,
    backend=settings.redis_url
)

celery_app.conf.enable_utc = True
celery_app.conf.timezone = 'UTC'

# JSON only; jobs carry nothing but a task id
celery_app.conf.task_serializer = 'json'
celery_app.conf.result_serializer = 'json'
celery_app.conf.accept_content = ['json']
celery_app.conf.result_expires = settings.TASK_EXPIRY_SECONDS

# One Gemini call per worker process at a time
celery_app.conf.worker_prefetch_multiplier = 1
celery_app.conf.task_acks_late = True

celery_app.conf.task_queues = (
    Queue('edits', routing_key='task.edits'),
)
celery_app.conf.task_default_queue = 'edits'
celery_app.conf.task_default_exchange = 'edits'
celery_app.conf.task_default_routing_key = 'task.edits'

celery_app.conf.task_routes = {
    'app.tasks.edit_tasks.process_edit_task_job': {'queue': 'edits'},
}

# Import task modules AFTER celery_app is defined so they register with it
from app.tasks import edit_tasks # noqa: E402,F401
