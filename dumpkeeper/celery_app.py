from celery import Celery

from .config import settings

celery_app = Celery(
    "dumpkeeper",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["dumpkeeper.tasks"],
)

celery_app.conf.task_routes = {
    "dumpkeeper.tasks.*": {"queue": "dumpkeeper"},
}
