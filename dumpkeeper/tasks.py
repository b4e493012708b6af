from celery.utils.log import get_task_logger

from . import store
from .celery_app import celery_app
from .worker import TaskWorker

logger = get_task_logger(__name__)


def _job_result(job_id: str) -> dict:
    job = store.get_job(job_id)
    if job is None:
        return {"job_id": job_id, "status": None}
    return {
        "job_id": job.id,
        "status": job.status.value,
        "backup_path": job.backup_path,
        "error": job.error_message,
    }


@celery_app.task(name="dumpkeeper.tasks.run_backup_job")
def run_backup_job(job_id: str, task_id: str, backup_kind: str = "scheduled"):
    logger.info(f"backup_job_received job={job_id} task={task_id}")
    TaskWorker(dispatch_backend="inline").execute_backup_job(job_id, task_id, backup_kind)
    return _job_result(job_id)


@celery_app.task(name="dumpkeeper.tasks.run_restore_job")
def run_restore_job(
    job_id: str,
    archive_path: str,
    target_config_id: str,
    database_name: str,
    overwrite_existing: bool = False,
):
    logger.info(f"restore_job_received job={job_id} database={database_name}")
    TaskWorker(dispatch_backend="inline").execute_restore_job(
        job_id,
        archive_path,
        target_config_id,
        database_name,
        overwrite_existing=overwrite_existing,
    )
    return _job_result(job_id)


@celery_app.task(name="dumpkeeper.tasks.run_cleanup")
def run_cleanup():
    removed = TaskWorker(dispatch_backend="inline").run_cleanup()
    logger.info(f"backup_cleanup_task removed={len(removed)}")
    return {"removed": [record.id for record in removed]}
