import uuid
from enum import Enum
from typing import Optional

from sqlalchemy import delete, insert, select, update

from . import cron
from .db import SessionLocal
from .models import backups, database_configs, jobs, tasks
from .schemas import (
    ACTIVE_JOB_STATUSES,
    JOB_TRANSITIONS,
    BackupRecord,
    CompressionType,
    DatabaseConfig,
    Job,
    JobStatus,
    Task,
    utcnow,
)

TASK_FIELDS = {
    "name",
    "database_config_id",
    "database_name",
    "cron_schedule",
    "compression_type",
    "cleanup_days",
    "use_non_transactional",
    "is_active",
}


def _column_values(values: dict) -> dict:
    return {key: value.value if isinstance(value, Enum) else value for key, value in values.items()}


def new_id() -> str:
    return str(uuid.uuid4())


def create_database_config(
    name: str,
    host: str,
    username: str,
    password: str,
    database_name: str | None = None,
    port: int = 3306,
) -> DatabaseConfig:
    now = utcnow()
    config = DatabaseConfig(
        id=new_id(),
        name=name,
        host=host,
        port=port,
        username=username,
        password=password,
        database_name=database_name,
        created_at=now,
        updated_at=now,
    )
    with SessionLocal() as session:
        session.execute(insert(database_configs).values(**config.model_dump()))
        session.commit()
    return config


def get_database_config(config_id: str) -> Optional[DatabaseConfig]:
    with SessionLocal() as session:
        row = session.execute(select(database_configs).where(database_configs.c.id == config_id)).first()
    return DatabaseConfig.model_validate(dict(row._mapping)) if row else None


def create_task(
    name: str,
    database_config_id: str,
    cron_schedule: str,
    database_name: str | None = None,
    compression_type: CompressionType = CompressionType.GZIP,
    cleanup_days: int = 30,
    use_non_transactional: bool = False,
    is_active: bool = True,
    now=None,
) -> Task:
    cron.validate(cron_schedule)
    now = now or utcnow()
    task = Task(
        id=new_id(),
        name=name,
        database_config_id=database_config_id,
        database_name=database_name,
        cron_schedule=cron_schedule,
        compression_type=compression_type,
        cleanup_days=cleanup_days,
        use_non_transactional=use_non_transactional,
        is_active=is_active,
        next_run=cron.next_run(cron_schedule, now, is_active),
        created_at=now,
        updated_at=now,
    )
    with SessionLocal() as session:
        session.execute(insert(tasks).values(**_column_values(task.model_dump())))
        session.commit()
    return task


def get_task(task_id: str) -> Optional[Task]:
    with SessionLocal() as session:
        row = session.execute(select(tasks).where(tasks.c.id == task_id)).first()
    return Task.model_validate(dict(row._mapping)) if row else None


def list_active_tasks() -> list[Task]:
    with SessionLocal() as session:
        rows = session.execute(select(tasks).where(tasks.c.is_active.is_(True)).order_by(tasks.c.created_at)).all()
    return [Task.model_validate(dict(row._mapping)) for row in rows]


def update_task(task_id: str, now=None, **changes) -> Task:
    """Apply ``changes`` and recompute ``next_run`` from the resulting schedule."""
    unknown = set(changes) - TASK_FIELDS
    if unknown:
        raise ValueError(f"Unknown task fields: {', '.join(sorted(unknown))}")
    task = get_task(task_id)
    if task is None:
        raise LookupError(f"Task not found: {task_id}")
    now = now or utcnow()
    updated = task.model_copy(update=changes)
    updated = Task.model_validate(updated.model_dump())
    cron.validate(updated.cron_schedule)
    values = dict(changes)
    values["next_run"] = cron.next_run(updated.cron_schedule, now, updated.is_active)
    values["updated_at"] = now
    with SessionLocal() as session:
        session.execute(update(tasks).where(tasks.c.id == task_id).values(**_column_values(values)))
        session.commit()
    return get_task(task_id)


def advance_next_run(task_id: str, now=None) -> Optional[Task]:
    task = get_task(task_id)
    if task is None:
        return None
    now = now or utcnow()
    with SessionLocal() as session:
        session.execute(
            update(tasks)
            .where(tasks.c.id == task_id)
            .values(next_run=cron.next_run(task.cron_schedule, now, task.is_active), updated_at=now)
        )
        session.commit()
    return get_task(task_id)


def record_task_run(task_id: str, now=None) -> Optional[Task]:
    task = get_task(task_id)
    if task is None:
        return None
    now = now or utcnow()
    with SessionLocal() as session:
        session.execute(
            update(tasks)
            .where(tasks.c.id == task_id)
            .values(
                last_run=now,
                next_run=cron.next_run(task.cron_schedule, now, task.is_active),
                updated_at=now,
            )
        )
        session.commit()
    return get_task(task_id)


def create_job(job: Job) -> Job:
    with SessionLocal() as session:
        session.execute(insert(jobs).values(**_column_values(job.model_dump(exclude={"updated_at"}))))
        session.commit()
    return job


def get_job(job_id: str) -> Optional[Job]:
    with SessionLocal() as session:
        row = session.execute(select(jobs).where(jobs.c.id == job_id)).first()
    return Job.model_validate(dict(row._mapping)) if row else None


def list_jobs(task_id: str | None = None, limit: int = 50) -> list[Job]:
    limit = max(1, min(int(limit or 50), 200))
    query = select(jobs).order_by(jobs.c.created_at.desc()).limit(limit)
    if task_id:
        query = query.where(jobs.c.task_id == task_id)
    with SessionLocal() as session:
        rows = session.execute(query).all()
    return [Job.model_validate(dict(row._mapping)) for row in rows]


def find_active_job(task_id: str) -> Optional[Job]:
    active = [status.value for status in ACTIVE_JOB_STATUSES]
    with SessionLocal() as session:
        row = session.execute(
            select(jobs).where(jobs.c.task_id == task_id, jobs.c.status.in_(active)).limit(1)
        ).first()
    return Job.model_validate(dict(row._mapping)) if row else None


def update_job(job_id: str, **fields):
    with SessionLocal() as session:
        session.execute(update(jobs).where(jobs.c.id == job_id).values(**_column_values(fields)))
        session.commit()


def transition_job(job_id: str, status: JobStatus, **fields) -> bool:
    """Move a job to ``status`` only if its current status allows it.

    Returns False when the job was already moved elsewhere (for example
    cancelled while its dump was still running).
    """
    allowed = [previous.value for previous in JOB_TRANSITIONS[status]]
    now = utcnow()
    values = dict(fields)
    values["status"] = status
    if status == JobStatus.RUNNING:
        values.setdefault("started_at", now)
    if status.is_terminal:
        values.setdefault("completed_at", now)
    with SessionLocal() as session:
        result = session.execute(
            update(jobs)
            .where(jobs.c.id == job_id, jobs.c.status.in_(allowed))
            .values(**_column_values(values))
        )
        session.commit()
    return result.rowcount == 1


def raise_job_progress(job_id: str, progress: int) -> bool:
    progress = max(0, min(int(progress), 100))
    with SessionLocal() as session:
        result = session.execute(
            update(jobs).where(jobs.c.id == job_id, jobs.c.progress < progress).values(progress=progress)
        )
        session.commit()
    return result.rowcount == 1


def create_backup_record(record: BackupRecord) -> BackupRecord:
    with SessionLocal() as session:
        session.execute(insert(backups).values(**_column_values(record.model_dump())))
        session.commit()
    return record


def get_backup_record(backup_id: str) -> Optional[BackupRecord]:
    with SessionLocal() as session:
        row = session.execute(select(backups).where(backups.c.id == backup_id)).first()
    return BackupRecord.model_validate(dict(row._mapping)) if row else None


def list_backup_records(task_id: str | None = None) -> list[BackupRecord]:
    query = select(backups).order_by(backups.c.created_at.desc())
    if task_id:
        query = query.where(backups.c.task_id == task_id)
    with SessionLocal() as session:
        rows = session.execute(query).all()
    return [BackupRecord.model_validate(dict(row._mapping)) for row in rows]


def delete_backups(backup_ids) -> int:
    backup_ids = list(backup_ids)
    if not backup_ids:
        return 0
    with SessionLocal() as session:
        result = session.execute(delete(backups).where(backups.c.id.in_(backup_ids)))
        session.commit()
    return result.rowcount
