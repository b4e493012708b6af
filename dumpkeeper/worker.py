import logging
import shutil
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from apscheduler.schedulers.background import BackgroundScheduler

from . import cron, store
from .catalog import cleanup_expired_backups, scan_backups
from .config import settings
from .db import init_db
from .dumper import build_dump_command, build_restore_command, extract_archive, run_logged
from .engines import TableClassification, classify_tables
from .lifecycle import BackupWorkspace, WorkspaceState
from .log import setup_logging
from .progress import LOG_FILE, MANIFEST_FILE, job_log_dir, load_progress, write_manifest
from .schemas import (
    BackupKind,
    Job,
    JobStatus,
    JobType,
    ProgressManifest,
    WorkerStatus,
    used_database_label,
    utcnow,
)

logger = logging.getLogger(__name__)

PREVIOUS_RUNNING_MESSAGE = "previous task is still running"
CANCELLED_MESSAGE = "Cancelled by user"
DISPATCH_BACKENDS = ("thread", "celery", "inline")


class MissingDatabaseName(ValueError):
    pass


class TaskWorker:
    """Drives scheduled backups and runs their units of work.

    ``dispatch_backend`` decides where a unit of work runs: ``thread`` starts a
    daemon thread (or uses a bounded pool when ``max_concurrent_jobs`` is set),
    ``celery`` sends it to the broker and ``inline`` runs it in the caller.
    """

    def __init__(
        self,
        dispatch_backend: str | None = None,
        backup_dir=None,
        log_dir=None,
        max_concurrent_jobs: int | None = None,
        clock=utcnow,
    ):
        self.dispatch_backend = dispatch_backend or settings.dispatch_backend
        if self.dispatch_backend not in DISPATCH_BACKENDS:
            raise ValueError(f"Unknown dispatch backend: {self.dispatch_backend}")
        self.backup_dir = Path(backup_dir or settings.dumpkeeper_backup_dir)
        self.log_dir = Path(log_dir or settings.dumpkeeper_log_dir)
        self.max_concurrent_jobs = max_concurrent_jobs or settings.max_concurrent_jobs
        self.clock = clock
        self._status = WorkerStatus()
        self._status_lock = threading.Lock()
        self._flight_lock = threading.Lock()
        self._scheduler = None
        self._executor = None

    # status

    def status(self) -> WorkerStatus:
        with self._status_lock:
            return self._status.model_copy()

    def _update_status(self, **fields):
        with self._status_lock:
            self._status = self._status.model_copy(update=fields)

    # scheduling

    def tick(self, now=None) -> list[Job]:
        now = now or self.clock()
        created = []
        for task in store.list_active_tasks():
            try:
                job = self._tick_task(task, now)
            except Exception:  # noqa: BLE001
                logger.exception(f"task_tick_failed task={task.id}")
                continue
            if job is not None:
                created.append(job)
        dispatched = sum(1 for job in created if job.status == JobStatus.PENDING)
        with self._status_lock:
            self._status = self._status.model_copy(
                update={
                    "last_tick": now,
                    "total_ticks": self._status.total_ticks + 1,
                    "tasks_executed": self._status.tasks_executed + dispatched,
                }
            )
        return created

    def _tick_task(self, task, now):
        if task.next_run is None:
            store.advance_next_run(task.id, now)
            return None
        if not cron.is_due(task.next_run, now):
            return None
        try:
            return self._trigger(task, now, BackupKind.SCHEDULED)
        except MissingDatabaseName as exc:
            logger.error(f"task_skipped task={task.id} error={exc}")
            store.advance_next_run(task.id, now)
            return None

    def _trigger(self, task, now, backup_kind: BackupKind) -> Job:
        config = store.get_database_config(task.database_config_id)
        if config is None:
            raise LookupError(f"Database config not found: {task.database_config_id}")
        database_name = task.resolve_database_name(config)
        if not database_name:
            raise MissingDatabaseName(f"No database name for task {task.id}")
        label = used_database_label(config, database_name)

        with self._flight_lock:
            active = store.find_active_job(task.id)
            if active is not None:
                job = store.create_job(
                    Job(
                        id=store.new_id(),
                        task_id=task.id,
                        used_database=label,
                        status=JobStatus.CANCELLED,
                        error_message=PREVIOUS_RUNNING_MESSAGE,
                        completed_at=now,
                        created_at=now,
                    )
                )
                store.advance_next_run(task.id, now)
                logger.warning(f"task_still_running task={task.id} active_job={active.id} dropped_job={job.id}")
                return job
            job = store.create_job(
                Job(id=store.new_id(), task_id=task.id, used_database=label, created_at=now)
            )

        logger.info(f"backup_job_created job={job.id} task={task.id} kind={backup_kind.value}")
        self._dispatch(JobType.BACKUP, job.id, {"task_id": task.id, "backup_kind": backup_kind.value})
        return job

    def run_now(self, task_id: str) -> Job:
        task = store.get_task(task_id)
        if task is None:
            raise LookupError(f"Task not found: {task_id}")
        return self._trigger(task, self.clock(), BackupKind.MANUAL)

    def _dispatch(self, job_type: JobType, job_id: str, payload: dict):
        if self.dispatch_backend == "celery":
            from .tasks import run_backup_job, run_restore_job

            celery_task = run_backup_job if job_type == JobType.BACKUP else run_restore_job
            celery_task.delay(job_id, **payload)
            return
        target = self.execute_backup_job if job_type == JobType.BACKUP else self.execute_restore_job
        if self.dispatch_backend == "inline":
            target(job_id, **payload)
        elif self.max_concurrent_jobs:
            with self._flight_lock:
                if self._executor is None:
                    self._executor = ThreadPoolExecutor(max_workers=self.max_concurrent_jobs)
                executor = self._executor
            executor.submit(target, job_id, **payload)
        else:
            thread = threading.Thread(target=target, args=(job_id,), kwargs=payload, daemon=True)
            thread.start()

    # units of work

    def execute_backup_job(self, job_id: str, task_id: str, backup_kind: str = BackupKind.SCHEDULED.value):
        workspace = None
        try:
            task = store.get_task(task_id)
            if task is None:
                raise LookupError(f"Task not found: {task_id}")
            config = store.get_database_config(task.database_config_id)
            if config is None:
                raise LookupError(f"Database config not found: {task.database_config_id}")
            database_name = task.resolve_database_name(config)
            if not database_name:
                raise MissingDatabaseName(f"No database name for task {task.id}")

            job = store.get_job(job_id)
            if job is None or job.status != JobStatus.PENDING:
                logger.info(f"backup_job_skipped job={job_id} status={job.status.value if job else None}")
                return

            classification = classify_tables(config, database_name)
            if task.use_non_transactional:
                classification = TableClassification(tables=classification.tables + classification.excluded)

            log_dir = job_log_dir(job_id, self.log_dir)
            log_dir.mkdir(parents=True, exist_ok=True)
            log_path = log_dir / LOG_FILE
            workspace = BackupWorkspace(
                config,
                database_name,
                task=task,
                compression=task.compression_type,
                backup_kind=BackupKind(backup_kind),
                base_dir=self.backup_dir,
            )
            scratch_dir = workspace.begin()
            write_manifest(
                log_dir / MANIFEST_FILE,
                ProgressManifest(
                    count=len(classification.tables) + len(classification.excluded),
                    tables=classification.tables,
                    excluded_tables=classification.excluded,
                    database_name=database_name,
                    started_at=self.clock(),
                ),
            )
            if not store.transition_job(job_id, JobStatus.RUNNING, log_path=str(log_path), work_dir=str(workspace.root)):
                workspace.abandon("job is no longer pending")
                return

            command = build_dump_command(
                config,
                database_name,
                scratch_dir,
                compression=task.compression_type,
                use_non_transactional=task.use_non_transactional,
            )
            returncode = run_logged(command, log_path)
            if returncode != 0:
                message = f"mydumper exited with code {returncode}"
                workspace.abandon(message)
                store.transition_job(job_id, JobStatus.FAILED, error_message=message)
                logger.error(f"backup_job_failed job={job_id} error={message}")
                return

            if not store.transition_job(job_id, JobStatus.COMPRESSING):
                workspace.abandon("job was cancelled")
                return
            record = workspace.finalize()
            if store.transition_job(job_id, JobStatus.COMPLETED, progress=100, backup_path=record.file_path):
                store.create_backup_record(record)
                logger.info(f"backup_job_completed job={job_id} path={record.file_path} size={record.file_size}")
            else:
                logger.warning(f"backup_job_cancelled_after_archive job={job_id} path={record.file_path}")
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"backup_job_failed job={job_id}")
            if workspace is not None and workspace.state == WorkspaceState.BEGUN:
                workspace.abandon(str(exc))
            store.transition_job(job_id, JobStatus.FAILED, error_message=str(exc))
        finally:
            store.record_task_run(task_id, self.clock())

    def restore_backup(
        self,
        backup_id: str,
        target_config_id: str | None = None,
        new_database_name: str | None = None,
        overwrite_existing: bool = False,
    ) -> Job:
        record = store.get_backup_record(backup_id)
        if record is None:
            record = next((found for found in scan_backups(self.backup_dir) if found.id == backup_id), None)
        if record is None:
            raise LookupError(f"Backup not found: {backup_id}")
        config = store.get_database_config(target_config_id or record.database_config_id)
        if config is None:
            raise LookupError(f"Database config not found: {target_config_id or record.database_config_id}")

        if new_database_name:
            database_name = new_database_name
        elif overwrite_existing:
            database_name = record.database_name
        else:
            database_name = f"{config.database_name or record.database_name}_{backup_id[:5]}"

        job = store.create_job(
            Job(
                id=store.new_id(),
                job_type=JobType.RESTORE,
                used_database=used_database_label(config, database_name),
                backup_path=record.file_path,
                created_at=self.clock(),
            )
        )
        logger.info(f"restore_job_created job={job.id} backup={backup_id} database={database_name}")
        self._dispatch(
            JobType.RESTORE,
            job.id,
            {
                "archive_path": record.file_path,
                "target_config_id": config.id,
                "database_name": database_name,
                "overwrite_existing": overwrite_existing,
            },
        )
        return job

    def execute_restore_job(
        self,
        job_id: str,
        archive_path: str,
        target_config_id: str,
        database_name: str,
        overwrite_existing: bool = False,
    ):
        log_path = job_log_dir(job_id, self.log_dir) / LOG_FILE
        extract_dir = Path(tempfile.mkdtemp(prefix="dumpkeeper-restore-"))
        try:
            if not store.transition_job(job_id, JobStatus.RUNNING, log_path=str(log_path)):
                return
            config = store.get_database_config(target_config_id)
            if config is None:
                raise LookupError(f"Database config not found: {target_config_id}")
            extract_archive(archive_path, extract_dir)
            command = build_restore_command(config, database_name, extract_dir, overwrite_existing=overwrite_existing)
            returncode = run_logged(command, log_path)
            if returncode != 0:
                message = f"myloader exited with code {returncode}"
                store.transition_job(job_id, JobStatus.FAILED, error_message=message)
                logger.error(f"restore_job_failed job={job_id} error={message}")
                return
            store.transition_job(job_id, JobStatus.COMPLETED, progress=100)
            logger.info(f"restore_job_completed job={job_id} database={database_name}")
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"restore_job_failed job={job_id}")
            store.transition_job(job_id, JobStatus.FAILED, error_message=str(exc))
        finally:
            shutil.rmtree(extract_dir, ignore_errors=True)

    # operator actions

    def cancel_job(self, job_id: str, remove_work_dir: bool = False) -> bool:
        job = store.get_job(job_id)
        if job is None:
            raise LookupError(f"Job not found: {job_id}")
        if job.status.is_terminal:
            return False
        if not store.transition_job(job_id, JobStatus.CANCELLED, error_message=CANCELLED_MESSAGE):
            return False
        logger.info(f"job_cancelled job={job_id} remove_work_dir={remove_work_dir}")
        if remove_work_dir and job.work_dir:
            work_dir = Path(job.work_dir)
            if work_dir.exists():
                shutil.rmtree(work_dir)
        return True

    def job_progress(self, job_id: str):
        job = store.get_job(job_id)
        if job is None:
            raise LookupError(f"Job not found: {job_id}")
        snapshot = load_progress(job_log_dir(job_id, self.log_dir), job_id)
        if job.status == JobStatus.RUNNING and snapshot.overall_progress > job.progress:
            store.raise_job_progress(job_id, snapshot.overall_progress)
        return snapshot

    def run_cleanup(self, now=None):
        removed = cleanup_expired_backups(self.backup_dir, store.list_active_tasks(), now or self.clock())
        store.delete_backups(record.id for record in removed)
        if removed:
            logger.info(f"backup_cleanup_done removed={len(removed)}")
        return removed

    # lifecycle

    def start(self):
        if self._scheduler is not None:
            return
        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self.tick,
            "interval",
            seconds=settings.tick_interval_seconds,
            id="dumpkeeper_tick",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.run_cleanup,
            "interval",
            minutes=settings.cleanup_interval_minutes,
            id="dumpkeeper_cleanup",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        self._update_status(is_running=True)
        logger.info(f"worker_started tick_seconds={settings.tick_interval_seconds} backend={self.dispatch_backend}")

    def stop(self):
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        self._update_status(is_running=False)
        logger.info("worker_stopped")


def main():
    setup_logging()
    init_db()
    worker = TaskWorker()
    worker.start()
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        worker.stop()


if __name__ == "__main__":
    main()
