import shutil
import threading
import time
from datetime import datetime
from pathlib import Path

import pytest
from sqlalchemy import update

from dumpkeeper import store, worker as worker_module
from dumpkeeper.db import SessionLocal
from dumpkeeper.engines import TableClassification
from dumpkeeper.models import tasks
from dumpkeeper.progress import load_manifest
from dumpkeeper.schemas import BackupKind, BackupRecord, Job, JobStatus, JobType
from dumpkeeper.worker import PREVIOUS_RUNNING_MESSAGE, MissingDatabaseName, TaskWorker

requires_tar = pytest.mark.skipif(shutil.which("tar") is None, reason="tar not installed")

CREATED = datetime(2025, 10, 1, 1, 0, 0)
DUE = datetime(2025, 10, 1, 2, 0, 30)
FINISHED = datetime(2025, 10, 1, 2, 5, 0)


@pytest.fixture()
def fake_tools(monkeypatch):
    calls = []

    def fake_classify(config, database_name):
        return TableClassification(tables=["orders", "customers"], excluded=["legacy"])

    def fake_run_logged(command, log_path):
        calls.append(command)
        if "--outputdir" in command:
            output_dir = Path(command[command.index("--outputdir") + 1])
            (output_dir / "shop.orders.sql").write_text("INSERT INTO orders VALUES (1);")
        with open(log_path, "a", encoding="utf-8") as fh:
            fh.write("[2025-10-01 02:01:00] Thread 1: `shop`.`orders` [ 10% ]\n")
            fh.write("[2025-10-01 02:02:00] Finished dump at: 2025-10-01 02:02:00\n")
        return 0

    monkeypatch.setattr(worker_module, "classify_tables", fake_classify)
    monkeypatch.setattr(worker_module, "run_logged", fake_run_logged)
    return calls


def _worker(tmp_path, backend="inline"):
    return TaskWorker(
        dispatch_backend=backend,
        backup_dir=tmp_path / "backups",
        log_dir=tmp_path / "logs",
        clock=lambda: FINISHED,
    )


def _nightly(database_config, **changes):
    return store.create_task("nightly", database_config.id, "0 2 * * *", now=CREATED, **changes)


@requires_tar
def test_due_task_runs_to_completion(tmp_path, database_config, fake_tools):
    task = _nightly(database_config)
    worker = _worker(tmp_path)

    assert worker.tick(now=datetime(2025, 10, 1, 1, 59, 0)) == []
    jobs = worker.tick(now=DUE)

    assert len(jobs) == 1
    job = store.get_job(jobs[0].id)
    assert job.status == JobStatus.COMPLETED
    assert job.progress == 100
    assert job.used_database == "primary/shop"
    assert Path(job.backup_path).exists()
    assert job.backup_path.endswith(".tar.gz")

    records = store.list_backup_records(task_id=task.id)
    assert [record.file_path for record in records] == [job.backup_path]
    assert records[0].backup_type == BackupKind.SCHEDULED

    task = store.get_task(task.id)
    assert task.last_run == FINISHED
    assert task.next_run == datetime(2025, 10, 2, 2, 0, 0)

    command = fake_tools[0]
    assert command[command.index("--database") + 1] == "shop"
    assert "--ignore-engines" in command

    snapshot = worker.job_progress(job.id)
    assert snapshot.finished
    assert snapshot.skipped_tables == 1
    assert snapshot.overall_progress == 100

    status = worker.status()
    assert status.total_ticks == 2
    assert status.tasks_executed == 1
    assert status.last_tick == DUE


def test_single_flight_drops_overlapping_tick(tmp_path, database_config, fake_tools, monkeypatch):
    task = _nightly(database_config)
    dispatched = []
    worker = _worker(tmp_path)
    monkeypatch.setattr(worker, "_dispatch", lambda job_type, job_id, payload: dispatched.append(job_id))

    first = worker.tick(now=DUE)
    assert [job.status for job in first] == [JobStatus.PENDING]
    assert store.get_task(task.id).next_run == datetime(2025, 10, 1, 2, 0, 0)

    second = worker.tick(now=datetime(2025, 10, 1, 2, 1, 0))
    assert [job.status for job in second] == [JobStatus.CANCELLED]
    assert second[0].error_message == PREVIOUS_RUNNING_MESSAGE
    assert dispatched == [first[0].id]
    assert store.get_task(task.id).next_run == datetime(2025, 10, 2, 2, 0, 0)

    active = [job for job in store.list_jobs(task_id=task.id) if not job.status.is_terminal]
    assert len(active) == 1
    assert worker.status().tasks_executed == 1


def test_dump_failure_marks_job_failed_and_keeps_workspace(tmp_path, database_config, monkeypatch):
    monkeypatch.setattr(worker_module, "classify_tables", lambda config, name: TableClassification(tables=["t"]))
    monkeypatch.setattr(worker_module, "run_logged", lambda command, log_path: 2)
    task = _nightly(database_config)

    job = _worker(tmp_path).tick(now=DUE)[0]

    job = store.get_job(job.id)
    assert job.status == JobStatus.FAILED
    assert "exited with code 2" in job.error_message
    assert (Path(job.work_dir) / "scratch").is_dir()
    assert store.list_backup_records() == []
    assert store.get_task(task.id).last_run == FINISHED


def test_classifier_error_fails_job(tmp_path, database_config, monkeypatch):
    def broken(config, name):
        raise ConnectionError("cannot reach db.internal")

    monkeypatch.setattr(worker_module, "classify_tables", broken)
    _nightly(database_config)

    job = store.get_job(_worker(tmp_path).tick(now=DUE)[0].id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "cannot reach db.internal"


def test_missing_database_name_creates_no_job(tmp_path, fake_tools):
    config = store.create_database_config(name="bare", host="db", username="u", password="p")
    task = store.create_task("nightly", config.id, "0 2 * * *", now=CREATED)
    worker = _worker(tmp_path)

    assert worker.tick(now=DUE) == []
    assert store.list_jobs() == []
    assert store.get_task(task.id).next_run == datetime(2025, 10, 2, 2, 0, 0)

    with pytest.raises(MissingDatabaseName):
        worker.run_now(task.id)


def test_manifest_counts_excluded_tables(tmp_path, database_config, fake_tools, monkeypatch):
    monkeypatch.setattr(worker_module, "run_logged", lambda command, log_path: 2)
    _nightly(database_config)

    job = _worker(tmp_path).tick(now=DUE)[0]

    manifest = load_manifest(tmp_path / "logs" / job.id / "dumpkeeper.meta.json")
    assert manifest.count == 3
    assert manifest.tables == ["orders", "customers"]
    assert manifest.excluded_tables == ["legacy"]


def test_job_cancelled_before_start_is_never_classified(tmp_path, database_config, monkeypatch):
    classified = []
    monkeypatch.setattr(worker_module, "classify_tables", lambda config, name: classified.append(name))
    task = _nightly(database_config)
    job = store.create_job(Job(id=store.new_id(), task_id=task.id, created_at=DUE))
    worker = _worker(tmp_path)
    assert worker.cancel_job(job.id)

    worker.execute_backup_job(job.id, task.id)

    assert classified == []
    assert store.get_job(job.id).status == JobStatus.CANCELLED
    assert not (tmp_path / "backups").exists()
    assert not (tmp_path / "logs" / job.id).exists()
    assert store.get_task(task.id).last_run == FINISHED


def test_task_override_database_name(tmp_path, database_config, fake_tools):
    _nightly(database_config, database_name="crm")
    _worker(tmp_path).tick(now=DUE)
    command = fake_tools[0]
    assert command[command.index("--database") + 1] == "crm"


def test_non_transactional_task_dumps_every_table(tmp_path, database_config, fake_tools):
    _nightly(database_config, use_non_transactional=True)
    worker = _worker(tmp_path)
    job = worker.tick(now=DUE)[0]
    command = fake_tools[0]
    assert "--trx-tables" in command
    manifest = (tmp_path / "logs" / job.id / "dumpkeeper.meta.json").read_text()
    assert "legacy" in manifest
    snapshot = worker.job_progress(job.id)
    assert snapshot.skipped_tables == 0
    assert snapshot.total_tables == 3


def test_run_now_is_manual_and_single_flight(tmp_path, database_config, monkeypatch):
    task = _nightly(database_config)
    worker = _worker(tmp_path)
    monkeypatch.setattr(worker, "_dispatch", lambda job_type, job_id, payload: None)

    first = worker.run_now(task.id)
    second = worker.run_now(task.id)

    assert first.status == JobStatus.PENDING
    assert second.status == JobStatus.CANCELLED
    with pytest.raises(LookupError):
        worker.run_now("missing")


@requires_tar
def test_run_now_records_manual_backup(tmp_path, database_config, fake_tools):
    task = _nightly(database_config)
    job = _worker(tmp_path).run_now(task.id)
    assert store.get_job(job.id).status == JobStatus.COMPLETED
    assert store.list_backup_records()[0].backup_type == BackupKind.MANUAL


def test_cancel_job(tmp_path, database_config):
    task = _nightly(database_config)
    work_dir = tmp_path / "backups" / "primary-shop-x"
    (work_dir / "scratch").mkdir(parents=True)
    job = store.create_job(Job(id=store.new_id(), task_id=task.id, created_at=DUE))
    store.transition_job(job.id, JobStatus.RUNNING, work_dir=str(work_dir))
    worker = _worker(tmp_path)

    assert worker.cancel_job(job.id, remove_work_dir=True)
    assert store.get_job(job.id).status == JobStatus.CANCELLED
    assert not work_dir.exists()
    assert not worker.cancel_job(job.id)
    assert not store.transition_job(job.id, JobStatus.COMPLETED)
    with pytest.raises(LookupError):
        worker.cancel_job("missing")


def test_cancelled_job_is_not_resurrected(tmp_path, database_config, monkeypatch):
    task = _nightly(database_config)
    worker = _worker(tmp_path)
    monkeypatch.setattr(worker_module, "classify_tables", lambda config, name: TableClassification(tables=["t"]))

    def cancel_while_dumping(command, log_path):
        job = store.list_jobs(task_id=task.id)[0]
        worker.cancel_job(job.id)
        return 0

    monkeypatch.setattr(worker_module, "run_logged", cancel_while_dumping)
    job = worker.tick(now=DUE)[0]

    assert store.get_job(job.id).status == JobStatus.CANCELLED
    assert store.list_backup_records() == []


def test_job_progress_raises_stored_progress(tmp_path, database_config, monkeypatch):
    task = _nightly(database_config)
    worker = _worker(tmp_path)
    monkeypatch.setattr(worker_module, "classify_tables", lambda config, name: TableClassification(tables=["a", "b"]))
    seen = {}

    def half_done(command, log_path):
        with open(log_path, "a", encoding="utf-8") as fh:
            fh.write("Thread 1: `shop`.`a` [100%]\n")
        job = store.list_jobs(task_id=task.id)[0]
        seen["snapshot"] = worker.job_progress(job.id)
        seen["progress"] = store.get_job(job.id).progress
        return 1

    monkeypatch.setattr(worker_module, "run_logged", half_done)
    worker.tick(now=DUE)

    assert seen["snapshot"].overall_progress == 50
    assert seen["progress"] == 50


def test_restore_backup_runs_loader(tmp_path, database_config, monkeypatch):
    record = store.create_backup_record(
        BackupRecord(
            id="abcdef12-0000",
            database_name="shop",
            database_config_id=database_config.id,
            file_path=str(tmp_path / "shop-20251001_020000.tar.gz"),
            meta_path=str(tmp_path / "dumpkeeper.backup.json"),
            created_at=DUE,
        )
    )
    extracted = []
    commands = []
    monkeypatch.setattr(worker_module, "extract_archive", lambda archive, dest: extracted.append((archive, dest)))

    def fake_loader(command, log_path):
        commands.append(command)
        return 0

    monkeypatch.setattr(worker_module, "run_logged", fake_loader)

    job = _worker(tmp_path).restore_backup(record.id)

    job = store.get_job(job.id)
    assert job.job_type == JobType.RESTORE
    assert job.status == JobStatus.COMPLETED
    assert job.used_database == "primary/shop_abcde"
    assert commands[0][commands[0].index("--database") + 1] == "shop_abcde"
    assert "--overwrite-tables" not in commands[0]
    assert extracted[0][0] == record.file_path
    assert not Path(extracted[0][1]).exists()


def test_restore_overwrite_and_rename(tmp_path, database_config, monkeypatch):
    store.create_backup_record(
        BackupRecord(
            id="b-1",
            database_name="shop",
            database_config_id=database_config.id,
            file_path="/backups/shop.tar.gz",
            meta_path="/backups/dumpkeeper.backup.json",
            created_at=DUE,
        )
    )
    worker = _worker(tmp_path)
    payloads = []
    monkeypatch.setattr(worker, "_dispatch", lambda job_type, job_id, payload: payloads.append(payload))

    worker.restore_backup("b-1", overwrite_existing=True)
    worker.restore_backup("b-1", new_database_name="shop_copy")

    assert payloads[0]["database_name"] == "shop"
    assert payloads[0]["overwrite_existing"] is True
    assert payloads[1]["database_name"] == "shop_copy"
    with pytest.raises(LookupError):
        worker.restore_backup("missing")


def test_restore_loader_failure(tmp_path, database_config, monkeypatch):
    job = store.create_job(Job(id=store.new_id(), job_type=JobType.RESTORE, created_at=DUE))
    monkeypatch.setattr(worker_module, "extract_archive", lambda archive, dest: dest)
    monkeypatch.setattr(worker_module, "run_logged", lambda command, log_path: 1)

    _worker(tmp_path).execute_restore_job(job.id, "/backups/shop.tar.gz", database_config.id, "shop")

    job = store.get_job(job.id)
    assert job.status == JobStatus.FAILED
    assert job.error_message == "myloader exited with code 1"


def test_inactive_task_and_missing_next_run(tmp_path, database_config, monkeypatch):
    task = _nightly(database_config)
    worker = _worker(tmp_path)
    monkeypatch.setattr(worker, "_dispatch", lambda job_type, job_id, payload: None)

    with SessionLocal() as session:
        session.execute(update(tasks).where(tasks.c.id == task.id).values(next_run=None))
        session.commit()

    assert worker.tick(now=DUE) == []
    assert store.get_task(task.id).next_run == datetime(2025, 10, 2, 2, 0, 0)

    store.update_task(task.id, now=DUE, is_active=False)
    assert worker.tick(now=datetime(2025, 10, 2, 2, 0, 0)) == []


def test_worker_start_and_stop(tmp_path):
    worker = _worker(tmp_path, backend="thread")
    worker.start()
    try:
        assert worker.status().is_running
    finally:
        worker.stop()
    assert not worker.status().is_running


def test_unknown_dispatch_backend():
    with pytest.raises(ValueError):
        TaskWorker(dispatch_backend="carrier-pigeon")


def test_thread_dispatch_shares_one_executor(tmp_path, monkeypatch):
    created = []
    submitted = []

    class SlowExecutor:
        def __init__(self, max_workers):
            time.sleep(0.05)
            created.append(max_workers)

        def submit(self, fn, *args, **kwargs):
            submitted.append(args)

        def shutdown(self, wait=True):
            pass

    monkeypatch.setattr(worker_module, "ThreadPoolExecutor", SlowExecutor)
    worker = TaskWorker(
        dispatch_backend="thread",
        backup_dir=tmp_path / "backups",
        log_dir=tmp_path / "logs",
        max_concurrent_jobs=2,
    )
    threads = [
        threading.Thread(target=worker._dispatch, args=(JobType.BACKUP, f"job-{n}", {"task_id": "t"}))
        for n in range(5)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert created == [2]
    assert len(submitted) == 5
