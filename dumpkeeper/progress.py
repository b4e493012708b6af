"""Table-level progress rebuilt from the mydumper console log.

mydumper does not report which tables are finished, only which table each
worker thread is currently on. A table is therefore considered done when the
last thread working on it moves to another table, or when the dump reports
that it has finished.
"""

import re
from datetime import datetime
from pathlib import Path
from typing import Optional

from .config import settings
from .schemas import ProgressManifest, ProgressSnapshot, TableProgress, TableStatus

MANIFEST_FILE = "dumpkeeper.meta.json"
LOG_FILE = "mydumper.log"

SKIPPED_MESSAGE = "Non-transactional table, excluded from backup"
ERROR_MESSAGE = "Error during backup"

TIMESTAMP_RE = re.compile(r"^\[(\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2})\]")
ROW_ESTIMATE_RE = re.compile(r"`[^`]+`\.`([^`]+)` has ~?\d+ rows")
SCHEMA_RE = re.compile(r"dumping schema for `([^`]+)`")
THREAD_RE = re.compile(r"Thread (\d+): `[^`]+`\.`([^`]+)` \[\s*(\d+)%\s*\]")
ERROR_RE = re.compile(r"\b(?:ERROR|CRITICAL)\b.*`([^`]+)`")
FINISHED_MARKER = "Finished dump at"


def job_log_dir(job_id: str, base_dir=None) -> Path:
    return Path(base_dir or settings.dumpkeeper_log_dir) / job_id


def _line_timestamp(line: str) -> Optional[datetime]:
    match = TIMESTAMP_RE.match(line)
    if not match:
        return None
    return datetime.strptime(match.group(1), "%Y-%m-%d %H:%M:%S")


class _TableBook:
    def __init__(self, names):
        self.tables = {name: TableProgress(name=name) for name in names}
        self.thread_table: dict[int, str] = {}
        self.table_threads: dict[str, set[int]] = {}

    def start(self, name, at):
        table = self.tables.get(name)
        if table is None or table.status != TableStatus.PENDING:
            return
        table.status = TableStatus.IN_PROGRESS
        table.started_at = table.started_at or at

    def complete(self, name, at):
        table = self.tables.get(name)
        if table is None or table.status in (TableStatus.COMPLETED, TableStatus.ERROR):
            return
        table.status = TableStatus.COMPLETED
        table.progress_percent = 100
        table.started_at = table.started_at or at
        table.completed_at = at

    def fail(self, name):
        table = self.tables.get(name)
        if table is None or table.status not in (TableStatus.PENDING, TableStatus.IN_PROGRESS):
            return
        table.status = TableStatus.ERROR
        table.error_message = ERROR_MESSAGE

    def assign(self, thread, name, percent, at):
        previous = self.thread_table.get(thread)
        if previous is not None and previous != name:
            holders = self.table_threads.get(previous, set())
            holders.discard(thread)
            if not holders:
                self.complete(previous, at)
        self.thread_table[thread] = name
        self.table_threads.setdefault(name, set()).add(thread)

        if percent >= 100:
            self.complete(name, at)
            return
        table = self.tables.get(name)
        if table is None:
            return
        if table.status in (TableStatus.PENDING, TableStatus.IN_PROGRESS):
            self.start(name, at)
            table.progress_percent = max(percent, table.progress_percent or 0)


def reconstruct_progress(manifest: ProgressManifest, log_text: str, job_id: str | None = None) -> ProgressSnapshot:
    book = _TableBook(manifest.tables)
    finished = False
    finished_at = None
    last_log_at = None

    for line in log_text.splitlines():
        stamp = _line_timestamp(line)
        if stamp is not None:
            last_log_at = stamp
        at = stamp or last_log_at

        started = ROW_ESTIMATE_RE.search(line) or SCHEMA_RE.search(line)
        if started:
            book.start(started.group(1), at)

        thread = THREAD_RE.search(line)
        if thread:
            book.assign(int(thread.group(1)), thread.group(2), int(thread.group(3)), at)

        error = ERROR_RE.search(line)
        if error:
            book.fail(error.group(1))

        if FINISHED_MARKER in line:
            finished = True
            finished_at = at

    if finished:
        for name in book.tables:
            book.complete(name, finished_at)

    tables = list(book.tables.values())
    for name in manifest.excluded_tables:
        tables.append(
            TableProgress(
                name=name,
                status=TableStatus.SKIPPED,
                completed_at=manifest.started_at,
                error_message=SKIPPED_MESSAGE,
            )
        )

    counts = {status: 0 for status in TableStatus}
    for table in tables:
        counts[table.status] += 1
    total = len(tables)
    done = counts[TableStatus.COMPLETED] + counts[TableStatus.SKIPPED]
    overall = (done * 100) // total if total else 0

    return ProgressSnapshot(
        job_id=job_id,
        overall_progress=overall,
        total_tables=total,
        completed_tables=counts[TableStatus.COMPLETED],
        in_progress_tables=counts[TableStatus.IN_PROGRESS],
        pending_tables=counts[TableStatus.PENDING],
        skipped_tables=counts[TableStatus.SKIPPED],
        error_tables=counts[TableStatus.ERROR],
        finished=finished,
        tables=tables,
        excluded_tables=list(manifest.excluded_tables),
        database_name=manifest.database_name,
        started_at=manifest.started_at,
        last_log_at=last_log_at,
    )


def write_manifest(path, manifest: ProgressManifest) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(manifest.model_dump_json(indent=2), encoding="utf-8")
    return path


def load_manifest(path) -> ProgressManifest:
    return ProgressManifest.model_validate_json(Path(path).read_text(encoding="utf-8"))


def load_progress(log_dir, job_id: str | None = None) -> ProgressSnapshot:
    log_dir = Path(log_dir)
    manifest = load_manifest(log_dir / MANIFEST_FILE)
    log_text = (log_dir / LOG_FILE).read_text(encoding="utf-8", errors="replace")
    return reconstruct_progress(manifest, log_text, job_id=job_id)
