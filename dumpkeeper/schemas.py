from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPRESSING = "compressing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self not in ACTIVE_JOB_STATUSES


ACTIVE_JOB_STATUSES = (JobStatus.PENDING, JobStatus.RUNNING, JobStatus.COMPRESSING)

# target status -> statuses it may be entered from
JOB_TRANSITIONS = {
    JobStatus.PENDING: (),
    JobStatus.RUNNING: (JobStatus.PENDING,),
    JobStatus.COMPRESSING: (JobStatus.RUNNING,),
    JobStatus.COMPLETED: (JobStatus.RUNNING, JobStatus.COMPRESSING),
    JobStatus.FAILED: ACTIVE_JOB_STATUSES,
    JobStatus.CANCELLED: ACTIVE_JOB_STATUSES,
}


class JobType(str, Enum):
    BACKUP = "backup"
    RESTORE = "restore"
    CLEANUP = "cleanup"


class CompressionType(str, Enum):
    NONE = "none"
    GZIP = "gzip"
    ZSTD = "zstd"

    @property
    def extension(self) -> str:
        return {"none": "tar", "gzip": "tar.gz", "zstd": "tar.zst"}[self.value]


class BackupKind(str, Enum):
    MANUAL = "manual"
    SCHEDULED = "scheduled"
    UPLOADED = "uploaded"
    EXTERNAL = "external"


class DatabaseConfigInfo(BaseModel):
    id: str
    name: str
    host: str
    port: int = 3306
    username: str
    database_name: Optional[str] = None


class DatabaseConfig(BaseModel):
    id: str
    name: str
    host: str
    port: int = 3306
    username: str
    password: str
    database_name: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    def info(self) -> DatabaseConfigInfo:
        return DatabaseConfigInfo(
            id=self.id,
            name=self.name,
            host=self.host,
            port=self.port,
            username=self.username,
            database_name=self.database_name,
        )


class TaskInfo(BaseModel):
    id: str
    name: str
    schedule: Optional[str] = None
    use_non_transactional: bool = False


class Task(BaseModel):
    id: str
    name: str
    database_config_id: str
    database_name: Optional[str] = None
    cron_schedule: str
    compression_type: CompressionType = CompressionType.GZIP
    cleanup_days: int = 30
    use_non_transactional: bool = False
    is_active: bool = True
    last_run: Optional[datetime] = None
    next_run: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    def resolve_database_name(self, database_config: DatabaseConfig) -> Optional[str]:
        return self.database_name or database_config.database_name

    def info(self) -> TaskInfo:
        return TaskInfo(
            id=self.id,
            name=self.name,
            schedule=self.cron_schedule,
            use_non_transactional=self.use_non_transactional,
        )


def used_database_label(database_config: DatabaseConfig, database_name: Optional[str]) -> str:
    return f"{database_config.name}/{database_name or ''}"


class Job(BaseModel):
    id: str
    task_id: Optional[str] = None
    used_database: Optional[str] = None
    job_type: JobType = JobType.BACKUP
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    log_path: Optional[str] = None
    backup_path: Optional[str] = None
    work_dir: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BackupRecord(BaseModel):
    id: str
    database_name: str
    database_config_id: str
    task_id: Optional[str] = None
    used_database: Optional[str] = None
    file_path: str
    meta_path: str
    file_size: int = 0
    compression_type: CompressionType = CompressionType.GZIP
    backup_type: BackupKind = BackupKind.SCHEDULED
    created_at: datetime = Field(default_factory=utcnow)

    class Config:
        from_attributes = True

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, value):
        return naive_utc(value)


class BackupMetadata(BaseModel):
    """Content of the sidecar file stored next to every archive."""

    id: str
    database_name: str
    database_config_id: str
    task_id: Optional[str] = None
    used_database: Optional[str] = None
    file_path: str = ""
    meta_path: str
    file_size: int = 0
    compression_type: CompressionType = CompressionType.GZIP
    created_at: datetime = Field(default_factory=utcnow)
    backup_type: BackupKind = BackupKind.SCHEDULED
    ident: Optional[str] = None
    database_config: DatabaseConfigInfo
    task_info: Optional[TaskInfo] = None

    @field_validator("created_at")
    @classmethod
    def normalize_created_at(cls, value):
        return naive_utc(value)

    def to_record(self, file_path: Optional[str] = None) -> BackupRecord:
        return BackupRecord(
            id=self.id,
            database_name=self.database_name,
            database_config_id=self.database_config_id,
            task_id=self.task_id,
            used_database=self.used_database,
            file_path=file_path or self.file_path,
            meta_path=self.meta_path,
            file_size=self.file_size,
            compression_type=self.compression_type,
            backup_type=self.backup_type,
            created_at=self.created_at,
        )


class TableStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    ERROR = "error"


class TableProgress(BaseModel):
    name: str
    status: TableStatus = TableStatus.PENDING
    progress_percent: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None


class ProgressManifest(BaseModel):
    count: int
    tables: list[str]
    excluded_tables: list[str] = []
    database_name: str
    started_at: datetime


class ProgressSnapshot(BaseModel):
    job_id: Optional[str] = None
    overall_progress: int
    total_tables: int
    completed_tables: int
    in_progress_tables: int
    pending_tables: int
    skipped_tables: int
    error_tables: int
    finished: bool = False
    tables: list[TableProgress]
    excluded_tables: list[str]
    database_name: str
    started_at: datetime
    last_log_at: Optional[datetime] = None


class WorkerStatus(BaseModel):
    is_running: bool = False
    last_tick: Optional[datetime] = None
    total_ticks: int = 0
    tasks_executed: int = 0
