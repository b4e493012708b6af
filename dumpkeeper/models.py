from sqlalchemy import Table, Column, Integer, String, MetaData, DateTime, Boolean, BigInteger, Text
from sqlalchemy.sql import func

metadata = MetaData()

database_configs = Table(
    "database_configs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(200), nullable=False),
    Column("host", String(255), nullable=False),
    Column("port", Integer, nullable=False, default=3306),
    Column("username", String(200), nullable=False),
    Column("password", String(500), nullable=False),
    Column("database_name", String(200), nullable=True),
    Column("created_at", DateTime, server_default=func.now()),
    Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now()),
)

tasks = Table(
    "tasks",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", String(200), nullable=False),
    Column("database_config_id", String(36), nullable=False, index=True),
    Column("database_name", String(200), nullable=True),
    Column("cron_schedule", String(100), nullable=False),
    Column("compression_type", String(20), nullable=False, default="gzip"),
    Column("cleanup_days", Integer, nullable=False, default=30),
    Column("use_non_transactional", Boolean, nullable=False, default=False),
    Column("is_active", Boolean, nullable=False, default=True, index=True),
    Column("last_run", DateTime, nullable=True),
    Column("next_run", DateTime, nullable=True),
    Column("created_at", DateTime, server_default=func.now()),
    Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now()),
)

jobs = Table(
    "jobs",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("task_id", String(36), nullable=True, index=True),
    Column("used_database", String(400), nullable=True),
    Column("job_type", String(20), nullable=False),
    Column("status", String(20), nullable=False, index=True),
    Column("progress", Integer, nullable=False, default=0),
    Column("started_at", DateTime, nullable=True),
    Column("completed_at", DateTime, nullable=True),
    Column("error_message", Text, nullable=True),
    Column("log_path", String(500), nullable=True),
    Column("backup_path", String(500), nullable=True),
    Column("work_dir", String(500), nullable=True),
    Column("created_at", DateTime, nullable=False),
    Column("updated_at", DateTime, server_default=func.now(), onupdate=func.now()),
)

backups = Table(
    "backups",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("database_name", String(200), nullable=False),
    Column("database_config_id", String(36), nullable=False),
    Column("task_id", String(36), nullable=True, index=True),
    Column("used_database", String(400), nullable=True),
    Column("file_path", String(500), nullable=False),
    Column("meta_path", String(500), nullable=False),
    Column("file_size", BigInteger, nullable=False, default=0),
    Column("compression_type", String(20), nullable=False),
    Column("backup_type", String(20), nullable=False),
    Column("created_at", DateTime, nullable=False),
)
