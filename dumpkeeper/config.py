from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    database_url: str = "sqlite:///./data/dumpkeeper.db"
    redis_url: str = "redis://redis:6379/0"
    dumpkeeper_backup_dir: str = "./data/backups"
    dumpkeeper_log_dir: str = "./data/logs"
    dumpkeeper_app_log_file: str = "./data/logs/dumpkeeper.log"

    mydumper_path: str = "mydumper"
    myloader_path: str = "myloader"
    tar_path: str = "tar"
    dump_threads: int = 4

    tick_interval_seconds: int = 60
    cleanup_interval_minutes: int = 60
    dispatch_backend: str = "thread"
    max_concurrent_jobs: Optional[int] = None

    class Config:
        env_prefix = ""
        case_sensitive = False


settings = Settings()
