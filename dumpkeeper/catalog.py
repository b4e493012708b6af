import logging
import shutil
import uuid
from collections import Counter
from datetime import datetime, timedelta
from pathlib import Path

from pydantic import ValidationError

from .config import settings
from .lifecycle import SIDECAR_FILE, file_ident, load_metadata, save_metadata
from .schemas import BackupKind, BackupMetadata, BackupRecord, CompressionType, DatabaseConfigInfo, utcnow

logger = logging.getLogger(__name__)

ARCHIVE_EXTENSIONS = (
    (".tar.gz", CompressionType.GZIP),
    (".tar.zst", CompressionType.ZSTD),
    (".tar", CompressionType.NONE),
)


def compression_for(path) -> CompressionType | None:
    name = Path(path).name
    for extension, compression in ARCHIVE_EXTENSIONS:
        if name.endswith(extension):
            return compression
    return None


def _strip_extension(filename: str) -> str:
    for extension, _ in ARCHIVE_EXTENSIONS:
        if filename.endswith(extension):
            return filename[: -len(extension)]
    return filename


def parse_archive_name(filename: str, now: datetime | None = None):
    """Split ``<database>-<YYYYMMDD_HHMMSS>.<ext>`` into ``(database, created_at)``.

    Names that do not follow the pattern yield the whole stem and ``now``.
    """
    stem = _strip_extension(filename)
    database_name, sep, stamp = stem.rpartition("-")
    if sep and database_name and len(stamp) == 15:
        try:
            return database_name, datetime.strptime(stamp, "%Y%m%d_%H%M%S")
        except ValueError:
            pass
    return stem, now or utcnow()


def find_archive(folder: Path):
    for path in sorted(folder.iterdir()):
        if path.is_file() and compression_for(path) is not None:
            return path
    return None


def synthesize_metadata(archive_path: Path, meta_path: Path) -> BackupMetadata:
    database_name, created_at = parse_archive_name(archive_path.name)
    metadata = BackupMetadata(
        id=str(uuid.uuid4()),
        database_name=database_name,
        database_config_id="unknown",
        file_path=str(archive_path.resolve()),
        meta_path=str(meta_path.resolve()),
        file_size=archive_path.stat().st_size,
        compression_type=compression_for(archive_path),
        created_at=created_at,
        backup_type=BackupKind.EXTERNAL,
        ident=file_ident(archive_path),
        database_config=DatabaseConfigInfo(
            id="unknown",
            name=f"Unknown Database ({database_name})",
            host="unknown",
            username="unknown",
            database_name=database_name,
        ),
    )
    save_metadata(metadata)
    logger.info(f"backup_sidecar_created path={meta_path}")
    return metadata


def _scan_folder(folder: Path, found: list):
    for path in sorted(folder.iterdir()):
        try:
            if path.is_dir():
                sidecar = path / SIDECAR_FILE
                archive = find_archive(path)
                if sidecar.exists():
                    # in-flight backups have a sidecar but no archive yet
                    if archive is not None:
                        found.append(load_metadata(sidecar).to_record(file_path=str(archive.resolve())))
                elif archive is not None:
                    found.append(synthesize_metadata(archive, sidecar).to_record())
                else:
                    _scan_folder(path, found)
            elif path.is_file() and compression_for(path) is not None:
                # loose archive at this level, sidecar is named after it
                meta_path = path.with_name(f"{_strip_extension(path.name)}.backup.json")
                if meta_path.exists():
                    found.append(load_metadata(meta_path).to_record(file_path=str(path.resolve())))
                else:
                    found.append(synthesize_metadata(path, meta_path).to_record())
        except (OSError, ValueError, ValidationError) as exc:
            logger.warning(f"backup_scan_skipped path={path} error={exc}")


def scan_backups(base_dir=None) -> list[BackupRecord]:
    base = Path(base_dir or settings.dumpkeeper_backup_dir)
    if not base.exists():
        return []
    found: list[BackupRecord] = []
    _scan_folder(base, found)
    found.sort(key=lambda record: record.created_at, reverse=True)
    return found


def delete_backup(record: BackupRecord):
    for file_path in (record.file_path, record.meta_path):
        path = Path(file_path)
        if path.exists():
            path.unlink()
    folder = Path(record.file_path).parent
    if folder.exists() and not any(folder.iterdir()):
        folder.rmdir()
    logger.info(f"backup_deleted id={record.id} path={record.file_path}")


def backup_stats(records) -> dict:
    records = list(records)
    return {
        "total_count": len(records),
        "total_size": sum(record.file_size for record in records),
        "by_type": dict(Counter(record.backup_type.value for record in records)),
        "by_database": dict(Counter(record.database_name for record in records)),
    }


def expired_backups(records, tasks, now: datetime | None = None) -> list[BackupRecord]:
    now = now or utcnow()
    windows = {
        task.id: now - timedelta(days=task.cleanup_days)
        for task in tasks
        if task.is_active and task.cleanup_days > 0
    }
    return [
        record
        for record in records
        if record.task_id in windows and record.created_at < windows[record.task_id]
    ]


def cleanup_expired_backups(base_dir, tasks, now: datetime | None = None) -> list[BackupRecord]:
    base = Path(base_dir or settings.dumpkeeper_backup_dir).resolve()
    removed = []
    for record in expired_backups(scan_backups(base), tasks, now):
        folder = Path(record.file_path).parent.resolve()
        try:
            if folder != base and base in folder.parents:
                shutil.rmtree(folder)
            else:
                delete_backup(record)
        except OSError as exc:
            logger.warning(f"backup_cleanup_error path={record.file_path} error={exc}")
            continue
        logger.info(f"backup_expired id={record.id} task={record.task_id} created_at={record.created_at}")
        removed.append(record)
    return removed
