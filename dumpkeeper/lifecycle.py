"""One backup attempt on disk.

Layout of a backup directory::

    <backup_dir>/<config>-<db>-<uuid>/
        dumpkeeper.backup.json     sidecar, written at begin and rewritten at finalize
        scratch/                   mydumper output, removed once archived
        <db>-<YYYYMMDD_HHMMSS>.tar.gz
"""

import logging
import re
import shutil
import subprocess
import uuid
from enum import Enum
from pathlib import Path
from typing import Optional

from .config import settings
from .schemas import (
    BackupKind,
    BackupMetadata,
    BackupRecord,
    CompressionType,
    DatabaseConfig,
    Task,
    used_database_label,
    utcnow,
)

logger = logging.getLogger(__name__)

SIDECAR_FILE = "dumpkeeper.backup.json"
SCRATCH_DIR = "scratch"

_UNSAFE_CHARS = re.compile(r'[/\\:*?"<>| ]')

TAR_FLAGS = {
    CompressionType.GZIP: ["-czf"],
    CompressionType.ZSTD: ["-c", "--zstd", "-f"],
    CompressionType.NONE: ["-cf"],
}


class WorkspaceState(str, Enum):
    UNINITIALIZED = "uninitialized"
    BEGUN = "begun"
    FINALIZED = "finalized"
    ABANDONED = "abandoned"


class WorkspaceStateError(RuntimeError):
    pass


class ArchiveError(OSError):
    pass


def sanitize_name(value: str) -> str:
    return _UNSAFE_CHARS.sub("_", value)


def directory_name(database_config: DatabaseConfig, database_name: str | None = None) -> str:
    name = database_config.name
    if database_name:
        name = f"{name}-{database_name}"
    return f"{sanitize_name(name)}-{uuid.uuid4()}"


def archive_name(database_name: str, compression: CompressionType, at) -> str:
    return f"{sanitize_name(database_name)}-{at.strftime('%Y%m%d_%H%M%S')}.{compression.extension}"


def file_ident(path) -> str:
    stat = Path(path).stat()
    return f"size_{stat.st_size}_modified_{int(stat.st_mtime)}"


def save_metadata(metadata: BackupMetadata):
    Path(metadata.meta_path).write_text(metadata.model_dump_json(indent=2), encoding="utf-8")


def load_metadata(meta_path) -> BackupMetadata:
    return BackupMetadata.model_validate_json(Path(meta_path).read_text(encoding="utf-8"))


class BackupWorkspace:
    def __init__(
        self,
        database_config: DatabaseConfig,
        database_name: str,
        task: Optional[Task] = None,
        compression: CompressionType = CompressionType.GZIP,
        backup_kind: BackupKind = BackupKind.SCHEDULED,
        base_dir=None,
        tar_path: str | None = None,
    ):
        self.database_config = database_config
        self.database_name = database_name
        self.task = task
        self.compression = CompressionType(compression)
        self.backup_kind = BackupKind(backup_kind)
        self.base_dir = Path(base_dir or settings.dumpkeeper_backup_dir)
        self.tar_path = tar_path or settings.tar_path
        self.state = WorkspaceState.UNINITIALIZED
        self.backup_id = str(uuid.uuid4())
        self.root = self.base_dir / directory_name(database_config, database_name if task else None)
        self.metadata: Optional[BackupMetadata] = None
        self.abandon_reason: Optional[str] = None

    @property
    def scratch_dir(self) -> Path:
        return self.root / SCRATCH_DIR

    @property
    def sidecar_path(self) -> Path:
        return self.root / SIDECAR_FILE

    def _require(self, expected: WorkspaceState, action: str):
        if self.state != expected:
            raise WorkspaceStateError(f"Cannot {action} a workspace in state {self.state.value}")

    def begin(self) -> Path:
        self._require(WorkspaceState.UNINITIALIZED, "begin")
        self.scratch_dir.mkdir(parents=True, exist_ok=False)
        self.metadata = BackupMetadata(
            id=self.backup_id,
            database_name=self.database_name,
            database_config_id=self.database_config.id,
            task_id=self.task.id if self.task else None,
            used_database=used_database_label(self.database_config, self.database_name),
            meta_path=str(self.sidecar_path.resolve()),
            compression_type=self.compression,
            backup_type=self.backup_kind,
            database_config=self.database_config.info(),
            task_info=self.task.info() if self.task else None,
        )
        save_metadata(self.metadata)
        self.state = WorkspaceState.BEGUN
        logger.info(f"backup_workspace_begin id={self.backup_id} path={self.root}")
        return self.scratch_dir

    def finalize(self) -> BackupRecord:
        self._require(WorkspaceState.BEGUN, "finalize")
        archive_path = (self.root / archive_name(self.database_name, self.compression, utcnow())).resolve()
        command = [
            self.tar_path,
            *TAR_FLAGS[self.compression],
            str(archive_path),
            "--warning=no-file-changed",
            "-C",
            str(self.scratch_dir),
            ".",
        ]
        result = subprocess.run(command, capture_output=True, text=True, check=False)
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise ArchiveError(f"tar exited with code {result.returncode}: {stderr}")

        self.metadata = self.metadata.model_copy(
            update={
                "file_path": str(archive_path),
                "file_size": archive_path.stat().st_size,
                "ident": file_ident(archive_path),
            }
        )
        save_metadata(self.metadata)
        shutil.rmtree(self.scratch_dir)
        self.state = WorkspaceState.FINALIZED
        logger.info(
            f"backup_workspace_finalized id={self.backup_id} path={archive_path} size={self.metadata.file_size}"
        )
        return self.metadata.to_record()

    def abandon(self, reason: str | None = None):
        self._require(WorkspaceState.BEGUN, "abandon")
        self.state = WorkspaceState.ABANDONED
        self.abandon_reason = reason
        logger.warning(f"backup_workspace_abandoned id={self.backup_id} path={self.root} reason={reason}")
