import logging
import subprocess
from pathlib import Path

from .config import settings
from .engines import NON_TRANSACTIONAL_ENGINES
from .schemas import CompressionType, DatabaseConfig, utcnow

logger = logging.getLogger(__name__)

SECRET_FLAGS = ("--password",)


class DumpToolError(RuntimeError):
    pass


def build_dump_command(
    database_config: DatabaseConfig,
    database_name: str,
    output_dir,
    compression: CompressionType = CompressionType.GZIP,
    use_non_transactional: bool = False,
    threads: int | None = None,
    executable: str | None = None,
) -> list[str]:
    command = [
        executable or settings.mydumper_path,
        "--host", database_config.host,
        "--port", str(database_config.port),
        "--user", database_config.username,
        "--password", database_config.password,
        "--database", database_name,
        "--outputdir", str(output_dir),
        "--verbose", "3",
        "--threads", str(threads or settings.dump_threads),
        "--triggers",
        "--events",
        "--routines",
    ]
    if use_non_transactional:
        command += ["--trx-tables", "0", "--no-backup-locks"]
    else:
        command += ["--ignore-engines", ",".join(NON_TRANSACTIONAL_ENGINES)]
    compression = CompressionType(compression)
    if compression == CompressionType.GZIP:
        command.append("--compress")
    elif compression == CompressionType.ZSTD:
        command.append("--compress-protocol")
    return command


def build_restore_command(
    database_config: DatabaseConfig,
    database_name: str,
    source_dir,
    overwrite_existing: bool = False,
    threads: int | None = None,
    executable: str | None = None,
) -> list[str]:
    command = [
        executable or settings.myloader_path,
        "--host", database_config.host,
        "--port", str(database_config.port),
        "--user", database_config.username,
        "--password", database_config.password,
        "--database", database_name,
        "--directory", str(source_dir),
        "--verbose", "3",
        "--threads", str(threads or settings.dump_threads),
    ]
    if overwrite_existing:
        command.append("--overwrite-tables")
    return command


def mask_command(command) -> str:
    masked = []
    hide_next = False
    for part in command:
        if hide_next:
            masked.append("****")
            hide_next = False
            continue
        masked.append(str(part))
        hide_next = part in SECRET_FLAGS
    return " ".join(masked)


def _stamp() -> str:
    return utcnow().strftime("[%Y-%m-%d %H:%M:%S]")


def run_logged(command, log_path) -> int:
    """Run ``command`` with its merged output appended line by line to ``log_path``.

    Every line gets a ``[YYYY-MM-DD HH:MM:SS]`` prefix. Returns the exit code.
    """
    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    with open(log_path, "a", encoding="utf-8") as fh:
        fh.write(f"{_stamp()} INFO: command: {mask_command(command)}\n")
        fh.flush()
        try:
            process = subprocess.Popen(
                [str(part) for part in command],
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors="replace",
            )
        except OSError as exc:
            fh.write(f"{_stamp()} ERROR: failed to start {command[0]}: {exc}\n")
            raise DumpToolError(f"Failed to start {command[0]}: {exc}") from exc
        for line in process.stdout:
            fh.write(f"{_stamp()} {line.rstrip()}\n")
            fh.flush()
        returncode = process.wait()
        fh.write(f"{_stamp()} INFO: {Path(str(command[0])).name} exited with code {returncode}\n")
    logger.info(f"tool_exited tool={Path(str(command[0])).name} code={returncode} log={log_path}")
    return returncode


def extract_archive(archive_path, dest_dir, tar_path: str | None = None) -> Path:
    archive_path = Path(archive_path)
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    name = archive_path.name
    if name.endswith(".tar.gz"):
        flags = ["-xzf"]
    elif name.endswith(".tar.zst"):
        flags = ["--zstd", "-xf"]
    elif name.endswith(".tar"):
        flags = ["-xf"]
    else:
        raise DumpToolError(f"Unsupported archive format: {name}")
    command = [tar_path or settings.tar_path, *flags, str(archive_path), "-C", str(dest_dir)]
    result = subprocess.run(command, capture_output=True, text=True, check=False)
    if result.returncode != 0:
        raise DumpToolError(f"tar exited with code {result.returncode}: {(result.stderr or '').strip()}")
    return dest_dir
