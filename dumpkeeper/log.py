import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import settings

logger = logging.getLogger("dumpkeeper")


def setup_logging(log_file=None, level=logging.INFO):
    if logger.handlers:
        return
    log_path = Path(log_file or settings.dumpkeeper_app_log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s")
    file_handler = RotatingFileHandler(log_path, maxBytes=1_000_000, backupCount=3)
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    logger.addHandler(stream_handler)
    logger.setLevel(level)
    logger.propagate = False


def read_log_lines(max_lines=200, log_file=None):
    log_path = Path(log_file or settings.dumpkeeper_app_log_file)
    if not log_path.exists():
        return []
    with open(log_path, "r", encoding="utf-8") as fh:
        lines = fh.readlines()
    return lines[-max_lines:]
