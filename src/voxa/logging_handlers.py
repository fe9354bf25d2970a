"""Custom logging handler utilities."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional


class DateStampedFileHandler(logging.FileHandler):
    """File handler that stores logs under UTC date-stamped directories."""

    def __init__(
        self,
        directory: str | Path,
        *,
        prefix: str = "voxa",
        encoding: str | None = "utf-8",
        mode: str = "a",
        delay: bool = False,
        errors: Optional[str] = None,
        current_time: datetime | None = None,
    ) -> None:
        timestamp = (current_time or datetime.now(timezone.utc)).astimezone(
            timezone.utc
        )

        base_dir = Path(directory).resolve()
        date_folder = timestamp.strftime("%Y-%m-%d")
        human_time = timestamp.strftime("%Y-%m-%d_%H-%M-%S")
        log_path = (base_dir / date_folder / f"{prefix}_{human_time}_UTC.log").resolve()

        log_path.parent.mkdir(parents=True, exist_ok=True)
        super().__init__(
            log_path,
            mode=mode,
            encoding=encoding,
            delay=delay,
            errors=errors,
        )


def cleanup_old_logs(
    log_directories: list[str | Path],
    retention_hours: int,
    logger: logging.Logger | None = None,
) -> tuple[int, int]:
    """
    Delete log files older than the specified retention period.

    Args:
        log_directories: Directories to clean (searched recursively for ``*.log``)
        retention_hours: Files older than this many hours will be deleted (0 = disabled)
        logger: Optional logger for reporting cleanup activity

    Returns:
        Tuple of (files_deleted, errors_encountered)
    """
    if retention_hours <= 0:
        return (0, 0)

    cutoff_time = datetime.now(timezone.utc) - timedelta(hours=retention_hours)
    files_deleted = 0
    errors = 0

    for directory in log_directories:
        dir_path = Path(directory).resolve()
        if not dir_path.exists():
            continue

        for log_file in dir_path.rglob("*.log"):
            try:
                mtime = datetime.fromtimestamp(log_file.stat().st_mtime, tz=timezone.utc)
                if mtime < cutoff_time:
                    log_file.unlink()
                    files_deleted += 1
                    if logger:
                        logger.debug("Deleted old log file: %s", log_file)
            except OSError as e:
                errors += 1
                if logger:
                    logger.warning("Failed to delete %s: %s", log_file, e)

        # Empty date folders left behind by the deletions above
        for date_dir in dir_path.iterdir():
            if date_dir.is_dir() and not any(date_dir.iterdir()):
                try:
                    date_dir.rmdir()
                except OSError:
                    errors += 1

    if logger and files_deleted > 0:
        logger.info(
            "Log cleanup complete: %d file(s) deleted, %d error(s) encountered",
            files_deleted,
            errors,
        )

    return (files_deleted, errors)


__all__ = ["DateStampedFileHandler", "cleanup_old_logs"]
