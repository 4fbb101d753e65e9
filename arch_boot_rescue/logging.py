"""loguru configuration for arch-boot-rescue.

Every module logs through a logger bound with ``source``, ``job_id`` and
``tags`` extras (see :class:`LoggerFactory`). :func:`setup_logging` decides
where records go:

    stderr              operator console, INFO (DEBUG/TRACE with flags)
    operations.log      INFO and above, kept 7 days
    debug.log           DEBUG and above, only with --debug or --trace
    trace.log           everything, only with --trace
    structured.jsonl    INFO and above as JSON, one record per line

Raw stdout of chroot commands is logged at TRACE with the ``output`` tag and
stays off the console and operations.log unless tracing is on.
"""

from __future__ import annotations

import os
import sys
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Iterable

if TYPE_CHECKING:
    from loguru import Logger

from loguru import logger

DEFAULT_LOG_DIR = Path(
    os.environ.get(
        "ARCH_BOOT_RESCUE_LOG_DIR",
        Path.home() / ".local" / "state" / "arch-boot-rescue" / "logs",
    )
)

CONSOLE_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[source]: <10}</cyan> | "
    "{message}"
)
FILE_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[source]: <10} | {extra[job_id]: <18} | {message}"
)
DEBUG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[source]: <10} | {extra[job_id]: <18} | {extra[tags]} | {message}"
)


def _should_log_command_output(record) -> bool:
    """Hide records tagged ``output`` unless they are TRACE or a warning."""
    if record["level"].no >= logger.level("WARNING").no:
        return True
    if "output" in record["extra"].get("tags", []):
        return record["level"].no <= logger.level("TRACE").no
    return True


def _file_sinks(debug: bool, trace: bool) -> list[tuple[str, dict]]:
    sinks = [
        (
            "operations.log",
            dict(level="INFO", rotation="5 MB", retention="7 days",
                 filter=_should_log_command_output, format=FILE_FORMAT),
        ),
    ]
    if debug or trace:
        sinks.append(
            (
                "debug.log",
                dict(level="DEBUG", rotation="10 MB", retention="3 days",
                     backtrace=True, diagnose=True, format=DEBUG_FORMAT),
            )
        )
    if trace:
        sinks.append(
            (
                "trace.log",
                dict(level="TRACE", rotation="50 MB", retention="1 day",
                     format=FILE_FORMAT),
            )
        )
    sinks.append(
        (
            "structured.jsonl",
            dict(level="INFO", rotation="10 MB", retention="7 days",
                 serialize=True, format="{message}"),
        )
    )
    return sinks


def setup_logging(
    *,
    debug: bool = False,
    trace: bool = False,
    log_dir: Path | None = None,
) -> Logger:
    """Replace loguru's default handler with the console and file sinks.

    Args:
        debug: Console at DEBUG and write debug.log
        trace: Console at TRACE and write debug.log and trace.log
        log_dir: Where log files go (default ``DEFAULT_LOG_DIR``). If it
            cannot be created, only the console sink is installed.
    """
    logger.remove()
    logger.configure(extra={"job_id": "-", "tags": [], "source": "app"})

    console_level = "TRACE" if trace else "DEBUG" if debug else "INFO"
    logger.add(
        sys.stderr,
        level=console_level,
        colorize=True,
        backtrace=False,
        diagnose=False,
        filter=_should_log_command_output,
        format=CONSOLE_FORMAT,
    )

    log_dir = log_dir or DEFAULT_LOG_DIR
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as error:
        logger.warning(f"Log directory {log_dir} unavailable, logging to console only: {error}")
        return logger

    for file_name, options in _file_sinks(debug, trace):
        options.setdefault("backtrace", False)
        options.setdefault("diagnose", False)
        logger.add(log_dir / file_name, compression="zip", **options)

    logger.bind(source="system").debug(f"Logging to {log_dir}")
    return logger


def get_logger(
    *,
    job_id: str | None = None,
    tags: Iterable[str] | None = None,
    source: str | None = None,
) -> Logger:
    """Logger with whichever of ``job_id``, ``tags`` and ``source`` are given bound."""
    extras: dict[str, object] = {}
    if job_id is not None:
        extras["job_id"] = job_id
    if tags is not None:
        extras["tags"] = list(tags)
    if source is not None:
        extras["source"] = source
    return logger.bind(**extras)


@contextmanager
def operation_context(operation: str, **details):
    """Log the start, the outcome and the duration of one repair.

    Every record emitted inside the block (from any module) carries the
    operation's ``job_id``. Exceptions, KeyboardInterrupt included, are
    logged and re-raised unchanged.

    Example:
        with operation_context("grub-uefi", root="/dev/sda2") as log:
            log.debug("Mounting target")
    """
    job_id = f"{operation}-{uuid.uuid4().hex[:8]}"
    with logger.contextualize(job_id=job_id, operation=operation, **details):
        log = logger.bind(source=operation, job_id=job_id, tags=[operation])
        started = time.monotonic()
        log.info(f"{operation} started", **details)
        try:
            yield log
        except BaseException as error:
            log.error(
                f"{operation} failed",
                error=str(error) or type(error).__name__,
                error_type=type(error).__name__,
                duration_seconds=round(time.monotonic() - started, 2),
            )
            raise
        log.success(
            f"{operation} completed",
            duration_seconds=round(time.monotonic() - started, 2),
        )


class LoggerFactory:
    """Per-area loggers, so every record says where it came from."""

    @staticmethod
    def for_devices() -> Logger:
        return get_logger(source="devices", tags=["devices", "storage"])

    @staticmethod
    def for_mount(job_id: str | None = None) -> Logger:
        """Mount session and planner logger.

        Without ``job_id`` the records take the id of the enclosing
        :func:`operation_context`.
        """
        return get_logger(job_id=job_id, source="mount", tags=["mount", "storage"])

    @staticmethod
    def for_installer() -> Logger:
        return get_logger(source="installer", tags=["installer"])

    @staticmethod
    def for_menu() -> Logger:
        return get_logger(source="menu", tags=["ui", "menu"])

    @staticmethod
    def for_system() -> Logger:
        return get_logger(source="system", tags=["system"])


class EventLogger:
    """Mount and unmount events with fixed fields for structured.jsonl."""

    @staticmethod
    def log_mount_step(
        log: Logger, step: str, source: str, target: str, bind: bool = False, **extra
    ) -> None:
        log.info(
            f"Mounted {source} at {target}",
            event_type="mount_step",
            step=step,
            source_device=source,
            target_path=target,
            bind=bind,
            **extra,
        )

    @staticmethod
    def log_unmount_step(
        log: Logger, step: str, target: str, success: bool, **extra
    ) -> None:
        fields = dict(
            event_type="unmount_step",
            step=step,
            target_path=target,
            success=success,
            **extra,
        )
        if success:
            log.info(f"Unmounted {target}", **fields)
        else:
            log.warning(f"Could not unmount {target}", **fields)
