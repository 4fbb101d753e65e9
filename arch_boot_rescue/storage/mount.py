"""Mount primitives with validated, argument-list subprocess calls.

Thin wrappers around mount(8) and umount(8) plus a reader for the live mount
table. Nothing here keeps state: MountSession decides what to mount and in
which order, and SystemMounter only carries the commands out.

Input validation:
    Device sources must be absolute /dev/ paths without shell metacharacters
    or whitespace; bind sources and targets must be absolute paths. Commands
    are always passed as argument lists, never through a shell.

Functions:
    - get_mount_source(): Source of the topmost mount at a path (/proc/self/mounts)
    - same_device(): Compare device paths after resolving symlinks

Classes:
    - SystemMounter: mount/bind/make-rslave/umount via subprocess
"""

from __future__ import annotations

import os
import re
import subprocess
from pathlib import Path
from typing import Optional

from arch_boot_rescue.logging import LoggerFactory

from .exceptions import MountError, UnmountFailedError

PROC_MOUNTS = Path("/proc/self/mounts")

_INVALID_CHARS = (";", "&", "|", "$", "`", "\n", "\r", " ")
_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")

log = LoggerFactory.for_mount()


def _decode_mounts_field(field: str) -> str:
    return _OCTAL_ESCAPE.sub(lambda match: chr(int(match.group(1), 8)), field)


def validate_device_path(device: str) -> None:
    """Reject anything that is not a plain /dev/ path.

    Raises:
        ValueError: If the path is invalid
    """
    if not isinstance(device, str) or not device.startswith("/dev/"):
        raise ValueError(f"Invalid device path: {device}")
    if any(char in device for char in _INVALID_CHARS):
        raise ValueError(f"Device path contains invalid characters: {device}")


def validate_mount_target(target: Path) -> None:
    if not target.is_absolute():
        raise ValueError(f"Mount target must be absolute: {target}")
    if any(part == ".." for part in target.parts):
        raise ValueError(f"Mount target must not contain '..': {target}")


def get_mount_source(target: Path, mounts_file: Path = PROC_MOUNTS) -> Optional[str]:
    """Return the source of the topmost mount at ``target``, or None."""
    wanted = os.path.normpath(str(target))
    source = None
    try:
        with open(mounts_file, "r", encoding="utf-8") as mounts:
            for line in mounts:
                parts = line.split()
                if len(parts) > 1 and _decode_mounts_field(parts[1]) == wanted:
                    source = _decode_mounts_field(parts[0])
    except FileNotFoundError:
        return "unknown" if os.path.ismount(wanted) else None
    return source


def same_device(first: Optional[str], second: Optional[str]) -> bool:
    """Compare two device paths, following /dev/mapper and by-uuid symlinks."""
    if not first or not second:
        return False
    # btrfs reports "/dev/sda2[/@]" for subvolume mounts
    first = first.split("[", 1)[0]
    second = second.split("[", 1)[0]
    return os.path.realpath(first) == os.path.realpath(second)


def _run(command: list[str]) -> subprocess.CompletedProcess:
    log.debug(f"Running command: {' '.join(command)}")
    return subprocess.run(command, check=True, capture_output=True, text=True)


def _stderr(error: subprocess.CalledProcessError) -> str:
    return (error.stderr or "").strip() or f"exit code {error.returncode}"


class SystemMounter:
    """Carries out mount operations on the live system.

    Raises MountError (UnmountFailedError for umount) with the command's
    stderr when a command fails.
    """

    def __init__(self, mounts_file: Path = PROC_MOUNTS):
        self.mounts_file = mounts_file

    def mounted_source(self, target: Path) -> Optional[str]:
        return get_mount_source(target, self.mounts_file)

    def mount(self, source: str, target: Path) -> None:
        """Mount the filesystem on ``source`` at ``target``."""
        validate_device_path(source)
        validate_mount_target(target)
        try:
            _run(["mount", source, str(target)])
        except subprocess.CalledProcessError as e:
            raise MountError(f"Failed to mount {source} to {target}: {_stderr(e)}") from e

    def bind(self, source: Path, target: Path) -> None:
        """Recursively bind-mount ``source`` (with its submounts) at ``target``."""
        validate_mount_target(source)
        validate_mount_target(target)
        try:
            _run(["mount", "--rbind", str(source), str(target)])
        except subprocess.CalledProcessError as e:
            raise MountError(f"Failed to bind {source} to {target}: {_stderr(e)}") from e

    def make_rslave(self, target: Path) -> None:
        """Stop mount events under ``target`` from propagating back to the host."""
        validate_mount_target(target)
        try:
            _run(["mount", "--make-rslave", str(target)])
        except subprocess.CalledProcessError as e:
            raise MountError(
                f"Failed to set slave propagation on {target}: {_stderr(e)}"
            ) from e

    def unmount(self, target: Path) -> None:
        """Recursively unmount ``target``.

        Raises:
            UnmountFailedError: If umount fails
        """
        validate_mount_target(target)
        try:
            _run(["umount", "-R", str(target)])
        except subprocess.CalledProcessError as e:
            raise UnmountFailedError(str(target), _stderr(e)) from e
