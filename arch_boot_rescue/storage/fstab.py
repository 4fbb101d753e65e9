"""Read the target system's fstab and pick out its /boot and ESP entries."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from arch_boot_rescue.domain.models import DeviceReference, MountTableEntry
from arch_boot_rescue.logging import LoggerFactory

BOOT_MOUNTPOINT = "/boot"
ESP_MOUNTPOINTS = ("/boot/efi", "/efi")

_OCTAL_ESCAPE = re.compile(r"\\([0-7]{3})")

log = LoggerFactory.for_mount()


@dataclass(frozen=True)
class BootEntries:
    """The fstab entries relevant to a bootloader repair.

    None means the target has no separate partition for that role: it lives
    on the root filesystem or must be supplied by the operator.
    """

    boot: Optional[MountTableEntry] = None
    esp: Optional[MountTableEntry] = None


def _unescape(field: str) -> str:
    # fstab encodes spaces and tabs in paths and labels as \040, \011
    return _OCTAL_ESCAPE.sub(lambda match: chr(int(match.group(1), 8)), field)


def normalize_mountpoint(mountpoint: str) -> str:
    if mountpoint != "/" and mountpoint.endswith("/"):
        return mountpoint.rstrip("/") or "/"
    return mountpoint


def parse_fstab_line(line: str) -> Optional[MountTableEntry]:
    """Parse a single fstab line, returning None for comments and bad lines.

    A ``#`` starts a comment only at the beginning of a field, so sources such
    as ``LABEL=data#1`` are kept whole.
    """
    fields = []
    for field in line.split():
        if field.startswith("#"):
            break
        fields.append(field)
    if not fields:
        return None
    if len(fields) < 3 or len(fields) > 6:
        log.debug(f"Skipping malformed fstab line: {line.rstrip()}")
        return None
    try:
        dump = int(fields[4]) if len(fields) > 4 else 0
        passno = int(fields[5]) if len(fields) > 5 else 0
    except ValueError:
        log.debug(f"Skipping fstab line with invalid dump/pass: {line.rstrip()}")
        return None
    return MountTableEntry(
        source=DeviceReference.parse(_unescape(fields[0])),
        mountpoint=normalize_mountpoint(_unescape(fields[1])),
        fstype=fields[2],
        options=fields[3] if len(fields) > 3 else "defaults",
        dump=dump,
        passno=passno,
    )


def parse_fstab(lines: Iterable[str]) -> list[MountTableEntry]:
    entries = []
    for line in lines:
        entry = parse_fstab_line(line)
        if entry is not None:
            entries.append(entry)
    return entries


def read_fstab(root: Path) -> list[MountTableEntry]:
    """Parse ``<root>/etc/fstab``; a missing or unreadable file gives no entries."""
    fstab_path = root / "etc" / "fstab"
    try:
        content = fstab_path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        log.info(f"No fstab found at {fstab_path}")
        return []
    except OSError as error:
        log.warning(f"Could not read {fstab_path}: {error}")
        return []
    entries = parse_fstab(content.splitlines())
    log.debug(f"Parsed {len(entries)} entries from {fstab_path}")
    return entries


def select_boot_entries(entries: Iterable[MountTableEntry]) -> BootEntries:
    """Pick the first /boot entry and the first /boot/efi or /efi entry.

    Later duplicates are shadowed by the first match.
    """
    boot = None
    esp = None
    for entry in entries:
        if boot is None and entry.mountpoint == BOOT_MOUNTPOINT:
            boot = entry
        elif esp is None and entry.mountpoint in ESP_MOUNTPOINTS:
            esp = entry
    return BootEntries(boot=boot, esp=esp)
