"""Resolve fstab device references to device paths on the live system.

A target's fstab names devices by UUID, PARTUUID, LABEL or raw path. Disks
get reordered and renamed between boots, so every reference is matched
against the current enumeration rather than trusted as written.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional

from arch_boot_rescue.domain.models import BlockDevice, DeviceReference, ReferenceKind
from arch_boot_rescue.logging import LoggerFactory

log = LoggerFactory.for_devices()


def is_block_device(path: str) -> bool:
    """Check whether ``path`` (symlinks followed) is a block device node."""
    try:
        return Path(path).is_block_device()
    except OSError:
        return False


class IdentityResolver:
    """Matches device references against an enumeration snapshot.

    Resolution is a pure query and can be repeated. When several devices
    match, the first by path is returned so the answer does not depend on
    enumeration order; callers re-validate before mounting.
    """

    def __init__(self, devices: Iterable[BlockDevice]):
        self.devices = list(devices)

    def _matches(self, reference: DeviceReference) -> list[str]:
        value = reference.value
        if reference.kind is ReferenceKind.UUID:
            return [d.path for d in self.devices if d.uuid and d.uuid.lower() == value.lower()]
        if reference.kind is ReferenceKind.PARTUUID:
            return [
                d.path
                for d in self.devices
                if d.partuuid and d.partuuid.lower() == value.lower()
            ]
        if reference.kind is ReferenceKind.LABEL:
            return [d.path for d in self.devices if d.label and d.label == value]
        return []

    def resolve(self, reference: DeviceReference) -> Optional[str]:
        """Return the device path satisfying ``reference`` now, or None."""
        if reference.kind is ReferenceKind.RAW_PATH:
            path = reference.value
            if any(device.path == path for device in self.devices) or is_block_device(path):
                return path
            log.debug(f"{path} is not a block device")
            return None

        matches = sorted(set(self._matches(reference)))
        if not matches:
            log.debug(f"No device matches {reference}")
            return None
        if len(matches) > 1:
            log.warning(
                f"{reference} is ambiguous ({', '.join(matches)}); using {matches[0]}"
            )
        return matches[0]

