"""Domain models for boot rescue operations.

This package contains type-safe domain objects shared by the storage layer,
the installer and the terminal front end.
"""

from __future__ import annotations

from .models import (
    BlockDevice,
    BootMode,
    Bootloader,
    ClassificationResult,
    Confidence,
    DeviceReference,
    DeviceRole,
    EspCandidate,
    InstallTarget,
    LoaderEntry,
    MountReport,
    MountStep,
    MountTableEntry,
    ReferenceKind,
)


__all__ = [
    "BlockDevice",
    "BootMode",
    "Bootloader",
    "ClassificationResult",
    "Confidence",
    "DeviceReference",
    "DeviceRole",
    "EspCandidate",
    "InstallTarget",
    "LoaderEntry",
    "MountReport",
    "MountStep",
    "MountTableEntry",
    "ReferenceKind",
]
