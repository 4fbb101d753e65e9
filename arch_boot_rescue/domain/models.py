"""Domain model for boot rescue operations.

Type-safe objects for the block devices seen on the live system, the fstab
rows of the target installation, the mount steps taken to enter it and the
bootloader installation request handed to the installer.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional


# GPT partition type GUID of an EFI System Partition
EFI_PARTTYPE_GUID = "c12a7328-f81f-11d2-ba4b-00a0c93ec93b"
# MBR partition id of an EFI System Partition
EFI_PARTTYPE_MBR = "0xef"

ROOT_FSTYPES = frozenset({"ext4", "ext3", "ext2", "btrfs", "xfs"})
ESP_FSTYPES = frozenset({"vfat", "fat32"})

_BOOTLOADER_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 ._+-]*$")


# ==============================================================================
# Block Device Domain
# ==============================================================================


class DeviceRole(Enum):
    """What kind of block device lsblk reported."""

    DISK = "disk"
    PARTITION = "part"
    MAPPED = "mapped"  # LVM, dm-crypt, md RAID
    OTHER = "other"  # loop, rom

    @classmethod
    def from_lsblk_type(cls, value: Optional[str]) -> DeviceRole:
        kind = (value or "").lower()
        if kind == "disk":
            return cls.DISK
        if kind == "part":
            return cls.PARTITION
        if kind in ("lvm", "crypt", "dm", "mpath") or kind.startswith("raid"):
            return cls.MAPPED
        return cls.OTHER


def _split_flags(value: Any) -> frozenset[str]:
    if not value:
        return frozenset()
    tokens = re.split(r"[,\s]+", str(value).strip().lower())
    return frozenset(token for token in tokens if token)


@dataclass(frozen=True)
class BlockDevice:
    """A block device or partition visible on the live system.

    Snapshot of one lsblk row. Never mutated; enumerate again to see changes.
    """

    path: str  # e.g., "/dev/nvme0n1p2"
    name: str = ""  # e.g., "nvme0n1p2"
    fstype: str = ""  # empty when unformatted
    parttype: str = ""  # GPT GUID or MBR id, lower-cased
    partflags: frozenset[str] = frozenset()
    role: DeviceRole = DeviceRole.PARTITION
    size_bytes: int = 0
    label: str = ""
    uuid: str = ""
    partuuid: str = ""
    mountpoint: Optional[str] = None

    @property
    def has_esp_type(self) -> bool:
        """True when the partition type or flags mark this as an ESP."""
        return (
            self.parttype in (EFI_PARTTYPE_GUID, EFI_PARTTYPE_MBR)
            or "esp" in self.partflags
        )

    @classmethod
    def from_lsblk_dict(cls, device: dict[str, Any]) -> BlockDevice:
        """Convert an lsblk JSON dict to a BlockDevice.

        Args:
            device: Device dict from ``lsblk -J -b -p`` with keys path, name,
                type, fstype, parttype, partflags, size, label, uuid, partuuid,
                mountpoint

        Returns:
            BlockDevice domain object

        Raises:
            KeyError: If neither path nor name is present
        """
        name = device.get("name") or ""
        path = device.get("path") or name
        if not path:
            raise KeyError("path")
        if not path.startswith("/"):
            path = f"/dev/{path}"

        try:
            size_bytes = int(device.get("size") or 0)
        except (TypeError, ValueError):
            size_bytes = 0

        return cls(
            path=path,
            name=Path(name or path).name,
            fstype=(device.get("fstype") or "").strip().lower(),
            parttype=(device.get("parttype") or "").strip().lower(),
            partflags=_split_flags(device.get("partflags")),
            role=DeviceRole.from_lsblk_type(device.get("type")),
            size_bytes=size_bytes,
            label=(device.get("label") or "").strip(),
            uuid=(device.get("uuid") or "").strip(),
            partuuid=(device.get("partuuid") or "").strip(),
            mountpoint=device.get("mountpoint") or None,
        )


class Confidence(Enum):
    """How sure the classifier is that a candidate fits its role."""

    HIGH = "high"  # definitive partition type marker
    LOW = "low"  # heuristic match, operator must confirm


@dataclass(frozen=True)
class EspCandidate:
    device: BlockDevice
    confidence: Confidence

    @property
    def path(self) -> str:
        return self.device.path

    @property
    def is_guess(self) -> bool:
        return self.confidence is Confidence.LOW


@dataclass(frozen=True)
class ClassificationResult:
    """Candidate devices per role, as produced by the device classifier."""

    root_candidates: tuple[BlockDevice, ...] = ()
    esp_candidates: tuple[EspCandidate, ...] = ()


# ==============================================================================
# Mount Table Domain
# ==============================================================================


class ReferenceKind(Enum):
    """How an fstab source names its device."""

    RAW_PATH = "path"
    UUID = "UUID"
    PARTUUID = "PARTUUID"
    LABEL = "LABEL"


@dataclass(frozen=True)
class DeviceReference:
    """A device reference as written in fstab (``UUID=...``, ``/dev/sda1``)."""

    kind: ReferenceKind
    value: str

    @classmethod
    def parse(cls, source: str) -> DeviceReference:
        """Parse an fstab source field.

        ``KEY=value`` with KEY in UUID, PARTUUID or LABEL becomes a tagged
        reference (surrounding quotes removed); anything else is a raw path.
        """
        key, sep, value = source.partition("=")
        if sep:
            try:
                kind = ReferenceKind[key.strip().upper()]
            except KeyError:
                kind = None
            if kind is not None and kind is not ReferenceKind.RAW_PATH:
                value = value.strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
                    value = value[1:-1]
                return cls(kind=kind, value=value)
        return cls(kind=ReferenceKind.RAW_PATH, value=source)

    def __str__(self) -> str:
        if self.kind is ReferenceKind.RAW_PATH:
            return self.value
        return f"{self.kind.value}={self.value}"


@dataclass(frozen=True)
class MountTableEntry:
    """One parsed row of a target system's fstab."""

    source: DeviceReference
    mountpoint: str
    fstype: str
    options: str = "defaults"
    dump: int = 0
    passno: int = 0


@dataclass(frozen=True)
class MountStep:
    """A mount the session performed, in the order it was performed."""

    name: str  # "root", "boot", "esp", "dev", "proc", "sys", "run"
    source: str
    target: Path
    bind: bool = False


@dataclass
class MountReport:
    """What the mount planner ended up mounting."""

    root_device: str
    boot_device: Optional[str] = None
    esp_device: Optional[str] = None
    esp_mountpoint: Optional[str] = None  # relative to the target root
    unresolved: list[MountTableEntry] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)  # mount errors, boot/ESP only

    @property
    def esp_mounted(self) -> bool:
        return self.esp_device is not None


# ==============================================================================
# Installation Domain
# ==============================================================================


class BootMode(Enum):
    """Firmware interface the bootloader is installed for."""

    UEFI = "uefi"
    BIOS = "bios"


class Bootloader(Enum):
    GRUB = "grub"
    SYSTEMD_BOOT = "systemd-boot"


@dataclass(frozen=True)
class LoaderEntry:
    """A systemd-boot loader entry (``loader/entries/*.conf``)."""

    title: str
    linux: str  # path relative to the ESP root, e.g. "/vmlinuz-linux"
    initrd: str
    options: str

    def render(self) -> str:
        return (
            f"title   {self.title}\n"
            f"linux   {self.linux}\n"
            f"initrd  {self.initrd}\n"
            f"options {self.options}\n"
        )


@dataclass(frozen=True)
class InstallTarget:
    """A bootloader installation request for the mounted target root."""

    root: Path
    mode: BootMode
    bootloader: Bootloader = Bootloader.GRUB
    bootloader_id: str = "ArchLinux"
    removable: bool = False
    bios_disk: Optional[str] = None
    esp_dir: str = "/boot/efi"  # relative to root
    loader_entry: Optional[LoaderEntry] = None
    windows_entry: bool = False
    loader_timeout: int = 5

    def validate(self) -> None:
        """Validate installation constraints.

        Raises:
            ValueError: If validation fails with a descriptive error message
        """
        if self.mode is BootMode.BIOS:
            if self.bootloader is not Bootloader.GRUB:
                raise ValueError("Only GRUB can be installed for legacy BIOS boot")
            if not self.bios_disk:
                raise ValueError("BIOS installation needs a target disk")
            return

        if not self.esp_dir.startswith("/"):
            raise ValueError(f"ESP directory must be absolute: {self.esp_dir}")
        if self.bootloader is Bootloader.SYSTEMD_BOOT:
            if self.loader_entry is None:
                raise ValueError("systemd-boot installation needs a loader entry")
            return
        if not _BOOTLOADER_ID_PATTERN.match(self.bootloader_id or ""):
            raise ValueError(f"Invalid bootloader id: {self.bootloader_id!r}")
