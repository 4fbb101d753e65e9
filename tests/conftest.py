"""
Pytest configuration and shared fixtures for arch-boot-rescue tests.

This module provides common fixtures and utilities used across all test modules.
Nothing here touches real block devices: lsblk output is canned JSON and
mount state lives in a FakeMounter.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

from arch_boot_rescue.config import settings
from arch_boot_rescue.domain.models import EFI_PARTTYPE_GUID, BlockDevice, DeviceRole
from arch_boot_rescue.storage.exceptions import MountError, UnmountFailedError
from arch_boot_rescue.storage.session import MountSession


# ==============================================================================
# Mount Simulation
# ==============================================================================


class FakeMounter:
    """Records mount state transitions instead of calling mount(8).

    Args:
        fail_at: 1-based index of the mount/bind call that should fail
        fail_unmount: Target paths whose unmount should fail
        interrupt_unmount: Target path whose unmount raises ``interrupt``,
            as if Ctrl-C or SIGTERM arrived while umount was running
    """

    def __init__(
        self,
        fail_at: Optional[int] = None,
        fail_unmount=(),
        interrupt_unmount=None,
        interrupt=KeyboardInterrupt,
    ):
        self.mounted: Dict[Path, str] = {}
        self.calls: List[tuple] = []
        self.fail_at = fail_at
        self.fail_unmount = {Path(path) for path in fail_unmount}
        self._attempts = 0
        self.interrupt_unmount = Path(interrupt_unmount) if interrupt_unmount else None
        self.interrupt = interrupt

    def mounted_source(self, target: Path) -> Optional[str]:
        return self.mounted.get(Path(target))

    def _attempt(self, operation: str, source, target: Path) -> None:
        self._attempts += 1
        self.calls.append((operation, str(source), Path(target)))
        if self._attempts == self.fail_at:
            raise MountError(f"simulated failure mounting {source} at {target}")

    def mount(self, source: str, target: Path) -> None:
        self._attempt("mount", source, target)
        self.mounted[Path(target)] = source

    def bind(self, source: Path, target: Path) -> None:
        self._attempt("bind", source, target)
        self.mounted[Path(target)] = str(source)

    def make_rslave(self, target: Path) -> None:
        self.calls.append(("rslave", "", Path(target)))

    def unmount(self, target: Path) -> None:
        target = Path(target)
        self.calls.append(("umount", "", target))
        if target in self.fail_unmount:
            raise UnmountFailedError(str(target), "target is busy")
        if target == self.interrupt_unmount:
            raise self.interrupt()
        for path in list(self.mounted):
            if path == target or target in path.parents:
                del self.mounted[path]

    @property
    def unmount_order(self) -> List[Path]:
        return [target for operation, _, target in self.calls if operation == "umount"]


@pytest.fixture
def make_mounter():
    """The FakeMounter class, for tests that need failures injected."""
    return FakeMounter


@pytest.fixture
def fake_mounter() -> FakeMounter:
    return FakeMounter()


@pytest.fixture
def target_root(tmp_path) -> Path:
    """Empty directory standing in for /mnt."""
    root = tmp_path / "mnt"
    root.mkdir()
    return root


@pytest.fixture
def session(target_root, fake_mounter):
    """A live MountSession over the fake mounter."""
    with MountSession(target_root, mounter=fake_mounter) as live:
        yield live


@pytest.fixture(autouse=True)
def reset_session_guard():
    MountSession._active = None
    yield
    MountSession._active = None


@pytest.fixture(autouse=True)
def default_settings():
    """Run every test with default settings, never the user's file."""
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)
    yield
    settings.settings_store.values = dict(settings.DEFAULT_SETTINGS)


@pytest.fixture
def write_fstab():
    """Write an fstab below a target root."""

    def _write(root: Path, content: str) -> Path:
        fstab = root / "etc" / "fstab"
        fstab.parent.mkdir(parents=True, exist_ok=True)
        fstab.write_text(content)
        return fstab

    return _write


# ==============================================================================
# Device Fixtures
# ==============================================================================


@pytest.fixture
def esp_partition() -> BlockDevice:
    return BlockDevice(
        path="/dev/sda1",
        name="sda1",
        fstype="vfat",
        parttype=EFI_PARTTYPE_GUID,
        size_bytes=536870912,
        uuid="ABCD-1234",
        partuuid="0a1b2c3d-01",
    )


@pytest.fixture
def root_partition() -> BlockDevice:
    return BlockDevice(
        path="/dev/sda2",
        name="sda2",
        fstype="ext4",
        parttype="0fc63daf-8483-4772-8e79-3d69d8477de4",
        size_bytes=107374182400,
        label="arch",
        uuid="8c0a6f3e-3b1f-4c55-9a4d-3a2f1e0b9d71",
        partuuid="0a1b2c3d-02",
    )


@pytest.fixture
def system_disk() -> BlockDevice:
    return BlockDevice(
        path="/dev/sda",
        name="sda",
        role=DeviceRole.DISK,
        size_bytes=128035676160,
    )


@pytest.fixture
def uefi_devices(system_disk, esp_partition, root_partition) -> List[BlockDevice]:
    """A single-disk UEFI install: ESP on sda1, ext4 root on sda2."""
    return [system_disk, esp_partition, root_partition]


@pytest.fixture
def lsblk_json() -> Dict[str, Any]:
    """
    Fixture providing lsblk -J -b -p output for an NVMe laptop.

    nvme0n1p1 is the ESP, nvme0n1p2 a LUKS container holding an ext4 root.
    """
    return {
        "blockdevices": [
            {
                "path": "/dev/nvme0n1",
                "name": "/dev/nvme0n1",
                "type": "disk",
                "fstype": None,
                "parttype": None,
                "partflags": None,
                "size": 512110190592,
                "label": None,
                "uuid": None,
                "partuuid": None,
                "mountpoint": None,
                "children": [
                    {
                        "path": "/dev/nvme0n1p1",
                        "name": "/dev/nvme0n1p1",
                        "type": "part",
                        "fstype": "vfat",
                        "parttype": "C12A7328-F81F-11D2-BA4B-00A0C93EC93B",
                        "partflags": None,
                        "size": 1073741824,
                        "label": "EFI",
                        "uuid": "7A3B-1F2C",
                        "partuuid": "d2f1c6a4-5e1b-4f3a-9c8d-0b1a2c3d4e5f",
                        "mountpoint": None,
                    },
                    {
                        "path": "/dev/nvme0n1p2",
                        "name": "/dev/nvme0n1p2",
                        "type": "part",
                        "fstype": "crypto_LUKS",
                        "parttype": "0fc63daf-8483-4772-8e79-3d69d8477de4",
                        "partflags": None,
                        "size": 511034261504,
                        "label": None,
                        "uuid": "5b9e0c1d-7a2f-4e3b-8c6d-1f0a9b8c7d6e",
                        "partuuid": "e3a2b1c0-9d8e-4f7a-6b5c-4d3e2f1a0b9c",
                        "mountpoint": None,
                        "children": [
                            {
                                "path": "/dev/mapper/cryptroot",
                                "name": "/dev/mapper/cryptroot",
                                "type": "crypt",
                                "fstype": "ext4",
                                "parttype": None,
                                "partflags": None,
                                "size": 511017484288,
                                "label": "root",
                                "uuid": "f0e1d2c3-b4a5-4968-8776-655443322110",
                                "partuuid": None,
                                "mountpoint": None,
                            }
                        ],
                    },
                ],
            },
            {
                "path": "/dev/sdb",
                "name": "/dev/sdb",
                "type": "disk",
                "fstype": "iso9660",
                "parttype": None,
                "partflags": None,
                "size": 15518924800,
                "label": "ARCH_202610",
                "uuid": "2026-10-01-09-12-45-00",
                "partuuid": None,
                "mountpoint": "/run/archiso/bootmnt",
            },
        ]
    }
