"""Block device enumeration and classification using lsblk.

This module lists every block device of the live environment and sorts the
ones that matter for a bootloader repair into candidate roles.

Device Detection:
    Uses lsblk with JSON output (``-J``), byte sizes (``-b``) and full paths
    (``-p``). The nested ``children`` tree is flattened, keeping the first
    occurrence of a path (a RAID or LVM volume can appear under several
    parents).

Classification:
    - Root candidates: ext4/ext3/ext2/btrfs/xfs on a partition or a mapped
      volume (LVM, unlocked LUKS).
    - ESP candidates: vfat partitions whose partition type is the EFI System
      Partition GUID (or MBR id 0xef) or that carry the "esp" flag. These are
      high-confidence.
    - When no partition qualifies, every vfat partition is offered as a
      low-confidence guess. A FAT32 data partition matches this too, so a
      guess is never mounted without the operator picking it.
    - /boot has no universal type signature and is not classified; it comes
      from the target's fstab.

Enumeration failure raises DeviceEnumerationError: without device visibility
nothing else can proceed.

Example:
    >>> from arch_boot_rescue.storage.devices import classify_devices, enumerate_block_devices
    >>> result = classify_devices(enumerate_block_devices())
    >>> [device.path for device in result.root_candidates]
    ['/dev/nvme0n1p2']
"""

from __future__ import annotations

import json
import re
import subprocess
from typing import Any, Iterable, Optional

from arch_boot_rescue.domain.models import (
    ESP_FSTYPES,
    ROOT_FSTYPES,
    BlockDevice,
    ClassificationResult,
    Confidence,
    DeviceRole,
    EspCandidate,
)
from arch_boot_rescue.logging import LoggerFactory

from .exceptions import DeviceEnumerationError

LSBLK_COLUMNS = "PATH,NAME,TYPE,FSTYPE,PARTTYPE,PARTFLAGS,SIZE,LABEL,UUID,PARTUUID,MOUNTPOINT"

# Size window for the optional ESP size filter on low-confidence guesses
ESP_MIN_SIZE_BYTES = 32 * 1024**2
ESP_MAX_SIZE_BYTES = 2 * 1024**3

log = LoggerFactory.for_devices()


def run_command(command, check=True, log_output=True, log_command=True):
    if log_command:
        log.debug(f"Running command: {' '.join(command)}")
    try:
        result = subprocess.run(command, check=check, text=True, capture_output=True)
    except subprocess.CalledProcessError as error:
        log.debug(f"Command failed: {' '.join(command)}")
        if error.stdout:
            log.bind(tags=["output"]).trace(f"stdout: {error.stdout.strip()}")
        if error.stderr:
            log.debug(f"stderr: {error.stderr.strip()}")
        raise
    if result.stdout and (log_output or result.returncode != 0):
        log.bind(tags=["output"]).trace(f"stdout: {result.stdout.strip()}")
    if result.stderr and (log_output or result.returncode != 0):
        log.debug(f"stderr: {result.stderr.strip()}")
    if log_command:
        log.debug(f"Command completed with return code {result.returncode}")
    return result


def human_size(size_bytes):
    if size_bytes is None:
        return "0B"
    size = float(size_bytes)
    for unit in ["B", "KB", "MB", "GB", "TB"]:
        if size < 1024.0:
            return f"{size:.1f}{unit}"
        size /= 1024.0
    return f"{size:.1f}PB"


def format_device_label(device):
    if isinstance(device, EspCandidate):
        label = format_device_label(device.device)
        if device.is_guess:
            label += " (guess: no ESP type)"
        return label
    if isinstance(device, BlockDevice):
        size_label = re.sub(r"\.0([A-Z])", r"\1", human_size(device.size_bytes))
        parts = [device.path, device.fstype, size_label, device.label]
        return " ".join(part for part in parts if part)
    return str(device or "")


def get_children(device: dict[str, Any]) -> list[dict[str, Any]]:
    return device.get("children", []) or []


def _flatten(devices: Iterable[dict[str, Any]]) -> Iterable[dict[str, Any]]:
    for device in devices:
        yield device
        yield from _flatten(get_children(device))


def get_block_devices() -> list[dict[str, Any]]:
    """Return the raw lsblk device tree.

    Raises:
        DeviceEnumerationError: If lsblk is missing, fails or prints invalid JSON
    """
    try:
        result = run_command(
            ["lsblk", "-J", "-b", "-p", "-o", LSBLK_COLUMNS],
            log_output=False,
        )
        data = json.loads(result.stdout)
    except FileNotFoundError as error:
        raise DeviceEnumerationError("lsblk is not installed") from error
    except subprocess.CalledProcessError as error:
        stderr = (error.stderr or "").strip()
        raise DeviceEnumerationError(stderr or str(error)) from error
    except json.JSONDecodeError as error:
        raise DeviceEnumerationError(f"invalid lsblk output: {error}") from error
    if not isinstance(data, dict):
        raise DeviceEnumerationError("invalid lsblk output: not an object")
    return data.get("blockdevices", []) or []


def enumerate_block_devices() -> list[BlockDevice]:
    """Return a flat snapshot of every block device on the live system.

    Raises:
        DeviceEnumerationError: If devices cannot be listed
    """
    devices: list[BlockDevice] = []
    seen: set[str] = set()
    for raw in _flatten(get_block_devices()):
        try:
            device = BlockDevice.from_lsblk_dict(raw)
        except KeyError:
            log.debug(f"Skipping lsblk entry without a path: {raw}")
            continue
        if device.path in seen:
            continue
        seen.add(device.path)
        devices.append(device)
    log.debug(f"lsblk found {len(devices)} devices: {', '.join(d.path for d in devices)}")
    return devices


def get_device_by_path(devices: Iterable[BlockDevice], path: str) -> Optional[BlockDevice]:
    if not path:
        return None
    for device in devices:
        if device.path == path:
            return device
    return None


def find_root_candidates(devices: Iterable[BlockDevice]) -> list[BlockDevice]:
    candidates = [
        device
        for device in devices
        if device.fstype in ROOT_FSTYPES
        and device.role in (DeviceRole.PARTITION, DeviceRole.MAPPED)
    ]
    return sorted(candidates, key=lambda device: device.path)


def _is_fat_partition(device: BlockDevice) -> bool:
    return device.fstype in ESP_FSTYPES and device.role is DeviceRole.PARTITION


def find_esp_candidates(
    devices: Iterable[BlockDevice],
    *,
    fallback_any_vfat: bool = True,
    size_filter: bool = False,
) -> list[EspCandidate]:
    """Return ESP candidates, high-confidence first.

    Args:
        devices: Enumerated block devices
        fallback_any_vfat: Offer every vfat partition as a low-confidence guess
            when no partition carries an ESP type marker
        size_filter: Restrict guesses to partitions between 32 MiB and 2 GiB

    Returns:
        List of EspCandidate sorted by path; all HIGH or all LOW
    """
    fat_partitions = sorted(
        (device for device in devices if _is_fat_partition(device)),
        key=lambda device: device.path,
    )
    strict = [
        EspCandidate(device, Confidence.HIGH)
        for device in fat_partitions
        if device.has_esp_type
    ]
    if strict or not fallback_any_vfat:
        return strict

    guesses = []
    for device in fat_partitions:
        if size_filter and not (
            ESP_MIN_SIZE_BYTES <= device.size_bytes <= ESP_MAX_SIZE_BYTES
        ):
            log.debug(f"Ignoring {device.path} as ESP guess: size {human_size(device.size_bytes)}")
            continue
        guesses.append(EspCandidate(device, Confidence.LOW))
    if guesses:
        log.warning(
            "No partition carries the EFI System Partition type; "
            f"offering {len(guesses)} FAT partition(s) as guesses"
        )
    return guesses


def classify_devices(
    devices: Iterable[BlockDevice],
    *,
    esp_fallback: bool = True,
    esp_size_filter: bool = False,
) -> ClassificationResult:
    """Sort enumerated devices into root and ESP candidates."""
    devices = list(devices)
    result = ClassificationResult(
        root_candidates=tuple(find_root_candidates(devices)),
        esp_candidates=tuple(
            find_esp_candidates(
                devices,
                fallback_any_vfat=esp_fallback,
                size_filter=esp_size_filter,
            )
        ),
    )
    log.debug(
        f"Classified {len(result.root_candidates)} root and "
        f"{len(result.esp_candidates)} ESP candidates"
    )
    return result


def list_disks(devices: Iterable[BlockDevice]) -> list[BlockDevice]:
    """Whole disks, for legacy BIOS bootloader installation."""
    return sorted(
        (device for device in devices if device.role is DeviceRole.DISK),
        key=lambda device: device.path,
    )
