"""Read-only settings: a JSON file merged over DEFAULT_SETTINGS at import time."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "ARCH_BOOT_RESCUE_SETTINGS_PATH",
        Path.home() / ".config" / "arch-boot-rescue" / "settings.json",
    )
)

# Default values - use these constants instead of hardcoding values elsewhere
DEFAULT_MOUNT_ROOT = "/mnt"
DEFAULT_BOOTLOADER_ID = "ArchLinux"
DEFAULT_ESP_MOUNTPOINT = "/boot/efi"
DEFAULT_CHROOT_COMMAND = "arch-chroot"
DEFAULT_LOADER_TIMEOUT = 5

DEFAULT_SETTINGS: dict[str, Any] = {
    "mount_root": DEFAULT_MOUNT_ROOT,
    "bootloader_id": DEFAULT_BOOTLOADER_ID,
    "esp_mountpoint": DEFAULT_ESP_MOUNTPOINT,
    "esp_fallback_any_vfat": True,
    "esp_size_filter": False,
    "chroot_command": DEFAULT_CHROOT_COMMAND,
    "loader_timeout": DEFAULT_LOADER_TIMEOUT,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings(path: Path | None = None) -> None:
    settings_path = path or SETTINGS_PATH
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not settings_path.exists():
        return
    try:
        data = json.loads(settings_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def get_bool(key: str, default: bool = False) -> bool:
    return bool(get_setting(key, default))


def get_int(key: str, default: int = 0) -> int:
    try:
        return int(get_setting(key, default))
    except (TypeError, ValueError):
        return default


load_settings()
