"""Bootloader installation inside a mounted target root.

Builds the ordered list of shell steps for GRUB (UEFI or BIOS) or
systemd-boot and runs each one through the chroot helper:

    arch-chroot <root> /bin/bash -euo pipefail -c <script>

One invocation per step, so a failure names the exact step that broke.
Steps run strictly in order and are never retried.

Paths inside a step script are paths inside the target (``/boot/efi``), not
host paths. Host-side checks (kernel discovery on the ESP, Windows boot
manager presence) happen before the steps are built.
"""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from arch_boot_rescue.domain.models import (
    BlockDevice,
    Bootloader,
    BootMode,
    DeviceRole,
    InstallTarget,
    LoaderEntry,
)
from arch_boot_rescue.logging import LoggerFactory
from arch_boot_rescue.storage.devices import get_device_by_path
from arch_boot_rescue.storage.exceptions import (
    BootModeError,
    DeviceNotFoundError,
    DeviceValidationError,
    InstallerError,
    PrivilegedCommandError,
)

log = LoggerFactory.for_installer()

EFIVARS_PATH = Path("/sys/firmware/efi/efivars")
GRUB_CONFIG = "/boot/grub/grub.cfg"
WINDOWS_BOOT_MANAGER = "EFI/Microsoft/Boot/bootmgfw.efi"
LOADER_ENTRY_NAME = "arch.conf"


@dataclass(frozen=True)
class InstallStep:
    name: str
    script: str


# ==============================================================================
# Firmware and host-side checks
# ==============================================================================


def detect_boot_mode(efivars_path: Path = EFIVARS_PATH) -> BootMode:
    """Firmware mode the live environment was booted in."""
    return BootMode.UEFI if efivars_path.is_dir() else BootMode.BIOS


def require_boot_mode(required: BootMode, efivars_path: Path = EFIVARS_PATH) -> None:
    """Refuse UEFI installs from a BIOS-booted live system.

    efibootmgr needs EFI variables to write NVRAM boot entries. BIOS installs
    work from either mode.

    Raises:
        BootModeError: If a UEFI install is requested without EFI variables
    """
    if required is not BootMode.UEFI:
        return
    detected = detect_boot_mode(efivars_path)
    if detected is not BootMode.UEFI:
        raise BootModeError(required.value.upper(), detected.value.upper())


def validate_bios_disk(devices: Iterable[BlockDevice], disk: str) -> str:
    """Check that ``disk`` is an enumerated whole disk, not a partition.

    Raises:
        DeviceNotFoundError: If the disk is not enumerated
        DeviceValidationError: If the path is a partition or mapped volume
    """
    device = get_device_by_path(devices, disk)
    if device is None:
        raise DeviceNotFoundError(disk)
    if device.role is not DeviceRole.DISK:
        raise DeviceValidationError(
            disk, f"GRUB for BIOS must go to a whole disk, not a {device.role.name.lower()}"
        )
    return device.path


def has_windows_boot_manager(esp_path: Path) -> bool:
    return (esp_path / WINDOWS_BOOT_MANAGER).is_file()


def discover_boot_files(esp_path: Path) -> tuple[str, str]:
    """Find a kernel and its initramfs on the mounted ESP.

    Returns:
        (kernel, initramfs) file names, e.g. ("vmlinuz-linux", "initramfs-linux.img").
        A non-fallback initramfs is preferred.

    Raises:
        InstallerError: If no kernel or no initramfs is present
    """
    kernels = sorted(path.name for path in esp_path.glob("vmlinuz-*") if path.is_file())
    if not kernels:
        raise InstallerError(f"No kernel (vmlinuz-*) found on the ESP at {esp_path}")

    images = sorted(path.name for path in esp_path.glob("initramfs-*.img") if path.is_file())
    primary = [name for name in images if not name.endswith("-fallback.img")]
    if not images:
        raise InstallerError(
            f"No initramfs (initramfs-*.img) found on the ESP at {esp_path}"
        )

    kernel = kernels[0]
    # Match initramfs-<kernel>.img to vmlinuz-<kernel> when both exist
    matching = f"initramfs-{kernel[len('vmlinuz-'):]}.img"
    if matching in images:
        initramfs = matching
    else:
        initramfs = (primary or images)[0]
    log.debug(f"Boot files on {esp_path}: {kernel}, {initramfs}")
    return kernel, initramfs


def build_loader_entry(
    esp_path: Path, root_device: BlockDevice, title: str = "Arch Linux"
) -> LoaderEntry:
    """Build the systemd-boot entry for the target root.

    Raises:
        InstallerError: If boot files are missing or the root has no UUID/PARTUUID
    """
    kernel, initramfs = discover_boot_files(esp_path)
    if root_device.uuid:
        root = f"UUID={root_device.uuid}"
    elif root_device.partuuid:
        root = f"PARTUUID={root_device.partuuid}"
    else:
        raise InstallerError(
            f"Root device {root_device.path} has neither UUID nor PARTUUID"
        )
    return LoaderEntry(
        title=title,
        linux=f"/{kernel}",
        initrd=f"/{initramfs}",
        options=f"root={root} rw",
    )


# ==============================================================================
# Step construction
# ==============================================================================


def _ensure_package(package: str) -> InstallStep:
    return InstallStep(
        name=f"ensure {package}",
        script=(
            f"pacman -Q {package} >/dev/null 2>&1 || "
            f"pacman -Sy --noconfirm --needed {package}"
        ),
    )


def _write_file(name: str, path: str, content: str) -> InstallStep:
    quoted = shlex.quote(path)
    parent = shlex.quote(str(Path(path).parent))
    return InstallStep(
        name=name,
        script=f"mkdir -p {parent}\ncat > {quoted} <<'EOF'\n{content}EOF",
    )


def _grub_mkconfig() -> InstallStep:
    return InstallStep(
        name="grub-mkconfig", script=f"grub-mkconfig -o {GRUB_CONFIG}"
    )


def _grub_uefi_steps(target: InstallTarget) -> list[InstallStep]:
    esp = shlex.quote(target.esp_dir)
    steps = [
        _ensure_package("grub"),
        _ensure_package("efibootmgr"),
        InstallStep(
            name="grub-install",
            script=(
                f"grub-install --target=x86_64-efi --efi-directory={esp} "
                f"--bootloader-id={shlex.quote(target.bootloader_id)} --recheck"
            ),
        ),
    ]
    if target.removable:
        # EFI/BOOT/BOOTX64.EFI for firmware that forgets NVRAM entries
        steps.append(
            InstallStep(
                name="grub-install removable",
                script=(
                    f"grub-install --target=x86_64-efi --efi-directory={esp} "
                    "--removable --recheck"
                ),
            )
        )
    steps.append(_grub_mkconfig())
    return steps


def _grub_bios_steps(target: InstallTarget) -> list[InstallStep]:
    return [
        _ensure_package("grub"),
        InstallStep(
            name="grub-install",
            script=(
                f"grub-install --target=i386-pc {shlex.quote(target.bios_disk or '')} "
                "--recheck"
            ),
        ),
        _grub_mkconfig(),
    ]


def _systemd_boot_steps(target: InstallTarget) -> list[InstallStep]:
    esp = target.esp_dir.rstrip("/") or "/"
    entries_dir = f"{esp}/loader/entries"
    steps = [
        InstallStep(
            name="bootctl install",
            script=f"bootctl --esp-path={shlex.quote(esp)} install",
        ),
        _write_file(
            "write loader entry",
            f"{entries_dir}/{LOADER_ENTRY_NAME}",
            target.loader_entry.render(),
        ),
    ]
    if target.windows_entry:
        steps.append(
            _write_file(
                "write windows entry",
                f"{entries_dir}/windows.conf",
                f"title   Windows Boot Manager\nefi     /{WINDOWS_BOOT_MANAGER}\n",
            )
        )
    steps.append(
        _write_file(
            "write loader.conf",
            f"{esp}/loader/loader.conf",
            (
                f"default {LOADER_ENTRY_NAME}\n"
                f"timeout {target.loader_timeout}\n"
                "auto-entries 0\n"
            ),
        )
    )
    return steps


def build_install_steps(target: InstallTarget) -> list[InstallStep]:
    """Ordered steps installing the requested bootloader.

    Raises:
        InstallerError: If the target fails validation
    """
    try:
        target.validate()
    except ValueError as error:
        raise InstallerError(str(error)) from error

    if target.bootloader is Bootloader.SYSTEMD_BOOT:
        return _systemd_boot_steps(target)
    if target.mode is BootMode.BIOS:
        return _grub_bios_steps(target)
    return _grub_uefi_steps(target)


def render_script(steps: Iterable[InstallStep]) -> str:
    """The full step sequence as a single script, for display."""
    lines = ["#!/bin/bash", "set -euo pipefail", ""]
    for step in steps:
        lines.append(f"# {step.name}")
        lines.append(step.script)
        lines.append("")
    return "\n".join(lines)


# ==============================================================================
# Execution
# ==============================================================================


class ChrootRunner:
    """Runs install steps inside the target root via the chroot helper."""

    def __init__(self, command: str = "arch-chroot"):
        self.command = command

    def build_command(self, root: Path, step: InstallStep) -> list[str]:
        return [
            self.command,
            str(root),
            "/bin/bash",
            "-euo",
            "pipefail",
            "-c",
            step.script,
        ]

    def run(self, root: Path, step: InstallStep) -> None:
        """Run one step.

        Raises:
            PrivilegedCommandError: If the step exits non-zero or the chroot
                helper cannot be started
        """
        command = self.build_command(root, step)
        log.debug(f"Running step '{step.name}' in {root}")
        try:
            result = subprocess.run(command, check=True, capture_output=True, text=True)
        except FileNotFoundError as error:
            raise PrivilegedCommandError(step.name, 127, f"{self.command} not found") from error
        except subprocess.CalledProcessError as error:
            if error.stdout:
                log.bind(tags=["output"]).trace(f"stdout: {error.stdout.strip()}")
            output = (error.stderr or error.stdout or "").strip()
            raise PrivilegedCommandError(step.name, error.returncode, output) from error
        if result.stdout:
            log.bind(tags=["output"]).trace(f"stdout: {result.stdout.strip()}")
        if result.stderr:
            log.debug(f"stderr: {result.stderr.strip()}")


def install(
    target: InstallTarget, runner: Optional[ChrootRunner] = None
) -> list[InstallStep]:
    """Install the bootloader described by ``target``.

    Returns:
        The steps that were run

    Raises:
        InstallerError: If validation fails
        PrivilegedCommandError: On the first failing step; later steps are not run
    """
    runner = runner or ChrootRunner()
    steps = build_install_steps(target)
    log.info(
        f"Installing {target.bootloader.value} ({target.mode.value}) "
        f"into {target.root}: {len(steps)} steps"
    )
    for index, step in enumerate(steps, start=1):
        log.info(f"[{index}/{len(steps)}] {step.name}")
        runner.run(target.root, step)
    log.success(f"{target.bootloader.value} installed")
    return steps
