"""Mount planner: builds the target's mount hierarchy inside a MountSession.

Order of operations (every step records its mount in the session first):

1. Mount the root device at the session root. Fatal on failure.
2. Read the target fstab. Mount its /boot entry if the reference resolves.
   Unresolved references and failed mounts are reported, not fatal.
3. If /boot is still unmounted, ask the operator for a device (optional).
4. Mount the fstab ESP entry (/boot/efi or /efi). A vfat /boot without a
   separate ESP entry is itself the ESP. /boot always goes first so the ESP
   is never hidden underneath a later /boot mount.
5. UEFI only: if the ESP is still missing, auto-mount the single
   high-confidence candidate or ask the operator. Fatal when nothing is
   chosen.
6. Recursive slave binds of /dev, /proc, /sys and /run.
"""

from __future__ import annotations

from typing import Iterable, Optional, Protocol, Sequence

from arch_boot_rescue.domain.models import (
    ESP_FSTYPES,
    BlockDevice,
    BootMode,
    DeviceReference,
    EspCandidate,
    MountReport,
    MountTableEntry,
    ReferenceKind,
)
from arch_boot_rescue.logging import LoggerFactory

from .devices import find_esp_candidates, get_device_by_path
from .exceptions import (
    DeviceNotFoundError,
    MountStepError,
    NoCandidatesFoundError,
    OperationCancelledError,
    ReferenceResolutionError,
)
from .fstab import BOOT_MOUNTPOINT, BootEntries, read_fstab, select_boot_entries
from .identity import IdentityResolver
from .session import MountSession


class Selector(Protocol):
    """Operator hooks used when automatic resolution runs out."""

    def select_boot_device(self) -> Optional[str]: ...

    def select_esp(self, candidates: Sequence[EspCandidate]) -> Optional[str]: ...


class MountPlanner:
    def __init__(
        self,
        session: MountSession,
        devices: Iterable[BlockDevice],
        selector: Optional[Selector] = None,
        *,
        esp_mountpoint: str = "/boot/efi",
        esp_device: Optional[str] = None,
        esp_fallback: bool = True,
        esp_size_filter: bool = False,
    ):
        self.session = session
        self.devices = list(devices)
        self.selector = selector
        self.resolver = IdentityResolver(self.devices)
        self.esp_mountpoint = esp_mountpoint
        self.esp_device = esp_device
        self.esp_fallback = esp_fallback
        self.esp_size_filter = esp_size_filter
        self.log = LoggerFactory.for_mount()

    def mount(self, root_device: str, mode: BootMode) -> MountReport:
        """Mount the target rooted at ``root_device`` and prepare it for chroot.

        Raises:
            MountStepError: If the root, an operator-chosen device or the
                kernel interface binds cannot be mounted
            NoCandidatesFoundError: UEFI mode and no ESP exists at all
            OperationCancelledError: UEFI mode and no ESP was chosen
            DeviceNotFoundError: An operator-supplied device does not exist
        """
        report = MountReport(root_device=root_device)

        self.session.mount("root", root_device, "/")
        entries = select_boot_entries(read_fstab(self.session.root))

        self._mount_boot_from_fstab(entries, report)
        if report.boot_device is None:
            self._ask_for_boot(report)

        self._mount_esp_from_fstab(entries, report)
        if mode is BootMode.UEFI and not report.esp_mounted:
            self._ensure_esp(report)

        self.session.bind_kernel_interfaces()
        self._log_summary(report)
        return report

    def _resolve_entry(
        self, entry: MountTableEntry, report: MountReport
    ) -> Optional[str]:
        device = self.resolver.resolve(entry.source)
        if device is None:
            error = ReferenceResolutionError(str(entry.source), entry.mountpoint)
            self.log.warning(str(error))
            report.unresolved.append(entry)
        return device

    def _try_mount(self, step: str, device: str, mountpoint: str, report: MountReport) -> bool:
        try:
            self.session.mount(step, device, mountpoint)
        except MountStepError as error:
            self.log.error(str(error))
            report.failed.append(str(error))
            return False
        return True

    def _mount_boot_from_fstab(self, entries: BootEntries, report: MountReport) -> None:
        if entries.boot is None:
            self.log.info("fstab has no /boot entry; /boot is on the root filesystem")
            return
        device = self._resolve_entry(entries.boot, report)
        if device and self._try_mount("boot", device, BOOT_MOUNTPOINT, report):
            report.boot_device = device

    def _require_device(self, path: str) -> str:
        device = self.resolver.resolve(DeviceReference(ReferenceKind.RAW_PATH, path))
        if device is None:
            raise DeviceNotFoundError(path)
        return device

    def _ask_for_boot(self, report: MountReport) -> None:
        if self.selector is None:
            return
        if not self.session.path_for(BOOT_MOUNTPOINT).is_dir():
            return
        choice = self.selector.select_boot_device()
        if not choice:
            self.log.info("No separate /boot partition chosen")
            return
        device = self._require_device(choice)
        self.session.mount("boot", device, BOOT_MOUNTPOINT)
        report.boot_device = device

    def _mount_esp_from_fstab(self, entries: BootEntries, report: MountReport) -> None:
        if self.esp_device:
            device = self._require_device(self.esp_device)
            self.session.mount("esp", device, self.esp_mountpoint)
            report.esp_device = device
            report.esp_mountpoint = self.esp_mountpoint
            return

        if entries.esp is not None:
            device = self._resolve_entry(entries.esp, report)
            if device and self._try_mount("esp", device, entries.esp.mountpoint, report):
                report.esp_device = device
                report.esp_mountpoint = entries.esp.mountpoint
            return

        boot = get_device_by_path(self.devices, report.boot_device or "")
        if boot is not None and boot.fstype in ESP_FSTYPES:
            self.log.info(f"/boot ({boot.path}) is a FAT filesystem; using it as the ESP")
            report.esp_device = boot.path
            report.esp_mountpoint = BOOT_MOUNTPOINT

    def _ensure_esp(self, report: MountReport) -> None:
        self.log.info("ESP not mounted; looking for candidates")
        mounted = {step.source for step in self.session.steps}
        candidates = [
            candidate
            for candidate in find_esp_candidates(
                self.devices,
                fallback_any_vfat=self.esp_fallback,
                size_filter=self.esp_size_filter,
            )
            if candidate.path not in mounted
        ]
        high = [candidate for candidate in candidates if not candidate.is_guess]

        if len(high) == 1:
            device = high[0].path
            self.log.info(f"Using {device} as the EFI System Partition")
        else:
            if self.selector is None:
                if not candidates:
                    raise NoCandidatesFoundError("EFI System Partition")
                raise OperationCancelledError(
                    f"choosing among {len(candidates)} ESP candidates (use --esp)"
                )
            choice = self.selector.select_esp(candidates)
            if not choice:
                if not candidates:
                    raise NoCandidatesFoundError("EFI System Partition")
                raise OperationCancelledError("ESP selection")
            device = self._require_device(choice)

        self.session.mount("esp", device, self.esp_mountpoint)
        report.esp_device = device
        report.esp_mountpoint = self.esp_mountpoint

    def _log_summary(self, report: MountReport) -> None:
        self.log.info(
            f"Target mounted: root={report.root_device} "
            f"boot={report.boot_device or '(on root)'} "
            f"esp={report.esp_device or '-'}"
            + (f" at {report.esp_mountpoint}" if report.esp_mountpoint else "")
        )
        for entry in report.unresolved:
            self.log.warning(f"Unresolved fstab entry: {entry.source} {entry.mountpoint}")
