"""Terminal prompts for choosing devices and confirming actions.

Every selection returns a device path or None; None always means the
operator cancelled or declined. Numbered menus use ``0`` to cancel, and
invalid input re-prompts instead of failing. End of input (Ctrl-D) counts
as cancel.
"""

from __future__ import annotations

from typing import Callable, Iterable, Optional, Sequence

from arch_boot_rescue.domain.models import BlockDevice, EspCandidate
from arch_boot_rescue.logging import LoggerFactory
from arch_boot_rescue.storage.devices import format_device_label, human_size
from arch_boot_rescue.storage.identity import is_block_device

log = LoggerFactory.for_menu()

MAIN_MENU = (
    ("1", "Reinstall GRUB (UEFI)"),
    ("2", "Reinstall GRUB (UEFI) + removable fallback (EFI/BOOT/BOOTX64.EFI)"),
    ("3", "Reinstall GRUB (Legacy BIOS)"),
    ("4", "Repair systemd-boot (UEFI)"),
    ("5", "Show disks and partitions"),
    ("0", "Quit"),
)

TABLE_COLUMNS = ("NAME", "PATH", "FSTYPE", "SIZE", "TYPE", "MOUNTPOINT", "PARTTYPE", "LABEL")


def _table_row(device: BlockDevice) -> tuple[str, ...]:
    return (
        device.name,
        device.path,
        device.fstype or "-",
        human_size(device.size_bytes),
        device.role.value,
        device.mountpoint or "-",
        device.parttype or "-",
        device.label or "-",
    )


def format_device_table(devices: Iterable[BlockDevice]) -> str:
    rows = [TABLE_COLUMNS] + [_table_row(device) for device in devices]
    widths = [max(len(row[index]) for row in rows) for index in range(len(TABLE_COLUMNS))]
    lines = [
        "  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip()
        for row in rows
    ]
    return "\n".join(lines)


class TerminalSelector:
    """Asks the operator on the terminal.

    ``input_func`` and ``output_func`` default to :func:`input` and
    :func:`print`; tests pass scripted replacements.
    """

    def __init__(
        self,
        input_func: Callable[[str], str] = input,
        output_func: Callable[[str], None] = print,
    ):
        self._input = input_func
        self._output = output_func

    def _ask(self, prompt: str) -> Optional[str]:
        try:
            return self._input(prompt).strip()
        except EOFError:
            return None

    # Primitives

    def choose(self, title: str, options: Sequence[str]) -> Optional[int]:
        """Numbered menu. Returns the chosen index, or None for 0 / end of input."""
        self._output(title)
        for number, option in enumerate(options, start=1):
            self._output(f"  {number}) {option}")
        self._output("  0) Cancel")
        while True:
            answer = self._ask(f"Select [0-{len(options)}]: ")
            if answer is None or answer == "0":
                log.debug(f"Selection cancelled: {title}")
                return None
            if answer.isdigit() and 1 <= int(answer) <= len(options):
                return int(answer) - 1
            self._output(f"Invalid choice: {answer!r}")

    def confirm(self, message: str, default: bool = False) -> bool:
        hint = "[Y/n]" if default else "[y/N]"
        while True:
            answer = self._ask(f"{message} {hint} ")
            if answer is None:
                return False
            if not answer:
                return default
            if answer.lower() in ("y", "yes"):
                return True
            if answer.lower() in ("n", "no"):
                return False
            self._output("Please answer y or n.")

    def ask_text(self, prompt: str, default: str = "") -> str:
        suffix = f" [{default}]" if default else ""
        answer = self._ask(f"{prompt}{suffix}: ")
        return answer or default

    def ask_device(self, prompt: str) -> Optional[str]:
        """Free-text device path, re-asked until it is a block device. Blank declines."""
        while True:
            answer = self._ask(f"{prompt} (blank to skip): ")
            if not answer:
                return None
            if is_block_device(answer):
                return answer
            self._output(f"{answer} is not a block device.")

    # Role-specific selections

    def main_menu(self) -> str:
        self._output("")
        self._output("Arch Linux boot rescue")
        for key, label in MAIN_MENU:
            self._output(f"  {key}) {label}")
        keys = {key for key, _ in MAIN_MENU}
        while True:
            answer = self._ask("Choose an option: ")
            if answer is None:
                return "0"
            if answer in keys:
                return answer
            self._output(f"Invalid choice: {answer!r}")

    def show_devices(self, devices: Iterable[BlockDevice]) -> None:
        self._output(format_device_table(devices))

    def select_root(self, candidates: Sequence[BlockDevice]) -> Optional[str]:
        if not candidates:
            self._output("No Linux root filesystem candidates were found.")
            return self.ask_device("Root partition")
        index = self.choose(
            "Select the ROOT partition of the installed system:",
            [format_device_label(device) for device in candidates],
        )
        return None if index is None else candidates[index].path

    def select_boot_device(self) -> Optional[str]:
        if not self.confirm("Is /boot on a separate partition?"):
            return None
        return self.ask_device("/boot partition")

    def select_esp(self, candidates: Sequence[EspCandidate]) -> Optional[str]:
        if not candidates:
            self._output("No EFI System Partition candidates were found.")
            return self.ask_device("EFI System Partition")
        index = self.choose(
            "Select the EFI System Partition:",
            [format_device_label(candidate) for candidate in candidates],
        )
        if index is None:
            return None
        candidate = candidates[index]
        if candidate.is_guess and not self.confirm(
            f"{candidate.path} is not marked as an ESP. Use it anyway?"
        ):
            return None
        return candidate.path

    def select_bios_disk(self, disks: Sequence[BlockDevice]) -> Optional[str]:
        if not disks:
            self._output("No disks were found.")
            return None
        index = self.choose(
            "Select the DISK to install GRUB to (whole disk, not a partition):",
            [format_device_label(disk) for disk in disks],
        )
        return None if index is None else disks[index].path
