import argparse
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from arch_boot_rescue.__version__ import __version__
from arch_boot_rescue.config.settings import get_bool, get_int, get_setting
from arch_boot_rescue.domain.models import BlockDevice, Bootloader, BootMode, InstallTarget
from arch_boot_rescue.logging import LoggerFactory, operation_context, setup_logging
from arch_boot_rescue.services.installer import (
    ChrootRunner,
    build_install_steps,
    build_loader_entry,
    has_windows_boot_manager,
    install,
    render_script,
    require_boot_mode,
    validate_bios_disk,
)
from arch_boot_rescue.storage.devices import (
    classify_devices,
    enumerate_block_devices,
    get_device_by_path,
    list_disks,
)
from arch_boot_rescue.storage.exceptions import (
    DeviceNotFoundError,
    NoCandidatesFoundError,
    OperationCancelledError,
    RescueError,
)
from arch_boot_rescue.storage.identity import is_block_device
from arch_boot_rescue.storage.planner import MountPlanner
from arch_boot_rescue.storage.session import Mounter, MountSession
from arch_boot_rescue.ui.prompts import TerminalSelector, format_device_table

log = LoggerFactory.for_system()

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_INTERRUPTED = 130


@dataclass
class RepairRequest:
    mode: BootMode
    bootloader: Bootloader = Bootloader.GRUB
    root: Optional[str] = None
    esp: Optional[str] = None
    bootloader_id: Optional[str] = None
    removable: bool = False
    disk: Optional[str] = None
    print_script: bool = False

    @property
    def operation(self) -> str:
        if self.bootloader is Bootloader.SYSTEMD_BOOT:
            return "systemd-boot"
        return f"grub-{self.mode.value}"


MENU_REQUESTS = {
    "1": lambda: RepairRequest(mode=BootMode.UEFI),
    "2": lambda: RepairRequest(mode=BootMode.UEFI, removable=True),
    "3": lambda: RepairRequest(mode=BootMode.BIOS),
    "4": lambda: RepairRequest(mode=BootMode.UEFI, bootloader=Bootloader.SYSTEMD_BOOT),
}


def _handle_sigterm(signum, frame):
    raise SystemExit(128 + signum)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="arch-boot-rescue",
        description="Repair the bootloader of an installed Arch Linux system from a live environment",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-d", "--debug", action="store_true", help="Enable verbose debug output")
    parser.add_argument("--trace", action="store_true", help="Log raw command output")
    parser.add_argument("--log-dir", type=Path, help="Directory for log files")
    parser.add_argument("--mount-root", help="Where to mount the target system")
    parser.add_argument(
        "--non-interactive",
        action="store_true",
        help="Never prompt; fail when a choice would be needed",
    )
    parser.add_argument("-y", "--yes", action="store_true", help="Skip the final confirmation")

    commands = parser.add_subparsers(dest="command")

    def add_repair_command(name, help_text):
        command = commands.add_parser(name, help=help_text)
        command.add_argument("--root", help="Root partition of the installed system")
        command.add_argument(
            "--print-script", action="store_true", help="Print the install script before running it"
        )
        return command

    uefi = add_repair_command("uefi", "Reinstall GRUB for UEFI")
    uefi.add_argument("--esp", help="EFI System Partition")
    uefi.add_argument("--bootloader-id", help="Name of the firmware boot entry")
    uefi.add_argument(
        "--removable", action="store_true", help="Also install EFI/BOOT/BOOTX64.EFI"
    )

    bios = add_repair_command("bios", "Reinstall GRUB for legacy BIOS")
    bios.add_argument("--disk", help="Whole disk to install GRUB to, e.g. /dev/sda")

    systemd_boot = add_repair_command("systemd-boot", "Repair systemd-boot")
    systemd_boot.add_argument("--esp", help="EFI System Partition")

    commands.add_parser("list", help="Show disks and partitions")
    return parser


def request_from_args(args) -> RepairRequest:
    if args.command == "bios":
        mode, bootloader = BootMode.BIOS, Bootloader.GRUB
    elif args.command == "systemd-boot":
        mode, bootloader = BootMode.UEFI, Bootloader.SYSTEMD_BOOT
    else:
        mode, bootloader = BootMode.UEFI, Bootloader.GRUB
    return RepairRequest(
        mode=mode,
        bootloader=bootloader,
        root=args.root,
        esp=getattr(args, "esp", None),
        bootloader_id=getattr(args, "bootloader_id", None),
        removable=getattr(args, "removable", False),
        disk=getattr(args, "disk", None),
        print_script=args.print_script,
    )


def _require_device(devices: list[BlockDevice], path: str) -> str:
    if get_device_by_path(devices, path) is None and not is_block_device(path):
        raise DeviceNotFoundError(path)
    return path


def choose_root(
    devices: list[BlockDevice],
    request: RepairRequest,
    selector: Optional[TerminalSelector],
) -> str:
    if request.root:
        return _require_device(devices, request.root)

    candidates = list(
        classify_devices(
            devices,
            esp_fallback=get_bool("esp_fallback_any_vfat", True),
            esp_size_filter=get_bool("esp_size_filter", False),
        ).root_candidates
    )
    if selector is None:
        if len(candidates) == 1:
            log.info(f"Using the only root candidate {candidates[0].path}")
            return candidates[0].path
        if not candidates:
            raise NoCandidatesFoundError("root filesystem")
        raise OperationCancelledError(
            f"choosing among {len(candidates)} root candidates (use --root)"
        )

    choice = selector.select_root(candidates)
    if not choice:
        if not candidates:
            raise NoCandidatesFoundError("root filesystem")
        raise OperationCancelledError("root selection")
    return _require_device(devices, choice)


def choose_bios_disk(
    devices: list[BlockDevice],
    request: RepairRequest,
    selector: Optional[TerminalSelector],
) -> str:
    disk = request.disk
    if not disk:
        if selector is None:
            raise OperationCancelledError("choosing a BIOS disk (use --disk)")
        disk = selector.select_bios_disk(list_disks(devices))
        if not disk:
            raise OperationCancelledError("disk selection")
    return validate_bios_disk(devices, disk)


def esp_mountpoint_for(request: RepairRequest) -> str:
    # systemd-boot loads the kernel from the ESP, so the ESP is /boot
    if request.bootloader is Bootloader.SYSTEMD_BOOT:
        return "/boot"
    return get_setting("esp_mountpoint", "/boot/efi")


def build_target(
    request: RepairRequest,
    session: MountSession,
    esp_dir: Optional[str],
    root_device: BlockDevice,
    bootloader_id: str,
    bios_disk: Optional[str],
) -> InstallTarget:
    esp_dir = esp_dir or esp_mountpoint_for(request)
    loader_entry = None
    windows_entry = False
    if request.bootloader is Bootloader.SYSTEMD_BOOT:
        esp_path = session.path_for(esp_dir)
        loader_entry = build_loader_entry(esp_path, root_device)
        windows_entry = has_windows_boot_manager(esp_path)
    return InstallTarget(
        root=session.root,
        mode=request.mode,
        bootloader=request.bootloader,
        bootloader_id=bootloader_id,
        removable=request.removable,
        bios_disk=bios_disk,
        esp_dir=esp_dir,
        loader_entry=loader_entry,
        windows_entry=windows_entry,
        loader_timeout=get_int("loader_timeout", 5),
    )


def run_repair(
    request: RepairRequest,
    selector: Optional[TerminalSelector],
    *,
    mount_root: Path,
    assume_yes: bool = False,
    output=print,
    mounter: Optional[Mounter] = None,
) -> None:
    """Mount the target, install the bootloader, unmount.

    Everything mounted is released before this returns or raises.
    """
    require_boot_mode(request.mode)

    devices = enumerate_block_devices()
    root = choose_root(devices, request, selector)
    bios_disk = None
    if request.mode is BootMode.BIOS:
        bios_disk = choose_bios_disk(devices, request, selector)

    default_id = get_setting("bootloader_id", "ArchLinux")
    bootloader_id = request.bootloader_id or default_id
    if (
        request.bootloader is Bootloader.GRUB
        and request.mode is BootMode.UEFI
        and not request.bootloader_id
        and selector is not None
    ):
        bootloader_id = selector.ask_text("Bootloader ID", default_id)

    if selector is not None and not assume_yes:
        summary = f"Repair {request.operation} on {root}"
        if bios_disk:
            summary += f" (GRUB to {bios_disk})"
        if not selector.confirm(f"{summary}. Continue?"):
            raise OperationCancelledError(request.operation)

    with operation_context(request.operation, root=root) as op_log:
        with MountSession(mount_root, mounter=mounter) as session:
            planner = MountPlanner(
                session,
                devices,
                selector,
                esp_mountpoint=esp_mountpoint_for(request),
                esp_device=request.esp,
                esp_fallback=get_bool("esp_fallback_any_vfat", True),
                esp_size_filter=get_bool("esp_size_filter", False),
            )
            report = planner.mount(root, request.mode)
            for failure in report.failed:
                op_log.warning(failure)

            root_device = get_device_by_path(devices, root) or BlockDevice(path=root)
            target = build_target(
                request, session, report.esp_mountpoint, root_device, bootloader_id, bios_disk
            )
            if request.print_script:
                output(render_script(build_install_steps(target)))
            install(target, ChrootRunner(get_setting("chroot_command", "arch-chroot")))


def run_menu(selector: TerminalSelector, mount_root: Path, assume_yes: bool = False) -> int:
    while True:
        choice = selector.main_menu()
        if choice == "0":
            return EXIT_OK
        if choice == "5":
            selector.show_devices(enumerate_block_devices())
            continue
        run_repair(
            MENU_REQUESTS[choice](),
            selector,
            mount_root=mount_root,
            assume_yes=assume_yes,
        )
        return EXIT_OK


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None and args.non_interactive:
        parser.error("a command is required with --non-interactive")

    setup_logging(debug=args.debug, trace=args.trace, log_dir=args.log_dir)
    signal.signal(signal.SIGTERM, _handle_sigterm)
    selector = None if args.non_interactive else TerminalSelector()
    mount_root = Path(args.mount_root or get_setting("mount_root", "/mnt"))

    try:
        if args.command is None:
            return run_menu(selector, mount_root, assume_yes=args.yes)
        if args.command == "list":
            print(format_device_table(enumerate_block_devices()))
            return EXIT_OK
        run_repair(
            request_from_args(args),
            selector,
            mount_root=mount_root,
            assume_yes=args.yes,
        )
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return EXIT_INTERRUPTED
    except OperationCancelledError as error:
        log.warning(str(error))
        return EXIT_FAILURE
    except RescueError as error:
        log.error(str(error))
        return EXIT_FAILURE
    except OSError as error:
        log.error(f"System error: {error}")
        return EXIT_FAILURE
    return EXIT_OK


if __name__ == "__main__":
    raise SystemExit(main())
