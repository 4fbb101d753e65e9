"""Tests for main.py - argument parsing, repair orchestration and exit codes.

Repairs run end to end against a FakeMounter; firmware detection, device
enumeration and the chroot install are patched out.
"""

from pathlib import Path
from unittest.mock import Mock, patch

import pytest

from arch_boot_rescue import main as main_module
from arch_boot_rescue.domain.models import BlockDevice, Bootloader, BootMode
from arch_boot_rescue.main import RepairRequest, build_parser, choose_root, request_from_args
from arch_boot_rescue.storage.exceptions import (
    DeviceNotFoundError,
    DeviceValidationError,
    NoCandidatesFoundError,
    OperationCancelledError,
    PrivilegedCommandError,
)

FSTAB_ESP_AT_BOOT_EFI = (
    "UUID=8c0a6f3e-3b1f-4c55-9a4d-3a2f1e0b9d71 / ext4 rw,relatime 0 1\n"
    "UUID=ABCD-1234 /boot/efi vfat umask=0077 0 2\n"
)

FSTAB_ESP_AT_BOOT = (
    "UUID=8c0a6f3e-3b1f-4c55-9a4d-3a2f1e0b9d71 / ext4 rw,relatime 0 1\n"
    "UUID=ABCD-1234 /boot vfat umask=0077 0 2\n"
)


@pytest.fixture
def patched_system(uefi_devices):
    """Firmware check, enumeration and install replaced with mocks."""
    with patch("arch_boot_rescue.main.require_boot_mode") as boot_mode, patch(
        "arch_boot_rescue.main.enumerate_block_devices", return_value=uefi_devices
    ), patch("arch_boot_rescue.main.install") as install:
        yield Mock(boot_mode=boot_mode, install=install)


def installed_target(patched_system):
    return patched_system.install.call_args[0][0]


class TestParser:
    def test_uefi_command(self):
        args = build_parser().parse_args(
            ["uefi", "--root", "/dev/sda2", "--esp", "/dev/sda1", "--removable"]
        )
        request = request_from_args(args)

        assert request.mode is BootMode.UEFI
        assert request.bootloader is Bootloader.GRUB
        assert request.root == "/dev/sda2"
        assert request.esp == "/dev/sda1"
        assert request.removable is True
        assert request.operation == "grub-uefi"

    def test_bios_command(self):
        request = request_from_args(build_parser().parse_args(["bios", "--disk", "/dev/sda"]))

        assert request.mode is BootMode.BIOS
        assert request.disk == "/dev/sda"
        assert request.esp is None
        assert request.operation == "grub-bios"

    def test_systemd_boot_command(self):
        request = request_from_args(
            build_parser().parse_args(["systemd-boot", "--print-script"])
        )

        assert request.bootloader is Bootloader.SYSTEMD_BOOT
        assert request.print_script is True
        assert request.operation == "systemd-boot"

    def test_global_options(self):
        args = build_parser().parse_args(["--non-interactive", "-y", "--debug", "list"])

        assert args.non_interactive and args.yes and args.debug
        assert args.command == "list"

    def test_non_interactive_needs_command(self):
        with pytest.raises(SystemExit) as exc_info:
            main_module.main(["--non-interactive"])
        assert exc_info.value.code == 2


class TestChooseRoot:
    def test_explicit_root(self, uefi_devices):
        request = RepairRequest(mode=BootMode.UEFI, root="/dev/sda2")
        assert choose_root(uefi_devices, request, None) == "/dev/sda2"

    def test_explicit_root_must_exist(self, uefi_devices):
        request = RepairRequest(mode=BootMode.UEFI, root="/dev/does-not-exist")
        with pytest.raises(DeviceNotFoundError):
            choose_root(uefi_devices, request, None)

    def test_single_candidate_without_prompting(self, uefi_devices):
        assert choose_root(uefi_devices, RepairRequest(mode=BootMode.UEFI), None) == "/dev/sda2"

    def test_several_candidates_without_prompting(self, uefi_devices):
        devices = uefi_devices + [BlockDevice(path="/dev/sdb2", fstype="btrfs")]

        with pytest.raises(OperationCancelledError, match="use --root"):
            choose_root(devices, RepairRequest(mode=BootMode.UEFI), None)

    def test_no_candidates(self, esp_partition):
        with pytest.raises(NoCandidatesFoundError):
            choose_root([esp_partition], RepairRequest(mode=BootMode.UEFI), None)

    def test_operator_always_asked(self, uefi_devices):
        selector = Mock()
        selector.select_root.return_value = "/dev/sda2"

        assert choose_root(uefi_devices, RepairRequest(mode=BootMode.UEFI), selector) == "/dev/sda2"
        selector.select_root.assert_called_once()

    def test_operator_cancels(self, uefi_devices):
        selector = Mock()
        selector.select_root.return_value = None

        with pytest.raises(OperationCancelledError):
            choose_root(uefi_devices, RepairRequest(mode=BootMode.UEFI), selector)


class TestRunRepair:
    def test_grub_uefi(self, patched_system, target_root, fake_mounter, write_fstab):
        write_fstab(target_root, FSTAB_ESP_AT_BOOT_EFI)
        request = RepairRequest(mode=BootMode.UEFI, root="/dev/sda2", bootloader_id="Arch")

        main_module.run_repair(request, None, mount_root=target_root, mounter=fake_mounter)

        target = installed_target(patched_system)
        assert target.root == target_root
        assert target.esp_dir == "/boot/efi"
        assert target.bootloader_id == "Arch"
        assert ("mount", "/dev/sda1", target_root / "boot" / "efi") in fake_mounter.calls
        assert fake_mounter.mounted == {}
        assert fake_mounter.unmount_order[-1] == target_root
        patched_system.boot_mode.assert_called_once_with(BootMode.UEFI)

    def test_mounts_released_when_install_fails(
        self, patched_system, target_root, fake_mounter, write_fstab
    ):
        write_fstab(target_root, FSTAB_ESP_AT_BOOT_EFI)
        patched_system.install.side_effect = PrivilegedCommandError("grub-install", 1, "boom")
        request = RepairRequest(mode=BootMode.UEFI, root="/dev/sda2")

        with pytest.raises(PrivilegedCommandError):
            main_module.run_repair(request, None, mount_root=target_root, mounter=fake_mounter)

        assert fake_mounter.mounted == {}
        assert len(fake_mounter.unmount_order) == 6

    def test_systemd_boot_uses_esp_as_boot(
        self, patched_system, target_root, fake_mounter, write_fstab
    ):
        write_fstab(target_root, FSTAB_ESP_AT_BOOT)
        boot = target_root / "boot"
        boot.mkdir()
        (boot / "vmlinuz-linux").write_text("")
        (boot / "initramfs-linux.img").write_text("")
        request = RepairRequest(
            mode=BootMode.UEFI, bootloader=Bootloader.SYSTEMD_BOOT, root="/dev/sda2"
        )

        main_module.run_repair(request, None, mount_root=target_root, mounter=fake_mounter)

        target = installed_target(patched_system)
        assert target.esp_dir == "/boot"
        assert target.loader_entry.linux == "/vmlinuz-linux"
        assert target.loader_entry.options == (
            "root=UUID=8c0a6f3e-3b1f-4c55-9a4d-3a2f1e0b9d71 rw"
        )
        assert target.windows_entry is False

    def test_print_script(self, patched_system, target_root, fake_mounter, write_fstab):
        write_fstab(target_root, FSTAB_ESP_AT_BOOT_EFI)
        printed = []
        request = RepairRequest(mode=BootMode.UEFI, root="/dev/sda2", print_script=True)

        main_module.run_repair(
            request, None, mount_root=target_root, output=printed.append, mounter=fake_mounter
        )

        assert printed[0].startswith("#!/bin/bash\nset -euo pipefail")
        assert "grub-install --target=x86_64-efi --efi-directory=/boot/efi" in printed[0]

    def test_bios_rejects_partition(self, patched_system, target_root, fake_mounter):
        request = RepairRequest(mode=BootMode.BIOS, root="/dev/sda2", disk="/dev/sda1")

        with pytest.raises(DeviceValidationError):
            main_module.run_repair(request, None, mount_root=target_root, mounter=fake_mounter)

        assert fake_mounter.calls == []

    def test_bios_install(self, patched_system, target_root, fake_mounter):
        request = RepairRequest(mode=BootMode.BIOS, root="/dev/sda2", disk="/dev/sda")

        main_module.run_repair(request, None, mount_root=target_root, mounter=fake_mounter)

        target = installed_target(patched_system)
        assert target.bios_disk == "/dev/sda"
        assert target.mode is BootMode.BIOS

    def test_operator_declines_confirmation(self, patched_system, target_root, fake_mounter):
        selector = Mock()
        selector.select_root.return_value = "/dev/sda2"
        selector.ask_text.return_value = "ArchLinux"
        selector.confirm.return_value = False

        with pytest.raises(OperationCancelledError):
            main_module.run_repair(
                RepairRequest(mode=BootMode.UEFI),
                selector,
                mount_root=target_root,
                mounter=fake_mounter,
            )

        assert fake_mounter.calls == []
        patched_system.install.assert_not_called()

    def test_yes_skips_confirmation(
        self, patched_system, target_root, fake_mounter, write_fstab
    ):
        write_fstab(target_root, FSTAB_ESP_AT_BOOT_EFI)
        selector = Mock()
        selector.ask_text.return_value = "MyArch"

        main_module.run_repair(
            RepairRequest(mode=BootMode.UEFI, root="/dev/sda2"),
            selector,
            mount_root=target_root,
            assume_yes=True,
            mounter=fake_mounter,
        )

        selector.confirm.assert_not_called()
        assert installed_target(patched_system).bootloader_id == "MyArch"


class TestMain:
    @pytest.fixture(autouse=True)
    def quiet_startup(self):
        with patch("arch_boot_rescue.main.setup_logging"), patch(
            "arch_boot_rescue.main.signal.signal"
        ):
            yield

    @patch("arch_boot_rescue.main.run_repair")
    def test_success(self, mock_run_repair):
        code = main_module.main(["--non-interactive", "uefi", "--root", "/dev/sda2"])

        assert code == 0
        request = mock_run_repair.call_args[0][0]
        assert request.root == "/dev/sda2"
        assert mock_run_repair.call_args[0][1] is None
        assert mock_run_repair.call_args[1]["mount_root"] == Path("/mnt")

    @patch("arch_boot_rescue.main.run_repair")
    def test_mount_root_option(self, mock_run_repair):
        main_module.main(["--non-interactive", "--mount-root", "/media/t", "bios"])

        assert mock_run_repair.call_args[1]["mount_root"] == Path("/media/t")

    @pytest.mark.parametrize(
        "error,code",
        [
            (PrivilegedCommandError("grub-install", 1, "boom"), 1),
            (OperationCancelledError("ESP selection"), 1),
            (PermissionError("mount: only root can do that"), 1),
            (KeyboardInterrupt(), 130),
        ],
    )
    def test_exit_codes(self, error, code):
        with patch("arch_boot_rescue.main.run_repair", side_effect=error):
            assert main_module.main(["--non-interactive", "uefi"]) == code

    @patch("arch_boot_rescue.main.enumerate_block_devices")
    def test_list(self, mock_enumerate, uefi_devices, capsys):
        mock_enumerate.return_value = uefi_devices

        assert main_module.main(["--non-interactive", "list"]) == 0

        output = capsys.readouterr().out
        assert output.startswith("NAME")
        assert "/dev/sda2" in output

    @patch("arch_boot_rescue.main.enumerate_block_devices", return_value=[])
    def test_menu_shows_devices_then_quits(self, mock_enumerate):
        selector = Mock()
        selector.main_menu.side_effect = ["5", "0"]

        assert main_module.run_menu(selector, Path("/mnt")) == 0
        selector.show_devices.assert_called_once_with([])

    @patch("arch_boot_rescue.main.run_repair")
    def test_menu_runs_one_repair(self, mock_run_repair):
        selector = Mock()
        selector.main_menu.return_value = "4"

        assert main_module.run_menu(selector, Path("/mnt"), assume_yes=True) == 0

        request = mock_run_repair.call_args[0][0]
        assert request.bootloader is Bootloader.SYSTEMD_BOOT
        assert mock_run_repair.call_args[1]["assume_yes"] is True
