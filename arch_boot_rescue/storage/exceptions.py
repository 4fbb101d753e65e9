"""Custom exceptions for boot rescue operations.

This module defines a hierarchy of exceptions for device discovery, mounting
and bootloader installation, so callers can tell recoverable conditions apart
from fatal ones.

Exception Hierarchy:
    RescueError (base)
        ├── DeviceError
        │   ├── DeviceEnumerationError
        │   ├── DeviceNotFoundError
        │   └── DeviceValidationError
        ├── ReferenceResolutionError
        ├── MountError
        │   ├── MountStepError
        │   ├── UnmountFailedError
        │   └── SessionActiveError
        ├── NoCandidatesFoundError
        ├── OperationCancelledError
        └── InstallerError
            ├── PrivilegedCommandError
            └── BootModeError

Fatal vs recoverable:
    DeviceEnumerationError, MountStepError for the root filesystem,
    PrivilegedCommandError and BootModeError always end the run.
    ReferenceResolutionError and NoCandidatesFoundError are recoverable until
    the operator declines to pick a device. UnmountFailedError never escapes
    a MountSession teardown.

Usage:
    from arch_boot_rescue.storage.exceptions import MountStepError

    raise MountStepError("root", "/dev/sda2", "/mnt", "wrong fs type")
"""

from __future__ import annotations


class RescueError(Exception):
    """Base exception for all boot rescue operations."""



class DeviceError(RescueError):
    """Base exception for device-related errors."""



class DeviceEnumerationError(DeviceError):
    """Block devices could not be listed from the live environment."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Failed to enumerate block devices: {reason}")


class DeviceNotFoundError(DeviceError):
    """Device was not found or does not exist."""

    def __init__(self, device_name: str):
        self.device_name = device_name
        super().__init__(f"Device not found: {device_name}")


class DeviceValidationError(DeviceError):
    """Device failed validation checks."""

    def __init__(self, device_name: str, reason: str):
        self.device_name = device_name
        self.reason = reason
        super().__init__(f"Device validation failed for {device_name}: {reason}")


class ReferenceResolutionError(RescueError):
    """An fstab source reference matched no device on the live system."""

    def __init__(self, reference: str, mountpoint: str | None = None):
        self.reference = reference
        self.mountpoint = mountpoint
        msg = f"No device matches {reference}"
        if mountpoint:
            msg += f" (needed for {mountpoint})"
        super().__init__(msg)


class MountError(RescueError):
    """Base exception for mount-related errors."""



class MountStepError(MountError):
    """A single step of the mount sequence failed."""

    def __init__(self, step: str, source: str, target: str, reason: str = ""):
        self.step = step
        self.source = source
        self.target = target
        self.reason = reason
        msg = f"Mount step '{step}' failed: {source} -> {target}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class UnmountFailedError(MountError):
    """Failed to unmount a mount point."""

    def __init__(self, mountpoint: str, reason: str = ""):
        self.mountpoint = mountpoint
        self.reason = reason
        msg = f"Failed to unmount {mountpoint}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class SessionActiveError(MountError):
    """A mount session is already live in this process."""

    def __init__(self, root: str):
        self.root = root
        super().__init__(f"A mount session rooted at {root} is already active")


class NoCandidatesFoundError(RescueError):
    """No device could be found or chosen for a required role."""

    def __init__(self, role: str):
        self.role = role
        super().__init__(f"No {role} candidates found")


class OperationCancelledError(RescueError):
    """The operator cancelled a selection or confirmation."""

    def __init__(self, what: str = "operation"):
        self.what = what
        super().__init__(f"Cancelled: {what}")


class InstallerError(RescueError):
    """Base exception for bootloader installation errors."""



class PrivilegedCommandError(InstallerError):
    """A command run inside the target root exited with an error."""

    def __init__(self, step: str, returncode: int, output: str = ""):
        self.step = step
        self.returncode = returncode
        self.output = output
        msg = f"Installer step '{step}' failed with exit code {returncode}"
        if output:
            msg += f": {output}"
        super().__init__(msg)


class BootModeError(InstallerError):
    """The live environment was booted in the wrong firmware mode."""

    def __init__(self, required: str, detected: str):
        self.required = required
        self.detected = detected
        super().__init__(
            f"{required} installation requires a {required}-booted live "
            f"environment (detected: {detected})"
        )
