"""Mount session: owns every mount made for one rescue run.

A MountSession is the only place that knows what was mounted, and the only
place that unmounts it. Use it as a context manager; leaving the ``with``
block by any path (return, exception, KeyboardInterrupt, SystemExit)
unmounts everything in exact reverse order.

Ordering:
    Mounts are recorded the moment the mount command succeeds, before any
    later step can fail, so the teardown list always matches reality.
    Teardown walks that list backwards: kernel binds first, then the ESP,
    /boot and finally the root. A parent is never unmounted while a child
    the session mounted is still in place.

Failure policy:
    Each unmount is attempted independently. A failure is logged and the
    remaining mount points are still attempted. Teardown never raises, so
    the exception that ended the session is the one the caller sees.
    A KeyboardInterrupt or SystemExit (SIGTERM) arriving during an unmount
    does not stop the teardown either. It is held until every mount has
    been attempted, then re-raised only if the session was leaving cleanly.

Preconditions:
    Only one session may be live per process. No other process is expected
    to mount or unmount below the session root while it is live.

Example:
    >>> with MountSession(Path("/mnt")) as session:
    ...     session.mount("root", "/dev/sda2", "/")
    ...     session.bind_kernel_interfaces()
"""

from __future__ import annotations

from pathlib import Path
from typing import ClassVar, Optional, Protocol

from arch_boot_rescue.domain.models import MountStep
from arch_boot_rescue.logging import EventLogger, LoggerFactory

from .exceptions import MountError, MountStepError, SessionActiveError
from .mount import SystemMounter, same_device

KERNEL_INTERFACES = ("dev", "proc", "sys", "run")


class Mounter(Protocol):
    def mounted_source(self, target: Path) -> Optional[str]: ...

    def mount(self, source: str, target: Path) -> None: ...

    def bind(self, source: Path, target: Path) -> None: ...

    def make_rslave(self, target: Path) -> None: ...

    def unmount(self, target: Path) -> None: ...


class MountSession:
    _active: ClassVar[Optional[MountSession]] = None

    def __init__(
        self,
        root: Path,
        mounter: Optional[Mounter] = None,
        host_root: Path = Path("/"),
    ):
        self.root = Path(root)
        self.mounter = mounter or SystemMounter()
        self.host_root = host_root
        self.log = LoggerFactory.for_mount()
        self._steps: list[MountStep] = []

    @property
    def steps(self) -> tuple[MountStep, ...]:
        return tuple(self._steps)

    def __enter__(self) -> MountSession:
        if MountSession._active is not None:
            raise SessionActiveError(str(MountSession._active.root))
        MountSession._active = self
        self.log.debug(f"Mount session opened at {self.root}")
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is not None:
                self.log.warning(
                    f"Tearing down mounts after {exc_type.__name__}: {exc}"
                )
            _, interrupt = self._release()
        finally:
            MountSession._active = None
        if interrupt is not None:
            if exc_type is None:
                raise interrupt
            self.log.warning(
                f"Ignoring {type(interrupt).__name__} during teardown; "
                f"{exc_type.__name__} is propagated"
            )
        return False

    def path_for(self, mountpoint: str) -> Path:
        """Host path of a target mount point, e.g. "/boot" -> /mnt/boot."""
        relative = mountpoint.strip("/")
        return self.root / relative if relative else self.root

    def _prepare_target(self, step: str, source: str, target: Path) -> None:
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise MountStepError(step, source, str(target), str(error)) from error

    def mount(self, step: str, source: str, mountpoint: str) -> bool:
        """Mount ``source`` at ``mountpoint`` below the session root.

        Returns:
            True if the session mounted it, False if ``source`` was already
            mounted there (nothing to do, nothing recorded)

        Raises:
            MountStepError: If the target is occupied by another device or
                the mount command fails
        """
        target = self.path_for(mountpoint)
        self._prepare_target(step, source, target)

        current = self.mounter.mounted_source(target)
        if current is not None:
            if same_device(current, source):
                self.log.info(f"{source} already mounted at {target}, skipping")
                return False
            raise MountStepError(step, source, str(target), f"already occupied by {current}")

        try:
            self.mounter.mount(source, target)
        except (MountError, OSError, ValueError) as error:
            raise MountStepError(step, source, str(target), str(error)) from error
        self._steps.append(MountStep(name=step, source=source, target=target))
        EventLogger.log_mount_step(self.log, step, source, str(target))
        return True

    def bind(self, name: str) -> bool:
        """Recursively bind the host's ``/<name>`` into the root as a slave mount."""
        source = self.host_root / name
        target = self.path_for(name)
        self._prepare_target(name, str(source), target)

        if self.mounter.mounted_source(target) is not None:
            self.log.info(f"{target} already mounted, skipping bind")
            return False

        try:
            self.mounter.bind(source, target)
        except (MountError, OSError, ValueError) as error:
            raise MountStepError(name, str(source), str(target), str(error)) from error
        self._steps.append(MountStep(name=name, source=str(source), target=target, bind=True))

        try:
            self.mounter.make_rslave(target)
        except (MountError, OSError, ValueError) as error:
            raise MountStepError(name, str(source), str(target), str(error)) from error
        EventLogger.log_mount_step(self.log, name, str(source), str(target), bind=True)
        return True

    def bind_kernel_interfaces(self) -> None:
        for name in KERNEL_INTERFACES:
            self.bind(name)

    def _release(self) -> tuple[list[MountStep], Optional[BaseException]]:
        failed: list[MountStep] = []
        interrupt: Optional[BaseException] = None
        while self._steps:
            step = self._steps.pop()
            try:
                self.mounter.unmount(step.target)
            except (KeyboardInterrupt, SystemExit) as error:
                self.log.warning(
                    f"{type(error).__name__} while unmounting {step.target}; "
                    "releasing the remaining mounts first"
                )
                EventLogger.log_unmount_step(self.log, step.name, str(step.target), False)
                failed.append(step)
                if interrupt is None:
                    interrupt = error
                continue
            except Exception as error:
                self.log.error(f"Teardown of {step.target} failed: {error}")
                EventLogger.log_unmount_step(self.log, step.name, str(step.target), False)
                failed.append(step)
                continue
            EventLogger.log_unmount_step(self.log, step.name, str(step.target), True)
        if failed:
            self.log.warning(
                "Some mounts could not be released: "
                + ", ".join(str(step.target) for step in failed)
            )
        return failed, interrupt

    def teardown(self) -> list[MountStep]:
        """Unmount everything this session mounted, newest first.

        Returns:
            The steps that could not be unmounted (empty on full success)

        Raises:
            KeyboardInterrupt, SystemExit: Re-raised after the last unmount
                if one arrived while tearing down
        """
        failed, interrupt = self._release()
        if interrupt is not None:
            raise interrupt
        return failed
