"""Promote a stopped container's dataset to be the next-boot root filesystem."""
import os
import re
import stat
import subprocess
from contextlib import contextmanager
from pathlib import Path
from typing import Iterable, Iterator, List, Optional

from appupgrade.core.config import UpgradeConfig, get_config
from appupgrade.core.errors import InvalidTransitionError, PreconditionError, ToolInvocationError
from appupgrade.core.interrupts import exit_on_signals
from appupgrade.core.logger import get_logger
from appupgrade.core.zfs_manager import ZFSManager
from appupgrade.models.container import Container, ContainerState
from appupgrade.services.migrator import ConfigMigrator
from appupgrade.services.nspawn.lifecycle import ContainerLifecycle

logger = get_logger(__name__)

PSEUDO_FILESYSTEMS = ("/proc", "/sys", "/dev")

# Grouping vdevs: mirror-0, replacing-1, spare-2, raidz1-0, ...
AGGREGATE_VDEV = re.compile(r"^(mirror|replacing|spare|raidz\d*|draid\d*)(-\d+)?$")
LINK_PARTITION = re.compile(r"^(.+)-part\d+$")  # /dev/disk/by-id/ata-...-part1
NUMBERED_PARTITION = re.compile(r"^(.*\d)p\d+$")  # nvme0n1p1, mmcblk0p2
PLAIN_PARTITION = re.compile(r"^([a-z]+)\d+$")  # sda1, xvda2


def whole_disk(path: str) -> str:
    """Strip a trailing partition suffix from a block device name or path.

    >>> whole_disk("/dev/disk/by-id/wwn-0x5000c500a1b2c3d4-part1")
    '/dev/disk/by-id/wwn-0x5000c500a1b2c3d4'
    """
    directory, name = os.path.split(path)
    match = (
        LINK_PARTITION.match(name)
        or NUMBERED_PARTITION.match(name)
        or PLAIN_PARTITION.match(name)
    )
    return os.path.join(directory, match.group(1) if match else name)


def select_boot_devices(members: Iterable[str]) -> List[str]:
    """Whole disks to install the bootloader on, in pool order.

    >>> select_boot_devices(["/dev/sda", "/dev/sda1", "mirror", "/dev/sdb"])
    ['/dev/sda', '/dev/sdb']
    """
    devices: List[str] = []
    for member in members:
        if AGGREGATE_VDEV.match(os.path.basename(member)):
            continue
        disk = whole_disk(member)
        if disk not in devices:
            devices.append(disk)
    return devices


def device_mode(path: Path) -> int:
    return os.stat(path).st_mode


def _unmount_all(mounted: List[Path]):
    """Unmount in reverse order; failures are warnings so they never mask an error."""
    while mounted:
        target = mounted.pop()
        result = subprocess.run(
            ["umount", "-R", str(target)], capture_output=True, text=True, check=False
        )
        if result.returncode != 0:
            logger.warning(f"Failed to unmount {target}: {result.stderr.strip()}")
        else:
            logger.debug(f"Unmounted {target}")


@contextmanager
def pseudo_filesystem_mounts(root: Path) -> Iterator[List[Path]]:
    """Bind /proc, /sys and /dev into root (slave propagation) for the block.

    The mounts are removed on every exit path, including errors and
    SIGTERM/SIGHUP.
    """
    mounted: List[Path] = []
    with exit_on_signals():
        try:
            for source in PSEUDO_FILESYSTEMS:
                target = Path(root) / source.lstrip('/')
                target.mkdir(parents=True, exist_ok=True)
                cmd = ["mount", "--rbind", "--make-rslave", source, str(target)]
                try:
                    subprocess.run(cmd, capture_output=True, text=True, check=True)
                except subprocess.CalledProcessError as e:
                    raise ToolInvocationError(
                        f"Failed to bind-mount {source} into {root}",
                        command=cmd,
                        returncode=e.returncode,
                        stderr=e.stderr,
                    ) from e
                mounted.append(target)
            yield mounted
        finally:
            _unmount_all(mounted)


class BootloaderPromoter:
    """Runs the convert-to-bootfs transaction on a stopped container.

    There is no rollback: a failure after the first grub-install leaves the
    devices already written as they are. Every candidate device is checked
    before any of them is written.
    """

    def __init__(
        self,
        lifecycle: ContainerLifecycle,
        config: Optional[UpgradeConfig] = None,
        zfs: Optional[ZFSManager] = None,
        dev_root: Path = Path("/dev"),
    ):
        self.lifecycle = lifecycle
        self.config = config or lifecycle.config or get_config()
        self.zfs = zfs or lifecycle.zfs
        self.dev_root = Path(dev_root)

    def boot_devices(self, pool: str) -> List[Path]:
        """Block devices backing pool, validated before use.

        Raises:
            PreconditionError: If a device is missing or not a block device
        """
        # zpool list -P reports absolute paths; bare names are relative to /dev
        devices = [
            self.dev_root / disk
            for disk in select_boot_devices(self.zfs.pool_members(pool))
        ]
        if not devices:
            raise PreconditionError(f"No boot devices found in pool {pool}")
        for device in devices:
            try:
                mode = device_mode(device)
            except FileNotFoundError as e:
                raise PreconditionError(f"Boot device {device} does not exist") from e
            if not stat.S_ISBLK(mode):
                raise PreconditionError(f"Boot device {device} is not a block device")
        return devices

    def _chroot(self, root: Path, command: List[str]):
        cmd = ["chroot", str(root), *command]
        logger.info(f"Running in {root}: {' '.join(command)}")
        try:
            subprocess.run(cmd, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            logger.error(f"{command[0]} exited with code {e.returncode}")
            raise ToolInvocationError(
                f"'{' '.join(command)}' failed in {root}",
                command=cmd,
                returncode=e.returncode,
                stderr=e.stderr,
            ) from e

    def convert(self, container: Container):
        """Make the container's dataset the root filesystem at next boot.

        Args:
            container: A STOPPED container

        Raises:
            InvalidTransitionError: If the container is not stopped
            NotConfiguredError: If any container artifact is missing
        """
        if container.state != ContainerState.STOPPED:
            raise InvalidTransitionError(
                f"container '{container.name}' must be stopped to convert it "
                f"(currently {container.state.value})"
            )
        self.lifecycle.verify_configured(container)

        root = container.mount_dir
        pool = container.dataset.split('/')[0]
        logger.info(f"Converting {container.name} into the next boot filesystem")

        with pseudo_filesystem_mounts(root):
            ConfigMigrator(self.config, root).migrate_all()
            self._chroot(root, ["update-grub"])
            for device in self.boot_devices(pool):
                self._chroot(root, ["grub-install", str(device)])
                logger.info(f"  ✓ Installed bootloader on {device}")

        self.zfs.unmount(container.dataset)
        self.zfs.set_property(container.dataset, "canmount", "noauto")
        self.zfs.set_property(container.dataset, "mountpoint", "/")
        container.transition(ContainerState.PROMOTED)

        self.lifecycle.remove_settings(container)
        self.lifecycle.remove_mount_dir(container)
        logger.info(f"✓ {container.dataset} will be the root filesystem at next boot")
