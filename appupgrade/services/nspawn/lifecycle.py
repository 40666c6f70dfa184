"""Container lifecycle management (create, start, stop, run, destroy)."""
import os
import secrets
import shutil
import string
import subprocess
import time
from typing import Callable, Dict, List, Optional, Sequence

from appupgrade.core.config import UpgradeConfig, get_config
from appupgrade.core.errors import (
    ArtifactRemovalError,
    BootTimeoutError,
    InvalidTransitionError,
    NotConfiguredError,
    StopFailedError,
    ToolInvocationError,
    UpgradeError,
)
from appupgrade.core.interrupts import exit_on_signals
from appupgrade.core.logger import get_logger
from appupgrade.core.zfs_manager import ZFSManager
from appupgrade.models.container import Container, ContainerState, UpgradeMode
from .bootstrap import Bootstrapper
from .settings import (
    compute_bind_set,
    override_dir_for,
    settings_file_for,
    write_container_settings,
)

logger = get_logger(__name__)

NAME_PREFIX = "upgrade-"
NAME_ALPHABET = string.ascii_lowercase + string.digits
NAME_TOKEN_LENGTH = 8


class ContainerLifecycle:
    """Manages systemd-nspawn containers backed by ZFS datasets."""

    def __init__(
        self,
        config: Optional[UpgradeConfig] = None,
        zfs: Optional[ZFSManager] = None,
        bootstrapper: Optional[Bootstrapper] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config or get_config()
        self.zfs = zfs or ZFSManager()
        self.bootstrapper = bootstrapper or Bootstrapper(self.config)
        self._sleep = sleep

    # ==================== Discovery ====================

    def container(self, name: str) -> Container:
        """Build the handle for an existing container name.

        The state is RUNNING or STOPPED when the full artifact set exists,
        ABSENT otherwise (including a partial set, which only destroy accepts).
        """
        container = self._handle(name)
        if all(self.artifacts(container).values()):
            container.state = (
                ContainerState.RUNNING if self.is_running(container) else ContainerState.STOPPED
            )
        return container

    def _handle(self, name: str) -> Container:
        return Container(
            name=name,
            dataset=f"{self.config.dataset_parent}/{name}",
            mount_dir=self.config.containers_dir / name,
            settings_file=settings_file_for(self.config, name),
            override_dir=override_dir_for(self.config, name),
        )

    def list_containers(self) -> List[str]:
        """Names of the managed containers under the containers root."""
        root = self.config.containers_dir
        if not root.is_dir():
            return []
        return sorted(
            entry.name for entry in root.iterdir()
            if entry.is_dir() and entry.name.startswith(NAME_PREFIX)
        )

    def artifacts(self, container: Container) -> Dict[str, bool]:
        """Presence of each artifact backing a container."""
        return {
            str(container.mount_dir): container.mount_dir.is_dir(),
            container.dataset: self.zfs.dataset_exists(container.dataset),
            str(container.settings_file): container.settings_file.is_file(),
            str(container.override_dir): container.override_dir.is_dir(),
        }

    def verify_configured(self, container: Container):
        missing = [artifact for artifact, present in self.artifacts(container).items() if not present]
        if missing:
            raise NotConfiguredError(container.name, missing)

    def state(self, name: str) -> ContainerState:
        """Report a container's state from the host.

        Raises:
            NotConfiguredError: If only some of its artifacts exist
        """
        container = self._handle(name)
        present = self.artifacts(container)
        if not any(present.values()):
            return ContainerState.ABSENT
        if not all(present.values()):
            raise NotConfiguredError(name, [a for a, ok in present.items() if not ok])
        return ContainerState.RUNNING if self.is_running(container) else ContainerState.STOPPED

    def is_running(self, container: Container) -> bool:
        result = subprocess.run(
            ["systemctl", "is-active", "--quiet", container.unit],
            capture_output=True,
            text=True,
            check=False,
        )
        return result.returncode == 0

    # ==================== Create ====================

    def create(self, mode: UpgradeMode) -> Container:
        """Create a new container.

        Args:
            mode: IN_PLACE clones the running root; NOT_IN_PLACE bootstraps
                an empty dataset from the image repository

        Returns:
            Handle of the created container (state CREATED)

        Raises:
            UpgradeError: On any failure, after partial artifacts were removed
        """
        container = None
        with exit_on_signals():
            try:
                container = self._handle(self._allocate_name())
                logger.info(f"Creating {mode.value} container {container.name}")

                if mode == UpgradeMode.IN_PLACE:
                    self._create_in_place(container)
                else:
                    self._create_not_in_place(container)

                self._configure_common(container)
            except BaseException:
                if container is None:
                    logger.error("Container creation failed before a name was assigned")
                else:
                    logger.error(f"Creation of {container.name} failed, removing partial artifacts")
                    self._destroy_quietly(container)
                raise

        container.transition(ContainerState.CREATED)
        logger.info(f"✓ Container {container.name} created")
        return container

    def _allocate_name(self) -> str:
        """Reserve a fresh name by atomically creating its mount directory."""
        root = self.config.containers_dir
        root.mkdir(parents=True, exist_ok=True)
        while True:
            token = ''.join(secrets.choice(NAME_ALPHABET) for _ in range(NAME_TOKEN_LENGTH))
            name = f"{NAME_PREFIX}{token}"
            try:
                os.mkdir(root / name, 0o755)
            except FileExistsError:
                continue
            return name

    def _create_in_place(self, container: Container):
        root_dataset = self.zfs.mounted_root_dataset()
        snapshot = self.zfs.snapshot(root_dataset, container.name)
        container.snapshot = snapshot
        self.zfs.clone(snapshot, container.dataset, str(container.mount_dir))

    def _create_not_in_place(self, container: Container):
        self.zfs.create(container.dataset, str(container.mount_dir))
        self.bootstrapper.run(container.mount_dir)

    def _configure_common(self, container: Container):
        write_container_settings(container, compute_bind_set(self.config))
        self.daemon_reload()

    # ==================== Start / stop / run ====================

    def start(self, container: Container):
        """Start a container and wait until its default target is active.

        Raises:
            NotConfiguredError: If any artifact is missing
            ToolInvocationError: If systemctl start fails
            BootTimeoutError: If the container does not finish booting
        """
        self.verify_configured(container)
        if container.state == ContainerState.RUNNING:
            raise InvalidTransitionError(f"container '{container.name}' is already running")
        logger.info(f"Starting container {container.name}")
        self._systemctl(["start", container.unit], f"Failed to start {container.name}")
        container.transition(ContainerState.RUNNING)
        self.wait_for_boot(container)
        logger.info(f"✓ Container {container.name} started")

    def wait_for_boot(self, container: Container):
        """Poll until the container's systemd reports default.target active."""
        attempts = self.config.boot_poll_attempts
        for attempt in range(1, attempts + 1):
            result = self.run(
                container,
                ["systemctl", "is-active", "--quiet", "default.target"],
                capture=True,
            )
            if result.returncode == 0:
                logger.debug(f"{container.name} booted after {attempt} attempts")
                return
            if attempt < attempts:
                self._sleep(self.config.boot_poll_interval)
        raise BootTimeoutError(container.name, attempts)

    def stop(self, container: Container):
        """Stop a container.

        Stopping an already stopped container is left to systemd.

        Raises:
            NotConfiguredError: If any artifact is missing
            StopFailedError: If systemctl stop fails
        """
        self.verify_configured(container)
        logger.info(f"Stopping container {container.name}")
        self._systemctl(
            ["stop", container.unit],
            f"Failed to stop {container.name}",
            error_cls=StopFailedError,
        )
        if container.state != ContainerState.STOPPED:
            container.transition(ContainerState.STOPPED)
        logger.info(f"✓ Container {container.name} stopped")

    def run(
        self,
        container: Container,
        command: Sequence[str],
        capture: bool = False,
        check: bool = False,
    ) -> subprocess.CompletedProcess:
        """Run a command inside a running container and wait for it.

        Args:
            container: Target container
            command: argv to execute
            capture: Capture output instead of passing it through
            check: Raise ToolInvocationError on a non-zero exit status

        Returns:
            The completed process; its returncode is the command's exit status
        """
        cmd = [
            "systemd-run",
            f"--machine={container.name}",
            "--quiet",
            "--wait",
            "--pipe",
            "--",
            *command,
        ]
        logger.debug(f"Executing in container {container.name}: {' '.join(command)}")
        result = subprocess.run(cmd, capture_output=capture, text=True, check=False)
        if check and result.returncode != 0:
            logger.error(f"Command exited with code {result.returncode}")
            raise ToolInvocationError(
                f"'{' '.join(command)}' failed in container {container.name}",
                command=cmd,
                returncode=result.returncode,
                stderr=result.stderr if capture else None,
            )
        return result

    # ==================== Destroy ====================

    def destroy(self, container: Container):
        """Remove every artifact of a container that still exists.

        Safe to call repeatedly and on partially created containers.

        Raises:
            InvalidTransitionError: If the container was promoted to the root
            ArtifactRemovalError: If a file or directory cannot be removed
            StorageOperationError: If a dataset or snapshot cannot be destroyed
        """
        if container.state == ContainerState.PROMOTED:
            raise InvalidTransitionError(
                f"container '{container.name}' was promoted and can no longer be destroyed"
            )
        logger.info(f"Destroying container {container.name}")

        self.remove_settings(container)

        snapshot = container.snapshot
        if self.zfs.dataset_exists(container.dataset):
            # origin is only readable while the clone exists
            snapshot = snapshot or self._origin_snapshot(container)
            self.zfs.destroy_dataset(container.dataset)

        if snapshot and self.zfs.dataset_exists(snapshot):
            self.zfs.destroy_snapshot(snapshot)

        self.remove_mount_dir(container)
        container.state = ContainerState.DESTROYED
        logger.info(f"✓ Container {container.name} destroyed")

    def _origin_snapshot(self, container: Container) -> Optional[str]:
        """Snapshot an in-place clone was made from; None for bootstrapped datasets."""
        origin = self.zfs.get_property(container.dataset, "origin")
        return None if origin == "-" else origin

    def _destroy_quietly(self, container: Container):
        try:
            self.destroy(container)
        except (UpgradeError, OSError) as e:
            logger.warning(f"Cleanup of {container.name} incomplete: {e}")

    def remove_settings(self, container: Container):
        """Remove the settings file and service override of a container."""
        if container.settings_file.exists():
            try:
                container.settings_file.unlink()
            except OSError as e:
                raise ArtifactRemovalError(
                    f"Failed to remove {container.settings_file}: {e}",
                    artifact=str(container.settings_file),
                ) from e

        if container.override_dir.exists():
            try:
                shutil.rmtree(container.override_dir)
            except OSError as e:
                raise ArtifactRemovalError(
                    f"Failed to remove {container.override_dir}: {e}",
                    artifact=str(container.override_dir),
                ) from e
            self.daemon_reload()

    def remove_mount_dir(self, container: Container):
        if container.mount_dir.is_dir():
            try:
                container.mount_dir.rmdir()
            except OSError as e:
                raise ArtifactRemovalError(
                    f"Failed to remove {container.mount_dir}: {e}",
                    artifact=str(container.mount_dir),
                ) from e

    # ==================== systemd ====================

    def daemon_reload(self):
        self._systemctl(["daemon-reload"], "Failed to reload systemd units")

    def _systemctl(self, args: List[str], message: str, error_cls=ToolInvocationError):
        cmd = ["systemctl", *args]
        try:
            subprocess.run(cmd, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            logger.error(f"{message}: {e}")
            raise error_cls(message, command=cmd, returncode=e.returncode, stderr=e.stderr) from e
