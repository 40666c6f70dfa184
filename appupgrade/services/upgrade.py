"""Upgrade orchestration: stage an upgrade in a container, then discard or promote it.

| mode         | success               | failure                  | failure + debug_retain |
|--------------|-----------------------|--------------------------|------------------------|
| in-place     | stop + destroy        | stop + destroy           | container left as-is   |
| not-in-place | consumed by promotion | stop + destroy, unless   | container left as-is   |
|              |                       | promotion already began  |                        |
"""
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from appupgrade.core.config import UpgradeConfig, get_config
from appupgrade.core.errors import PreconditionError, UpgradeError
from appupgrade.core.interrupts import exit_on_signals
from appupgrade.core.logger import get_logger
from appupgrade.models.container import Container, ContainerState, UpgradeMode
from appupgrade.services.bootloader import BootloaderPromoter
from appupgrade.services.nspawn.lifecycle import ContainerLifecycle

logger = get_logger(__name__)


@dataclass
class UpgradeSession:
    """One single-use upgrade transaction and the container it owns."""
    mode: UpgradeMode
    skip_verify: bool = False
    debug_retain: bool = False
    container: Optional[Container] = None
    # cleared once promotion starts; stop/destroy would corrupt the new root
    cleanup_armed: bool = True
    succeeded: bool = False


class UpgradeOrchestrator:
    """Sequences container lifecycle steps into an in-place or not-in-place upgrade."""

    def __init__(
        self,
        lifecycle: Optional[ContainerLifecycle] = None,
        promoter: Optional[BootloaderPromoter] = None,
        config: Optional[UpgradeConfig] = None,
    ):
        self.config = config or get_config()
        self.lifecycle = lifecycle or ContainerLifecycle(self.config)
        self.promoter = promoter or BootloaderPromoter(self.lifecycle, self.config)

    def check_preconditions(self):
        """Verify the upgrade image is unpacked and complete.

        Raises:
            PreconditionError: If the image or its upgrade program is missing
        """
        image_dir = self.config.image_dir
        if not image_dir.is_dir():
            raise PreconditionError(f"Upgrade image not found: {image_dir}")
        program = image_dir / self.config.upgrade_program
        if not program.is_file():
            raise PreconditionError(f"Upgrade program not found: {program}")

    def execute(
        self,
        mode: UpgradeMode,
        skip_verify: Optional[bool] = None,
        debug_retain: Optional[bool] = None,
    ) -> UpgradeSession:
        """Run a complete upgrade.

        Args:
            mode: IN_PLACE or NOT_IN_PLACE
            skip_verify: Skip verification (defaults to the configured value)
            debug_retain: Keep a failed container (defaults to the configured value)

        Returns:
            The finished session
        """
        session = UpgradeSession(
            mode=mode,
            skip_verify=self.config.skip_verify if skip_verify is None else skip_verify,
            debug_retain=self.config.debug_retain if debug_retain is None else debug_retain,
        )
        self.check_preconditions()
        logger.info(f"Starting {mode.value} upgrade")

        with exit_on_signals(), self.session_scope(session):
            container = self.lifecycle.create(mode)
            session.container = container
            self.lifecycle.start(container)
            self._run_upgrade(session)

            if mode == UpgradeMode.IN_PLACE:
                self.lifecycle.run(container, self.config.finalize_command, check=True)
            else:
                self.lifecycle.stop(container)
                session.cleanup_armed = False
                self.promoter.convert(container)

        logger.info(f"✓ {mode.value} upgrade complete")
        return session

    def _run_upgrade(self, session: UpgradeSession):
        container = session.container
        self.lifecycle.run(container, self.config.upgrade_command, check=True)
        self.lifecycle.run(
            container,
            ["systemctl", "start", self.config.platform_service],
            check=True,
        )
        if session.skip_verify:
            logger.warning("Skipping upgrade verification")
        else:
            self.lifecycle.run(container, self.config.verify_command, check=True)
            logger.info("✓ Upgrade verification passed")

    @contextmanager
    def session_scope(self, session: UpgradeSession) -> Iterator[UpgradeSession]:
        """Apply the session's cleanup policy once, whichever way the block exits."""
        try:
            yield session
        except BaseException:
            self._cleanup_after_failure(session)
            raise

        if session.mode == UpgradeMode.IN_PLACE:
            self._dispose(session.container)
        session.succeeded = True

    def _dispose(self, container: Container):
        if container.state != ContainerState.STOPPED:
            self.lifecycle.stop(container)
        self.lifecycle.destroy(container)

    def _cleanup_after_failure(self, session: UpgradeSession):
        container = session.container
        if container is None:
            # create() already removed whatever it had made
            return
        if not session.cleanup_armed:
            logger.error(
                f"Promotion of {container.name} failed; {container.dataset} needs manual remediation"
            )
            return
        if session.debug_retain:
            logger.warning(f"Leaving container {container.name} in place for debugging")
            return

        logger.info(f"Cleaning up container {container.name}")
        if container.state != ContainerState.STOPPED:
            try:
                self.lifecycle.stop(container)
            except UpgradeError as e:
                logger.warning(f"Failed to stop {container.name}: {e}")
        try:
            self.lifecycle.destroy(container)
        except (UpgradeError, OSError) as e:
            logger.warning(f"Failed to destroy {container.name}: {e}")
