"""Bootstrap an empty root filesystem with debootstrap."""
import subprocess
from pathlib import Path

from appupgrade.core.config import UpgradeConfig
from appupgrade.core.errors import ToolInvocationError
from appupgrade.core.logger import get_logger

logger = get_logger(__name__)


class Bootstrapper:
    """Installs a minimal, systemd-capable base from the image's repository."""

    def __init__(self, config: UpgradeConfig):
        self.config = config

    def build_command(self, target: Path) -> list:
        config = self.config
        return [
            "debootstrap",
            "--no-check-gpg",
            f"--components={config.bootstrap_component}",
            f"--include={','.join(config.bootstrap_include)}",
            config.bootstrap_suite,
            str(target),
            config.bootstrap_repository,
        ]

    def run(self, target: Path):
        """Populate target from the image repository.

        debootstrap output is captured and logged rather than passed through,
        so nothing reaches the caller's stdout.

        Raises:
            ToolInvocationError: If debootstrap exits non-zero
        """
        cmd = self.build_command(target)
        logger.info(f"Bootstrapping {target} from {self.config.bootstrap_repository}")
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        if result.stdout:
            logger.debug(result.stdout)
        if result.returncode != 0:
            logger.error(f"debootstrap exited with code {result.returncode}")
            raise ToolInvocationError(
                f"Failed to bootstrap {target}",
                command=cmd,
                returncode=result.returncode,
                stderr=result.stderr,
            )
        logger.info(f"✓ Bootstrapped {target}")
