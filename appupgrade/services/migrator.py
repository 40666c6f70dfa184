"""Copy host-local configuration into a container before promotion.

Not-in-place containers start with no passwords and none of the appliance's
identity files, so these are carried over from the running host.
"""
import shutil
import subprocess
from pathlib import Path
from typing import Optional

from appupgrade.core.config import UpgradeConfig
from appupgrade.core.errors import PreconditionError, ToolInvocationError
from appupgrade.core.logger import get_logger

logger = get_logger(__name__)


class ConfigMigrator:
    """Migrates password hashes and a fixed file list into a container root."""

    def __init__(self, config: UpgradeConfig, root: Path):
        self.config = config
        self.root = Path(root)

    def host_password_hash(self, user: str) -> str:
        """Read a user's password hash from the host shadow file.

        Raises:
            PreconditionError: If the user has no shadow entry
        """
        with open(self.config.shadow_file) as f:
            for line in f:
                fields = line.rstrip('\n').split(':')
                if len(fields) > 1 and fields[0] == user:
                    return fields[1]
        raise PreconditionError(f"No shadow entry for user '{user}' in {self.config.shadow_file}")

    def migrate_user(self, user: str):
        """Apply the host's password hash for user inside the container.

        Raises:
            ToolInvocationError: If usermod fails inside the container
        """
        password_hash = self.host_password_hash(user)
        cmd = ["chroot", str(self.root), "usermod", "-p", password_hash, user]
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        if result.returncode != 0:
            # the hash must not end up in logs or error output
            raise ToolInvocationError(
                f"Failed to migrate password for user '{user}'",
                command=cmd[:3],
                returncode=result.returncode,
                stderr=result.stderr,
            )
        logger.info(f"  ✓ Migrated password for {user}")

    def migrate_file(self, path: str) -> Optional[Path]:
        """Copy a host file into the container at the same path.

        Missing host files are skipped: the list covers every appliance
        configuration, not just this one.

        Returns:
            Destination path, or None if the host file does not exist
        """
        source = Path(path)
        if not source.exists():
            logger.debug(f"Skipping {source}, not present on host")
            return None

        destination = self.root / source.relative_to(source.anchor)
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination, follow_symlinks=False)
        logger.info(f"  ✓ Migrated {source}")
        return destination

    def migrate_all(self):
        """Migrate the configured users and files."""
        logger.info(f"Migrating configuration into {self.root}")
        for user in self.config.migrated_users:
            self.migrate_user(user)
        for path in self.config.migrated_files:
            self.migrate_file(path)
