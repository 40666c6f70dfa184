"""appupgrade runtime configuration and settings."""
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from appupgrade.core.errors import PreconditionError

DEFAULT_CONFIG_FILE = Path("/etc/appupgrade/config.yml")

TRUE_VALUES = ('1', 'true', 'yes', 'on')


def _env_flag(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in TRUE_VALUES


@dataclass
class UpgradeConfig:
    """Runtime configuration for container lifecycle and upgrade operations.

    Attributes:
        containers_dir: Directory scanned by machinectl/systemd-nspawn for containers
        nspawn_dir: Directory holding per-container .nspawn settings files
        unit_dir: Directory where systemd service overrides are written
        dataset_parent: ZFS dataset under which container datasets are created
        update_dir: Directory where upgrade images are unpacked
        image_name: Subdirectory of update_dir holding the image to apply
        domain_dir: Internal domain directory, bound into containers when present
        dropbox_dir: Artifact directory shared with containers
        storage_device: Device node the storage tooling needs inside containers
        boot_poll_attempts: Number of boot-readiness checks before giving up (default: 600)
        boot_poll_interval: Seconds between boot-readiness checks (default: 1)
        skip_verify: Skip the verification step unless the CLI says otherwise
        debug_retain: Leave failed containers in place for debugging
    """

    containers_dir: Path = Path("/var/lib/machines")
    nspawn_dir: Path = Path("/etc/systemd/nspawn")
    unit_dir: Path = Path("/etc/systemd/system")
    dataset_parent: str = "rpool/ROOT"

    update_dir: Path = Path("/var/dlpx-update")
    image_name: str = "latest"
    domain_dir: Path = Path("/domain0")
    dropbox_dir: Path = Path("/var/tmp/dropbox")
    storage_device: Path = Path("/dev/zfs")

    boot_poll_attempts: int = 600
    boot_poll_interval: float = 1.0

    # debootstrap parameters for not-in-place containers
    bootstrap_suite: str = "bionic"
    bootstrap_component: str = "delphix"
    bootstrap_include: List[str] = field(
        default_factory=lambda: ["systemd", "systemd-sysv", "dbus", "zfsutils-linux"]
    )

    # Commands run inside the container by the orchestrator
    upgrade_program: str = "upgrade-packages"
    platform_service: str = "delphix-platform.service"
    verify_command: List[str] = field(
        default_factory=lambda: ["/opt/delphix/server/bin/upgrade-verify"]
    )

    skip_verify: bool = False
    debug_retain: bool = False

    shadow_file: Path = Path("/etc/shadow")
    migrated_users: List[str] = field(default_factory=lambda: ["root", "delphix"])
    migrated_files: List[str] = field(
        default_factory=lambda: [
            "/etc/hostid",
            "/etc/hostname",
            "/etc/hosts",
            "/etc/machine-id",
            "/etc/netplan/10-delphix.yaml",
            "/etc/ssh/ssh_host_rsa_key",
            "/etc/ssh/ssh_host_rsa_key.pub",
            "/etc/ssh/ssh_host_ecdsa_key",
            "/etc/ssh/ssh_host_ecdsa_key.pub",
            "/etc/ssh/ssh_host_ed25519_key",
            "/etc/ssh/ssh_host_ed25519_key.pub",
        ]
    )

    @property
    def image_dir(self) -> Path:
        """Directory of the upgrade image being applied."""
        return self.update_dir / self.image_name

    @property
    def upgrade_command(self) -> List[str]:
        return [str(self.image_dir / self.upgrade_program)]

    @property
    def finalize_command(self) -> List[str]:
        return [str(self.image_dir / self.upgrade_program), "finalize"]

    @property
    def bootstrap_repository(self) -> str:
        """file:// URL of the package repository shipped with the image."""
        return f"file://{self.image_dir}"

    @classmethod
    def from_env(cls, config_file: Optional[Path] = None) -> "UpgradeConfig":
        """Create config from defaults, an optional YAML file and the environment.

        Precedence (highest first): environment variables, YAML file, defaults.

        Environment variables:
            APPUPGRADE_CONFIG: Path to a YAML settings file
            APPUPGRADE_CONTAINERS_DIR: Containers root directory
            APPUPGRADE_DATASET_PARENT: Parent dataset for container datasets
            APPUPGRADE_UPDATE_DIR: Upgrade image directory
            APPUPGRADE_BOOT_POLL_ATTEMPTS: Boot-readiness attempts
            SKIP_VERIFY: Skip the verification step by default
            APPUPGRADE_DEBUG: Leave failed containers in place

        Returns:
            UpgradeConfig instance
        """
        if config_file is None:
            env_file = os.getenv("APPUPGRADE_CONFIG")
            config_file = Path(env_file) if env_file else DEFAULT_CONFIG_FILE

        config = cls.from_file(config_file) if config_file.exists() else cls()

        if value := os.getenv("APPUPGRADE_CONTAINERS_DIR"):
            config.containers_dir = Path(value)
        if value := os.getenv("APPUPGRADE_DATASET_PARENT"):
            config.dataset_parent = value
        if value := os.getenv("APPUPGRADE_UPDATE_DIR"):
            config.update_dir = Path(value)
        if value := os.getenv("APPUPGRADE_BOOT_POLL_ATTEMPTS"):
            config.boot_poll_attempts = int(value)

        config.skip_verify = _env_flag("SKIP_VERIFY", config.skip_verify)
        config.debug_retain = _env_flag("APPUPGRADE_DEBUG", config.debug_retain)
        return config

    @classmethod
    def from_file(cls, path: Path) -> "UpgradeConfig":
        """Load settings from a YAML mapping; unknown keys are rejected."""
        with open(path) as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise PreconditionError(f"{path}: expected a mapping of settings")

        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise PreconditionError(f"{path}: unknown settings: {', '.join(unknown)}")

        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            default = getattr(cls, key, None)
            if isinstance(default, Path) or key.endswith(('_dir', '_file', '_device')):
                value = Path(value)
            kwargs[key] = value
        return cls(**kwargs)


# Global config instance (can be overridden)
_config: Optional[UpgradeConfig] = None


def get_config() -> UpgradeConfig:
    """Get the global configuration (created from the environment if unset)."""
    global _config
    if _config is None:
        _config = UpgradeConfig.from_env()
    return _config


def set_config(config: Optional[UpgradeConfig]):
    """Set the global configuration; None resets it."""
    global _config
    _config = config
