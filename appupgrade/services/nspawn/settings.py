"""systemd-nspawn settings file and service override rendering."""
from pathlib import Path
from typing import List

from appupgrade.core.config import UpgradeConfig
from appupgrade.core.logger import get_logger
from appupgrade.models.container import BindMount, Container

logger = get_logger(__name__)

# The .nspawn format has no way to say "all capabilities", so the unit's
# ExecStart is replaced with one passing --capability=all explicitly.
NSPAWN_EXEC_START = (
    "/usr/bin/systemd-nspawn --quiet --keep-unit --boot --link-journal=try-guest "
    "--settings=override --machine=%i --capability=all"
)


def compute_bind_set(config: UpgradeConfig) -> List[BindMount]:
    """Host paths exposed to a container, computed once at configuration time.

    The domain directory is only bound when it exists on this appliance.
    """
    binds = [
        BindMount(config.update_dir, readonly=True),
        BindMount(config.dropbox_dir),
        BindMount(config.storage_device),
    ]
    if config.domain_dir.is_dir():
        binds.insert(1, BindMount(config.domain_dir))
    return binds


def render_settings(binds: List[BindMount]) -> str:
    """Render the .nspawn settings file for a container.

    Container UIDs equal host UIDs, networking is private and files are
    never chowned.
    """
    lines = [
        "[Exec]",
        "PrivateUsers=no",
        "",
        "[Network]",
        "Private=yes",
        "",
        "[Files]",
        "PrivateUsersChown=no",
    ]
    lines.extend(bind.render() for bind in binds)
    return "\n".join(lines) + "\n"


def render_override() -> str:
    """Render the systemd-nspawn@.service drop-in for a container."""
    return "\n".join([
        "[Service]",
        "ExecStart=",
        f"ExecStart={NSPAWN_EXEC_START}",
    ]) + "\n"


def write_container_settings(container: Container, binds: List[BindMount]):
    """Write the settings file and service override for a container."""
    container.settings_file.parent.mkdir(parents=True, exist_ok=True)
    container.settings_file.write_text(render_settings(binds))
    logger.info(f"  ✓ Wrote {container.settings_file}")

    container.override_dir.mkdir(parents=True, exist_ok=True)
    container.override_file.write_text(render_override())
    logger.info(f"  ✓ Wrote {container.override_file}")


def settings_file_for(config: UpgradeConfig, name: str) -> Path:
    return config.nspawn_dir / f"{name}.nspawn"


def override_dir_for(config: UpgradeConfig, name: str) -> Path:
    return config.unit_dir / f"systemd-nspawn@{name}.service.d"
