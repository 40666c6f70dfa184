"""Container and upgrade models."""
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, FrozenSet, Optional

from appupgrade.core.errors import InvalidTransitionError


class UpgradeMode(str, Enum):
    """How the upgraded root filesystem is produced."""
    IN_PLACE = "in-place"  # clone of the running root, discarded afterwards
    NOT_IN_PLACE = "not-in-place"  # bootstrapped from scratch, promoted to root


class ContainerState(str, Enum):
    ABSENT = "absent"
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    DESTROYED = "destroyed"
    PROMOTED = "promoted"


TRANSITIONS: Dict[ContainerState, FrozenSet[ContainerState]] = {
    ContainerState.ABSENT: frozenset({ContainerState.CREATED}),
    ContainerState.CREATED: frozenset({
        ContainerState.RUNNING,
        ContainerState.STOPPED,
        ContainerState.DESTROYED,
    }),
    ContainerState.RUNNING: frozenset({ContainerState.STOPPED, ContainerState.DESTROYED}),
    ContainerState.STOPPED: frozenset({
        ContainerState.RUNNING,
        ContainerState.DESTROYED,
        ContainerState.PROMOTED,
    }),
    ContainerState.DESTROYED: frozenset(),
    ContainerState.PROMOTED: frozenset(),
}


@dataclass(frozen=True)
class BindMount:
    """A host path exposed inside a container at the same path."""
    source: Path
    readonly: bool = False

    def render(self) -> str:
        key = "BindReadOnly" if self.readonly else "Bind"
        return f"{key}={self.source}"


@dataclass
class Container:
    """Handle for one named container and the artifacts backing it.

    The four artifacts (mount directory, dataset, settings file and service
    override directory) exist together or not at all.
    """
    name: str
    dataset: str
    mount_dir: Path
    settings_file: Path
    override_dir: Path
    snapshot: Optional[str] = None
    state: ContainerState = ContainerState.ABSENT

    @property
    def unit(self) -> str:
        """systemd unit supervising this container."""
        return f"systemd-nspawn@{self.name}.service"

    @property
    def override_file(self) -> Path:
        return self.override_dir / "override.conf"

    def transition(self, new_state: ContainerState):
        """Move to new_state, rejecting transitions the lifecycle forbids.

        Raises:
            InvalidTransitionError: If new_state is not reachable from the current state
        """
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"container '{self.name}' cannot go from {self.state.value} to {new_state.value}"
            )
        self.state = new_state
