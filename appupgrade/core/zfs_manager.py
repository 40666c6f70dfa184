"""ZFS dataset, snapshot and pool management."""
import subprocess
from typing import Dict, List, Optional

from appupgrade.core.errors import StorageOperationError, StorageQueryError
from appupgrade.core.logger import get_logger

logger = get_logger(__name__)

# zpool list -v section headers that are not vdevs
POOL_SECTION_HEADERS = {'logs', 'cache', 'spares', 'special', 'dedup'}


def parse_single_name(output: str, what: str) -> str:
    """Return the only non-empty line of `zfs list -H -o name` output.

    Raises:
        StorageQueryError: If the output holds zero or several names
    """
    names = [line.strip() for line in output.splitlines() if line.strip()]
    if len(names) != 1:
        raise StorageQueryError(f"Expected exactly one dataset for {what}, got {names or 'none'}")
    return names[0]


def parse_pool_members(output: str, pool: str) -> List[str]:
    """Parse `zpool list -v -H -P <pool>` output into vdev member names.

    Returns every row below the pool row, in order: full device paths for
    leaf vdevs and bare names for grouping rows such as 'mirror-0'.
    Section headers (logs, cache, ...) are skipped.

    Raises:
        StorageQueryError: If the pool row is missing
    """
    lines = [line for line in output.splitlines() if line.strip()]
    if not lines or lines[0].split('\t')[0].strip() != pool:
        raise StorageQueryError(f"Unexpected zpool list output for pool {pool}")

    members = []
    for line in lines[1:]:
        name = line.strip().split()[0]
        if name in POOL_SECTION_HEADERS:
            continue
        members.append(name)
    return members


class ZFSManager:
    """Manages ZFS datasets, snapshots and properties.

    Every mutation raises StorageOperationError naming its target when the
    zfs tool exits non-zero; callers never see partial success.
    """

    def _run(self, cmd: List[str], target: str) -> subprocess.CompletedProcess:
        try:
            logger.debug(f"Command: {' '.join(cmd)}")
            return subprocess.run(cmd, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            logger.error(f"Failed: {' '.join(cmd)}")
            raise StorageOperationError(
                f"{cmd[0]} {cmd[1]} failed for {target}",
                target=target,
                command=cmd,
                returncode=e.returncode,
                stderr=e.stderr,
            ) from e

    def _query(self, cmd: List[str], what: str) -> str:
        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            raise StorageQueryError(
                f"Failed to query {what}",
                command=cmd,
                returncode=e.returncode,
                stderr=e.stderr,
            ) from e
        return result.stdout

    def mounted_root_dataset(self) -> str:
        """Return the dataset currently mounted at /."""
        output = self._query(["zfs", "list", "-H", "-o", "name", "/"], "mounted root dataset")
        return parse_single_name(output, "/")

    def dataset_exists(self, dataset: str) -> bool:
        """Check if a dataset or snapshot exists.

        Args:
            dataset: Full dataset name (e.g., 'rpool/ROOT/abc') or snapshot
                ('rpool/ROOT/abc@name')

        Returns:
            True if it exists, False otherwise
        """
        cmd = ["zfs", "list", "-H", "-o", "name", dataset]
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
        return result.returncode == 0

    def snapshot(self, dataset: str, name: str) -> str:
        """Create dataset@name and return the full snapshot name."""
        full_snapshot = f"{dataset}@{name}"
        self._run(["zfs", "snapshot", full_snapshot], full_snapshot)
        logger.info(f"Created snapshot: {full_snapshot}")
        return full_snapshot

    def clone(self, snapshot: str, dataset: str, mountpoint: str):
        """Clone a snapshot into a new dataset mounted at mountpoint."""
        self._run(
            ["zfs", "clone", "-o", f"mountpoint={mountpoint}", snapshot, dataset],
            dataset,
        )
        logger.info(f"Cloned {snapshot} to {dataset}")

    def create(self, dataset: str, mountpoint: str, properties: Optional[Dict[str, str]] = None):
        """Create an empty dataset mounted at mountpoint.

        Args:
            dataset: Full dataset name
            mountpoint: Where to mount the new dataset
            properties: Extra ZFS properties to set at creation
        """
        cmd = ["zfs", "create", "-p", "-o", f"mountpoint={mountpoint}"]
        for key, value in (properties or {}).items():
            cmd.extend(["-o", f"{key}={value}"])
        cmd.append(dataset)

        self._run(cmd, dataset)
        logger.info(f"Created dataset: {dataset}")

    def destroy_dataset(self, dataset: str):
        self._run(["zfs", "destroy", dataset], dataset)
        logger.info(f"Destroyed dataset: {dataset}")

    def destroy_snapshot(self, snapshot: str):
        if '@' not in snapshot:
            raise StorageOperationError(f"Not a snapshot name: {snapshot}", target=snapshot)
        self._run(["zfs", "destroy", snapshot], snapshot)
        logger.info(f"Destroyed snapshot: {snapshot}")

    def set_property(self, dataset: str, key: str, value: str):
        """Set a property on an existing dataset."""
        self._run(["zfs", "set", f"{key}={value}", dataset], dataset)
        logger.info(f"Set {dataset} property {key}={value}")

    def get_property(self, dataset: str, key: str) -> str:
        output = self._query(
            ["zfs", "get", "-H", "-o", "value", key, dataset],
            f"{key} of {dataset}",
        )
        return parse_single_name(output, f"{key} of {dataset}")

    def unmount(self, dataset: str):
        self._run(["zfs", "unmount", dataset], dataset)
        logger.info(f"Unmounted {dataset}")

    def pool_members(self, pool: str) -> List[str]:
        """List the vdev member names of a pool (see parse_pool_members)."""
        output = self._query(["zpool", "list", "-v", "-H", "-P", pool], f"members of pool {pool}")
        return parse_pool_members(output, pool)
