"""Shared test fixtures for appupgrade tests."""
import multiprocessing
import os
import shutil
import subprocess
from pathlib import Path

import pytest

from appupgrade.core.config import UpgradeConfig, set_config
from appupgrade.core.errors import StorageOperationError


class FakeRun:
    """Stand-in for subprocess.run that records commands.

    Handlers registered with on() decide the result of matching commands;
    the most recently registered handler wins. Unmatched commands succeed.
    """

    def __init__(self):
        self.calls = []
        self.handlers = []

    def on(self, predicate, returncode=0, stdout="", stderr=""):
        self.handlers.insert(0, (predicate, returncode, stdout, stderr))

    def __call__(self, cmd, capture_output=False, text=False, check=False, **kwargs):
        cmd = list(cmd)
        self.calls.append(cmd)
        returncode, stdout, stderr = 0, "", ""
        for predicate, rc, out, err in self.handlers:
            if predicate(cmd):
                returncode, stdout, stderr = rc, out, err
                break
        if check and returncode != 0:
            raise subprocess.CalledProcessError(returncode, cmd, output=stdout, stderr=stderr)
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr=stderr)

    def commands(self, *prefix):
        return [call for call in self.calls if call[:len(prefix)] == list(prefix)]


class FakeZFS:
    """In-memory storage driver with the ZFSManager interface."""

    def __init__(self, root_dataset="rpool/ROOT/current"):
        self.root_dataset = root_dataset
        self.datasets = {root_dataset}
        self.snapshots = set()
        self.mountpoints = {}
        self.properties = {}
        self.members = ["sda1"]
        self.calls = []
        self.failures = {}

    def fail(self, method, target="x"):
        self.failures[method] = StorageOperationError(f"{method} failed", target=target)

    def _record(self, method, *args):
        self.calls.append((method, *args))
        if method in self.failures:
            raise self.failures[method]

    def mounted_root_dataset(self):
        self._record("mounted_root_dataset")
        return self.root_dataset

    def dataset_exists(self, dataset):
        return dataset in self.datasets or dataset in self.snapshots

    def snapshot(self, dataset, name):
        self._record("snapshot", dataset, name)
        full = f"{dataset}@{name}"
        self.snapshots.add(full)
        return full

    def clone(self, snapshot, dataset, mountpoint):
        self._record("clone", snapshot, dataset, mountpoint)
        self.datasets.add(dataset)
        self.mountpoints[dataset] = Path(mountpoint)
        self.properties[(dataset, "origin")] = snapshot

    def create(self, dataset, mountpoint, properties=None):
        self._record("create", dataset, mountpoint)
        self.datasets.add(dataset)
        self.mountpoints[dataset] = Path(mountpoint)

    def destroy_dataset(self, dataset):
        self._record("destroy_dataset", dataset)
        self.datasets.discard(dataset)
        self.mountpoints.pop(dataset, None)
        self.properties = {k: v for k, v in self.properties.items() if k[0] != dataset}

    def destroy_snapshot(self, snapshot):
        self._record("destroy_snapshot", snapshot)
        self.snapshots.discard(snapshot)

    def set_property(self, dataset, key, value):
        self._record("set_property", dataset, key, value)
        self.properties[(dataset, key)] = value

    def get_property(self, dataset, key):
        return self.properties.get((dataset, key), "-")

    def unmount(self, dataset):
        """Unmounting leaves an empty mountpoint directory behind."""
        self._record("unmount", dataset)
        mountpoint = self.mountpoints.get(dataset)
        if mountpoint and mountpoint.is_dir():
            for child in mountpoint.iterdir():
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()

    def pool_members(self, pool):
        self._record("pool_members", pool)
        return list(self.members)


@pytest.fixture(autouse=True)
def reset_config():
    """Keep the global configuration from leaking between tests."""
    set_config(None)
    yield
    set_config(None)


@pytest.fixture
def config(tmp_path):
    """Configuration rooted entirely under tmp_path."""
    update_dir = tmp_path / "update"
    (update_dir / "latest").mkdir(parents=True)
    (update_dir / "latest" / "upgrade-packages").write_text("#!/bin/sh\n")
    shadow = tmp_path / "shadow"
    shadow.write_text("root:$6$roothash:19000:0:99999:7:::\ndelphix:$6$svchash:19000:0:99999:7:::\n")

    return UpgradeConfig(
        containers_dir=tmp_path / "machines",
        nspawn_dir=tmp_path / "nspawn",
        unit_dir=tmp_path / "system",
        update_dir=update_dir,
        domain_dir=tmp_path / "domain0",
        dropbox_dir=tmp_path / "dropbox",
        storage_device=Path("/dev/zfs"),
        boot_poll_attempts=3,
        boot_poll_interval=0,
        shadow_file=shadow,
        migrated_files=[],
    )


@pytest.fixture
def fake_zfs():
    return FakeZFS()


@pytest.fixture
def fake_run(monkeypatch):
    """Patch subprocess.run; containers report as not running by default."""
    runner = FakeRun()
    runner.on(
        lambda cmd: cmd[:3] == ["systemctl", "is-active", "--quiet"]
        and cmd[3].startswith("systemd-nspawn@"),
        returncode=3,
    )
    monkeypatch.setattr(subprocess, "run", runner)
    return runner


@pytest.fixture
def in_child():
    """Run a callable in a forked child process and return its exit code.

    Fixtures patched in the parent (fake_run, config) carry over to the child.
    """
    if not hasattr(os, "fork"):
        pytest.skip("needs fork")

    def run(target):
        process = multiprocessing.get_context("fork").Process(target=target)
        process.start()
        process.join(timeout=30)
        return process.exitcode

    return run
