"""Tests for the container lifecycle state machine."""
import pytest

from appupgrade.core.errors import (
    ArtifactRemovalError,
    BootTimeoutError,
    InvalidTransitionError,
    NotConfiguredError,
    StopFailedError,
    StorageQueryError,
    ToolInvocationError,
)
from appupgrade.models.container import ContainerState, UpgradeMode
from appupgrade.services.nspawn.lifecycle import NAME_PREFIX, ContainerLifecycle


class RecordingBootstrapper:
    def __init__(self):
        self.targets = []

    def run(self, target):
        self.targets.append(target)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def lifecycle(config, fake_zfs, fake_run, sleeps):
    return ContainerLifecycle(
        config=config,
        zfs=fake_zfs,
        bootstrapper=RecordingBootstrapper(),
        sleep=sleeps.append,
    )


def _leftovers(config):
    """Everything a container may leave behind on the host filesystem."""
    found = []
    for directory in (config.containers_dir, config.nspawn_dir, config.unit_dir):
        if directory.exists():
            found.extend(p.name for p in directory.iterdir())
    return found


class TestCreate:
    """Creating containers in both modes."""

    def test_in_place_creates_full_artifact_set(self, lifecycle, fake_zfs, fake_run):
        container = lifecycle.create(UpgradeMode.IN_PLACE)

        assert container.name.startswith(NAME_PREFIX)
        assert container.state == ContainerState.CREATED
        assert all(lifecycle.artifacts(container).values())
        assert container.snapshot == f"rpool/ROOT/current@{container.name}"
        assert ("clone", container.snapshot, container.dataset, str(container.mount_dir)) in fake_zfs.calls
        assert fake_run.commands("systemctl", "daemon-reload")

    def test_not_in_place_bootstraps_empty_dataset(self, lifecycle, fake_zfs):
        container = lifecycle.create(UpgradeMode.NOT_IN_PLACE)

        assert ("create", container.dataset, str(container.mount_dir)) in fake_zfs.calls
        assert lifecycle.bootstrapper.targets == [container.mount_dir]
        assert container.snapshot is None
        assert fake_zfs.snapshots == set()

    def test_settings_file_contents(self, lifecycle, config):
        config.domain_dir.mkdir()
        container = lifecycle.create(UpgradeMode.IN_PLACE)

        settings = container.settings_file.read_text()
        assert "PrivateUsers=no" in settings
        assert "Private=yes" in settings
        assert "PrivateUsersChown=no" in settings
        assert f"BindReadOnly={config.update_dir}" in settings
        assert f"Bind={config.domain_dir}" in settings
        assert f"Bind={config.dropbox_dir}" in settings
        assert "Bind=/dev/zfs" in settings

        override = container.override_file.read_text()
        assert "ExecStart=\n" in override
        assert "--capability=all" in override

    def test_domain_dir_only_bound_when_present(self, lifecycle, config):
        container = lifecycle.create(UpgradeMode.IN_PLACE)

        assert str(config.domain_dir) not in container.settings_file.read_text()

    def test_names_are_unique(self, lifecycle):
        names = {lifecycle.create(UpgradeMode.IN_PLACE).name for _ in range(5)}

        assert len(names) == 5

    def test_failure_before_name_assigned_cleans_nothing(self, lifecycle, fake_zfs, monkeypatch):
        destroyed = []
        monkeypatch.setattr(lifecycle, "destroy", destroyed.append)

        def no_space():
            raise OSError("No space left on device")

        monkeypatch.setattr(lifecycle, "_allocate_name", no_space)

        with pytest.raises(OSError):
            lifecycle.create(UpgradeMode.IN_PLACE)

        assert destroyed == []
        assert fake_zfs.calls == []

    def test_failure_after_name_assigned_destroys_once(self, lifecycle, fake_zfs, config, monkeypatch):
        fake_zfs.fail("clone")
        destroy = lifecycle.destroy
        destroyed = []

        def recording_destroy(container):
            destroyed.append(container.name)
            destroy(container)

        monkeypatch.setattr(lifecycle, "destroy", recording_destroy)

        with pytest.raises(ToolInvocationError):
            lifecycle.create(UpgradeMode.IN_PLACE)

        assert len(destroyed) == 1
        assert _leftovers(config) == []
        assert fake_zfs.snapshots == set()

    def test_root_query_failure_leaves_no_mount_dir(self, lifecycle, fake_zfs, config):
        fake_zfs.failures["mounted_root_dataset"] = StorageQueryError("Failed to query mounted root dataset")

        with pytest.raises(StorageQueryError):
            lifecycle.create(UpgradeMode.IN_PLACE)

        assert _leftovers(config) == []

    def test_failure_in_bootstrap_removes_dataset(self, lifecycle, fake_zfs, config):
        def broken(target):
            raise ToolInvocationError("Failed to bootstrap", returncode=1)

        lifecycle.bootstrapper.run = broken

        with pytest.raises(ToolInvocationError):
            lifecycle.create(UpgradeMode.NOT_IN_PLACE)

        assert fake_zfs.datasets == {"rpool/ROOT/current"}
        assert _leftovers(config) == []


class TestStartStop:
    """Starting, stopping and running commands."""

    def test_start_waits_for_boot(self, lifecycle, fake_run):
        container = lifecycle.create(UpgradeMode.IN_PLACE)
        lifecycle.start(container)

        assert fake_run.commands("systemctl", "start", container.unit)
        assert fake_run.commands("systemd-run", f"--machine={container.name}")
        assert container.state == ContainerState.RUNNING

    def test_start_polls_until_booted(self, lifecycle, fake_run, sleeps):
        container = lifecycle.create(UpgradeMode.IN_PLACE)
        attempts = []

        def not_yet(cmd):
            if cmd[0] != "systemd-run":
                return False
            attempts.append(cmd)
            return len(attempts) < 3

        fake_run.on(not_yet, returncode=1)
        lifecycle.start(container)

        assert len(sleeps) == 2

    def test_start_boot_timeout(self, lifecycle, fake_run, sleeps):
        container = lifecycle.create(UpgradeMode.IN_PLACE)
        fake_run.on(lambda cmd: cmd[0] == "systemd-run", returncode=1)

        with pytest.raises(BootTimeoutError) as exc_info:
            lifecycle.start(container)

        assert exc_info.value.attempts == 3
        assert len(fake_run.commands("systemd-run")) == 3
        # no wait after the last failed check
        assert len(sleeps) == 2

    def test_start_partial_artifacts_not_configured(self, lifecycle, fake_run):
        container = lifecycle.create(UpgradeMode.IN_PLACE)
        container.settings_file.unlink()

        with pytest.raises(NotConfiguredError) as exc_info:
            lifecycle.start(container)

        assert exc_info.value.missing == [str(container.settings_file)]
        assert not fake_run.commands("systemctl", "start")

    def test_start_running_container_rejected(self, lifecycle):
        container = lifecycle.create(UpgradeMode.IN_PLACE)
        lifecycle.start(container)

        with pytest.raises(InvalidTransitionError):
            lifecycle.start(container)

    def test_stop(self, lifecycle, fake_run):
        container = lifecycle.create(UpgradeMode.IN_PLACE)
        lifecycle.start(container)
        lifecycle.stop(container)

        assert fake_run.commands("systemctl", "stop", container.unit)
        assert container.state == ContainerState.STOPPED

    def test_stop_failure(self, lifecycle, fake_run):
        container = lifecycle.create(UpgradeMode.IN_PLACE)
        fake_run.on(lambda cmd: cmd[:2] == ["systemctl", "stop"], returncode=1, stderr="boom")

        with pytest.raises(StopFailedError):
            lifecycle.stop(container)

    def test_run_returns_exit_status(self, lifecycle, fake_run):
        container = lifecycle.create(UpgradeMode.IN_PLACE)
        fake_run.on(lambda cmd: cmd[-1] == "false", returncode=1)

        assert lifecycle.run(container, ["false"]).returncode == 1
        assert fake_run.calls[-1] == [
            "systemd-run", f"--machine={container.name}", "--quiet", "--wait", "--pipe", "--", "false",
        ]

    def test_run_check_raises(self, lifecycle, fake_run):
        container = lifecycle.create(UpgradeMode.IN_PLACE)
        fake_run.on(lambda cmd: cmd[-1] == "false", returncode=2)

        with pytest.raises(ToolInvocationError) as exc_info:
            lifecycle.run(container, ["false"], check=True)

        assert exc_info.value.returncode == 2


class TestDestroy:
    """Tearing containers down."""

    def test_destroy_removes_everything(self, lifecycle, fake_zfs, config):
        container = lifecycle.create(UpgradeMode.IN_PLACE)
        lifecycle.destroy(container)

        assert _leftovers(config) == []
        assert container.dataset not in fake_zfs.datasets
        assert fake_zfs.snapshots == set()
        assert container.state == ContainerState.DESTROYED

    def test_destroy_is_idempotent(self, lifecycle, config):
        name = lifecycle.create(UpgradeMode.IN_PLACE).name

        lifecycle.destroy(lifecycle.container(name))
        lifecycle.destroy(lifecycle.container(name))

        assert _leftovers(config) == []

    def test_destroy_by_name_finds_origin_snapshot(self, lifecycle, fake_zfs):
        name = lifecycle.create(UpgradeMode.IN_PLACE).name

        lifecycle.destroy(lifecycle.container(name))

        assert ("destroy_snapshot", f"rpool/ROOT/current@{name}") in fake_zfs.calls

    def test_destroy_bootstrapped_skips_root_lookup(self, lifecycle, fake_zfs, config):
        name = lifecycle.create(UpgradeMode.NOT_IN_PLACE).name
        fake_zfs.failures["mounted_root_dataset"] = StorageQueryError("Failed to query mounted root dataset")

        lifecycle.destroy(lifecycle.container(name))

        assert _leftovers(config) == []
        assert "destroy_snapshot" not in [call[0] for call in fake_zfs.calls]

    def test_destroy_names_artifact_on_failure(self, lifecycle):
        container = lifecycle.create(UpgradeMode.IN_PLACE)
        (container.mount_dir / "leftover").write_text("data")

        with pytest.raises(ArtifactRemovalError) as exc_info:
            lifecycle.destroy(container)

        assert exc_info.value.artifact == str(container.mount_dir)

    def test_destroy_promoted_rejected(self, lifecycle):
        container = lifecycle.create(UpgradeMode.NOT_IN_PLACE)
        container.state = ContainerState.PROMOTED

        with pytest.raises(InvalidTransitionError):
            lifecycle.destroy(container)


class TestState:
    """Host-derived container state."""

    def test_absent(self, lifecycle):
        assert lifecycle.state("upgrade-missing") == ContainerState.ABSENT

    def test_stopped_and_running(self, lifecycle, fake_run):
        container = lifecycle.create(UpgradeMode.IN_PLACE)
        assert lifecycle.state(container.name) == ContainerState.STOPPED

        fake_run.on(lambda cmd: cmd[-1] == container.unit, returncode=0)
        assert lifecycle.state(container.name) == ContainerState.RUNNING

    def test_partial_set_not_configured(self, lifecycle):
        container = lifecycle.create(UpgradeMode.IN_PLACE)
        container.settings_file.unlink()

        with pytest.raises(NotConfiguredError):
            lifecycle.state(container.name)

    def test_list_containers(self, lifecycle):
        names = sorted(lifecycle.create(UpgradeMode.IN_PLACE).name for _ in range(2))

        assert lifecycle.list_containers() == names
