"""Tests for launch/orchestrator.py module.

Phase ordering and error wrapping are verified with mocked collaborators.
"""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from sd_local.launch.build_config import (
    MetadataParseError,
    Overrides,
    ResolvedConfig,
    assemble,
)
from sd_local.launch.docker import (
    BuildResult,
    DockerRunner,
    RunBuildError,
    SetupError,
    StepFailure,
)
from sd_local.launch.orchestrator import LaunchError, Launcher, Option, new_launcher
from sd_local.launch.runtime import RuntimeHandle, RuntimeNotFoundError
from sd_local.screwdriver.models import Job, Step
from sd_local.types import BuildStatus, LaunchState, RuntimeName

HANDLE = RuntimeHandle(path="/bin/docker")


@pytest.fixture
def build_config():
    """Create a minimal build configuration."""
    job = Job(image="alpine", steps=[Step(name="test", command="true")])
    config = ResolvedConfig(api_url="http://api", store_url="http://store")
    return assemble(job, config, Overrides(job_name="test"))


@pytest.fixture
def runner():
    """Create a mock runner that succeeds."""
    mock = MagicMock()
    mock.run_build.return_value = BuildResult(
        status=BuildStatus.SUCCEEDED, container="sd-local-test"
    )
    return mock


def found() -> RuntimeHandle:
    return HANDLE


def not_found() -> RuntimeHandle:
    raise RuntimeNotFoundError('exec: "docker": executable file not found in $PATH')


class TestLauncherRun:
    """Tests for Launcher.run."""

    def test_success(self, build_config, runner):
        """All phases should run once, in order."""
        launcher = Launcher(build_config, runner, found)

        result = launcher.run()

        assert result.status == BuildStatus.SUCCEEDED
        assert launcher.state == LaunchState.SUCCEEDED
        runner.setup_bin.assert_called_once_with(HANDLE)
        runner.run_build.assert_called_once_with(build_config, HANDLE)
        assert [c[0] for c in runner.method_calls] == ["setup_bin", "run_build"]

    def test_runtime_not_found(self, build_config, runner):
        """Provisioning and build must not run when the runtime is missing."""
        launcher = Launcher(build_config, runner, not_found)

        with pytest.raises(LaunchError) as exc_info:
            launcher.run()

        assert str(exc_info.value) == (
            "`docker` command is not found in $PATH: "
            'exec: "docker": executable file not found in $PATH'
        )
        assert exc_info.value.phase == LaunchState.IDLE
        assert isinstance(exc_info.value.__cause__, RuntimeNotFoundError)
        assert launcher.state == LaunchState.FAILED
        assert runner.setup_bin.call_count == 0
        assert runner.run_build.call_count == 0

    def test_runtime_check_unexpected_error(self, build_config, runner):
        """Any checker error should be wrapped and fail the launch."""

        def denied() -> RuntimeHandle:
            raise PermissionError("permission denied: /usr/bin")

        launcher = Launcher(build_config, runner, denied, runtime_name="podman")

        with pytest.raises(LaunchError) as exc_info:
            launcher.run()

        assert str(exc_info.value) == (
            "`podman` command is not found in $PATH: permission denied: /usr/bin"
        )
        assert exc_info.value.phase == LaunchState.IDLE
        assert exc_info.value.code == "runtime_check_failed"
        assert isinstance(exc_info.value.__cause__, PermissionError)
        assert launcher.state == LaunchState.FAILED
        assert runner.setup_bin.call_count == 0

    def test_setup_failure(self, build_config, runner):
        """Setup failures should be wrapped and stop the launch."""
        runner.setup_bin.side_effect = SetupError("docker: Error response from daemon")
        launcher = Launcher(build_config, runner, found)

        with pytest.raises(LaunchError) as exc_info:
            launcher.run()

        assert str(exc_info.value) == (
            "failed to setup build: docker: Error response from daemon"
        )
        assert exc_info.value.phase == LaunchState.CAPABILITY_CHECKED
        assert runner.run_build.call_count == 0

    def test_run_build_failure(self, build_config, runner):
        """Build failures should be wrapped."""
        runner.run_build.side_effect = RunBuildError("docker: Error response from daemon")
        launcher = Launcher(build_config, runner, found)

        with pytest.raises(LaunchError) as exc_info:
            launcher.run()

        assert str(exc_info.value) == (
            "failed to run build: docker: Error response from daemon"
        )
        assert exc_info.value.phase == LaunchState.RUNNING
        assert exc_info.value.exit_code == 1
        assert exc_info.value.step_failure is None

    def test_step_failure_keeps_exit_code(self, build_config, runner):
        """A failing step's exit status should be preserved."""
        runner.run_build.side_effect = StepFailure("test", 3)
        launcher = Launcher(build_config, runner, found)

        with pytest.raises(LaunchError) as exc_info:
            launcher.run()

        assert exc_info.value.exit_code == 3
        assert exc_info.value.step_failure is not None
        assert exc_info.value.step_failure.step == "test"
        assert "step 'test' failed with exit code 3" in str(exc_info.value)

    def test_separate_provisioner(self, build_config, runner):
        """An injected provisioner should replace the runner's setup."""
        provisioner = MagicMock()
        launcher = Launcher(build_config, runner, found, provisioner=provisioner)

        launcher.run()

        provisioner.setup_bin.assert_called_once_with(HANDLE)
        runner.setup_bin.assert_not_called()

    def test_run_once(self, build_config, runner):
        """A launcher should not be reused."""
        launcher = Launcher(build_config, runner, found)
        launcher.run()

        with pytest.raises(RuntimeError):
            launcher.run()


class TestNewLauncher:
    """Tests for new_launcher factory."""

    def _option(self, tmp_path: Path, **overrides) -> Option:
        return Option(
            job=Job(image="alpine"),
            config=ResolvedConfig(
                api_url="http://api",
                store_url="http://store",
                launcher_image="screwdrivercd/launcher",
                launcher_version="v6",
            ),
            overrides=Overrides(job_name="main", **overrides),
            cache_dir=tmp_path,
            runtime=RuntimeName.PODMAN,
        )

    def test_wires_docker_runner(self, tmp_path):
        """Should assemble the config and use a DockerRunner."""
        launcher = new_launcher(self._option(tmp_path))

        assert isinstance(launcher.runner, DockerRunner)
        assert launcher.runner.launcher_ref == "screwdrivercd/launcher:v6"
        assert launcher.runner.volume == "sd-local-launcher-v6"
        assert launcher.runtime_name == "podman"
        assert launcher.build_config.job_name == "main"

    def test_checker_uses_runtime_name(self, tmp_path):
        """The runtime checker should look up the configured runtime."""
        launcher = new_launcher(self._option(tmp_path))

        with patch("sd_local.launch.runtime.shutil.which", return_value=None):
            with pytest.raises(LaunchError, match="`podman` command is not found"):
                launcher.run()

    def test_assembly_errors_propagate(self, tmp_path):
        """Assembly errors should surface before any launch phase."""
        with pytest.raises(MetadataParseError):
            new_launcher(self._option(tmp_path, meta="{bad"))
