"""Launch orchestration.

Runs one build through three phases in fixed order: container runtime
check, launcher provisioning, build execution. A phase only starts once the
previous one succeeded; each failure is wrapped with a phase prefix and the
cause text is kept verbatim.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Protocol

from sd_local.launch.build_config import (
    BuildConfiguration,
    Overrides,
    ResolvedConfig,
    assemble,
)
from sd_local.launch.docker import BuildResult, DockerRunner, StepFailure
from sd_local.launch.runtime import RuntimeHandle, RuntimeNotFoundError, check_runtime
from sd_local.screwdriver.models import Job
from sd_local.types import LaunchState, RuntimeName

logger = logging.getLogger(__name__)

RuntimeChecker = Callable[[], RuntimeHandle]


class Provisioner(Protocol):
    """Makes the launcher available before any build runs."""

    def setup_bin(self, runtime: RuntimeHandle) -> None: ...


class BuildDriver(Protocol):
    """Runs a build configuration in a container."""

    def run_build(
        self, build_config: BuildConfiguration, runtime: RuntimeHandle
    ) -> BuildResult: ...


class Runner(Provisioner, BuildDriver, Protocol):
    """A container runtime implementation providing both phases."""


class LaunchError(Exception):
    """Raised when a launch phase fails.

    Attributes:
        phase: State the launcher was in when the phase failed.
        exit_code: Exit status to report (the failing step's status for
            step failures, 1 otherwise).
    """

    def __init__(
        self,
        message: str,
        phase: LaunchState,
        exit_code: int = 1,
        code: str = "launch_error",
    ) -> None:
        super().__init__(message)
        self.phase = phase
        self.exit_code = exit_code
        self.code = code

    @property
    def step_failure(self) -> StepFailure | None:
        cause = self.__cause__
        return cause if isinstance(cause, StepFailure) else None


class Launcher:
    """Drives one build through the launch phases.

    Args:
        build_config: Assembled build configuration.
        runner: Runtime implementation used for provisioning and execution.
        runtime_checker: Resolves the container runtime.
        provisioner: Optional provisioner replacing `runner.setup_bin`.
        runtime_name: Runtime command named in capability failures.
    """

    def __init__(
        self,
        build_config: BuildConfiguration,
        runner: Runner,
        runtime_checker: RuntimeChecker,
        provisioner: Provisioner | None = None,
        runtime_name: str = "docker",
    ) -> None:
        self.build_config = build_config
        self.runner = runner
        self.runtime_checker = runtime_checker
        self.provisioner: Provisioner = provisioner or runner
        self.runtime_name = runtime_name
        self.state = LaunchState.IDLE
        self.result: BuildResult | None = None

    def _fail(self, message: str, cause: Exception, code: str) -> LaunchError:
        phase = self.state
        self.state = LaunchState.FAILED
        exit_code = cause.exit_code if isinstance(cause, StepFailure) else 1
        logger.debug("Launch failed in phase %s: %s", phase.value, message)
        return LaunchError(message, phase=phase, exit_code=exit_code, code=code)

    def run(self) -> BuildResult:
        """Run every phase in order.

        Returns:
            BuildResult of the succeeded build.

        Raises:
            LaunchError: If any phase fails.
        """
        if self.state is not LaunchState.IDLE:
            raise RuntimeError(f"Launcher already ran (state: {self.state.value})")

        try:
            runtime = self.runtime_checker()
        except RuntimeNotFoundError as e:
            raise self._fail(
                f"`{e.command}` command is not found in $PATH: {e}",
                e,
                "runtime_not_found",
            ) from e
        except Exception as e:
            raise self._fail(
                f"`{self.runtime_name}` command is not found in $PATH: {e}",
                e,
                "runtime_check_failed",
            ) from e
        self.state = LaunchState.CAPABILITY_CHECKED

        try:
            self.provisioner.setup_bin(runtime)
        except Exception as e:
            raise self._fail(f"failed to setup build: {e}", e, "setup_failed") from e
        self.state = LaunchState.PROVISIONED

        self.state = LaunchState.RUNNING
        try:
            self.result = self.runner.run_build(self.build_config, runtime)
        except Exception as e:
            raise self._fail(f"failed to run build: {e}", e, "run_build_failed") from e
        self.state = LaunchState.SUCCEEDED
        return self.result


@dataclass(frozen=True)
class Option:
    """Everything needed to launch one build."""

    job: Job
    config: ResolvedConfig
    overrides: Overrides
    cache_dir: Path
    runtime: RuntimeName = RuntimeName.DOCKER
    use_sudo: bool = False
    setup_timeout: int | None = None
    step_timeout: int | None = None


def new_launcher(option: Option) -> Launcher:
    """Assemble the build configuration and wire the default runner.

    Raises:
        MetadataParseError: If metadata cannot be read or parsed.
        OverrideConflictError: If overrides contradict each other.
    """
    build_config = assemble(option.job, option.config, option.overrides)
    runner = DockerRunner(
        launcher_image=option.config.launcher_image,
        launcher_version=option.config.launcher_version,
        cache_dir=option.cache_dir,
        setup_timeout=option.setup_timeout,
        step_timeout=option.step_timeout,
    )
    checker = partial(check_runtime, option.runtime.value, option.use_sudo)
    return Launcher(build_config, runner, checker, runtime_name=option.runtime.value)


__all__ = [
    "BuildDriver",
    "LaunchError",
    "Launcher",
    "Option",
    "Provisioner",
    "Runner",
    "RuntimeChecker",
    "new_launcher",
]
