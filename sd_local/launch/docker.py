"""Docker-compatible container runner.

This module handles:
- Provisioning the launcher binaries into a named volume
- Composing `container run` arguments from a BuildConfiguration
- Executing steps in declared order inside the build container
- Removing the build container on every exit path

Works with any runtime that accepts the Docker command line (docker, podman).
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import posixpath
import re
import subprocess
import time
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import IO

from sd_local.launch.build_config import BuildConfiguration
from sd_local.launch.runtime import RuntimeHandle
from sd_local.types import BuildStatus

logger = logging.getLogger(__name__)

ROOT_DIR = "/sd/workspace"
SOURCE_DIR = "/sd/workspace/src/screwdriver.cd/sd-local/local-build"
LAUNCHER_MOUNT = "/opt/sd"

LAUNCHER_VOLUME = "sd-local-launcher"
LAUNCHER_LABEL = "sd-local.launcher"
CONTAINER_PREFIX = "sd-local"

# Puts the launcher tools on PATH, then runs the step passed as $1
STEP_SHELL = (
    f'PATH="$PATH:{LAUNCHER_MOUNT}/bin:{LAUNCHER_MOUNT}"; export PATH; exec /bin/sh -c "$1"'
)

# Keeps the build container alive while steps are exec'd into it
KEEPALIVE_COMMAND = ["tail", "-f", "/dev/null"]

# Timeout for short runtime queries (seconds)
QUERY_TIMEOUT = 60


class SetupError(Exception):
    """Raised when the launcher cannot be provisioned."""

    def __init__(self, message: str, code: str = "setup_error") -> None:
        super().__init__(message)
        self.code = code


class RunBuildError(Exception):
    """Raised when the build container cannot be created or driven."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "run_build_error",
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code


@dataclass
class StepResult:
    """Outcome of a single step."""

    name: str
    exit_code: int
    started_at: datetime
    finished_at: datetime

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass
class BuildResult:
    """Result of a build execution.

    Attributes:
        status: Final build status.
        container: Name of the build container.
        steps: Results of the steps that ran, in execution order.
        started_at: Build start time.
        finished_at: Build finish time.
    """

    status: BuildStatus
    container: str
    steps: list[StepResult] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def exit_code(self) -> int:
        failed = [s for s in self.steps if not s.success]
        return failed[-1].exit_code if failed else 0


class StepFailure(Exception):
    """Raised when a build step exits non-zero."""

    def __init__(
        self,
        step: str,
        exit_code: int,
        result: BuildResult | None = None,
        code: str = "step_failure",
    ) -> None:
        super().__init__(f"step '{step}' failed with exit code {exit_code}")
        self.step = step
        self.exit_code = exit_code
        self.result = result
        self.code = code


@contextmanager
def launcher_lock(
    cache_dir: Path,
    name: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire a lock around launcher provisioning.

    Uses a file-based lock so that concurrent invocations do not populate
    the launcher volume at the same time.

    Args:
        cache_dir: Root cache directory.
        name: Lock name (the launcher volume).
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Raises:
        TimeoutError: If lock cannot be acquired within timeout.
    """
    lock_dir = cache_dir / ".locks"
    lock_dir.mkdir(parents=True, exist_ok=True)

    safe_name = name.replace("/", "_").replace(":", "_") + ".lock"
    lock_file = lock_dir / safe_name

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError as e:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for launcher lock {name}"
                        ) from e
                    time.sleep(0.1)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)

        logger.debug("Launcher lock acquired: %s", name)
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)
        logger.debug("Launcher lock released: %s", name)


def launcher_volume_name(launcher_version: str) -> str:
    """Name of the volume holding one launcher version."""
    safe_version = re.sub(r"[^A-Za-z0-9_.-]", "_", launcher_version)
    return f"{LAUNCHER_VOLUME}-{safe_version}"


def container_artifacts_dir(build_config: BuildConfiguration) -> str:
    """Mount point of the artifacts directory inside the container.

    Relative values of SD_ARTIFACTS_DIR are resolved against the source root,
    which is the working directory of every step.
    """
    artifacts_dir = build_config.artifacts_dir
    if posixpath.isabs(artifacts_dir):
        return artifacts_dir
    return posixpath.normpath(posixpath.join(SOURCE_DIR, artifacts_dir))


def container_environment(build_config: BuildConfiguration) -> dict[str, str]:
    """Environment injected into the build container.

    Build identity and metadata come first so that job and user variables
    can still override them.
    """
    env = {
        "SD_BUILD_ID": str(build_config.build_id),
        "SD_EVENT_ID": str(build_config.event_id),
        "SD_JOB_ID": str(build_config.job_id),
        "SD_JOB_NAME": build_config.job_name,
        "SD_BUILD_SHA": build_config.sha,
        "SD_PARENT_BUILD_ID": json.dumps(list(build_config.parent_build_ids)),
        "SD_META": json.dumps(build_config.to_launcher_dict()["meta"]),
        "SD_ROOT_DIR": ROOT_DIR,
        "SD_SOURCE_DIR": SOURCE_DIR,
    }
    env.update(build_config.environment)
    return env


def compose_run_args(
    build_config: BuildConfiguration,
    container: str,
    src_path: Path,
    volume: str,
) -> list[str]:
    """Compose the `container run` arguments for the build container.

    Args:
        build_config: Assembled build configuration.
        container: Container name.
        src_path: Absolute host source directory.
        volume: Launcher volume name.

    Returns:
        Runtime arguments (without the runtime executable).
    """
    args = ["container", "run", "--detach", "--name", container]

    args.extend(["-v", f"{src_path}:{SOURCE_DIR}"])

    artifacts_target = container_artifacts_dir(build_config)
    if artifacts_target != SOURCE_DIR:
        host_artifacts = Path(build_config.artifacts_path).resolve()
        args.extend(["-v", f"{host_artifacts}:{artifacts_target}"])

    args.extend(["-v", f"{volume}:{LAUNCHER_MOUNT}"])

    if build_config.memory_limit:
        args.extend(["--memory", build_config.memory_limit])

    for key, value in container_environment(build_config).items():
        args.extend(["-e", f"{key}={value}"])

    args.extend(["-w", SOURCE_DIR])
    args.extend(["--entrypoint", KEEPALIVE_COMMAND[0]])
    args.append(build_config.image)
    args.extend(KEEPALIVE_COMMAND[1:])
    return args


class DockerRunner:
    """Runner for Docker-compatible container runtimes.

    Args:
        launcher_image: Image providing the launcher binaries.
        launcher_version: Launcher image tag.
        cache_dir: Directory for provisioning locks.
        setup_timeout: Timeout for provisioning commands in seconds.
        step_timeout: Timeout for each step in seconds (None = no timeout).
        output: Stream receiving step output (inherits stdout if None).
        volume: Name of the launcher volume, one per launcher version by
            default.
    """

    def __init__(
        self,
        launcher_image: str,
        launcher_version: str,
        cache_dir: Path,
        setup_timeout: int | None = None,
        step_timeout: int | None = None,
        output: IO[str] | None = None,
        volume: str | None = None,
    ) -> None:
        self.launcher_image = launcher_image
        self.launcher_version = launcher_version
        self.cache_dir = cache_dir
        self.setup_timeout = setup_timeout
        self.step_timeout = step_timeout
        self.output = output
        self.volume = volume or launcher_volume_name(launcher_version)

    @property
    def launcher_ref(self) -> str:
        return f"{self.launcher_image}:{self.launcher_version}"

    def _run(
        self,
        runtime: RuntimeHandle,
        *args: str,
        timeout: float | None = QUERY_TIMEOUT,
    ) -> subprocess.CompletedProcess[str]:
        cmd = runtime.argv(*args)
        logger.debug("Executing: %s", " ".join(cmd[:6]))
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )

    def _check(
        self,
        runtime: RuntimeHandle,
        *args: str,
        timeout: float | None = QUERY_TIMEOUT,
    ) -> str:
        result = self._run(runtime, *args, timeout=timeout)
        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            raise SetupError(
                f"{runtime.name} {' '.join(args[:2])} failed: {stderr}",
                code="runtime_command_failed",
            )
        return result.stdout

    # Launcher provisioning

    def _volume_label(self, runtime: RuntimeHandle) -> str | None:
        """Return the launcher label of the volume, None if it does not exist."""
        result = self._run(
            runtime,
            "volume",
            "inspect",
            "--format",
            f'{{{{ index .Labels "{LAUNCHER_LABEL}" }}}}',
            self.volume,
        )
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def _ensure_image(self, runtime: RuntimeHandle) -> None:
        inspect = self._run(runtime, "image", "inspect", self.launcher_ref)
        if inspect.returncode == 0:
            logger.debug("Launcher image present: %s", self.launcher_ref)
            return
        logger.info("Pulling launcher image %s", self.launcher_ref)
        self._check(runtime, "image", "pull", self.launcher_ref, timeout=self.setup_timeout)

    def _populate_volume(self, runtime: RuntimeHandle) -> None:
        self._check(
            runtime,
            "volume",
            "create",
            "--label",
            f"{LAUNCHER_LABEL}={self.launcher_ref}",
            self.volume,
        )
        try:
            # Mounting an empty volume over /opt/sd copies the image content into it
            self._check(
                runtime,
                "container",
                "run",
                "--rm",
                "-v",
                f"{self.volume}:{LAUNCHER_MOUNT}",
                "--entrypoint",
                "/bin/echo",
                self.launcher_ref,
                "set up bin",
                timeout=self.setup_timeout,
            )
        except (SetupError, OSError, subprocess.TimeoutExpired):
            self._run(runtime, "volume", "rm", "--force", self.volume)
            raise

    def setup_bin(self, runtime: RuntimeHandle) -> None:
        """Make the launcher binaries available to build containers.

        Pulls the launcher image when it is missing and populates the
        launcher volume when it is absent or labelled with another launcher.
        Calling it again once satisfied does nothing.

        Raises:
            SetupError: If any provisioning command fails.
        """
        try:
            with launcher_lock(self.cache_dir, self.volume):
                label = self._volume_label(runtime)
                if label == self.launcher_ref:
                    logger.info("Using launcher volume %s (%s)", self.volume, label)
                    return

                self._ensure_image(runtime)

                if label is not None:
                    logger.info(
                        "Launcher volume %s holds %r, replacing with %s",
                        self.volume,
                        label,
                        self.launcher_ref,
                    )
                    self._check(runtime, "volume", "rm", self.volume)

                self._populate_volume(runtime)
                logger.info("Launcher %s ready in %s", self.launcher_ref, self.volume)

        except subprocess.TimeoutExpired as e:
            raise SetupError(
                f"Launcher setup timed out after {e.timeout} seconds",
                code="setup_timeout",
            ) from e
        except OSError as e:
            raise SetupError(f"Failed to execute {runtime.name}: {e}") from e

    # Build execution

    def _remove_container(self, runtime: RuntimeHandle, container: str) -> None:
        try:
            result = self._run(runtime, "container", "rm", "--force", container)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Failed to remove container %s: %s", container, e)
            return
        if result.returncode != 0:
            logger.warning(
                "Failed to remove container %s: %s",
                container,
                (result.stderr or "").strip(),
            )
        else:
            logger.debug("Removed container %s", container)

    @contextmanager
    def _build_container(
        self,
        runtime: RuntimeHandle,
        build_config: BuildConfiguration,
        src_path: Path,
    ) -> Iterator[str]:
        container = f"{CONTAINER_PREFIX}-{uuid.uuid4().hex[:12]}"
        args = compose_run_args(build_config, container, src_path, self.volume)
        try:
            try:
                result = self._run(runtime, *args)
            except subprocess.TimeoutExpired as e:
                raise RunBuildError(
                    f"Timed out starting build container from {build_config.image}",
                    code="container_start_timeout",
                ) from e
            except OSError as e:
                raise RunBuildError(
                    f"Failed to execute {runtime.name}: {e}",
                    code="execution_error",
                ) from e

            if result.returncode != 0:
                raise RunBuildError(
                    f"{runtime.name}: {(result.stderr or '').strip()}",
                    exit_code=result.returncode,
                    code="container_start_failed",
                )

            logger.info("Started container %s from %s", container, build_config.image)
            yield container
        finally:
            self._remove_container(runtime, container)

    def _exec_step(
        self,
        runtime: RuntimeHandle,
        container: str,
        name: str,
        command: str,
    ) -> StepResult:
        logger.info("Running step %s", name)
        started_at = datetime.now(timezone.utc)
        try:
            result = subprocess.run(
                runtime.argv(
                    "container",
                    "exec",
                    container,
                    "/bin/sh",
                    "-c",
                    STEP_SHELL,
                    "sd-step",
                    command,
                ),
                stdout=self.output,
                stderr=subprocess.STDOUT,
                timeout=self.step_timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise RunBuildError(
                f"Step {name} timed out after {self.step_timeout} seconds",
                exit_code=-1,
                code="build_timeout",
            ) from e
        except OSError as e:
            raise RunBuildError(
                f"Failed to execute step {name}: {e}",
                code="execution_error",
            ) from e

        return StepResult(
            name=name,
            exit_code=result.returncode,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
        )

    def run_build(
        self,
        build_config: BuildConfiguration,
        runtime: RuntimeHandle,
    ) -> BuildResult:
        """Run the build's steps in a fresh container.

        Steps run in declared order and stop at the first non-zero exit.
        The container is removed on every exit path, interrupts included.

        Returns:
            BuildResult for a build whose steps all succeeded.

        Raises:
            RunBuildError: If the container cannot be created or driven.
            StepFailure: If a step exits non-zero.
        """
        src_path = Path(build_config.src_path or Path.cwd()).resolve()
        result = BuildResult(
            status=BuildStatus.RUNNING,
            container="",
            started_at=datetime.now(timezone.utc),
        )

        with self._build_container(runtime, build_config, src_path) as container:
            result.container = container
            for step in build_config.steps:
                step_result = self._exec_step(runtime, container, step.name, step.command)
                result.steps.append(step_result)
                if not step_result.success:
                    result.status = BuildStatus.FAILED
                    result.finished_at = step_result.finished_at
                    logger.error(
                        "Step %s failed with exit code %d",
                        step.name,
                        step_result.exit_code,
                    )
                    raise StepFailure(step.name, step_result.exit_code, result)

        result.status = BuildStatus.SUCCEEDED
        result.finished_at = datetime.now(timezone.utc)
        return result


__all__ = [
    "BuildResult",
    "DockerRunner",
    "LAUNCHER_MOUNT",
    "LAUNCHER_VOLUME",
    "RunBuildError",
    "SOURCE_DIR",
    "STEP_SHELL",
    "SetupError",
    "StepFailure",
    "StepResult",
    "container_environment",
    "compose_run_args",
    "container_artifacts_dir",
    "launcher_lock",
    "launcher_volume_name",
]
