"""Build configuration assembly.

This module handles:
- Layering system, job and user environment variables
- Resolving the artifacts directory inside the container
- Merging metadata from a JSON file and inline JSON
- Producing the immutable BuildConfiguration consumed by the runner
"""

from __future__ import annotations

import json
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from sd_local.launch.environment import EnvironmentSet
from sd_local.screwdriver.api import API_VERSION
from sd_local.screwdriver.models import Job, Step

logger = logging.getLogger(__name__)

ARTIFACTS_DIR_KEY = "SD_ARTIFACTS_DIR"
API_URL_KEY = "SD_API_URL"
STORE_URL_KEY = "SD_STORE_URL"
TOKEN_KEY = "SD_TOKEN"

DEFAULT_ARTIFACTS_DIR = "/sd/workspace/artifacts"
DEFAULT_HOST_ARTIFACTS_PATH = "sd-artifacts"
STORE_API_VERSION = "v1"


class MetadataParseError(Exception):
    """Raised when build metadata cannot be read or parsed."""

    def __init__(self, message: str, code: str = "metadata_parse_error") -> None:
        super().__init__(message)
        self.code = code


class OverrideConflictError(Exception):
    """Raised when overrides contradict each other."""

    def __init__(self, message: str, code: str = "override_conflict") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class ResolvedConfig:
    """Endpoints and credentials resolved from settings and the API."""

    api_url: str
    store_url: str
    jwt: str = ""
    launcher_image: str = ""
    launcher_version: str = ""


@dataclass(frozen=True)
class Overrides:
    """Per-invocation overrides, usually from CLI flags.

    Attributes:
        job_name: Name of the job to run.
        artifacts_dir: Explicit host artifacts directory, None when omitted.
            When given it is also exported verbatim as SD_ARTIFACTS_DIR.
        src_path: Host source checkout, None to default at run time.
        meta: Inline metadata as JSON text.
        meta_file: Path to a JSON metadata file.
        env_layers: User environment layers, lowest precedence first.
        memory_limit: Container memory limit (e.g. '2g').
        build_id: Build ID exposed to steps.
        event_id: Event ID exposed to steps.
        job_id: Job ID exposed to steps.
        parent_build_ids: Parent build IDs.
        sha: Source commit identifier.
    """

    job_name: str
    artifacts_dir: str | None = None
    src_path: str | None = None
    meta: str | None = None
    meta_file: Path | None = None
    env_layers: tuple[Mapping[str, str], ...] = ()
    memory_limit: str | None = None
    build_id: int = 0
    event_id: int = 0
    job_id: int = 0
    parent_build_ids: tuple[int, ...] = (0,)
    sha: str = "dummy"


@dataclass(frozen=True)
class BuildConfiguration:
    """Fully-resolved description of one local build."""

    build_id: int
    event_id: int
    job_id: int
    parent_build_ids: tuple[int, ...]
    sha: str
    environment: Mapping[str, str]
    meta: Mapping[str, Any]
    steps: tuple[Step, ...]
    image: str
    job_name: str
    artifacts_path: str
    src_path: str | None = None
    memory_limit: str | None = None
    env_layers: EnvironmentSet = field(default_factory=EnvironmentSet, compare=False)

    @property
    def artifacts_dir(self) -> str:
        """Artifacts directory as seen from inside the container."""
        return self.environment[ARTIFACTS_DIR_KEY]

    def __hash__(self) -> int:
        # Read-only mappings are unhashable; meta is left out of the hash
        return hash(
            (
                self.build_id,
                self.event_id,
                self.job_id,
                self.parent_build_ids,
                self.sha,
                frozenset(self.environment.items()),
                self.steps,
                self.image,
                self.job_name,
                self.artifacts_path,
                self.src_path,
                self.memory_limit,
            )
        )

    def to_launcher_dict(self) -> dict[str, Any]:
        """Payload describing the build to the launcher."""
        return {
            "id": self.build_id,
            "eventId": self.event_id,
            "jobId": self.job_id,
            "parentBuildId": list(self.parent_build_ids),
            "sha": self.sha,
            "meta": _thaw(self.meta),
            "steps": [step.model_dump() for step in self.steps],
            "environment": dict(self.environment),
        }

    def to_launcher_json(self) -> str:
        return json.dumps(self.to_launcher_dict())


def _freeze(value: Any) -> Any:
    """Recursively wrap mappings read-only and lists as tuples."""
    if isinstance(value, Mapping):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list | tuple):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: _thaw(v) for k, v in value.items()}
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


def _parse_meta_object(text: str, source: str) -> dict[str, Any]:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise MetadataParseError(f"Failed to parse {source} as JSON: {e}") from e
    if not isinstance(data, dict):
        raise MetadataParseError(
            f"Expected a JSON object in {source}, got {type(data).__name__}",
            code="metadata_not_object",
        )
    return data


def load_metadata(
    inline: str | None = None,
    meta_file: Path | None = None,
) -> dict[str, Any]:
    """Merge metadata from a file and inline JSON.

    The file is parsed first and inline keys are merged on top, so inline
    values win on collision.

    Args:
        inline: Metadata JSON text, or None.
        meta_file: Path to a metadata JSON file, or None.

    Returns:
        Merged metadata.

    Raises:
        MetadataParseError: If the file is missing or either source is not
            a JSON object.
    """
    meta: dict[str, Any] = {}

    if meta_file is not None:
        try:
            text = Path(meta_file).read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise MetadataParseError(
                f"Meta file not found: {meta_file}",
                code="metadata_file_not_found",
            ) from e
        except OSError as e:
            raise MetadataParseError(
                f"Failed to read meta file {meta_file}: {e}",
                code="metadata_file_unreadable",
            ) from e
        meta.update(_parse_meta_object(text, f"meta file {meta_file}"))

    if inline is not None:
        meta.update(_parse_meta_object(inline, "inline meta"))

    return meta


def _system_layer(config: ResolvedConfig, artifacts_dir: str) -> dict[str, str]:
    layer = {
        ARTIFACTS_DIR_KEY: artifacts_dir,
        API_URL_KEY: f"{config.api_url.rstrip('/')}/{API_VERSION}",
        STORE_URL_KEY: f"{config.store_url.rstrip('/')}/{STORE_API_VERSION}",
    }
    if config.jwt:
        layer[TOKEN_KEY] = config.jwt
    return layer


def _check_conflicts(config: ResolvedConfig, overrides: Overrides) -> None:
    for layer in overrides.env_layers:
        if (
            overrides.artifacts_dir is not None
            and ARTIFACTS_DIR_KEY in layer
            and layer[ARTIFACTS_DIR_KEY] != overrides.artifacts_dir
        ):
            raise OverrideConflictError(
                f"{ARTIFACTS_DIR_KEY}={layer[ARTIFACTS_DIR_KEY]!r} conflicts with "
                f"artifacts dir override {overrides.artifacts_dir!r}"
            )
        if config.jwt and TOKEN_KEY in layer:
            raise OverrideConflictError(
                f"{TOKEN_KEY} cannot be overridden while a build token is issued",
                code="token_override",
            )

    if len(set(overrides.parent_build_ids)) != len(overrides.parent_build_ids):
        raise OverrideConflictError(
            f"Duplicate parent build IDs: {list(overrides.parent_build_ids)}",
            code="duplicate_parent_build",
        )


def build_environment(
    job: Job,
    config: ResolvedConfig,
    overrides: Overrides,
) -> EnvironmentSet:
    """Assemble the environment layers for a build.

    Layers, lowest precedence first: system-injected values, job-declared
    environment, then user layers. An explicit artifacts directory override
    is applied last.
    """
    explicit = overrides.artifacts_dir is not None
    artifacts_dir = overrides.artifacts_dir if explicit else DEFAULT_ARTIFACTS_DIR

    env = EnvironmentSet([_system_layer(config, artifacts_dir), job.environment])
    for layer in overrides.env_layers:
        env = env.with_layer(layer)
    if explicit:
        env = env.with_layer({ARTIFACTS_DIR_KEY: artifacts_dir})
    return env


def assemble(
    job: Job,
    config: ResolvedConfig,
    overrides: Overrides,
) -> BuildConfiguration:
    """Assemble the build configuration for one invocation.

    Args:
        job: Job definition from the API.
        config: Resolved endpoints and credentials.
        overrides: Per-invocation overrides.

    Returns:
        Immutable BuildConfiguration.

    Raises:
        MetadataParseError: If metadata cannot be read or parsed.
        OverrideConflictError: If overrides contradict each other.
    """
    _check_conflicts(config, overrides)

    meta = load_metadata(overrides.meta, overrides.meta_file)
    env = build_environment(job, config, overrides)

    build_config = BuildConfiguration(
        build_id=overrides.build_id,
        event_id=overrides.event_id,
        job_id=overrides.job_id,
        parent_build_ids=tuple(overrides.parent_build_ids),
        sha=overrides.sha,
        environment=MappingProxyType(env.flatten()),
        meta=_freeze(meta),
        steps=tuple(job.steps),
        image=job.image,
        job_name=overrides.job_name,
        artifacts_path=(
            overrides.artifacts_dir
            if overrides.artifacts_dir is not None
            else DEFAULT_HOST_ARTIFACTS_PATH
        ),
        src_path=overrides.src_path,
        memory_limit=overrides.memory_limit,
        env_layers=env,
    )

    logger.debug(
        "Assembled build config for job %s (image %s, %d steps)",
        build_config.job_name,
        build_config.image,
        len(build_config.steps),
    )
    return build_config


__all__ = [
    "ARTIFACTS_DIR_KEY",
    "API_URL_KEY",
    "BuildConfiguration",
    "DEFAULT_ARTIFACTS_DIR",
    "DEFAULT_HOST_ARTIFACTS_PATH",
    "MetadataParseError",
    "OverrideConflictError",
    "Overrides",
    "ResolvedConfig",
    "STORE_URL_KEY",
    "TOKEN_KEY",
    "assemble",
    "build_environment",
    "load_metadata",
]
