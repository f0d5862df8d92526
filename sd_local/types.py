"""Shared type definitions for sd_local.

Enums shared across subpackages live here to avoid circular imports.
"""

from enum import Enum


class BuildStatus(str, Enum):
    """Status of a build or of a single step."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class LaunchState(str, Enum):
    """Phase of the launch state machine."""

    IDLE = "idle"
    CAPABILITY_CHECKED = "capability_checked"
    PROVISIONED = "provisioned"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class RuntimeName(str, Enum):
    """Supported container runtime command-line entry points."""

    DOCKER = "docker"
    PODMAN = "podman"


__all__ = ["BuildStatus", "LaunchState", "RuntimeName"]
