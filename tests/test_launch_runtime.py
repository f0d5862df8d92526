"""Tests for launch/runtime.py module."""

import pytest

from sd_local.launch.runtime import RuntimeHandle, RuntimeNotFoundError, check_runtime


def fake_which(found: dict[str, str]):
    """Create a lookup function resolving only the given commands."""
    return lambda cmd: found.get(cmd)


class TestCheckRuntime:
    """Tests for check_runtime function."""

    def test_resolves_runtime(self):
        """Should return a handle with the resolved path."""
        handle = check_runtime(which=fake_which({"docker": "/bin/docker"}))

        assert handle == RuntimeHandle(path="/bin/docker", name="docker")

    def test_not_found(self):
        """Should raise with the lookup diagnostic."""
        with pytest.raises(RuntimeNotFoundError) as exc_info:
            check_runtime(which=fake_which({}))

        assert str(exc_info.value) == (
            'exec: "docker": executable file not found in $PATH'
        )
        assert exc_info.value.command == "docker"
        assert exc_info.value.code == "runtime_not_found"

    def test_podman(self):
        """Should resolve an alternative runtime name."""
        handle = check_runtime("podman", which=fake_which({"podman": "/usr/bin/podman"}))
        assert handle.name == "podman"
        assert handle.path == "/usr/bin/podman"

    def test_sudo_resolved(self):
        """Should resolve sudo when escalation is requested."""
        handle = check_runtime(
            use_sudo=True,
            which=fake_which({"docker": "/bin/docker", "sudo": "/usr/bin/sudo"}),
        )
        assert handle.use_sudo is True
        assert handle.sudo_path == "/usr/bin/sudo"

    def test_sudo_missing(self):
        """Should fail when sudo is requested but missing."""
        with pytest.raises(RuntimeNotFoundError) as exc_info:
            check_runtime(use_sudo=True, which=fake_which({"docker": "/bin/docker"}))
        assert exc_info.value.command == "sudo"


class TestRuntimeHandle:
    """Tests for RuntimeHandle.argv."""

    def test_argv(self):
        """Should prefix the runtime path."""
        handle = RuntimeHandle(path="/bin/docker")
        assert handle.argv("ps", "-a") == ["/bin/docker", "ps", "-a"]

    def test_argv_with_sudo(self):
        """Should prefix sudo when escalated."""
        handle = RuntimeHandle(
            path="/bin/docker", use_sudo=True, sudo_path="/usr/bin/sudo"
        )
        assert handle.argv("ps") == ["/usr/bin/sudo", "-E", "/bin/docker", "ps"]
