"""Container runtime discovery.

Resolves the container runtime's command-line entry point on the host
search path before any provisioning or container work starts.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)

Which = Callable[[str], "str | None"]


class RuntimeNotFoundError(Exception):
    """Raised when the container runtime executable cannot be resolved."""

    def __init__(
        self,
        message: str,
        command: str = "docker",
        code: str = "runtime_not_found",
    ) -> None:
        super().__init__(message)
        self.command = command
        self.code = code


@dataclass(frozen=True)
class RuntimeHandle:
    """Resolved container runtime entry point.

    Attributes:
        path: Absolute path of the runtime executable.
        name: Command name the path was resolved from.
        use_sudo: Invoke the runtime through sudo.
        sudo_path: Absolute path of sudo when `use_sudo` is set.
    """

    path: str
    name: str = "docker"
    use_sudo: bool = False
    sudo_path: str | None = None

    def argv(self, *args: str) -> list[str]:
        """Compose a runtime command line."""
        prefix = [self.sudo_path or "sudo", "-E"] if self.use_sudo else []
        return [*prefix, self.path, *args]


def _not_found(command: str) -> str:
    return f'exec: "{command}": executable file not found in $PATH'


def check_runtime(
    name: str = "docker",
    use_sudo: bool = False,
    which: Which | None = None,
) -> RuntimeHandle:
    """Resolve the container runtime on the host search path.

    Args:
        name: Runtime command name.
        use_sudo: Whether the runtime must be invoked through sudo.
        which: Lookup function, `shutil.which` if not provided.

    Returns:
        RuntimeHandle for the resolved executable.

    Raises:
        RuntimeNotFoundError: If the runtime (or sudo when requested) is not
            found.
    """
    if which is None:
        which = shutil.which

    path = which(name)
    if not path:
        raise RuntimeNotFoundError(_not_found(name), command=name)

    sudo_path: str | None = None
    if use_sudo:
        sudo_path = which("sudo")
        if not sudo_path:
            raise RuntimeNotFoundError(_not_found("sudo"), command="sudo")

    logger.debug("Resolved %s at %s (sudo=%s)", name, path, use_sudo)
    return RuntimeHandle(path=path, name=name, use_sudo=use_sudo, sudo_path=sudo_path)


__all__ = ["RuntimeHandle", "RuntimeNotFoundError", "Which", "check_runtime"]
