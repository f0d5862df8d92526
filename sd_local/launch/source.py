"""Remote source checkout.

Clones a repository given as `<url>[#<branch>]` into a local directory
that is then mounted as the build's source root.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)


class SourceCheckoutError(Exception):
    """Raised when a remote source cannot be checked out."""

    def __init__(self, message: str, code: str = "source_checkout_error") -> None:
        super().__init__(message)
        self.code = code


def parse_src_url(src_url: str) -> tuple[str, str | None]:
    """Split a source URL into repository URL and optional branch.

    Args:
        src_url: Repository URL, optionally suffixed with `#<branch>`.

    Returns:
        Tuple of (repository URL, branch or None).

    Raises:
        SourceCheckoutError: If the repository URL is empty.
    """
    url, _, branch = src_url.partition("#")
    if not url:
        raise SourceCheckoutError(
            f"Invalid source URL: {src_url!r}", code="invalid_src_url"
        )
    return url, branch or None


def clone_source(
    src_url: str,
    dest: Path,
    timeout: float | None = None,
) -> Path:
    """Clone a remote repository for a local build.

    Args:
        src_url: Repository URL, optionally suffixed with `#<branch>`.
        dest: Directory to clone into (must not exist or be empty).
        timeout: Clone timeout in seconds (None = no timeout).

    Returns:
        Path of the checkout.

    Raises:
        SourceCheckoutError: If git is missing or the clone fails.
    """
    url, branch = parse_src_url(src_url)
    cmd = ["git", "clone", "--depth", "1"]
    if branch:
        cmd.extend(["--branch", branch])
    cmd.extend([url, str(dest)])

    logger.info("Cloning %s%s", url, f" ({branch})" if branch else "")
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as e:
        raise SourceCheckoutError(
            "git command not found in $PATH", code="git_not_found"
        ) from e
    except subprocess.TimeoutExpired as e:
        raise SourceCheckoutError(
            f"Cloning {url} timed out after {timeout} seconds",
            code="clone_timeout",
        ) from e

    if result.returncode != 0:
        raise SourceCheckoutError(
            f"git clone {url} failed: {(result.stderr or '').strip()}",
            code="clone_failed",
        )
    return dest


__all__ = ["SourceCheckoutError", "clone_source", "parse_src_url"]
