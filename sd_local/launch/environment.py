"""Layered environment variables for a build.

Layers are ordered from lowest to highest precedence (system-injected,
job-declared, user-declared). Flattening collapses them with
last-write-wins semantics.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Iterator, Mapping
from pathlib import Path
from types import MappingProxyType

ENV_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class EnvFileError(Exception):
    """Raised when an env file cannot be parsed."""

    def __init__(self, message: str, code: str = "env_file_error") -> None:
        super().__init__(message)
        self.code = code


def flatten(layers: Iterable[Mapping[str, str]]) -> dict[str, str]:
    """Collapse ordered layers into one mapping.

    The value from the last layer defining a key wins. Keys keep the position
    of their first appearance.

    Args:
        layers: Mappings ordered from lowest to highest precedence.

    Returns:
        Flattened environment.
    """
    result: dict[str, str] = {}
    for layer in layers:
        result.update(layer)
    return result


class EnvironmentSet:
    """Immutable ordered sequence of environment layers."""

    __slots__ = ("_layers",)

    def __init__(self, layers: Iterable[Mapping[str, str]] = ()) -> None:
        self._layers: tuple[Mapping[str, str], ...] = tuple(
            MappingProxyType(dict(layer)) for layer in layers
        )

    @classmethod
    def from_flat(cls, mapping: Mapping[str, str]) -> EnvironmentSet:
        """Build a single-layer set from a flat mapping."""
        return cls([mapping])

    @property
    def layers(self) -> tuple[Mapping[str, str], ...]:
        return self._layers

    def with_layer(self, layer: Mapping[str, str]) -> EnvironmentSet:
        """Return a new set with `layer` appended at the highest precedence."""
        return EnvironmentSet((*self._layers, layer))

    def flatten(self) -> dict[str, str]:
        return flatten(self._layers)

    to_flat = flatten

    def __iter__(self) -> Iterator[Mapping[str, str]]:
        return iter(self._layers)

    def __len__(self) -> int:
        return len(self._layers)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, EnvironmentSet):
            return NotImplemented
        return [dict(layer) for layer in self._layers] == [
            dict(layer) for layer in other._layers
        ]

    def __hash__(self) -> int:
        return hash(tuple(tuple(layer.items()) for layer in self._layers))

    def __repr__(self) -> str:
        return f"EnvironmentSet({[dict(layer) for layer in self._layers]!r})"


def parse_env_pairs(pairs: Iterable[str]) -> dict[str, str]:
    """Parse `KEY=VALUE` strings as given on the command line.

    Raises:
        EnvFileError: If a pair has no '=' or an invalid name.
    """
    result: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not sep or not ENV_NAME_PATTERN.match(key):
            raise EnvFileError(
                f"Invalid environment variable '{pair}', expected KEY=VALUE",
                code="invalid_env_pair",
            )
        result[key] = value
    return result


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def parse_env_file(path: Path) -> dict[str, str]:
    """Parse a `.env` format file.

    Blank lines and `#` comments are skipped, an `export ` prefix is allowed
    and surrounding quotes are stripped from values.

    Args:
        path: Path to the env file.

    Returns:
        Variables in file order.

    Raises:
        EnvFileError: If the file is missing or a line is malformed.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise EnvFileError(f"Failed to read env file {path}: {e}") from e

    result: dict[str, str] = {}
    for lineno, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()

        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not ENV_NAME_PATTERN.match(key):
            raise EnvFileError(
                f"{path}:{lineno}: expected KEY=VALUE, got '{raw}'",
                code="invalid_env_line",
            )
        result[key] = _unquote(value.strip())
    return result


__all__ = [
    "EnvFileError",
    "EnvironmentSet",
    "flatten",
    "parse_env_file",
    "parse_env_pairs",
]
