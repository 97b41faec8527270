"""Target registry: the static catalog of build targets.

The registry is loaded once, validated, and read-only afterwards. It can be
loaded from a YAML file of the form::

    targets:
      - id: linux-x86_64
        host_triple: x86_64-pc-linux-gnu
        container_image: builder:linux-x86_64
        strip_tool: strip
        archive_kind: tar.gz

or from the built-in catalog when no file is configured.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from reprobuild.errors import ConfigurationError
from reprobuild.targets.schema import RegistrySchema, TargetSchema

logger = logging.getLogger(__name__)

# Selector meaning "every registered target"
ALL_TARGETS = "all"

BUILTIN_TARGETS: list[dict[str, Any]] = [
    {
        "id": "linux-x86_64",
        "name": "Linux x86_64",
        "host_triple": "x86_64-pc-linux-gnu",
        "container_image": "reprobuild-builder:linux-x86_64",
        "strip_tool": "strip",
        "archive_kind": "tar.gz",
        "toolchain": "g++",
        "extra_flags": ["--enable-hardening"],
    },
    {
        "id": "windows-x64",
        "name": "Windows x64",
        "host_triple": "x86_64-w64-mingw32",
        "container_image": "reprobuild-builder:windows-x64",
        "strip_tool": "x86_64-w64-mingw32-strip",
        "strip_glob": "bin/*.exe",
        "archive_kind": "zip",
        "toolchain": "x86_64-w64-mingw32-g++",
    },
    {
        "id": "linux-aarch64",
        "name": "Linux ARM64",
        "host_triple": "aarch64-linux-gnu",
        "container_image": "reprobuild-builder:linux-aarch64",
        "strip_tool": "aarch64-linux-gnu-strip",
        "archive_kind": "tar.gz",
        "toolchain": "aarch64-linux-gnu-g++",
    },
    {
        "id": "linux-armv7",
        "name": "Linux ARMv7",
        "host_triple": "arm-linux-gnueabihf",
        "container_image": "reprobuild-builder:linux-armv7",
        "strip_tool": "arm-linux-gnueabihf-strip",
        "archive_kind": "tar.gz",
        "toolchain": "arm-linux-gnueabihf-g++",
    },
]


class RegistryError(ConfigurationError):
    """Raised when the registry is invalid or a target id is unknown."""

    def __init__(self, message: str, code: str = "registry_error") -> None:
        super().__init__(message, code=code)


class TargetRegistry:
    """Read-only, ordered catalog of build targets."""

    def __init__(self, targets: Iterable[TargetSchema]) -> None:
        self._targets: dict[str, TargetSchema] = {}
        for target in targets:
            if target.id in self._targets:
                raise RegistryError(
                    f"Duplicate target id: {target.id}", code="duplicate_target"
                )
            self._targets[target.id] = target
        if not self._targets:
            raise RegistryError("Registry contains no targets", code="empty_registry")

    @classmethod
    def from_data(cls, data: dict[str, Any]) -> TargetRegistry:
        """Build a registry from parsed YAML/JSON data.

        Raises:
            RegistryError: If the data fails validation.
        """
        try:
            schema = RegistrySchema.model_validate(data)
        except ValidationError as e:
            raise RegistryError(
                f"Invalid target registry: {e}", code="invalid_registry"
            ) from e
        return cls(schema.targets)

    @classmethod
    def from_file(cls, path: Path) -> TargetRegistry:
        """Load a registry from a YAML file.

        Raises:
            RegistryError: If the file cannot be read or is invalid.
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise RegistryError(
                f"Cannot read target registry {path}: {e}", code="registry_unreadable"
            ) from e
        if not isinstance(data, dict):
            raise RegistryError(
                f"Expected a YAML mapping in {path}, got {type(data).__name__}",
                code="invalid_registry",
            )
        registry = cls.from_data(data)
        logger.debug("Loaded %d targets from %s", len(registry), path)
        return registry

    @classmethod
    def builtin(cls) -> TargetRegistry:
        """Return the built-in target catalog."""
        return cls.from_data({"targets": BUILTIN_TARGETS})

    def list_targets(self) -> list[TargetSchema]:
        """Return all targets in registry order."""
        return list(self._targets.values())

    def get(self, target_id: str) -> TargetSchema:
        """Return the target with the given id.

        Raises:
            RegistryError: If the id is unknown.
        """
        try:
            return self._targets[target_id]
        except KeyError:
            known = ", ".join(self._targets)
            raise RegistryError(
                f"Unknown target: {target_id} (known: {known})",
                code="unknown_target",
            ) from None

    def select(self, target_ids: Iterable[str] | None) -> list[TargetSchema]:
        """Resolve a target selection, preserving registry order.

        An empty selection or the word 'all' selects every target.

        Raises:
            RegistryError: If any id is unknown.
        """
        ids = list(target_ids or [])
        if not ids or ALL_TARGETS in ids:
            return self.list_targets()
        wanted = {self.get(target_id).id for target_id in ids}
        return [t for t in self._targets.values() if t.id in wanted]

    def __contains__(self, target_id: object) -> bool:
        return target_id in self._targets

    def __iter__(self) -> Iterator[TargetSchema]:
        return iter(self._targets.values())

    def __len__(self) -> int:
        return len(self._targets)


def load_registry(path: Path | None = None) -> TargetRegistry:
    """Load the registry from ``path``, or the built-in catalog if None."""
    if path is None:
        return TargetRegistry.builtin()
    return TargetRegistry.from_file(path)


__all__ = [
    "ALL_TARGETS",
    "BUILTIN_TARGETS",
    "RegistryError",
    "TargetRegistry",
    "load_registry",
]
