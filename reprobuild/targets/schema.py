"""Pydantic models for target registry validation.

A target is one (OS, architecture, toolchain) build configuration. Targets
are loaded once and never mutated, so the models are frozen.
"""

import re
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from reprobuild.types import ArchiveKind

TARGET_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9_.\-]*$")


class TargetSchema(BaseModel):
    """Schema for a single build target.

    Attributes:
        id: Unique stable identifier (e.g. 'linux-x86_64').
        name: Human-readable name.
        host_triple: GNU host triple passed to the depends system.
        container_image: Image providing the target's toolchain.
        strip_tool: Symbol stripping tool for this target.
        strip_flags: Options passed to the strip tool.
        strip_glob: Glob (relative to the install root) of files to strip.
        archive_kind: Release archive format.
        toolchain: Compiler driver probed before configuring, if any.
        extra_flags: Target-specific configure arguments.
        depends_flags: Extra variables passed to the depends build.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    id: Annotated[str, Field(min_length=1, max_length=64)]
    name: str | None = Field(default=None, description="Display name")
    host_triple: Annotated[str, Field(min_length=1, max_length=100)]
    container_image: Annotated[str, Field(min_length=1, max_length=255)]
    strip_tool: Annotated[str, Field(min_length=1, max_length=255)]
    strip_flags: tuple[str, ...] = ()
    strip_glob: str = "bin/*"
    archive_kind: ArchiveKind = ArchiveKind.TAR_GZ
    toolchain: str | None = None
    extra_flags: tuple[str, ...] = ()
    depends_flags: tuple[str, ...] = ()

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate id matches the safe pattern."""
        if not TARGET_ID_PATTERN.match(v):
            raise ValueError(
                f"id must match pattern {TARGET_ID_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("container_image", "strip_tool", "host_triple")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Reject whitespace-only values."""
        if not v.strip():
            raise ValueError("must not be blank")
        return v

    @property
    def display_name(self) -> str:
        """Name shown in reports."""
        return self.name or self.id


class RegistrySchema(BaseModel):
    """Schema of a registry file: a list of targets with unique ids."""

    model_config = ConfigDict(extra="forbid")

    targets: list[TargetSchema] = Field(min_length=1)

    @model_validator(mode="after")
    def validate_unique_ids(self) -> "RegistrySchema":
        """Reject duplicate target ids."""
        seen: set[str] = set()
        duplicates: list[str] = []
        for target in self.targets:
            if target.id in seen:
                duplicates.append(target.id)
            seen.add(target.id)
        if duplicates:
            raise ValueError(f"duplicate target ids: {', '.join(sorted(duplicates))}")
        return self


__all__ = ["TARGET_ID_PATTERN", "RegistrySchema", "TargetSchema"]
