"""Mirror descriptor schema.

A mirror is configured entirely by one ``*.mirror.json`` file; no code is
written per mirror operator. Keys are camelCase on disk and snake_case in
Python.
"""

from __future__ import annotations

import json
import re
from enum import StrEnum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from patchline.core.errors import DescriptorError
from patchline.core.utils import normalize_branch

SCHEMA_VERSION = 1
MIN_MIRROR_PRIORITY = 100
DESCRIPTOR_SUFFIX = ".mirror.json"

_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")


class MirrorLayout(StrEnum):
    """How a mirror addresses its artifacts."""
    PATTERN = "pattern"
    JSON_INDEX = "json-index"


class DiscoveryMethod(StrEnum):
    """How a pattern mirror discovers available versions."""
    STATIC_LIST = "static-list"
    HTML_AUTOINDEX = "html-autoindex"
    JSON_API = "json-api"


class IndexStructure(StrEnum):
    """Shape of a full-index platform node."""
    FLAT = "flat"
    GROUPED = "grouped"


class _DescriptorModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _normalize_branches(branches: list[str]) -> list[str]:
    return [normalize_branch(b) for b in branches]


class VersionDiscovery(_DescriptorModel):
    """Version discovery strategy of a pattern mirror."""

    method: DiscoveryMethod = Field(default=DiscoveryMethod.JSON_API, description="Discovery method")
    url: str | None = Field(
        default=None,
        description="Listing URL; supports {base} {os} {arch} {branch}"
    )
    json_path: str | None = Field(
        default=None,
        description='Path to versions in a JSON response: "$root", "versions", "items[].version"'
    )
    html_pattern: str | None = Field(
        default=None,
        description="Regex: group 1 = version, optional group 2 = size in bytes"
    )
    min_file_size_bytes: int = Field(default=0, ge=0, description="Reject listed files smaller than this")
    static_versions: list[int] = Field(default_factory=list, description="Fixed version list")

    @field_validator("html_pattern")
    @classmethod
    def validate_html_pattern(cls, v: str | None) -> str | None:
        """Validate the listing regex."""
        if v is None:
            return v
        try:
            compiled = re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid htmlPattern: {e}") from e
        if compiled.groups < 1:
            raise ValueError("htmlPattern must capture the version in group 1")
        return v

    @model_validator(mode="after")
    def validate_method_requirements(self) -> VersionDiscovery:
        """Check that the fields the chosen method needs are present."""
        if self.method == DiscoveryMethod.STATIC_LIST:
            if not self.static_versions:
                raise ValueError("static-list discovery requires staticVersions")
        elif not self.url:
            raise ValueError(f"{self.method} discovery requires url")
        elif self.method == DiscoveryMethod.HTML_AUTOINDEX and not self.html_pattern:
            raise ValueError("html-autoindex discovery requires htmlPattern")
        return self


class PatternLayout(_DescriptorModel):
    """URL-template mirror configuration."""

    base_url: str = Field(default="", description="Substituted for {base}")
    full_build_url: str = Field(
        default="{base}/{os}/{arch}/{branch}/0/{version}.pwr",
        description="Full build URL template"
    )
    diff_patch_url: str | None = Field(default=None, description="Diff URL template")
    signature_url: str | None = Field(default=None, description="Signature URL template")
    os_mapping: dict[str, str] = Field(default_factory=dict, description="OS name overrides")
    arch_mapping: dict[str, str] = Field(default_factory=dict, description="Arch name overrides")
    branch_mapping: dict[str, str] = Field(default_factory=dict, description="Branch name overrides")
    diff_based_branches: list[str] = Field(
        default_factory=list,
        description="Branches with no full builds"
    )
    version_discovery: VersionDiscovery = Field(..., description="Version discovery strategy")

    @field_validator("diff_based_branches")
    @classmethod
    def validate_diff_based_branches(cls, v: list[str]) -> list[str]:
        """Normalize branch names."""
        return _normalize_branches(v)


class FileNamePattern(_DescriptorModel):
    """Templates used to parse full-index file names back into versions."""

    full: str = Field(default="v{version}-{os}-{arch}.pwr", description="Full build file name")
    diff: str = Field(default="v{from}~{to}-{os}-{arch}.pwr", description="Diff file name")

    @field_validator("full")
    @classmethod
    def validate_full(cls, v: str) -> str:
        """A full build name encodes exactly one version."""
        if "{version}" not in v:
            raise ValueError("full file name pattern requires {version}")
        return v

    @field_validator("diff")
    @classmethod
    def validate_diff(cls, v: str) -> str:
        """A diff name encodes both ends."""
        if "{from}" not in v or "{to}" not in v:
            raise ValueError("diff file name pattern requires {from} and {to}")
        return v


class JsonIndexLayout(_DescriptorModel):
    """Single-endpoint full-index mirror configuration."""

    api_url: str = Field(..., description="Index endpoint")
    root_path: str = Field(default="hytale", description="Top-level property of the index")
    structure: IndexStructure = Field(default=IndexStructure.FLAT, description="flat or grouped")
    platform_mapping: dict[str, str] = Field(default_factory=dict, description="OS to platform key")
    file_name_pattern: FileNamePattern = Field(default_factory=FileNamePattern)
    diff_based_branches: list[str] = Field(
        default_factory=list,
        description="Branches with no full builds"
    )

    @field_validator("diff_based_branches")
    @classmethod
    def validate_diff_based_branches(cls, v: list[str]) -> list[str]:
        """Normalize branch names."""
        return _normalize_branches(v)

    @field_validator("api_url")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        """Validate the index URL."""
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"Invalid apiUrl: {v}")
        return v


class SpeedTest(_DescriptorModel):
    """Connectivity probe settings."""

    ping_url: str | None = Field(default=None, description="URL probed with HEAD")
    ping_timeout_seconds: float = Field(default=5, gt=0, description="Probe timeout")


class CachePolicy(_DescriptorModel):
    """Mirror-specific cache lifetimes."""

    index_ttl_minutes: int = Field(default=30, ge=0, description="Version and index TTL")
    speed_test_ttl_minutes: int = Field(default=60, ge=0, description="Probe result TTL")


class MirrorDescriptor(_DescriptorModel):
    """One ``*.mirror.json`` file."""

    schema_version: int = Field(default=SCHEMA_VERSION, description="Descriptor schema version")
    id: str = Field(..., description="Unique source id")
    name: str = Field(default="", description="Display name")
    description: str | None = Field(default=None, description="Free-form description")
    priority: int = Field(default=MIN_MIRROR_PRIORITY, ge=MIN_MIRROR_PRIORITY)
    enabled: bool = Field(default=False, description="Only descriptors with enabled: true are loaded")
    source_type: MirrorLayout = Field(default=MirrorLayout.PATTERN, description="Layout variant")
    pattern: PatternLayout | None = None
    json_index: JsonIndexLayout | None = None
    speed_test: SpeedTest = Field(default_factory=SpeedTest)
    cache: CachePolicy = Field(default_factory=CachePolicy)

    @field_validator("schema_version")
    @classmethod
    def validate_schema_version(cls, v: int) -> int:
        """Reject unknown schema versions."""
        if v != SCHEMA_VERSION:
            raise ValueError(f"Unsupported schemaVersion {v}, expected {SCHEMA_VERSION}")
        return v

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Ids double as file names and cache keys."""
        if not _ID_RE.match(v):
            raise ValueError(f"Invalid mirror id: {v!r}")
        return v

    @model_validator(mode="after")
    def validate_layout(self) -> MirrorDescriptor:
        """The block matching ``sourceType`` must be present."""
        if self.source_type == MirrorLayout.PATTERN and self.pattern is None:
            raise ValueError("sourceType 'pattern' requires a pattern block")
        if self.source_type == MirrorLayout.JSON_INDEX and self.json_index is None:
            raise ValueError("sourceType 'json-index' requires a jsonIndex block")
        if not self.name:
            self.name = self.id
        return self

    @property
    def diff_based_branches(self) -> list[str]:
        """Branches this mirror serves only as diff chains."""
        layout = self.pattern if self.source_type == MirrorLayout.PATTERN else self.json_index
        return list(layout.diff_based_branches) if layout is not None else []

    @property
    def file_name(self) -> str:
        """Canonical file name for this descriptor."""
        return f"{self.id}{DESCRIPTOR_SUFFIX}"

    @classmethod
    def from_dict(cls, data: Any) -> MirrorDescriptor:
        """Validate a parsed descriptor.

        Raises:
            DescriptorError: If the data does not match the schema
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise DescriptorError(f"Invalid mirror descriptor: {e}") from e

    @classmethod
    def from_file(cls, path: Path) -> MirrorDescriptor:
        """Read and validate a descriptor file.

        Raises:
            DescriptorError: If the file is unreadable, not JSON, or invalid
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise DescriptorError(f"Cannot read {path.name}: {e}") from e
        return cls.from_dict(data)

    def to_dict(self) -> dict[str, Any]:
        """Serialize with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
