"""Core type definitions for patchline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class SourceKind(StrEnum):
    """How a version source discovers and addresses artifacts."""
    OFFICIAL = "official"
    PATTERN = "pattern"
    FULL_INDEX = "full-index"


class ArtifactKind(StrEnum):
    """Kind of artifact a single update step downloads."""
    FULL = "full"
    DIFF = "diff"


class UpdateState(StrEnum):
    """Update orchestrator lifecycle states."""
    IDLE = "idle"
    RESOLVING = "resolving"
    FETCHING_STEP = "fetching-step"
    APPLYING_STEP = "applying-step"
    CHECKPOINTED = "checkpointed"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Capabilities(BaseModel):
    """Artifact kinds a source can serve."""
    has_full_builds: bool = Field(default=True, description="Serves complete builds")
    has_diff_patches: bool = Field(default=True, description="Serves version-to-version diffs")

    model_config = ConfigDict(frozen=True)


class PatchStep(BaseModel):
    """One link of a patch chain: a diff from one version to the next."""
    from_version: int = Field(..., ge=0, description="Version the diff applies to")
    to_version: int = Field(..., ge=0, description="Version the diff produces")
    source_id: str = Field(..., description="Source that offers the diff")
    url: str | None = Field(None, description="Resolved artifact URL, if known")

    model_config = ConfigDict(frozen=True)

    @property
    def is_contiguous(self) -> bool:
        """Whether the step advances exactly one version."""
        return self.to_version == self.from_version + 1


class SourceLayoutInfo(BaseModel):
    """Diagnostic description of where a source keeps its artifacts."""
    full_build_location: str = Field(..., description="Where full builds live")
    diff_location: str = Field(..., description="Where diff patches live")
    cache_policy: str = Field(..., description="The source's own caching policy")


class ProbeResult(BaseModel):
    """Connectivity check result for a source."""
    source_id: str
    url: str
    available: bool = False
    latency_ms: int | None = None
    tested_at: float = 0.0
    error: str | None = None


@dataclass
class ProgressEvent:
    """Progress notification consumed by the presentation layer.

    Attributes:
        phase: Phase name (e.g. "resolve", "download", "apply")
        percent: Overall progress, 0-100
        message_key: Localisation key for a human-readable message
        bytes_downloaded: Bytes downloaded for the current artifact
        bytes_total: Advertised size of the current artifact, 0 if unknown
        args: Positional values for the message template
    """

    phase: str
    percent: int
    message_key: str
    bytes_downloaded: int = 0
    bytes_total: int = 0
    args: list[object] = field(default_factory=lambda: list[object]())


@dataclass
class UpdateStep:
    """A planned unit of work: download one artifact and apply it."""

    kind: ArtifactKind
    from_version: int | None
    to_version: int

    @property
    def label(self) -> str:
        """Short human-readable form, e.g. ``v4~5`` or ``v8``."""
        if self.kind == ArtifactKind.FULL:
            return f"v{self.to_version}"
        return f"v{self.from_version}~{self.to_version}"


@dataclass
class UpdatePlan:
    """Ordered operations needed to move a branch to a target version."""

    branch: str
    installed_version: int | None
    target_version: int
    steps: list[UpdateStep] = field(default_factory=lambda: list[UpdateStep]())

    @property
    def is_full_replace(self) -> bool:
        """Whether the plan is a single full-build replacement."""
        return len(self.steps) == 1 and self.steps[0].kind == ArtifactKind.FULL

    @property
    def versions(self) -> list[int]:
        """Target version of each step in order."""
        return [step.to_version for step in self.steps]
