"""Patchline - resumable game updates from official and community sources.

Key modules:
- core: Download engine, version resolver, update orchestrator
- sources: Official API and mirror version sources
- commands: CLI command implementations
"""

__version__ = "0.1.0"

from patchline.core.types import (
    ArtifactKind,
    PatchStep,
    ProgressEvent,
    SourceKind,
    UpdatePlan,
    UpdateState,
    UpdateStep,
)

__all__ = [
    "__version__",
    "ArtifactKind",
    "PatchStep",
    "ProgressEvent",
    "SourceKind",
    "UpdatePlan",
    "UpdateState",
    "UpdateStep",
]
