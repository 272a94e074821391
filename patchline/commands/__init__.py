"""CLI command implementations for patchline.

- versions: List versions offered by every source
- update: Update an installation, show or reset its checkpoint
- mirrors: Manage mirror descriptors
"""

from patchline.commands.mirrors import mirrors_group
from patchline.commands.update import reset, status, update
from patchline.commands.versions import versions

__all__ = ["mirrors_group", "reset", "status", "update", "versions"]
