"""Source pinning module.

Resolves requested revisions to immutable commits and materializes the
corresponding source trees.
"""

from reprobuild.source.pinning import (
    CommitPinningController,
    PinnedRevision,
    PinningError,
)

__all__ = ["CommitPinningController", "PinnedRevision", "PinningError"]
