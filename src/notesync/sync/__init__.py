"""
Note synchronization -- story, merge and encryption.

The cloud holds one encrypted blob. Every device downloads it,
opens it with the transfer code, merges it with its own notes and
puts the result back. The cloud never learns a thing.
"""

from .engine import SilentSyncReport, SyncEngine
from .merge import merge_repositories
from .story import StepId, StepResult, StoryMode, SynchronizationStory

__all__ = [
    "SilentSyncReport",
    "StepId",
    "StepResult",
    "StoryMode",
    "SyncEngine",
    "SynchronizationStory",
    "merge_repositories",
]
