"""
NoteSync: encrypted two-way note synchronization.

One repository, one encrypted blob, any dumb cloud storage.
The cloud never sees a plaintext note and never decides a conflict.
"""

import os

__version__ = "0.1.0"

NOTESYNC_HOME = os.environ.get("NOTESYNC_HOME", "~/.notesync")
