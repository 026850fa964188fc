"""
Merge engine -- deterministic two-way merge of note repositories.

Two copies of the same lineage are edited independently on two
devices. The merge keeps every note either side still has, lets the
more recent edit win, honours deletions through tombstones and takes
the note order from whichever side reordered last.

The function is pure: inputs are never modified.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, TypeVar, Union

from ..models import NEWEST_SUPPORTED_REVISION, Note, NoteRepository, Safe

logger = logging.getLogger("notesync.sync.merge")

T = TypeVar("T", Note, Safe)

_EARLIEST = datetime.min.replace(tzinfo=timezone.utc)


def outer_join(
    primary: list[T],
    secondary: list[T],
    key: Callable[[T], object],
) -> list[tuple[Optional[T], Optional[T]]]:
    """Full outer join that keeps the order of ``primary``.

    Items found on one side only stay behind the matched item that
    precedes them on their side (or at the start), so insertions on
    either side keep their neighbourhood. Where both sides inserted at
    the same place, the ``primary`` run comes first. Runs in linear
    time.

    Args:
        primary: The list whose order wins.
        secondary: The other list.
        key: Identity of an item.

    Returns:
        Pairs ``(primary_item, secondary_item)``, one side may be None.
    """
    primary_keys = {key(item) for item in primary}
    secondary_positions = {key(item): pos for pos, item in enumerate(secondary)}
    result: list[tuple[Optional[T], Optional[T]]] = []
    primary_pos = 0
    secondary_pos = 0

    def add_adjacent_singles() -> None:
        nonlocal primary_pos, secondary_pos
        while primary_pos < len(primary) and key(primary[primary_pos]) not in secondary_positions:
            result.append((primary[primary_pos], None))
            primary_pos += 1
        while secondary_pos < len(secondary) and key(secondary[secondary_pos]) not in primary_keys:
            result.append((None, secondary[secondary_pos]))
            secondary_pos += 1

    add_adjacent_singles()
    while primary_pos < len(primary):
        item = primary[primary_pos]
        partner = secondary_positions[key(item)]
        result.append((item, secondary[partner]))
        primary_pos += 1
        secondary_pos = partner + 1
        add_adjacent_singles()
    return result


def bring_pinned_to_top(notes: list[Note]) -> list[Note]:
    """Move pinned notes ahead of the first unpinned one, keeping order."""
    pinned = [n for n in notes if n.is_pinned]
    return pinned + [n for n in notes if not n.is_pinned]


def choose_last_modified(preferred: T, other: T) -> T:
    """Pick the more recent of two versions of the same item.

    ``modified_at`` decides, then ``maintained_at`` where a missing
    stamp is the oldest; a full tie keeps ``preferred``.
    """
    if other.modified_at > preferred.modified_at:
        return other
    if other.modified_at < preferred.modified_at:
        return preferred
    if (other.maintained_at or _EARLIEST) > (preferred.maintained_at or _EARLIEST):
        return other
    return preferred


def clear_obsolete_maintained_at(
    item: Union[Note, Safe], horizon_start: Optional[datetime] = None
) -> None:
    """Forget a ``maintained_at`` that can no longer decide anything.

    A stamp older than the item's own ``modified_at`` is obsolete, and
    so is one before ``horizon_start`` when a horizon is configured.
    """
    if item.maintained_at is None:
        return
    if item.maintained_at < item.modified_at:
        item.maintained_at = None
    elif horizon_start is not None and item.maintained_at < horizon_start:
        item.maintained_at = None


def _merge_items(primary: list[T], secondary: list[T]) -> list[T]:
    merged: list[T] = []
    for left, right in outer_join(primary, secondary, key=lambda item: item.id):
        if left is None:
            merged.append(right)
        elif right is None:
            merged.append(left)
        else:
            merged.append(choose_last_modified(left, right))
    return merged


def merge_repositories(
    local: NoteRepository,
    remote: NoteRepository,
    *,
    maintained_horizon: Optional[timedelta] = None,
    now: Optional[datetime] = None,
) -> NoteRepository:
    """Merge the local and the cloud repository.

    Args:
        local: Repository of this device.
        remote: Repository downloaded from the cloud.
        maintained_horizon: Age after which ``maintained_at`` stamps
            are ignored. None keeps them regardless of age.
        now: Reference time for the horizon.

    Returns:
        NoteRepository: A new repository with the id of ``remote`` and
        the newest supported revision.
    """
    local = local.model_copy(deep=True)
    remote = remote.model_copy(deep=True)

    horizon_start = None
    if maintained_horizon is not None:
        horizon_start = (now or datetime.now(timezone.utc)) - maintained_horizon
    for repository in (local, remote):
        for item in [*repository.notes, *repository.safes]:
            clear_obsolete_maintained_at(item, horizon_start)

    # Local tombstones survive only if the remote still knows the note
    remote_note_ids = {note.id for note in remote.notes}
    tombstones = set(remote.deleted_note_ids)
    tombstones.update(
        note_id for note_id in local.deleted_note_ids if note_id in remote_note_ids
    )

    local_living = [note for note in local.notes if note.id not in tombstones]
    remote_living = [note for note in remote.notes if note.id not in tombstones]

    if local.order_modified_at > remote.order_modified_at:
        primary, primary_notes, secondary_notes = local, local_living, remote_living
    else:
        primary, primary_notes, secondary_notes = remote, remote_living, local_living

    merged = NoteRepository(
        id=remote.id,
        revision=NEWEST_SUPPORTED_REVISION,
        order_modified_at=primary.order_modified_at,
        notes=bring_pinned_to_top(_merge_items(primary_notes, secondary_notes)),
        deleted_note_ids=sorted(tombstones),
        safes=_merge_items(remote.safes, local.safes),
    )
    merged.remove_unused_safes()

    logger.debug(
        "Merged %d local and %d remote notes into %d (%d tombstones)",
        len(local.notes), len(remote.notes), len(merged.notes), len(tombstones),
    )
    return merged
