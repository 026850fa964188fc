"""Tests for the merge engine."""

from __future__ import annotations

import random
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from notesync.models import NEWEST_SUPPORTED_REVISION, Note, NoteRepository, Safe
from notesync.sync.merge import (
    bring_pinned_to_top,
    choose_last_modified,
    clear_obsolete_maintained_at,
    merge_repositories,
    outer_join,
)

BASE = datetime(2026, 4, 1, 9, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    return BASE + timedelta(minutes=minutes)


def note(
    note_id: Optional[uuid.UUID] = None,
    modified: int = 0,
    maintained: Optional[int] = None,
    content: str = "",
    safe_id: Optional[uuid.UUID] = None,
) -> Note:
    return Note(
        id=note_id or uuid.uuid4(),
        html_content=content,
        created_at=BASE,
        modified_at=at(modified),
        maintained_at=at(maintained) if maintained is not None else None,
        safe_id=safe_id,
    )


def repo(notes, deleted=(), order: int = 0, repo_id=None, safes=()) -> NoteRepository:
    return NoteRepository(
        id=repo_id or uuid.uuid4(),
        order_modified_at=at(order),
        notes=list(notes),
        deleted_note_ids=list(deleted),
        safes=list(safes),
    )


def ids(repository: NoteRepository) -> list[uuid.UUID]:
    return [n.id for n in repository.notes]


class TestOuterJoin:
    """Order preserving outer join."""

    def test_singles_follow_their_predecessor(self):
        primary = ["A", "B", "C"]
        secondary = ["A", "X", "C", "Y"]
        pairs = outer_join(primary, secondary, key=lambda item: item)
        assert [p or s for p, s in pairs] == ["A", "B", "X", "C", "Y"]

    def test_leading_singles(self):
        pairs = outer_join(["P", "A"], ["S", "A"], key=lambda item: item)
        assert pairs == [("P", None), (None, "S"), ("A", "A")]

    def test_primary_run_precedes_secondary_run(self):
        pairs = outer_join(["A", "P1", "P2", "B"], ["A", "S1", "B", "S2"], key=lambda item: item)
        assert [p or s for p, s in pairs] == ["A", "P1", "P2", "S1", "B", "S2"]

    def test_reordered_sides_emit_each_item_once(self):
        pairs = outer_join(["B", "A"], ["A", "S", "B"], key=lambda item: item)
        assert [p or s for p, s in pairs] == ["B", "A", "S"]

    def test_disjoint(self):
        pairs = outer_join(["A"], ["B"], key=lambda item: item)
        assert sorted(p or s for p, s in pairs) == ["A", "B"]

    def test_empty(self):
        assert outer_join([], [], key=lambda item: item) == []


class TestChooseLastModified:
    """Recency rules for a matched pair."""

    def test_newer_modification_wins(self):
        old, new = note(modified=1), note(modified=2)
        assert choose_last_modified(old, new) is new
        assert choose_last_modified(new, old) is new

    def test_maintained_breaks_tie(self):
        plain, maintained = note(modified=1), note(modified=1, maintained=5)
        assert choose_last_modified(plain, maintained) is maintained
        assert choose_last_modified(maintained, plain) is maintained

    def test_full_tie_keeps_preferred(self):
        first, second = note(modified=1), note(modified=1)
        assert choose_last_modified(first, second) is first


class TestMaintainedAt:
    """Clearing stale housekeeping stamps."""

    def test_older_than_modification_is_cleared(self):
        item = note(modified=10, maintained=5)
        clear_obsolete_maintained_at(item)
        assert item.maintained_at is None

    def test_newer_than_modification_is_kept(self):
        item = note(modified=10, maintained=15)
        clear_obsolete_maintained_at(item)
        assert item.maintained_at == at(15)

    def test_horizon(self):
        item = note(modified=10, maintained=15)
        clear_obsolete_maintained_at(item, horizon_start=at(20))
        assert item.maintained_at is None


class TestMergeRepositories:
    """Merging two repositories."""

    def test_merge_with_itself_is_identity(self):
        safe = Safe(created_at=BASE, modified_at=at(1))
        a = repo(
            [note(modified=1, content="a", safe_id=safe.id), note(modified=2, maintained=3)],
            deleted=[uuid.uuid4()],
            order=4,
            safes=[safe],
        )
        merged = merge_repositories(a, a)
        assert merged.model_dump() == a.model_dump()

    def test_local_only_tombstone_is_forgotten(self):
        gone = uuid.uuid4()
        local = repo([], deleted=[gone])
        remote = repo([note()])
        merged = merge_repositories(local, remote)
        assert gone not in merged.deleted_note_ids

    def test_local_tombstone_of_remote_note_is_kept(self):
        shared = note()
        local = repo([], deleted=[shared.id])
        remote = repo([shared])
        merged = merge_repositories(local, remote)
        assert shared.id not in ids(merged)
        assert shared.id in merged.deleted_note_ids

    def test_remote_tombstone_propagates(self):
        shared = note()
        local = repo([shared])
        remote = repo([], deleted=[shared.id])
        merged = merge_repositories(local, remote)
        assert merged.notes == []
        assert merged.deleted_note_ids == [shared.id]

    def test_no_note_is_alive_and_deleted(self):
        shared = note()
        local = repo([shared], deleted=[])
        remote = repo([shared.model_copy()], deleted=[shared.id])
        merged = merge_repositories(local, remote)
        assert not set(ids(merged)) & set(merged.deleted_note_ids)

    def test_newer_modification_wins(self):
        note_id = uuid.uuid4()
        local = repo([note(note_id, modified=5, content="local")])
        remote = repo([note(note_id, modified=3, content="remote")])
        assert merge_repositories(local, remote).notes[0].html_content == "local"
        assert merge_repositories(remote, local).notes[0].html_content == "local"

    def test_unmatched_notes_are_kept(self):
        local = repo([note(content="only local")])
        remote = repo([note(content="only remote")])
        merged = merge_repositories(local, remote)
        assert sorted(n.html_content for n in merged.notes) == ["only local", "only remote"]

    def test_order_from_more_recent_side(self):
        a, b, c = note(), note(), note()
        local = repo([c, b, a], order=10)
        remote = repo([a, b, c], order=5)
        assert ids(merge_repositories(local, remote)) == [c.id, b.id, a.id]

    def test_order_tie_goes_to_remote(self):
        a, b = note(), note()
        local = repo([b, a], order=5)
        remote = repo([a, b], order=5)
        merged = merge_repositories(local, remote)
        assert ids(merged) == [a.id, b.id]
        assert merged.order_modified_at == at(5)

    def test_result_identity(self):
        local = repo([note()])
        remote = repo([note()])
        merged = merge_repositories(local, remote)
        assert merged.id == remote.id
        assert merged.revision == NEWEST_SUPPORTED_REVISION

    def test_inputs_unchanged(self):
        local = repo([note(modified=10, maintained=5)], deleted=[uuid.uuid4()])
        remote = repo([note()])
        local_before = local.model_dump()
        remote_before = remote.model_dump()
        merge_repositories(local, remote)
        assert local.model_dump() == local_before
        assert remote.model_dump() == remote_before

    def test_safes_merged_and_pruned(self):
        used_id = uuid.uuid4()
        local_safe = Safe(id=used_id, created_at=BASE, modified_at=at(8), serialized_key="new")
        remote_safe = Safe(id=used_id, created_at=BASE, modified_at=at(2), serialized_key="old")
        orphan = Safe(created_at=BASE, modified_at=at(1))
        local = repo([note(safe_id=used_id)], safes=[local_safe])
        remote = repo([], safes=[remote_safe, orphan])
        merged = merge_repositories(local, remote)
        assert [s.serialized_key for s in merged.safes] == ["new"]

    def test_maintained_horizon(self):
        note_id = uuid.uuid4()
        local = repo([note(note_id, modified=1, maintained=2, content="local")])
        remote = repo([note(note_id, modified=1, content="remote")])

        kept = merge_repositories(local, remote)
        assert kept.notes[0].html_content == "local"

        expired = merge_repositories(
            local, remote, maintained_horizon=timedelta(days=1), now=at(60 * 24 * 7)
        )
        assert expired.notes[0].html_content == "remote"
        assert expired.notes[0].maintained_at is None


class TestPinnedNotes:
    """Pinned notes stay on top whichever order wins."""

    def test_bring_pinned_to_top_is_stable(self):
        a, b, c, d = note(), note(), note(), note()
        b.is_pinned = True
        d.is_pinned = True
        assert bring_pinned_to_top([a, b, c, d]) == [b, d, a, c]

    def test_pinned_in_older_order_still_first(self):
        shared = uuid.uuid4()
        other = note(modified=0)
        pinned = note(shared, modified=5)
        pinned.is_pinned = True
        local = repo([pinned, other], order=1)
        remote = repo([other.model_copy(), note(shared, modified=2)], order=9)

        merged = merge_repositories(local, remote)

        assert ids(merged) == [shared, other.id]
        assert merged.notes[0].is_pinned


class TestMergeProperties:
    """Randomized checks of the merge guarantees."""

    @staticmethod
    def _random_pair(rng: random.Random):
        pool = [uuid.uuid4() for _ in range(12)]
        local_ids = rng.sample(pool, rng.randint(0, 10))
        remote_ids = rng.sample(pool, rng.randint(0, 10))
        local_deleted = rng.sample([i for i in pool if i not in local_ids], rng.randint(0, 2))
        remote_deleted = rng.sample([i for i in pool if i not in remote_ids], rng.randint(0, 2))
        local = repo(
            [note(i, modified=rng.randint(0, 5)) for i in local_ids],
            deleted=local_deleted,
            order=rng.randint(0, 3),
        )
        remote = repo(
            [note(i, modified=rng.randint(0, 5)) for i in remote_ids],
            deleted=remote_deleted,
            order=rng.randint(0, 3),
        )
        return local, remote

    def test_surviving_ids_do_not_depend_on_side(self):
        rng = random.Random(7)
        for _ in range(100):
            local, remote = self._random_pair(rng)
            forward = merge_repositories(local, remote)
            backward = merge_repositories(remote, local)
            assert set(ids(forward)) == set(ids(backward))
            assert len(ids(forward)) == len(set(ids(forward)))

    def test_merge_result_is_stable(self):
        rng = random.Random(11)
        for _ in range(100):
            local, remote = self._random_pair(rng)
            merged = merge_repositories(local, remote)
            assert merge_repositories(merged, merged).model_dump() == merged.model_dump()
            assert not set(ids(merged)) & set(merged.deleted_note_ids)
