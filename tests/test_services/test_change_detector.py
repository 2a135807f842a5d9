"""Tests for change detection against the delivery ledger."""

from __future__ import annotations

from gitrelay.services.change_detector import (
    ChangeType,
    FileChange,
    detect_and_sort_changes,
    detect_changes,
    group_changes_by_type,
    is_initial_snapshot,
    sort_changes,
)
from gitrelay.services.scan_service import ScannedFile


def _file(path: str, sha: str) -> ScannedFile:
    return ScannedFile(
        path=path, sha=sha, size=len(path), content=path, is_binary=False, encoding="utf-8"
    )


class TestDetectChanges:
    def test_new_file_is_created(self) -> None:
        scan = [_file("a.txt", "h1"), _file("b.txt", "h2")]
        changes = detect_and_sort_changes(scan, {"a.txt": "h1"})
        assert [(c.type, c.path) for c in changes] == [(ChangeType.CREATED, "b.txt")]
        assert changes[0].file is not None
        assert changes[0].previous_sha is None

    def test_deleted_then_updated(self) -> None:
        changes = detect_and_sort_changes([_file("a.txt", "h3")], {"a.txt": "h1", "b.txt": "h2"})
        assert [(c.type, c.path) for c in changes] == [
            (ChangeType.DELETED, "b.txt"),
            (ChangeType.UPDATED, "a.txt"),
        ]
        deleted, updated = changes
        assert deleted.previous_sha == "h2"
        assert deleted.file is None
        assert updated.previous_sha == "h1"
        assert updated.file is not None and updated.file.sha == "h3"

    def test_equal_hash_is_no_change(self) -> None:
        assert detect_changes([_file("a.txt", "h1")], {"a.txt": "h1"}) == []

    def test_empty_ledger_reports_everything_created(self) -> None:
        scan = [_file("a.txt", "h1"), _file("dir/b.bin", "h2")]
        changes = detect_changes(scan, {})
        assert is_initial_snapshot({})
        assert {c.path for c in changes} == {"a.txt", "dir/b.bin"}
        assert all(c.type is ChangeType.CREATED for c in changes)

    def test_empty_scan_deletes_everything(self) -> None:
        changes = detect_changes([], {"a.txt": "h1", "b.txt": "h2"})
        assert {(c.type, c.path, c.previous_sha) for c in changes} == {
            (ChangeType.DELETED, "a.txt", "h1"),
            (ChangeType.DELETED, "b.txt", "h2"),
        }

    def test_non_empty_ledger_is_not_initial(self) -> None:
        assert not is_initial_snapshot({"a.txt": "h1"})


class TestSortChanges:
    def test_order_is_deleted_created_updated(self) -> None:
        changes = [
            FileChange(type=ChangeType.UPDATED, path="u1"),
            FileChange(type=ChangeType.CREATED, path="c1"),
            FileChange(type=ChangeType.DELETED, path="d1"),
            FileChange(type=ChangeType.UPDATED, path="u2"),
            FileChange(type=ChangeType.DELETED, path="d2"),
        ]
        assert [c.path for c in sort_changes(changes)] == ["d1", "d2", "c1", "u1", "u2"]

    def test_sort_is_stable_within_type(self) -> None:
        changes = [FileChange(type=ChangeType.CREATED, path=p) for p in ("z", "a", "m")]
        assert [c.path for c in sort_changes(changes)] == ["z", "a", "m"]


class TestGroupChanges:
    def test_groups_by_type(self) -> None:
        changes = detect_and_sort_changes(
            [_file("new", "n"), _file("same", "s"), _file("mod", "m2")],
            {"same": "s", "mod": "m1", "gone": "g"},
        )
        grouped = group_changes_by_type(changes)
        assert [c.path for c in grouped.created] == ["new"]
        assert [c.path for c in grouped.updated] == ["mod"]
        assert [c.path for c in grouped.deleted] == ["gone"]
