"""Change detection between a working-tree scan and a delivery ledger."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum

from gitrelay.services.scan_service import ScannedFile


class ChangeType(StrEnum):
    """Kind of change to notify a client about."""

    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


# Deletions first so a path removed and re-added in one pass cannot race,
# then creations, then updates.
CHANGE_ORDER: dict[ChangeType, int] = {
    ChangeType.DELETED: 0,
    ChangeType.CREATED: 1,
    ChangeType.UPDATED: 2,
}


@dataclass(frozen=True)
class FileChange:
    """A single file-level change.

    ``file`` is set for created/updated changes. ``previous_sha`` is the
    ledger hash for updated/deleted changes.
    """

    type: ChangeType
    path: str
    file: ScannedFile | None = None
    previous_sha: str | None = None


@dataclass
class GroupedChanges:
    created: list[FileChange] = field(default_factory=list)
    updated: list[FileChange] = field(default_factory=list)
    deleted: list[FileChange] = field(default_factory=list)


def is_initial_snapshot(ledger: Mapping[str, str]) -> bool:
    """An empty ledger means nothing was ever delivered to the app."""
    return len(ledger) == 0


def detect_changes(scan: Iterable[ScannedFile], ledger: Mapping[str, str]) -> list[FileChange]:
    """Diff a scan against a ledger map of path -> delivered hash."""
    changes: list[FileChange] = []
    scanned_paths: set[str] = set()

    if is_initial_snapshot(ledger):
        return [FileChange(type=ChangeType.CREATED, path=f.path, file=f) for f in scan]

    for scanned in scan:
        scanned_paths.add(scanned.path)
        previous = ledger.get(scanned.path)
        if previous is None:
            changes.append(FileChange(type=ChangeType.CREATED, path=scanned.path, file=scanned))
        elif previous != scanned.sha:
            changes.append(
                FileChange(
                    type=ChangeType.UPDATED,
                    path=scanned.path,
                    file=scanned,
                    previous_sha=previous,
                )
            )

    for path, sha in ledger.items():
        if path not in scanned_paths:
            changes.append(FileChange(type=ChangeType.DELETED, path=path, previous_sha=sha))

    return changes


def sort_changes(changes: Iterable[FileChange]) -> list[FileChange]:
    """Stable sort into deleted, created, updated order."""
    return sorted(changes, key=lambda c: CHANGE_ORDER[c.type])


def detect_and_sort_changes(
    scan: Iterable[ScannedFile], ledger: Mapping[str, str]
) -> list[FileChange]:
    return sort_changes(detect_changes(scan, ledger))


def group_changes_by_type(changes: Iterable[FileChange]) -> GroupedChanges:
    grouped = GroupedChanges()
    for change in changes:
        if change.type is ChangeType.CREATED:
            grouped.created.append(change)
        elif change.type is ChangeType.UPDATED:
            grouped.updated.append(change)
        else:
            grouped.deleted.append(change)
    return grouped
