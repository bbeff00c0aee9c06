"""Diff engine: create/update/delete sets between the local tree and the remote manifest."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from packsync.services.inventory_service import directories_of

if TYPE_CHECKING:
    from collections.abc import Mapping

    from packsync.services.fingerprint_service import FileEntry


@dataclass
class SyncPlan:
    """The computed sync plan. Every list is sorted."""

    dirs_to_create: list[str] = field(default_factory=list)
    dirs_to_delete: list[str] = field(default_factory=list)
    files_to_create: list[str] = field(default_factory=list)
    files_to_update: list[str] = field(default_factory=list)
    files_to_delete: list[str] = field(default_factory=list)
    no_change: list[str] = field(default_factory=list)

    @property
    def download_paths(self) -> list[str]:
        return self.files_to_create + self.files_to_update

    @property
    def has_changes(self) -> bool:
        return bool(
            self.dirs_to_create
            or self.dirs_to_delete
            or self.files_to_create
            or self.files_to_update
            or self.files_to_delete
        )


def compute_sync_plan(
    local_files: Mapping[str, FileEntry],
    remote_files: Mapping[str, FileEntry],
) -> SyncPlan:
    """Compute the plan that turns the local tree into the remote one.

    Files are compared by content hash and plaintext size, never by
    modification time, so rewriting a file with identical bytes costs nothing.
    Directories are the ancestor prefixes implied by each side's files.
    """
    plan = SyncPlan()

    for path in sorted(set(local_files) | set(remote_files)):
        local = local_files.get(path)
        remote = remote_files.get(path)

        if local is None:
            plan.files_to_create.append(path)
        elif remote is None:
            plan.files_to_delete.append(path)
        elif (
            local.content_hash.lower() != remote.content_hash.lower()
            or local.file_size != remote.file_size
        ):
            plan.files_to_update.append(path)
        else:
            plan.no_change.append(path)

    local_dirs = directories_of(local_files)
    remote_dirs = directories_of(remote_files)
    plan.dirs_to_create = sorted(remote_dirs - local_dirs)
    plan.dirs_to_delete = sorted(local_dirs - remote_dirs)
    return plan
