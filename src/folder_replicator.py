"""
Folder Replicator

Mirrors the folder tree of one store onto another and copies the messages of
every folder, depth first, parents before children.

For each folder below the default (root) folder:
- the source folder is opened read-only and its messages listed;
- when there are messages, the target folder is opened read-write and all of
  them are appended in one bulk append;
- when the bulk append fails, the messages are appended again one at a time,
  in the same order, so one bad message costs only itself.

Child folders missing on the target are created with the source folder's
type before anything is copied into them. Existing target folders are reused
as they are: nothing is deduplicated and nothing is deleted.

A folder that cannot be opened, listed or created is logged and skipped
together with its subfolders; the rest of the tree is still copied.
"""

from __future__ import annotations

from collections.abc import Callable

import imap_common
from copy_events import CancellationToken, CopyCancelled, FolderEvent, ProgressEvent, ProgressListener
from mail_store import AppendError, Folder, FolderCreateError, FolderListError, FolderOpenError, OpenMode


class CopyStats:
    def __init__(self):
        self.folders_copied = 0
        self.folders_created = 0
        self.messages_appended = 0
        self.messages_failed = 0
        self.folder_errors: list[tuple[str, str]] = []
        self.cancelled = False

    def summary(self) -> str:
        return (
            f"{self.folders_copied} folders copied, {self.folders_created} created, "
            f"{self.messages_appended} messages appended, {self.messages_failed} failed, "
            f"{len(self.folder_errors)} folder errors"
        )

    def __repr__(self):
        return f"CopyStats({self.summary()}{', cancelled' if self.cancelled else ''})"


class FolderReplicator:
    def __init__(
        self,
        listener: ProgressListener | None = None,
        cancel_token: CancellationToken | None = None,
        log_fn: Callable[[str], None] = imap_common.safe_print,
    ):
        self.listener = listener
        self.cancel_token = cancel_token or CancellationToken()
        self.log_fn = log_fn
        self.stats = CopyStats()

    def replicate(self, source_root: Folder, target_root: Folder) -> CopyStats:
        """Copies everything below source_root into target_root."""
        self.stats = CopyStats()
        try:
            self._copy_folder_and_messages(source_root, target_root, is_default_folder=True)
        except CopyCancelled:
            self.stats.cancelled = True
            self.log_fn("Copy cancelled, stopping traversal.")
        return self.stats

    def _notify(self, event: ProgressEvent) -> None:
        if self.listener is not None:
            self.listener.notify(event)

    def _folder_failed(self, folder: Folder, error: Exception) -> None:
        self.log_fn(f"[{folder.full_name}] ERROR | {error}")
        self.stats.folder_errors.append((folder.full_name, str(error)))

    def _copy_folder_and_messages(self, source_folder: Folder, target_folder: Folder, is_default_folder: bool) -> None:
        self.cancel_token.raise_if_cancelled()

        if not is_default_folder:
            self._notify(FolderEvent(source_folder.full_name))
            try:
                if source_folder.holds_messages:
                    self._copy_messages(source_folder, target_folder)
            except (FolderOpenError, FolderListError) as e:
                self._folder_failed(source_folder, e)
                return

        try:
            source_subfolders = source_folder.list()
        except FolderListError as e:
            self._folder_failed(source_folder, e)
            return

        for source_subfolder in source_subfolders:
            self.cancel_token.raise_if_cancelled()
            target_subfolder = target_folder.get_folder(source_subfolder.name)
            try:
                if not target_subfolder.exists():
                    self.log_fn(f"Creating target Folder: {target_subfolder.full_name}")
                    target_subfolder.create(source_subfolder.type)
                    self.stats.folders_created += 1
            except (FolderCreateError, FolderListError) as e:
                self._folder_failed(source_subfolder, e)
                continue
            self._copy_folder_and_messages(source_subfolder, target_subfolder, is_default_folder=False)

    def _copy_messages(self, source_folder: Folder, target_folder: Folder) -> None:
        source_folder.open(OpenMode.READ_ONLY)
        try:
            messages = source_folder.messages()
            self.log_fn(f"Copying {len(messages)} messages from {source_folder.full_name} Folder")
            if messages:
                target_folder.open(OpenMode.READ_WRITE)
                try:
                    try:
                        target_folder.append(messages)
                        self.stats.messages_appended += len(messages)
                    except AppendError as e:
                        self.log_fn(
                            f"Error copying messages from {source_folder.full_name} Folder "
                            f"({e.appended} of {len(messages)} stored): {e}"
                        )
                        self._copy_messages_one_by_one(target_folder, messages)
                finally:
                    target_folder.close()
        finally:
            source_folder.close()
        self.stats.folders_copied += 1

    def _copy_messages_one_by_one(self, target_folder: Folder, messages) -> None:
        # Every message is sent again, including any the failed bulk append had
        # already stored, so the target may end up with duplicates.
        for message in messages:
            self.cancel_token.raise_if_cancelled()
            try:
                target_folder.append([message])
                self.stats.messages_appended += 1
            except AppendError as e:
                self.stats.messages_failed += 1
                self.log_fn(f"Error copying 1 message to {target_folder.full_name} Folder: {e}")
