"""
Copy Session

Runs one complete copy: opens the source and target stores, replicates the
source folder tree onto the target and releases both connections whatever
happened in between.

The observer always sees START first and END exactly once at the end, so a
front-end can disable its "copy" control on START and re-enable it on END.
Only a connection failure is raised to the caller; folder and message errors
are logged and counted in the returned CopyStats.

CopyTask runs a session on its own worker thread and stops it cooperatively:
the replicator checks for cancellation between folders and between single
message appends, never in the middle of an IMAP command.
"""

from __future__ import annotations

import threading
from collections.abc import Callable

import imap_common
import mail_store
from copy_events import CancellationToken, Lifecycle, LifecycleEvent, ProgressEvent, ProgressListener
from folder_replicator import CopyStats, FolderReplicator
from mail_store import Store, StoreConnectionError


class CopySession:
    def __init__(
        self,
        listener: ProgressListener | None = None,
        cancel_token: CancellationToken | None = None,
        log_fn: Callable[[str], None] = imap_common.safe_print,
        connect_fn: Callable[..., Store] = mail_store.connect,
        source_oauth2_token: str | None = None,
        target_oauth2_token: str | None = None,
        retries: int = 3,
    ):
        self.listener = listener
        self.cancel_token = cancel_token or CancellationToken()
        self.log_fn = log_fn
        self.connect_fn = connect_fn
        self.source_oauth2_token = source_oauth2_token
        self.target_oauth2_token = target_oauth2_token
        self.retries = retries

    def _notify(self, event: ProgressEvent) -> None:
        if self.listener is not None:
            self.listener.notify(event)

    def _open_connection(self, url: str, label: str, oauth2_token: str | None) -> Store:
        self.log_fn(f"Connecting to {label}: {imap_common.redact_url(url)}")
        return self.connect_fn(url, oauth2_token=oauth2_token, retries=self.retries, log_fn=self.log_fn)

    def _close_connection(self, store: Store | None, label: str) -> None:
        if store is None:
            return
        try:
            store.close()
        except Exception as e:
            self.log_fn(f"Warning: failed to close {label} connection: {e}")

    def run(self, source_url: str, target_url: str) -> CopyStats:
        """
        Copies every folder and message of source_url into target_url.

        Raises StoreConnectionError when either store cannot be opened; no
        folder work is done in that case.
        """
        self._notify(LifecycleEvent(Lifecycle.START))
        source_store = None
        target_store = None
        try:
            source_store = self._open_connection(source_url, "source", self.source_oauth2_token)
            target_store = self._open_connection(target_url, "target", self.target_oauth2_token)

            replicator = FolderReplicator(self.listener, self.cancel_token, self.log_fn)
            stats = replicator.replicate(source_store.root_folder(), target_store.root_folder())
            self.log_fn(f"Copy {'cancelled' if stats.cancelled else 'finished'}: {stats.summary()}")
            return stats
        except StoreConnectionError as e:
            self.log_fn(f"Connection error: {e}")
            raise
        except Exception as e:
            self.log_fn(f"Fatal Error: {e}")
            raise
        finally:
            self._close_connection(source_store, "source")
            self._close_connection(target_store, "target")
            self._notify(LifecycleEvent(Lifecycle.END))


class CopyTask:
    """A CopySession running on a dedicated worker thread."""

    def __init__(self, source_url: str, target_url: str, **session_kwargs):
        self.source_url = source_url
        self.target_url = target_url
        self.cancel_token = session_kwargs.pop("cancel_token", None) or CancellationToken()
        self.session = CopySession(cancel_token=self.cancel_token, **session_kwargs)
        self.result: CopyStats | None = None
        self.error: BaseException | None = None
        self._thread = threading.Thread(target=self._run, name="copy-worker", daemon=True)

    def _run(self) -> None:
        try:
            self.result = self.session.run(self.source_url, self.target_url)
        except Exception as e:
            # Already logged by the session; kept for whoever joins the task.
            self.error = e

    def start(self) -> None:
        if self._thread.ident is not None:
            raise RuntimeError("Copy task already started")
        self._thread.start()

    def stop(self) -> None:
        """
        Requests a stop. The worker first finishes the bulk append of the
        current folder, or the current message when appending one by one.
        """
        self.cancel_token.cancel()

    def join(self, timeout: float | None = None) -> bool:
        """Waits for the worker. Returns True once it has finished."""
        self._thread.join(timeout)
        return not self._thread.is_alive()

    @property
    def running(self) -> bool:
        return self._thread.is_alive()
