"""
Copy Progress Events

The events a copy run reports to an observer, the observer protocol, and
the token used to stop a run between folders.
"""

from __future__ import annotations

import enum
import threading
from dataclasses import dataclass
from typing import Protocol, Union


class Lifecycle(enum.Enum):
    START = 1
    END = 2


@dataclass(frozen=True)
class FolderEvent:
    """The replicator is now copying the folder called full_name."""

    full_name: str


@dataclass(frozen=True)
class LifecycleEvent:
    kind: Lifecycle


ProgressEvent = Union[FolderEvent, LifecycleEvent]


class ProgressListener(Protocol):
    def notify(self, event: ProgressEvent) -> None: ...


class EventRecorder:
    """Listener that keeps every event, in the order it was notified."""

    def __init__(self):
        self.events: list[ProgressEvent] = []
        self._lock = threading.Lock()

    def notify(self, event: ProgressEvent) -> None:
        with self._lock:
            self.events.append(event)

    @property
    def folder_names(self) -> list[str]:
        with self._lock:
            return [e.full_name for e in self.events if isinstance(e, FolderEvent)]

    def count(self, kind: Lifecycle) -> int:
        with self._lock:
            return sum(1 for e in self.events if isinstance(e, LifecycleEvent) and e.kind is kind)


class CopyCancelled(Exception):
    """Raised at a safe point once cancellation has been requested."""


class CancellationToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CopyCancelled("Copy cancelled")
