"""Watch implementation: poll the store's change log and fan events out to handlers."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from vega_dispatch.models import EventType, ObjectEvent, StoredEntity
from vega_dispatch.storage.repository import ObjectStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class EventHandler:
    """Callbacks for one consumer; ``predicate`` filters objects before any callback."""

    on_add: Callable[[Any], None] | None = None
    on_update: Callable[[Any], None] | None = None
    on_delete: Callable[[Any], None] | None = None
    predicate: Callable[[Any], bool] | None = None

    def dispatch(self, event_type: EventType, obj: Any) -> None:
        if self.predicate is not None and not self.predicate(obj):
            return
        callback = {
            EventType.ADDED: self.on_add,
            EventType.MODIFIED: self.on_update,
            EventType.DELETED: self.on_delete,
        }[event_type]
        if callback is not None:
            callback(obj)


class Informer:
    """One watch loop for one object kind.

    On start, every existing object of the kind is delivered as an add event.
    After that the change log is polled and each new entry is delivered in
    commit order.
    """

    def __init__(
        self,
        store: ObjectStore,
        kind: type[StoredEntity],
        *,
        namespace: str | None = None,
        poll_interval_seconds: float = 0.2,
        batch_size: int = 500,
    ) -> None:
        self.store = store
        self.kind = kind
        self.namespace = namespace
        self.poll_interval_seconds = poll_interval_seconds
        self.batch_size = batch_size
        self._handlers: list[EventHandler] = []
        self._last_event_id = 0
        self._synced = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def add_handler(self, handler: EventHandler) -> None:
        if self._thread is not None:
            raise RuntimeError("Handlers must be registered before the informer starts")
        self._handlers.append(handler)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(
            target=self._run,
            name=f"informer-{self.kind.KIND}",
            daemon=True,
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def wait_for_cache_sync(self, timeout: float | None = None) -> bool:
        return self._synced.wait(timeout=timeout)

    @property
    def has_synced(self) -> bool:
        return self._synced.is_set()

    def initial_sync(self) -> int:
        """Deliver every existing object as an add; returns how many were delivered."""

        self._last_event_id = self.store.last_event_id()
        objects = self.store.list(self.kind, namespace=self.namespace)  # type: ignore[type-var]
        for obj in objects:
            self._deliver(EventType.ADDED, obj)
        self._synced.set()
        return len(objects)

    def poll_once(self) -> int:
        """Deliver change-log entries recorded since the last poll."""

        events = self.store.list_events(
            after_id=self._last_event_id,
            kinds=(self.kind.KIND,),
            limit=self.batch_size,
        )
        for event in events:
            self._last_event_id = event.event_id
            if self.namespace is not None and event.obj.meta.namespace != self.namespace:
                continue
            self._deliver(event.event_type, event.obj)
        return len(events)

    def _run(self) -> None:
        try:
            self.initial_sync()
        except Exception:
            logger.exception("Initial list of %s failed", self.kind.KIND)
            self._synced.set()
        while not self._stop.is_set():
            try:
                delivered = self.poll_once()
            except Exception:
                logger.exception("Watch poll for %s failed", self.kind.KIND)
                delivered = 0
            if delivered < self.batch_size:
                self._stop.wait(self.poll_interval_seconds)

    def _deliver(self, event_type: EventType, obj: Any) -> None:
        for handler in self._handlers:
            try:
                handler.dispatch(event_type, obj)
            except Exception:
                logger.exception(
                    "Handler failed for %s %s/%s",
                    event_type.value,
                    obj.meta.namespace,
                    obj.meta.name,
                )


def describe_event(event: ObjectEvent) -> str:
    obj = event.obj
    return f"{event.event_type.value} {event.kind} {obj.meta.namespace}/{obj.meta.name}"
