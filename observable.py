"""Observable state containers with per-field change notifications."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Sequence


logger = logging.getLogger("llmtranslatetool.observable")


@dataclass(frozen=True)
class StateChange:
    """Describes a single field transition."""

    field: str
    old: Any
    new: Any


Listener = Callable[[StateChange], None]


class Subscribers:
    """Registry of listeners keyed by field name."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[Listener]] = {}
        self._lock = threading.Lock()

    def add(self, field: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.setdefault(field, []).append(listener)

        def unsubscribe() -> None:
            with self._lock:
                listeners = self._listeners.get(field, [])
                if listener in listeners:
                    listeners.remove(listener)

        return unsubscribe

    def notify(self, changes: Sequence[StateChange]) -> None:
        for change in changes:
            with self._lock:
                listeners = list(self._listeners.get(change.field, ()))
            for listener in listeners:
                try:
                    listener(change)
                except Exception:
                    logger.exception("Listener for %r failed", change.field)


class ObservableState:
    """A small set of named fields that announce every change.

    Subclasses list their fields and default values in ``defaults``.  Writes
    are applied under a lock and listeners are invoked afterwards, outside of
    it, in the order the fields were given.  Writing a value equal to the
    current one does not notify.
    """

    defaults: Mapping[str, Any] = {}

    def __init__(self, **initial: Any) -> None:
        unknown = set(initial) - set(self.defaults)
        if unknown:
            raise KeyError(f"Unknown fields: {sorted(unknown)}")
        self._values: Dict[str, Any] = dict(self.defaults)
        self._values.update(initial)
        self._lock = threading.RLock()
        self._subscribers = Subscribers()

    def get(self, field: str) -> Any:
        with self._lock:
            return self._values[field]

    def set(self, field: str, value: Any) -> None:
        self.update(**{field: value})

    def update(self, **changes: Any) -> None:
        self.update_if({}, **changes)

    def update_if(self, expected: Mapping[str, Any], **changes: Any) -> bool:
        """Apply ``changes`` only while every field in ``expected`` still holds its value.

        Returns ``False`` without writing anything when another writer got
        there first.
        """

        applied: List[StateChange] = []
        with self._lock:
            for field in list(expected) + list(changes):
                if field not in self._values:
                    raise KeyError(f"Unknown field: {field!r}")
            if any(self._values[field] != value for field, value in expected.items()):
                return False
            for field, value in changes.items():
                old = self._values[field]
                if old == value:
                    continue
                self._values[field] = value
                applied.append(StateChange(field, old, value))
        self._subscribers.notify(applied)
        return True

    def values(self) -> Dict[str, Any]:
        with self._lock:
            return dict(self._values)

    def subscribe(self, field: str, listener: Listener) -> Callable[[], None]:
        """Call ``listener`` with a :class:`StateChange` whenever ``field`` changes."""

        if field not in self.defaults:
            raise KeyError(f"Unknown field: {field!r}")
        return self._subscribers.add(field, listener)
