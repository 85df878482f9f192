"""Global hotkey management based on the ``keyboard`` package."""

from __future__ import annotations

import logging
import queue
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence


@dataclass(frozen=True)
class HotkeyBinding:
    """Represents a single hotkey registration."""

    name: str
    combo: str
    press_count: int = 1

    @property
    def display(self) -> str:
        keys = "+".join(part.strip().capitalize() for part in self.combo.split("+"))
        if self.press_count > 1:
            return f"{keys} x{self.press_count}"
        return keys


@dataclass(frozen=True)
class HotkeyEvent:
    """Event generated when a registered hotkey is triggered."""

    name: str
    timestamp: float


class BaseHotkeyService:
    """Protocol-like base class for hotkey backends."""

    def start(self) -> None:  # pragma: no cover - interface definition
        raise NotImplementedError

    def stop(self) -> None:  # pragma: no cover - interface definition
        raise NotImplementedError

    def describe_bindings(self) -> Sequence[str]:  # pragma: no cover - interface definition
        raise NotImplementedError


class KeyboardHotkeyService(BaseHotkeyService):
    """Registers global shortcuts with ``keyboard.add_hotkey``.

    Callbacks run on the ``keyboard`` listener thread, so they only push a
    :class:`HotkeyEvent` onto ``event_queue`` and return.
    """

    def __init__(
        self,
        bindings: Sequence[HotkeyBinding],
        event_queue: "queue.Queue[HotkeyEvent]",
        logger: logging.Logger,
        *,
        keyboard_module: Any = None,
        time_provider: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._bindings: List[HotkeyBinding] = list(bindings)
        self._event_queue = event_queue
        self._logger = logger
        self._time_provider = time_provider
        self._keyboard = keyboard_module
        self._handles: Dict[str, Any] = {}
        self._lock = threading.Lock()

    def _load_keyboard_module(self) -> Any:
        # Loaded lazily; importing keyboard may require elevated rights on Linux.
        if self._keyboard is None:
            import keyboard  # type: ignore

            self._keyboard = keyboard
        return self._keyboard

    def start(self) -> None:
        keyboard = self._load_keyboard_module()
        with self._lock:
            for binding in self._bindings:
                if binding.name in self._handles:
                    continue
                try:
                    handle = keyboard.add_hotkey(
                        binding.combo,
                        self._make_callback(binding),
                        suppress=False,
                    )
                except (ValueError, ImportError, OSError) as exc:
                    self._logger.error(
                        "Failed to register hotkey %s (%s): %s", binding.name, binding.display, exc
                    )
                    continue
                self._handles[binding.name] = handle
                self._logger.info("Registered hotkey '%s' as %s", binding.name, binding.display)

    def stop(self) -> None:
        with self._lock:
            handles, self._handles = self._handles, {}
        if self._keyboard is None:
            return
        for name, handle in handles.items():
            try:
                self._keyboard.remove_hotkey(handle)
            except (KeyError, ValueError) as exc:
                self._logger.debug("Hotkey %s was already removed: %s", name, exc)

    def describe_bindings(self) -> Sequence[str]:
        return [f"{binding.name}: {binding.display}" for binding in self._bindings]

    def _make_callback(self, binding: HotkeyBinding) -> Callable[[], None]:
        def callback() -> None:
            try:
                self._event_queue.put_nowait(HotkeyEvent(binding.name, self._time_provider()))
            except queue.Full:
                self._logger.warning("Dropping hotkey event for %s (queue full)", binding.name)

        return callback


def build_bindings_from_preferences(hotkeys: Dict[str, Any]) -> List[HotkeyBinding]:
    """Create the clipboard and state-dump bindings from merged preferences."""

    bindings = []
    for name, default_combo in (("clipboard", "ctrl+shift+g"), ("state_dump", "f8")):
        prefs = hotkeys.get(name)
        if not isinstance(prefs, dict):
            prefs = {}
        combo = prefs.get("combo")
        if not isinstance(combo, str) or not combo.strip():
            combo = default_combo
        press_count = prefs.get("press_count")
        if not isinstance(press_count, int) or press_count < 1:
            press_count = 1
        bindings.append(HotkeyBinding(name=name, combo=combo.strip().lower(), press_count=press_count))
    return bindings


def find_binding(bindings: Sequence[HotkeyBinding], name: str) -> Optional[HotkeyBinding]:
    for binding in bindings:
        if binding.name == name:
            return binding
    return None
