"""Durable key/value settings backed by a JSON preferences file."""

from __future__ import annotations

import copy
import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from observable import Listener, StateChange, Subscribers


PREFERENCES_FILE = Path.home() / ".llmtranslatetool_preferences.json"

INPUT_LANGUAGE = "inputLanguage"
OUTPUT_LANGUAGE = "outputLanguage"
API_KEY = "apiKey"
API_BASE_URL = "apiBaseUrl"
MODEL = "model"
AVAILABLE_MODELS = "availableModels"
DEBOUNCE_INTERVAL = "debounceInterval"
REQUEST_TIMEOUT = "requestTimeout"
DEDUPLICATE_MODELS = "deduplicateModels"
HOTKEYS = "hotkeys"

DOUBLE_PRESS_INTERVAL = 0.5  # Seconds allowed between two presses of a double-press shortcut.
MIN_TRIGGER_INTERVAL = 0.15

DEFAULT_HOTKEY_PREFERENCES = {
    "clipboard": {"combo": "ctrl+shift+g", "press_count": 1},
    "state_dump": {"combo": "f8", "press_count": 1},
    "double_press_interval": DOUBLE_PRESS_INTERVAL,
    "min_trigger_interval": MIN_TRIGGER_INTERVAL,
}

DEFAULT_SETTINGS: Dict[str, Any] = {
    INPUT_LANGUAGE: "auto",
    OUTPUT_LANGUAGE: "en",
    API_KEY: "",
    API_BASE_URL: "https://api.openai.com/v1/chat/completions",
    MODEL: "gpt-3.5-turbo",
    AVAILABLE_MODELS: ["gpt-3.5-turbo", "gpt-4", "gpt-4o-mini"],
    DEBOUNCE_INTERVAL: 0.3,
    REQUEST_TIMEOUT: 30.0,
    DEDUPLICATE_MODELS: False,
    HOTKEYS: DEFAULT_HOTKEY_PREFERENCES,
}

logger = logging.getLogger("llmtranslatetool.settings")


class SettingsStore:
    """Settings persisted to disk on every write.

    Every key is read and written independently.  ``set`` performs the whole
    read-modify-write of the preferences file under one lock, so concurrent
    writes to different keys never drop each other.
    """

    def __init__(
        self,
        path: Path = PREFERENCES_FILE,
        *,
        defaults: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._path = path
        self._defaults = copy.deepcopy(DEFAULT_SETTINGS if defaults is None else defaults)
        self._lock = threading.RLock()
        self._subscribers = Subscribers()
        self._data = self._load_preferences()

    @property
    def path(self) -> Path:
        return self._path

    def _load_preferences(self) -> Dict[str, Any]:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable preferences file %s: %s", self._path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _save_preferences(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(
                json.dumps(self._data, indent=2, ensure_ascii=False), encoding="utf-8"
            )
        except OSError as exc:
            logger.error("Failed to save preferences to %s: %s", self._path, exc)

    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value for ``key``, falling back to the defaults."""

        with self._lock:
            if key in self._data:
                value = self._data[key]
                fallback = self._defaults.get(key, default)
                if fallback is None or isinstance(value, type(fallback)) or _is_number_pair(value, fallback):
                    return copy.deepcopy(value)
                logger.warning("Ignoring stored %s with unexpected type %s", key, type(value).__name__)
            if key in self._defaults:
                return copy.deepcopy(self._defaults[key])
            return default

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            old = self.get(key)
            self._data[key] = copy.deepcopy(value)
            self._save_preferences()
        if old != value:
            self._subscribers.notify([StateChange(key, old, value)])

    def subscribe(self, key: str, listener: Listener) -> Callable[[], None]:
        return self._subscribers.add(key, listener)

    def add_model(self, name: str) -> bool:
        """Append ``name`` to the model list.

        Duplicates are kept unless ``deduplicateModels`` is enabled.  Returns
        ``True`` when the list changed.
        """

        name = name.strip()
        if not name:
            return False
        with self._lock:
            models: List[str] = self.get(AVAILABLE_MODELS)
            if self.get(DEDUPLICATE_MODELS) and name in models:
                return False
            models.append(name)
            self.set(AVAILABLE_MODELS, models)
        return True

    def remove_model(self, name: str, current: Optional[str] = None) -> Optional[str]:
        """Remove the first occurrence of ``name``.

        Returns the model that should replace ``current`` when the removed
        entry was the selected one, otherwise ``None``.
        """

        with self._lock:
            models: List[str] = self.get(AVAILABLE_MODELS)
            if name not in models:
                return None
            models.remove(name)
            self.set(AVAILABLE_MODELS, models)
        if current is not None and current == name:
            return models[0] if models else ""
        return None

    def hotkey_preferences(self) -> Dict[str, Any]:
        """Return hotkey preferences merged over the defaults."""

        hotkeys = self.get(HOTKEYS)
        result = copy.deepcopy(DEFAULT_HOTKEY_PREFERENCES)

        def _merge_single(key: str) -> None:
            source = hotkeys.get(key)
            if not isinstance(source, dict):
                return
            combo = source.get("combo")
            press_count = source.get("press_count")
            if isinstance(combo, str) and combo.strip():
                result[key]["combo"] = combo.strip()
            if isinstance(press_count, int) and press_count >= 1:
                result[key]["press_count"] = press_count

        _merge_single("clipboard")
        _merge_single("state_dump")

        double_interval = hotkeys.get("double_press_interval")
        if isinstance(double_interval, (int, float)) and double_interval > 0:
            result["double_press_interval"] = float(double_interval)

        min_interval = hotkeys.get("min_trigger_interval")
        if isinstance(min_interval, (int, float)) and min_interval >= 0:
            result["min_trigger_interval"] = float(min_interval)

        return result


def _is_number_pair(value: Any, fallback: Any) -> bool:
    return (
        isinstance(value, (int, float))
        and isinstance(fallback, (int, float))
        and not isinstance(value, bool)
        and not isinstance(fallback, bool)
    )
