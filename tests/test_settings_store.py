import json
import tempfile
import threading
import unittest
from pathlib import Path

from settings_store import (
    API_BASE_URL,
    API_KEY,
    AVAILABLE_MODELS,
    DEBOUNCE_INTERVAL,
    DEDUPLICATE_MODELS,
    HOTKEYS,
    INPUT_LANGUAGE,
    MODEL,
    OUTPUT_LANGUAGE,
    SettingsStore,
)


class SettingsStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.path = Path(self._tmp.name) / "nested" / "prefs.json"

    def test_defaults_when_file_is_missing(self) -> None:
        store = SettingsStore(self.path)
        self.assertEqual(store.get(INPUT_LANGUAGE), "auto")
        self.assertEqual(store.get(OUTPUT_LANGUAGE), "en")
        self.assertEqual(store.get(API_KEY), "")
        self.assertEqual(store.get(API_BASE_URL), "https://api.openai.com/v1/chat/completions")
        self.assertEqual(store.get(MODEL), "gpt-3.5-turbo")
        self.assertEqual(store.get(AVAILABLE_MODELS), ["gpt-3.5-turbo", "gpt-4", "gpt-4o-mini"])
        self.assertEqual(store.get(DEBOUNCE_INTERVAL), 0.3)
        self.assertEqual(store.get("unknown", "fallback"), "fallback")

    def test_values_survive_reload(self) -> None:
        store = SettingsStore(self.path)
        store.set(API_KEY, "sk-abc")
        store.set(OUTPUT_LANGUAGE, "ja")

        reloaded = SettingsStore(self.path)
        self.assertEqual(reloaded.get(API_KEY), "sk-abc")
        self.assertEqual(reloaded.get(OUTPUT_LANGUAGE), "ja")
        self.assertEqual(json.loads(self.path.read_text(encoding="utf-8"))[API_KEY], "sk-abc")

    def test_corrupt_file_falls_back_to_defaults(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text("{not json", encoding="utf-8")
        store = SettingsStore(self.path)
        self.assertEqual(store.get(MODEL), "gpt-3.5-turbo")

    def test_value_with_wrong_type_is_ignored(self) -> None:
        self.path.parent.mkdir(parents=True)
        self.path.write_text(
            json.dumps({AVAILABLE_MODELS: "gpt-4", DEBOUNCE_INTERVAL: 1}), encoding="utf-8"
        )
        store = SettingsStore(self.path)
        self.assertEqual(store.get(AVAILABLE_MODELS), ["gpt-3.5-turbo", "gpt-4", "gpt-4o-mini"])
        self.assertEqual(store.get(DEBOUNCE_INTERVAL), 1)

    def test_returned_lists_are_copies(self) -> None:
        store = SettingsStore(self.path)
        models = store.get(AVAILABLE_MODELS)
        models.append("mutated")
        self.assertNotIn("mutated", store.get(AVAILABLE_MODELS))

    def test_subscribers_see_changes(self) -> None:
        store = SettingsStore(self.path)
        changes = []
        store.subscribe(MODEL, changes.append)
        store.set(MODEL, "gpt-4")
        store.set(MODEL, "gpt-4")
        self.assertEqual([(c.old, c.new) for c in changes], [("gpt-3.5-turbo", "gpt-4")])

    def test_concurrent_writes_to_different_keys_are_kept(self) -> None:
        store = SettingsStore(self.path)
        keys = [f"key{index}" for index in range(20)]
        threads = [threading.Thread(target=store.set, args=(key, key.upper())) for key in keys]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        reloaded = SettingsStore(self.path)
        for key in keys:
            self.assertEqual(reloaded.get(key), key.upper())

    def test_add_model_allows_duplicates_by_default(self) -> None:
        store = SettingsStore(self.path)
        self.assertTrue(store.add_model("  gpt-4 "))
        self.assertFalse(store.add_model("   "))
        self.assertEqual(store.get(AVAILABLE_MODELS).count("gpt-4"), 2)

    def test_add_model_deduplicates_when_enabled(self) -> None:
        store = SettingsStore(self.path)
        store.set(DEDUPLICATE_MODELS, True)
        self.assertFalse(store.add_model("gpt-4"))
        self.assertTrue(store.add_model("o3-mini"))
        self.assertEqual(store.get(AVAILABLE_MODELS), ["gpt-3.5-turbo", "gpt-4", "gpt-4o-mini", "o3-mini"])

    def test_remove_selected_model_returns_first_remaining(self) -> None:
        store = SettingsStore(self.path)
        self.assertEqual(store.remove_model("gpt-3.5-turbo", current="gpt-3.5-turbo"), "gpt-4")
        self.assertIsNone(store.remove_model("gpt-4", current="gpt-4o-mini"))
        self.assertEqual(store.get(AVAILABLE_MODELS), ["gpt-4o-mini"])
        self.assertEqual(store.remove_model("gpt-4o-mini", current="gpt-4o-mini"), "")
        self.assertIsNone(store.remove_model("missing", current="missing"))

    def test_hotkey_preferences_merge_over_defaults(self) -> None:
        store = SettingsStore(self.path)
        store.set(
            HOTKEYS,
            {
                "clipboard": {"combo": " ctrl+c ", "press_count": 2},
                "state_dump": {"press_count": 0},
                "double_press_interval": -1,
                "min_trigger_interval": 0.05,
            },
        )
        prefs = store.hotkey_preferences()
        self.assertEqual(prefs["clipboard"], {"combo": "ctrl+c", "press_count": 2})
        self.assertEqual(prefs["state_dump"], {"combo": "f8", "press_count": 1})
        self.assertEqual(prefs["double_press_interval"], 0.5)
        self.assertEqual(prefs["min_trigger_interval"], 0.05)


if __name__ == "__main__":  # pragma: no cover - allows direct execution
    unittest.main()
