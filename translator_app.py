"""Desktop utility to translate text with an OpenAI-compatible chat model."""

from __future__ import annotations

import argparse
import contextlib
import logging
import queue
import sys
import tempfile
import threading
import time
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import IO, Any, Callable, List, Optional, Protocol, Sequence

try:  # pragma: no cover - executed during module import
    import pyperclip  # type: ignore
except ImportError:  # pragma: no cover - handled in PyperclipClipboard.__init__
    pyperclip = None  # type: ignore

try:  # pragma: no cover - tkinter is part of stdlib on Windows and macOS
    import tkinter as tk
    from tkinter import messagebox, scrolledtext, font as tkfont
except ImportError:  # pragma: no cover - handled in TranslationWindowManager.__init__
    tk = None  # type: ignore
    messagebox = None  # type: ignore
    scrolledtext = None  # type: ignore
    tkfont = None  # type: ignore

try:  # pragma: no cover - optional dependency for system tray support
    import pystray  # type: ignore
    from pystray import MenuItem  # type: ignore
except Exception:  # pragma: no cover - pystray raises backend errors without a display
    pystray = None  # type: ignore
    MenuItem = None  # type: ignore

try:  # pragma: no cover - optional dependency for system tray support
    from PIL import Image, ImageDraw  # type: ignore
except ImportError:  # pragma: no cover - handled when starting the tray icon
    Image = None  # type: ignore
    ImageDraw = None  # type: ignore

from dispatcher import SerialDispatcher
from hotkey_manager import (
    BaseHotkeyService,
    HotkeyBinding,
    HotkeyEvent,
    KeyboardHotkeyService,
    build_bindings_from_preferences,
    find_binding,
)
from language_resolver import AUTO, LanguageResolver
from observable import StateChange
from settings_store import (
    API_BASE_URL,
    API_KEY,
    AVAILABLE_MODELS,
    DEBOUNCE_INTERVAL,
    INPUT_LANGUAGE,
    MODEL,
    OUTPUT_LANGUAGE,
    PREFERENCES_FILE,
    REQUEST_TIMEOUT,
    SettingsStore,
)
from translation_pipeline import (
    BackgroundRunner,
    TranslationOutputs,
    TranslationPipeline,
    TranslationRequestState,
    run_in_thread,
)
from translation_service import ChatCompletionClient, ErrorKind


APP_NAME = "LLMTranslateTool"

LOG_FILE_NAME = "llmtranslatetool.log"
LOG_MAX_BYTES = 2_097_152
LOG_BACKUP_COUNT = 3

LANGUAGE_OPTIONS = ("auto", "en", "ja", "fr", "de", "es", "zh", "ru", "ko")

ERROR_MESSAGES = {
    ErrorKind.INVALID_ENDPOINT: "The API base URL is not a valid http(s) URL.",
    ErrorKind.TRANSPORT: "Could not reach the API. Check your connection.",
    ErrorKind.DECODE: "The API returned a response that could not be read.",
    ErrorKind.API: "The API rejected the request. Check your key and model.",
}

logger = logging.getLogger("llmtranslatetool.app")


def configure_logging(level: int = logging.INFO) -> logging.Logger:
    app_logger = logging.getLogger("llmtranslatetool")
    if app_logger.handlers:
        return app_logger

    app_logger.setLevel(level)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    log_dir = PREFERENCES_FILE.parent
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_dir / LOG_FILE_NAME,
            maxBytes=LOG_MAX_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
    except OSError as exc:
        print(f"File logging disabled: {exc}", file=sys.stderr)
    else:
        handler.setFormatter(formatter)
        app_logger.addHandler(handler)
    console = logging.StreamHandler()
    console.setFormatter(formatter)
    app_logger.addHandler(console)
    return app_logger


def _language_display(language_code: str) -> str:
    if language_code == AUTO:
        return "Auto"
    return language_code.upper()


class ClipboardReader(Protocol):  # pragma: no cover - protocol is for type checking only
    def read_text(self) -> Optional[str]:
        """Return the clipboard text, or ``None`` when it cannot be read."""


class PyperclipClipboard:
    """Clipboard reader backed by ``pyperclip``."""

    def __init__(self, module: Any = None) -> None:
        module = module if module is not None else pyperclip
        if module is None:
            raise RuntimeError(
                "The 'pyperclip' package is required. Install it with 'pip install pyperclip'."
            )
        self._module = module

    def read_text(self) -> Optional[str]:
        try:
            text = self._module.paste()
        except Exception as exc:
            if pyperclip is not None and isinstance(exc, pyperclip.PyperclipException):
                logger.error("Failed to read clipboard: %s", exc)
            else:
                logger.error("Unexpected error while accessing clipboard: %s", exc)
            return None
        return text if isinstance(text, str) else None


@dataclass
class PressCountDetector:
    """Utility that tracks consecutive hotkey presses within a time window."""

    interval: float
    now: Callable[[], float]
    required_count: int = 2
    _last_time: float = field(default=0.0, init=False)
    _count: int = field(default=0, init=False)

    def register(self, *, timestamp: Optional[float] = None) -> bool:
        """Register a press.

        Returns ``True`` if the press completes the sequence.
        """

        current = self.now() if timestamp is None else timestamp
        if self._count and current - self._last_time <= self.interval:
            self._count += 1
        else:
            self._count = 1
        self._last_time = current

        if self._count >= self.required_count:
            self._count = 0
            return True
        return False

    def reset(self) -> None:
        self._last_time = 0.0
        self._count = 0


class SingleInstanceError(RuntimeError):
    """Raised when another instance of the application is already running."""


class SingleInstanceGuard:
    """Cross-platform single instance guard using a filesystem lock."""

    def __init__(self, name: str) -> None:
        self._lock_path = Path(tempfile.gettempdir()) / f"{name}.lock"
        self._lock_file: Optional[IO[str]] = None

    def acquire(self) -> None:
        if self._lock_file is not None:
            return
        self._lock_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock_file = open(self._lock_path, "a+")
        try:
            if sys.platform == "win32":  # pragma: no cover - platform specific
                import msvcrt  # type: ignore

                self._lock_file.seek(0)
                msvcrt.locking(self._lock_file.fileno(), msvcrt.LK_NBLCK, 1)
            else:  # pragma: no cover - exercised on non-Windows platforms
                import fcntl  # type: ignore

                fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            self._lock_file.close()
            self._lock_file = None
            raise SingleInstanceError("Another instance is already running") from exc

    def release(self) -> None:
        if self._lock_file is None:
            return
        try:
            if sys.platform == "win32":  # pragma: no cover - platform specific
                import msvcrt  # type: ignore

                self._lock_file.seek(0)
                with contextlib.suppress(OSError):
                    msvcrt.locking(self._lock_file.fileno(), msvcrt.LK_UNLCK, 1)
            else:  # pragma: no cover - exercised on non-Windows platforms
                import fcntl  # type: ignore

                with contextlib.suppress(OSError):
                    fcntl.flock(self._lock_file.fileno(), fcntl.LOCK_UN)
        finally:
            try:
                self._lock_file.close()
            finally:
                self._lock_file = None
                with contextlib.suppress(OSError):
                    self._lock_path.unlink()

    def __enter__(self) -> "SingleInstanceGuard":
        self.acquire()
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.release()


class TranslationWindowManager:
    """Owns the Tk main window and mirrors pipeline state into it.

    Tk runs on its own thread.  Every widget update is posted to ``_queue`` and
    applied from the Tk loop; edits made in the window write straight into the
    request state, which is safe from any thread.
    """

    def __init__(
        self,
        state: TranslationRequestState,
        outputs: TranslationOutputs,
        settings: SettingsStore,
        *,
        swap_callback: Callable[[], None],
        add_model_callback: Callable[[str], None],
        remove_model_callback: Callable[[str], None],
        language_options: Sequence[str] = LANGUAGE_OPTIONS,
    ) -> None:
        if tk is None:
            raise RuntimeError("tkinter is required to display the translation window")
        self._state = state
        self._outputs = outputs
        self._settings = settings
        self._swap_callback = swap_callback
        self._add_model_callback = add_model_callback
        self._remove_model_callback = remove_model_callback
        self._language_options = tuple(language_options)
        self._queue: "queue.Queue[Callable[[], None]]" = queue.Queue()
        self._ready = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._window: Optional[tk.Tk] = None
        self._input_box: Optional[scrolledtext.ScrolledText] = None
        self._output_box: Optional[scrolledtext.ScrolledText] = None
        self._status_label: Optional[tk.Label] = None
        self._source_button: Optional[tk.Button] = None
        self._dest_button: Optional[tk.Button] = None
        self._model_button: Optional[tk.Button] = None
        self._settings_window: Optional[tk.Toplevel] = None
        self._models_listbox: Optional[tk.Listbox] = None

        outputs.subscribe("current_text", lambda change: self._post(self._render_output))
        outputs.subscribe("is_loading", lambda change: self._post(self._render_status))
        outputs.subscribe("last_error", lambda change: self._post(self._render_status))
        state.subscribe("source_text", lambda change: self._post(self._sync_input_text))
        for name in ("source_language", "target_language", "model"):
            state.subscribe(name, lambda change: self._post(self._update_selector_widgets))
        settings.subscribe(AVAILABLE_MODELS, lambda change: self._post(self._refresh_model_list))

    # Thread-safe API ------------------------------------------------------

    def start(self) -> None:
        if self._thread is None or not self._thread.is_alive():
            self._ready.clear()
            self._thread = threading.Thread(target=self._run_window, name="TranslationWindow", daemon=True)
            self._thread.start()
            self._ready.wait()

    def show(self, *, reposition: bool = False) -> None:
        self.start()
        self._post(lambda: self._bring_to_front(reposition))

    def toggle(self) -> None:
        self.start()
        self._post(self._toggle_visibility)

    def close(self) -> None:
        if self._window is not None:
            self._post(self._window.destroy)

    def _post(self, update: Callable[[], None]) -> None:
        self._queue.put(update)

    # Tk thread ------------------------------------------------------------

    def _source_button_text(self) -> str:
        return f"From: {_language_display(self._state.source_language)}"

    def _dest_button_text(self) -> str:
        return f"To: {_language_display(self._state.target_language)}"

    def _model_button_text(self) -> str:
        return f"Model: {self._state.model or '-'}"

    def _update_selector_widgets(self) -> None:
        if self._source_button is not None:
            self._source_button.configure(text=self._source_button_text())
        if self._dest_button is not None:
            self._dest_button.configure(text=self._dest_button_text())
        if self._model_button is not None:
            self._model_button.configure(text=self._model_button_text())

    def _sync_input_text(self) -> None:
        box = self._input_box
        if box is None:
            return
        text = self._state.source_text
        if box.get("1.0", "end-1c") == text:
            return
        box.delete("1.0", tk.END)
        box.insert(tk.END, text)
        box.edit_modified(False)

    def _render_output(self) -> None:
        box = self._output_box
        if box is None:
            return
        box.configure(state=tk.NORMAL)
        box.delete("1.0", tk.END)
        box.insert(tk.END, self._outputs.get("current_text"))
        box.configure(state=tk.DISABLED)

    def _render_status(self) -> None:
        if self._status_label is None:
            return
        error = self._outputs.get("last_error")
        if self._outputs.get("is_loading"):
            self._status_label.configure(text="Translating…", fg="#5f6368")
        elif error is not None:
            self._status_label.configure(text=ERROR_MESSAGES.get(error, str(error)), fg="#d93025")
        else:
            self._status_label.configure(text="", fg="#5f6368")

    def _on_input_modified(self, _event: "tk.Event") -> None:
        box = self._input_box
        if box is None or not box.edit_modified():
            return
        box.edit_modified(False)
        self._state.set("source_text", box.get("1.0", "end-1c"))

    def _popup_menu(self, widget: "tk.Widget", entries: Sequence[tuple[str, Callable[[], None]]]) -> None:
        if self._window is None:
            return
        menu = tk.Menu(self._window, tearoff=0)
        for label, command in entries:
            menu.add_command(label=label, command=command)
        try:
            menu.tk_popup(widget.winfo_rootx(), widget.winfo_rooty() + widget.winfo_height())
        finally:
            menu.grab_release()

    def _open_source_menu(self, widget: "tk.Widget") -> None:
        self._popup_menu(
            widget,
            [
                (_language_display(code), lambda c=code: self._state.set("source_language", c))
                for code in self._language_options
            ],
        )

    def _open_dest_menu(self, widget: "tk.Widget") -> None:
        self._popup_menu(
            widget,
            [
                (_language_display(code), lambda c=code: self._state.set("target_language", c))
                for code in self._language_options
                if code != AUTO
            ],
        )

    def _open_model_menu(self, widget: "tk.Widget") -> None:
        self._popup_menu(
            widget,
            [
                (name, lambda m=name: self._state.set("model", m))
                for name in self._settings.get(AVAILABLE_MODELS)
            ],
        )

    def _refresh_model_list(self) -> None:
        listbox = self._models_listbox
        if listbox is None:
            return
        listbox.delete(0, tk.END)
        for name in self._settings.get(AVAILABLE_MODELS):
            listbox.insert(tk.END, name)

    def _open_settings(self) -> None:
        if self._window is None:
            return
        if self._settings_window is not None and self._settings_window.winfo_exists():
            self._settings_window.lift()
            return

        dialog = tk.Toplevel(self._window)
        dialog.title("Settings")
        dialog.geometry("420x440")
        self._settings_window = dialog

        api_frame = tk.LabelFrame(dialog, text="API Settings")
        api_frame.pack(fill=tk.X, padx=10, pady=(10, 5))

        key_var = tk.StringVar(value=self._settings.get(API_KEY))
        url_var = tk.StringVar(value=self._settings.get(API_BASE_URL))
        key_var.trace_add("write", lambda *_: self._settings.set(API_KEY, key_var.get()))
        url_var.trace_add("write", lambda *_: self._settings.set(API_BASE_URL, url_var.get().strip()))

        tk.Label(api_frame, text="API Key").grid(row=0, column=0, sticky="w", padx=4, pady=2)
        tk.Entry(api_frame, textvariable=key_var, show="•", width=40).grid(row=0, column=1, padx=4, pady=2)
        tk.Label(api_frame, text="API Base URL").grid(row=1, column=0, sticky="w", padx=4, pady=2)
        tk.Entry(api_frame, textvariable=url_var, width=40).grid(row=1, column=1, padx=4, pady=2)

        models_frame = tk.LabelFrame(dialog, text="Edit Models")
        models_frame.pack(fill=tk.BOTH, expand=True, padx=10, pady=5)

        new_model_var = tk.StringVar()
        add_row = tk.Frame(models_frame)
        add_row.pack(fill=tk.X, padx=4, pady=4)
        new_model_entry = tk.Entry(add_row, textvariable=new_model_var)
        new_model_entry.pack(side=tk.LEFT, fill=tk.X, expand=True)

        def add_model() -> None:
            name = new_model_var.get().strip()
            if not name:
                return
            self._add_model_callback(name)
            new_model_var.set("")

        tk.Button(add_row, text="Add", command=add_model).pack(side=tk.LEFT, padx=(6, 0))
        new_model_entry.bind("<Return>", lambda _event: add_model())

        listbox = tk.Listbox(models_frame, height=8)
        listbox.pack(fill=tk.BOTH, expand=True, padx=4, pady=4)
        self._models_listbox = listbox
        self._refresh_model_list()

        def remove_selected() -> None:
            selection = listbox.curselection()
            if selection:
                self._remove_model_callback(listbox.get(selection[0]))

        tk.Button(models_frame, text="Delete selected model", command=remove_selected).pack(
            anchor="e", padx=4, pady=(0, 4)
        )

        def close_dialog() -> None:
            self._models_listbox = None
            self._settings_window = None
            dialog.destroy()

        tk.Button(dialog, text="Done", command=close_dialog).pack(pady=(0, 10))
        dialog.protocol("WM_DELETE_WINDOW", close_dialog)

    def _toggle_visibility(self) -> None:
        window = self._window
        if window is None:
            return
        if window.state() == "withdrawn":
            self._bring_to_front(False)
        else:
            window.withdraw()

    def _bring_to_front(self, reposition: bool) -> None:
        window = self._window
        if window is None:
            return
        if reposition:
            window.update_idletasks()
            width = window.winfo_width() or window.winfo_reqwidth()
            height = window.winfo_height() or window.winfo_reqheight()
            max_x = max(window.winfo_screenwidth() - width, 0)
            max_y = max(window.winfo_screenheight() - height, 0)
            x = min(max(window.winfo_pointerx() - width // 2, 0), max_x)
            y = min(max(window.winfo_pointery() - height // 2, 0), max_y)
            window.geometry(f"+{x}+{y}")
        window.deiconify()
        window.lift()
        window.attributes("-topmost", True)
        window.after(100, lambda: window.attributes("-topmost", False))
        window.focus_force()

    def _run_window(self) -> None:
        window = tk.Tk()
        self._window = window
        window.title(APP_NAME)
        window.geometry("720x420")
        window.minsize(600, 400)

        default_font = tkfont.nametofont("TkDefaultFont")
        available_families = {name.lower(): name for name in tkfont.families()}
        base_family = next(
            (
                available_families[family.lower()]
                for family in ("Segoe UI", "Helvetica Neue", "Noto Sans", "Arial")
                if family.lower() in available_families
            ),
            default_font.actual("family"),
        )
        button_font = tkfont.Font(family=base_family, size=11)
        toggle_font = tkfont.Font(family=base_family, size=14, weight="bold")
        text_font = tkfont.Font(family=base_family, size=12)

        controls_frame = tk.Frame(window, bg="#f8f9fa")
        controls_frame.pack(fill=tk.X, padx=10, pady=(10, 5))

        def selector_button(text: str, command: Callable[[], None]) -> tk.Button:
            return tk.Button(
                controls_frame,
                text=text,
                font=button_font,
                relief=tk.SOLID,
                bd=1,
                bg="white",
                activebackground="#e8f0fe",
                cursor="hand2",
                command=command,
            )

        tk.Button(controls_frame, text="⚙", font=button_font, relief=tk.FLAT, command=self._open_settings).pack(
            side=tk.LEFT, padx=(0, 8)
        )
        source_button = selector_button(self._source_button_text(), lambda: self._open_source_menu(source_button))
        source_button.pack(side=tk.LEFT, expand=True, fill=tk.X)
        self._source_button = source_button

        tk.Button(
            controls_frame,
            text="⇄",
            font=toggle_font,
            width=3,
            bg="#1a73e8",
            fg="white",
            activebackground="#1765c1",
            activeforeground="white",
            relief=tk.FLAT,
            bd=0,
            cursor="hand2",
            command=self._swap_callback,
        ).pack(side=tk.LEFT, padx=8)

        dest_button = selector_button(self._dest_button_text(), lambda: self._open_dest_menu(dest_button))
        dest_button.pack(side=tk.LEFT, expand=True, fill=tk.X)
        self._dest_button = dest_button

        model_button = selector_button(self._model_button_text(), lambda: self._open_model_menu(model_button))
        model_button.pack(side=tk.LEFT, padx=(8, 0))
        self._model_button = model_button

        content = tk.PanedWindow(window, orient=tk.HORIZONTAL, sashwidth=6)
        content.pack(fill=tk.BOTH, expand=True, padx=10, pady=(0, 4))

        input_box = scrolledtext.ScrolledText(content, wrap=tk.WORD, font=text_font, undo=True)
        input_box.insert(tk.END, self._state.source_text)
        input_box.edit_modified(False)
        input_box.bind("<<Modified>>", self._on_input_modified)
        content.add(input_box, minsize=200)
        self._input_box = input_box

        output_box = scrolledtext.ScrolledText(content, wrap=tk.WORD, font=text_font)
        output_box.configure(state=tk.DISABLED)
        content.add(output_box, minsize=200)
        self._output_box = output_box

        status_label = tk.Label(window, anchor="w", font=button_font)
        status_label.pack(fill=tk.X, padx=10, pady=(0, 8))
        self._status_label = status_label

        window.protocol("WM_DELETE_WINDOW", window.withdraw)
        window.bind("<Escape>", lambda _event: window.withdraw())

        def apply_update() -> None:
            try:
                while True:
                    update = self._queue.get_nowait()
                    try:
                        update()
                    except tk.TclError as exc:
                        logger.debug("Skipped window update: %s", exc)
            except queue.Empty:
                pass
            window.after(100, apply_update)

        self._render_output()
        self._render_status()
        self._ready.set()
        apply_update()
        window.mainloop()
        self._window = None
        self._input_box = None
        self._output_box = None
        self._status_label = None
        self._source_button = None
        self._dest_button = None
        self._model_button = None
        self._settings_window = None
        self._models_listbox = None


class SystemTrayController:
    """Manage a system tray icon with Show, Reboot and Exit commands."""

    def __init__(self, app: "TranslatorApp") -> None:
        self._app = app
        self._icon: Optional["pystray.Icon"] = None

    @staticmethod
    def _is_supported() -> bool:
        return pystray is not None and MenuItem is not None and Image is not None and ImageDraw is not None

    def start(self) -> None:
        if not self._is_supported():
            logger.warning("System tray icon is unavailable because required dependencies are missing.")
            return

        assert pystray is not None  # noqa: S101 - guarded by _is_supported
        menu = pystray.Menu(
            MenuItem("Show", self._on_show, default=True),
            MenuItem("Reboot", self._on_reboot),
            MenuItem("Exit", self._on_exit),
        )
        self._icon = pystray.Icon("llmtranslatetool", self._create_icon_image(), APP_NAME, menu=menu)
        self._icon.run_detached()

    def stop(self) -> None:
        if self._icon is not None:
            self._icon.stop()
            self._icon = None

    def _on_show(self, _icon: "pystray.Icon", _item: Any) -> None:
        self._app.show_window()

    def _on_exit(self, icon: "pystray.Icon", _item: Any) -> None:
        self._app.stop()
        icon.stop()

    def _on_reboot(self, icon: "pystray.Icon", _item: Any) -> None:
        self._app.reboot()
        icon.stop()

    @staticmethod
    def _create_icon_image() -> "Image.Image":
        assert Image is not None and ImageDraw is not None  # noqa: S101 - guarded by _is_supported
        size = 64
        image = Image.new("RGBA", (size, size), (0, 0, 0, 0))
        draw = ImageDraw.Draw(image)
        draw.ellipse((6, 6, size - 6, size - 6), fill=(28, 114, 206, 255))
        draw.ellipse((22, 6, size - 22, size - 6), outline=(255, 255, 255, 255), width=3)
        draw.line((6, size // 2, size - 6, size // 2), fill=(255, 255, 255, 255), width=3)
        return image


WindowFactory = Callable[["TranslatorApp"], Any]
HotkeyServiceFactory = Callable[
    [Sequence[HotkeyBinding], "queue.Queue[HotkeyEvent]", logging.Logger, Callable[[], float]],
    BaseHotkeyService,
]


class TranslatorApp:
    """Wires settings, request state, pipeline, window, tray and hotkeys."""

    def __init__(
        self,
        settings: Optional[SettingsStore] = None,
        *,
        source_language: Optional[str] = None,
        dest_language: Optional[str] = None,
        model: Optional[str] = None,
        debounce_interval: Optional[float] = None,
        clipboard: Optional[ClipboardReader] = None,
        dispatcher: Any = None,
        resolver: Optional[LanguageResolver] = None,
        client: Optional[ChatCompletionClient] = None,
        background_runner: BackgroundRunner = run_in_thread,
        time_provider: Callable[[], float] = time.perf_counter,
        window_factory: Optional[WindowFactory] = None,
        hotkey_service_factory: Optional[HotkeyServiceFactory] = None,
        hotkey_bindings: Optional[Sequence[HotkeyBinding]] = None,
    ) -> None:
        self.settings = settings if settings is not None else SettingsStore()
        self.state = TranslationRequestState(
            source_language=source_language or self.settings.get(INPUT_LANGUAGE),
            target_language=dest_language or self.settings.get(OUTPUT_LANGUAGE),
            model=model or self.settings.get(MODEL),
        )
        self._dispatcher = dispatcher if dispatcher is not None else SerialDispatcher()
        if client is None:
            client = ChatCompletionClient(timeout=float(self.settings.get(REQUEST_TIMEOUT)))
        if debounce_interval is None:
            debounce_interval = float(self.settings.get(DEBOUNCE_INTERVAL))
        self.pipeline = TranslationPipeline(
            self.state,
            self.settings,
            dispatcher=self._dispatcher,
            resolver=resolver,
            client=client,
            debounce_interval=debounce_interval,
            background_runner=background_runner,
        )
        self.state.subscribe("source_language", self._persist(INPUT_LANGUAGE))
        self.state.subscribe("target_language", self._persist(OUTPUT_LANGUAGE))
        self.state.subscribe("model", self._persist(MODEL))

        self._clipboard = clipboard if clipboard is not None else PyperclipClipboard()
        self._time_provider = time_provider
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._restart_event = threading.Event()
        self._hotkey_event_queue: "queue.Queue[Optional[HotkeyEvent]]" = queue.Queue()
        self._hotkey_dispatcher: Optional[threading.Thread] = None
        self._hotkey_service: Optional[BaseHotkeyService] = None
        self._hotkey_service_factory = hotkey_service_factory
        self._tray_controller: Optional[SystemTrayController] = None
        self._last_trigger_time = 0.0

        self._hotkey_preferences = self.settings.hotkey_preferences()
        if hotkey_bindings is not None:
            self._hotkey_bindings: List[HotkeyBinding] = list(hotkey_bindings)
        else:
            self._hotkey_bindings = build_bindings_from_preferences(self._hotkey_preferences)
        interval = self._hotkey_preferences["double_press_interval"]
        self._min_trigger_interval = self._hotkey_preferences["min_trigger_interval"]
        self._clipboard_detector = PressCountDetector(
            interval, time_provider, required_count=self._press_count("clipboard")
        )
        self._state_dump_detector = PressCountDetector(
            interval, time_provider, required_count=self._press_count("state_dump")
        )

        if window_factory is None:
            window_factory = self._default_window_factory
        self._window = window_factory(self)

    def _press_count(self, name: str) -> int:
        binding = find_binding(self._hotkey_bindings, name)
        return binding.press_count if binding is not None else 1

    def _persist(self, key: str) -> Callable[[StateChange], None]:
        def write(change: StateChange) -> None:
            self.settings.set(key, change.new)

        return write

    @staticmethod
    def _default_window_factory(app: "TranslatorApp") -> TranslationWindowManager:
        return TranslationWindowManager(
            app.state,
            app.pipeline.outputs,
            app.settings,
            swap_callback=app.swap_languages,
            add_model_callback=app.add_model,
            remove_model_callback=app.remove_model,
        )

    # User actions ---------------------------------------------------------

    def swap_languages(self) -> None:
        self.pipeline.swap_languages()

    def add_model(self, name: str) -> None:
        self.settings.add_model(name)

    def remove_model(self, name: str) -> None:
        replacement = self.settings.remove_model(name, current=self.state.model)
        if replacement is not None:
            self.state.set("model", replacement)

    def show_window(self) -> None:
        self._window.show()

    def translate_clipboard(self, *, reposition: bool = True) -> bool:
        """Copy the clipboard into the input and translate it immediately."""

        text = self._clipboard.read_text()
        if not text or not text.strip():
            return False
        self.state.set("source_text", text)
        self.pipeline.translate_now()
        self._window.show(reposition=reposition)
        return True

    def prefill_from_clipboard(self) -> None:
        text = self._clipboard.read_text()
        if text and text.strip():
            self.state.set("source_text", text)

    # Lifecycle ------------------------------------------------------------

    def start(self, *, tray_controller: Optional[SystemTrayController] = None) -> None:
        """Run until :meth:`stop` is called, restarting after :meth:`reboot`."""

        self._tray_controller = tray_controller
        self.prefill_from_clipboard()

        while True:
            self._ensure_background_threads()
            self._hotkey_service = self._create_hotkey_service()
            if self._hotkey_service is not None:
                try:
                    self._hotkey_service.start()
                    logger.info("Hotkey service started with %s", self._hotkey_service.describe_bindings())
                except Exception as exc:
                    logger.exception("Failed to start hotkey service: %s", exc)
                    self._hotkey_service.stop()
                    self._hotkey_service = None

            logger.info("%s is running.", APP_NAME)
            self._window.show()
            if self._tray_controller is not None:
                self._tray_controller.start()

            try:
                self._stop_event.wait()
            except KeyboardInterrupt:  # pragma: no cover - manual console interruption
                self.stop()
            finally:
                if self._tray_controller is not None:
                    self._tray_controller.stop()
                if self._hotkey_service is not None:
                    self._hotkey_service.stop()
                    logger.info("Hotkey service stopped")
                    self._hotkey_service = None

            if self._restart_event.is_set():
                self._restart_event.clear()
                self._stop_event.clear()
                continue

            break

        self._window.close()
        self.pipeline.close()
        self._dispatcher_stop()

    def stop(self) -> None:
        """Signal the application to shut down."""

        self._restart_event.clear()
        self._stop_event.set()
        if self._hotkey_dispatcher is not None and self._hotkey_dispatcher.is_alive():
            self._hotkey_event_queue.put(None)

    def reboot(self) -> None:
        """Restart the hotkey service and tray icon."""

        self._restart_event.set()
        self._stop_event.set()

    def _dispatcher_stop(self) -> None:
        stop = getattr(self._dispatcher, "stop", None)
        if callable(stop):
            stop()

    @staticmethod
    def _default_hotkey_service_factory(
        bindings: Sequence[HotkeyBinding],
        event_queue: "queue.Queue[HotkeyEvent]",
        hotkey_logger: logging.Logger,
        time_provider: Callable[[], float],
    ) -> BaseHotkeyService:
        return KeyboardHotkeyService(bindings, event_queue, hotkey_logger, time_provider=time_provider)

    def _create_hotkey_service(self) -> Optional[BaseHotkeyService]:
        if not self._hotkey_bindings:
            logger.warning("No hotkey bindings available; global hotkeys are disabled")
            return None
        factory = self._hotkey_service_factory or self._default_hotkey_service_factory
        try:
            return factory(
                self._hotkey_bindings,
                self._hotkey_event_queue,
                logging.getLogger("llmtranslatetool.hotkeys"),
                self._time_provider,
            )
        except Exception as exc:
            logger.exception("Failed to create hotkey service: %s", exc)
            return None

    def _ensure_background_threads(self) -> None:
        if self._hotkey_dispatcher is None or not self._hotkey_dispatcher.is_alive():
            self._hotkey_dispatcher = threading.Thread(
                target=self._dispatch_hotkey_events,
                name="HotkeyDispatcher",
                daemon=True,
            )
            self._hotkey_dispatcher.start()

    def _dispatch_hotkey_events(self) -> None:
        while True:
            event = self._hotkey_event_queue.get()
            if event is None:
                break
            try:
                self._process_hotkey_event(event)
            except Exception as exc:  # pragma: no cover - logging runtime issues
                logger.exception("Error while processing hotkey event: %s", exc)

    def _process_hotkey_event(self, event: HotkeyEvent) -> None:
        if event.name == "clipboard":
            self._handle_clipboard_event(timestamp=event.timestamp)
        elif event.name == "state_dump":
            self._handle_state_dump_event(timestamp=event.timestamp)
        else:
            logger.debug("Unknown hotkey event: %s", event.name)

    def _handle_clipboard_event(self, *, timestamp: Optional[float] = None) -> None:
        with self._lock:
            if not self._clipboard_detector.register(timestamp=timestamp):
                return
            current_time = timestamp if timestamp is not None else self._time_provider()
            if current_time - self._last_trigger_time < self._min_trigger_interval:
                return
            self._last_trigger_time = current_time

        if not self.translate_clipboard():
            self._clipboard_detector.reset()

    def _handle_state_dump_event(self, *, timestamp: Optional[float] = None) -> None:
        with self._lock:
            if not self._state_dump_detector.register(timestamp=timestamp):
                return
        bindings: Sequence[str] = []
        if self._hotkey_service is not None:
            bindings = list(self._hotkey_service.describe_bindings())
        logger.info(
            "State dump | bindings=%s | pipeline=%s | restart_flag=%s",
            bindings,
            self.pipeline.describe_state(),
            self._restart_event.is_set(),
        )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Translate text with an OpenAI-compatible chat-completion API."
    )
    parser.add_argument("--src", default=None, help="Source language code, or 'auto' to detect it.")
    parser.add_argument("--dest", default=None, help="Target language code (default: last used).")
    parser.add_argument("--model", default=None, help="Chat model to use (default: last used).")
    parser.add_argument(
        "--debounce",
        type=float,
        default=None,
        help="Seconds to wait after the last edit before translating.",
    )
    parser.add_argument("--verbose", action="store_true", help="Log requests at DEBUG level.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else logging.INFO)
    try:
        with SingleInstanceGuard("llmtranslatetool"):
            app = TranslatorApp(
                source_language=args.src,
                dest_language=args.dest,
                model=args.model,
                debounce_interval=args.debounce,
            )
            tray_controller = SystemTrayController(app)
            app.start(tray_controller=tray_controller)
    except SingleInstanceError:
        if tk is None:
            print(f"{APP_NAME} is already running.", file=sys.stderr)
            return
        root = tk.Tk()
        root.withdraw()
        messagebox.showinfo(APP_NAME, f"{APP_NAME} is already running.")
        root.destroy()


if __name__ == "__main__":
    main()
