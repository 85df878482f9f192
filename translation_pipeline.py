"""Debounced, generation-tagged translation requests.

Edits to :class:`TranslationRequestState` arrive from the window, the hotkey
thread or the tray at any rate.  The pipeline coalesces them with a debounce
window, issues at most one network call per *generation*, and applies a
response only when its generation is still the latest one issued.  Older calls
are cancelled through their :class:`~translation_service.CancelToken`; if one
still finishes, its result is dropped.

All state transitions happen on the dispatcher's owner thread.  Public methods
only enqueue work, so they are safe to call from any thread.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from dispatcher import Dispatcher, ScheduledCall
from language_resolver import AUTO, LanguageResolver
from observable import ObservableState, StateChange
from settings_store import API_BASE_URL, API_KEY, SettingsStore
from translation_service import (
    CancelToken,
    ChatCompletionClient,
    ErrorKind,
    RequestBuilder,
    TranslationCancelled,
    TranslationError,
)


DEFAULT_DEBOUNCE_INTERVAL = 0.3

logger = logging.getLogger("llmtranslatetool.pipeline")


@dataclass(frozen=True)
class TranslationRequest:
    text: str
    source_language: str
    target_language: str
    model: str


@dataclass(frozen=True)
class TranslationOutcome:
    generation: int
    text: Optional[str] = None
    error: Optional[ErrorKind] = None


class TranslationRequestState(ObservableState):
    """The input cell edited by the presentation surface."""

    defaults = {
        "source_text": "",
        "source_language": AUTO,
        "target_language": "en",
        "model": "",
    }

    @property
    def source_text(self) -> str:
        return self.get("source_text")

    @property
    def source_language(self) -> str:
        return self.get("source_language")

    @property
    def target_language(self) -> str:
        return self.get("target_language")

    @property
    def model(self) -> str:
        return self.get("model")

    def snapshot(self) -> TranslationRequest:
        values = self.values()
        return TranslationRequest(
            text=values["source_text"],
            source_language=values["source_language"],
            target_language=values["target_language"],
            model=values["model"],
        )


class TranslationOutputs(ObservableState):
    defaults = {
        "current_text": "",
        "is_loading": False,
        "last_error": None,
    }


BackgroundRunner = Callable[[Callable[[], None], str], None]


def run_in_thread(job: Callable[[], None], name: str) -> None:
    threading.Thread(target=job, name=name, daemon=True).start()


class TranslationPipeline:
    """Owns the debounce, generation and cancellation bookkeeping."""

    def __init__(
        self,
        state: TranslationRequestState,
        settings: SettingsStore,
        *,
        dispatcher: Dispatcher,
        resolver: Optional[LanguageResolver] = None,
        client: Optional[ChatCompletionClient] = None,
        debounce_interval: float = DEFAULT_DEBOUNCE_INTERVAL,
        background_runner: BackgroundRunner = run_in_thread,
    ) -> None:
        self.state = state
        self.outputs = TranslationOutputs()
        self.debounce_interval = debounce_interval
        self._settings = settings
        self._dispatcher = dispatcher
        self._resolver = resolver if resolver is not None else LanguageResolver()
        self._client = client if client is not None else ChatCompletionClient()
        self._background_runner = background_runner

        # Owned by the dispatcher thread.
        self._generation = 0
        self._cleared_through = 0
        self._debounce: Optional[ScheduledCall] = None
        self._in_flight: Dict[int, CancelToken] = {}
        self._closed = False

        self._unsubscribers = [
            state.subscribe("source_text", lambda _change: self.on_input_changed()),
            state.subscribe("source_language", self._on_language_field_changed),
            state.subscribe("target_language", self._on_language_field_changed),
            state.subscribe("model", lambda _change: self.on_model_changed()),
        ]

    # Observable outputs -------------------------------------------------

    @property
    def current_text(self) -> str:
        return self.outputs.get("current_text")

    @property
    def is_loading(self) -> bool:
        return self.outputs.get("is_loading")

    @property
    def last_error(self) -> Optional[ErrorKind]:
        return self.outputs.get("last_error")

    # Entry points (any thread) -------------------------------------------

    def on_input_changed(self) -> None:
        self._dispatcher.call_soon(lambda: self._restart_debounce("input"))

    def on_language_changed(self) -> None:
        self._dispatcher.call_soon(lambda: self._restart_debounce("language"))

    def on_model_changed(self) -> None:
        self._dispatcher.call_soon(lambda: self._restart_debounce("model"))

    def translate_now(self) -> None:
        """Evaluate the current state immediately, skipping the debounce window."""

        self._dispatcher.call_soon(self._translate_now)

    def swap_languages(self) -> None:
        """Exchange source and target languages and translate right away.

        Unlike a plain exchange of the two selectors, a source of ``"auto"``
        is resolved first: the language detected for the current text becomes
        the new target, since ``"auto"`` is not a valid target.
        """

        self._dispatcher.call_soon(self._swap_languages)

    def close(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []
        self._dispatcher.call_soon(self._shutdown)

    def describe_state(self) -> Dict[str, object]:
        outputs = self.outputs.values()
        return {
            "generation": self._generation,
            "in_flight": sorted(self._in_flight),
            "debounce_pending": self._debounce is not None,
            "is_loading": outputs["is_loading"],
            "last_error": outputs["last_error"].value if outputs["last_error"] else None,
            "text_length": len(outputs["current_text"]),
        }

    # Owner-thread transitions --------------------------------------------

    def _on_language_field_changed(self, _change: StateChange) -> None:
        self.on_language_changed()

    def _restart_debounce(self, reason: str) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
        logger.debug("Debounce window restarted (%s)", reason)
        self._debounce = self._dispatcher.call_later(self.debounce_interval, self._on_debounce_elapsed)

    def _on_debounce_elapsed(self) -> None:
        self._debounce = None
        self._evaluate()

    def _swap_languages(self) -> None:
        while True:
            request = self.state.snapshot()
            new_target = self._resolver.resolve(request.source_language, request.text.strip())
            swapped = self.state.update_if(
                {
                    "source_text": request.text,
                    "source_language": request.source_language,
                    "target_language": request.target_language,
                },
                source_language=request.target_language,
                target_language=new_target,
            )
            if swapped:
                break
            logger.debug("Request state changed during swap; retrying")
        # Queued behind the debounce restarts the language change just triggered.
        self._dispatcher.call_soon(self._translate_now)

    def _translate_now(self) -> None:
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None
        self._evaluate()

    def _evaluate(self) -> None:
        if self._closed:
            return
        request = self.state.snapshot()
        text = request.text.strip()
        if not text:
            # Whatever is still in flight must not overwrite the cleared output.
            self._cleared_through = self._generation
            self.outputs.update(current_text="", is_loading=False)
            return

        self._generation += 1
        generation = self._generation
        self._cancel_superseded(generation)
        self.outputs.set("is_loading", True)

        source_language = self._resolver.resolve(request.source_language, text)
        builder = RequestBuilder(
            self._settings.get(API_BASE_URL),
            self._settings.get(API_KEY),
        )
        try:
            wire_request = builder.build(
                text, source_language, request.target_language, request.model
            )
        except TranslationError as exc:
            logger.error("Generation %d not sent: %s", generation, exc)
            self._complete(TranslationOutcome(generation, error=exc.kind))
            return

        token = CancelToken()
        self._in_flight[generation] = token
        logger.info(
            "Generation %d: %s -> %s with %s (%d chars)",
            generation,
            source_language,
            request.target_language,
            request.model,
            len(text),
        )

        def job() -> None:
            outcome = self._perform(generation, wire_request, token)
            self._dispatcher.call_soon(lambda: self._finish(generation, outcome))

        self._background_runner(job, f"TranslationRequest-{generation}")

    def _perform(self, generation, wire_request, token) -> Optional[TranslationOutcome]:
        try:
            text = self._client.complete(wire_request, cancel_token=token)
        except TranslationCancelled:
            logger.debug("Generation %d cancelled", generation)
            return None
        except TranslationError as exc:
            logger.warning("Generation %d failed (%s): %s", generation, exc.kind.value, exc)
            return TranslationOutcome(generation, error=exc.kind)
        except Exception as exc:
            if token.cancelled:
                logger.debug("Generation %d cancelled (%s)", generation, exc)
                return None
            logger.exception("Generation %d failed unexpectedly: %s", generation, exc)
            return TranslationOutcome(generation, error=ErrorKind.TRANSPORT)
        return TranslationOutcome(generation, text=text)

    def _finish(self, generation: int, outcome: Optional[TranslationOutcome]) -> None:
        self._in_flight.pop(generation, None)
        if outcome is not None:
            self._complete(outcome)

    def _complete(self, outcome: TranslationOutcome) -> None:
        if self._closed:
            logger.debug("Discarding generation %d after close", outcome.generation)
            return
        if outcome.generation != self._generation or outcome.generation <= self._cleared_through:
            logger.debug(
                "Discarding stale generation %d (latest %d)", outcome.generation, self._generation
            )
            return
        if outcome.error is not None:
            self.outputs.update(last_error=outcome.error, is_loading=False)
        else:
            self.outputs.update(current_text=outcome.text or "", last_error=None, is_loading=False)

    def _cancel_superseded(self, generation: int) -> None:
        for older, token in list(self._in_flight.items()):
            if older < generation:
                token.cancel()
                del self._in_flight[older]

    def _shutdown(self) -> None:
        self._closed = True
        if self._debounce is not None:
            self._debounce.cancel()
            self._debounce = None
        for token in self._in_flight.values():
            token.cancel()
        self._in_flight.clear()
