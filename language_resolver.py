"""Resolve the source-language selector into a concrete language code."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

try:  # pragma: no cover - executed during module import
    from langdetect import DetectorFactory, detect_langs  # type: ignore
    from langdetect.lang_detect_exception import LangDetectException  # type: ignore
except ImportError:  # pragma: no cover - handled in LangDetectDetector.__init__
    DetectorFactory = None  # type: ignore
    detect_langs = None  # type: ignore
    LangDetectException = None  # type: ignore


AUTO = "auto"
DEFAULT_LANGUAGE = "en"
MIN_DETECTION_PROBABILITY = 0.5

logger = logging.getLogger("llmtranslatetool.language")


class LanguageDetector(Protocol):  # pragma: no cover - protocol is for type checking only
    def detect(self, text: str) -> Optional[str]:
        """Return a language code, or ``None`` when no confident guess exists."""


class LangDetectDetector:
    """Detector backed by the ``langdetect`` package."""

    def __init__(self, min_probability: float = MIN_DETECTION_PROBABILITY, seed: int = 0) -> None:
        if detect_langs is None:
            raise RuntimeError(
                "The 'langdetect' package is required. Install it with 'pip install langdetect'."
            )
        # langdetect is randomised; a fixed seed keeps results stable between calls.
        DetectorFactory.seed = seed
        self.min_probability = min_probability

    def detect(self, text: str) -> Optional[str]:
        try:
            candidates = detect_langs(text)
        except LangDetectException as exc:
            logger.debug("Language detection failed: %s", exc)
            return None
        if not candidates:
            return None
        best = candidates[0]
        if best.prob < self.min_probability:
            logger.debug("Discarding low-confidence detection %s (%.2f)", best.lang, best.prob)
            return None
        return best.lang


class LanguageResolver:
    """Map ``"auto"`` or an explicit code to the language sent to the API."""

    def __init__(
        self,
        detector: Optional[LanguageDetector] = None,
        *,
        default_language: str = DEFAULT_LANGUAGE,
    ) -> None:
        self._detector = detector
        self.default_language = default_language

    @property
    def detector(self) -> LanguageDetector:
        if self._detector is None:
            self._detector = LangDetectDetector()
        return self._detector

    def resolve(self, selector: str, text: str) -> str:
        # Explicit codes are not validated; the API receives them verbatim.
        if selector != AUTO:
            return selector
        try:
            detected = self.detector.detect(text)
        except Exception:
            logger.exception("Language detector raised; using %s", self.default_language)
            return self.default_language
        return detected or self.default_language
