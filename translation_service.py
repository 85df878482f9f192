"""Chat-completion translation client for the LLMTranslateTool application."""

from __future__ import annotations

import enum
import json
import logging
import socket
import threading
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol


SYSTEM_PROMPT = "You are a helpful translator."
USER_PROMPT_TEMPLATE = "Translate this text from {source} to {target}:\n\n{text}"

DEFAULT_TIMEOUT = 30.0

logger = logging.getLogger("llmtranslatetool.service")


class ErrorKind(enum.Enum):
    INVALID_ENDPOINT = "invalid_endpoint"
    TRANSPORT = "transport"
    DECODE = "decode"
    API = "api"


class TranslationError(RuntimeError):
    """Raised when the translation service cannot complete a request."""

    def __init__(self, kind: ErrorKind, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.kind = kind
        self.status = status


class TranslationCancelled(RuntimeError):
    """Raised when a request was aborted through its :class:`CancelToken`."""


class CancelToken:
    """Thread-safe cancellation flag shared between the pipeline and a request."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception as exc:  # pragma: no cover - closing an aborted socket may fail
                logger.debug("Cancel callback failed: %s", exc)

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on cancellation, immediately if already cancelled."""

        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)
                return
        callback()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise TranslationCancelled("Request was cancelled")


@dataclass(frozen=True)
class ChatCompletionRequest:
    url: str
    headers: Dict[str, str]
    payload: Dict[str, Any]

    def body(self) -> bytes:
        return json.dumps(self.payload, ensure_ascii=False).encode("utf-8")


@dataclass
class HttpResponse:
    status: int
    body: bytes = field(default=b"", repr=False)


def validate_endpoint(base_url: str) -> str:
    """Return ``base_url`` if it is an absolute http(s) URL that http.client accepts."""

    url = base_url.strip()
    error = TranslationError(ErrorKind.INVALID_ENDPOINT, f"Invalid API base URL: {base_url!r}")
    # http.client refuses whitespace and control characters anywhere in the URL.
    if any(char.isspace() or ord(char) < 0x20 or ord(char) == 0x7F for char in url):
        raise error
    try:
        parts = urllib.parse.urlsplit(url)
        parts.port
    except ValueError as exc:
        raise error from exc
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc or not parts.hostname:
        raise error
    return url


class RequestBuilder:
    """Turns the captured request state into a chat-completion request."""

    def __init__(self, base_url: str, api_key: str) -> None:
        self.base_url = base_url
        self.api_key = api_key

    def build(
        self,
        source_text: str,
        source_language: str,
        target_language: str,
        model: str,
    ) -> ChatCompletionRequest:
        url = validate_endpoint(self.base_url)
        payload = {
            "model": model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": USER_PROMPT_TEMPLATE.format(
                        source=source_language, target=target_language, text=source_text
                    ),
                },
            ],
        }
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        return ChatCompletionRequest(url=url, headers=headers, payload=payload)


class HttpTransport(Protocol):  # pragma: no cover - protocol is for type checking only
    def post(
        self,
        url: str,
        headers: Dict[str, str],
        body: bytes,
        *,
        timeout: float,
        cancel_token: Optional[CancelToken] = None,
    ) -> HttpResponse:
        """Send ``body`` and return the raw response, including non-2xx ones."""


class UrllibTransport:
    """POST requests with :mod:`urllib.request`."""

    def post(
        self,
        url: str,
        headers: Dict[str, str],
        body: bytes,
        *,
        timeout: float,
        cancel_token: Optional[CancelToken] = None,
    ) -> HttpResponse:
        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        request = urllib.request.Request(url, data=body, headers=headers, method="POST")
        try:
            with urllib.request.urlopen(request, timeout=timeout) as response:
                if cancel_token is not None:
                    # Closing the response unblocks a pending read on another thread.
                    cancel_token.add_callback(response.close)
                payload = response.read()
                status = response.status
        except urllib.error.HTTPError as exc:
            try:
                payload = exc.read()
            finally:
                exc.close()
            return HttpResponse(status=exc.code, body=payload)
        except (socket.timeout, TimeoutError) as exc:
            self._raise_cancelled(cancel_token, exc)
            raise TranslationError(
                ErrorKind.TRANSPORT, f"Request timed out after {timeout:g}s"
            ) from exc
        except (urllib.error.URLError, OSError) as exc:
            self._raise_cancelled(cancel_token, exc)
            raise TranslationError(
                ErrorKind.TRANSPORT, f"Network error while contacting {url}: {exc}"
            ) from exc
        except ValueError as exc:
            # Closing the response mid-read, or a header value http.client rejects.
            self._raise_cancelled(cancel_token, exc)
            raise TranslationError(
                ErrorKind.TRANSPORT, f"Request to {url} could not be sent: {exc}"
            ) from exc
        except AttributeError as exc:
            # http.client drops its file object when the response is closed mid-read.
            self._raise_cancelled(cancel_token, exc)
            raise

        if cancel_token is not None:
            cancel_token.raise_if_cancelled()
        return HttpResponse(status=status, body=payload)

    @staticmethod
    def _raise_cancelled(cancel_token: Optional[CancelToken], exc: BaseException) -> None:
        if cancel_token is not None and cancel_token.cancelled:
            raise TranslationCancelled("Request was cancelled") from exc


def parse_completion(payload: bytes) -> str:
    """Extract the trimmed content of the first choice from a response body."""

    try:
        data = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise TranslationError(ErrorKind.DECODE, "Response body is not valid JSON") from exc

    choices = data.get("choices") if isinstance(data, dict) else None
    if not isinstance(choices, list):
        raise TranslationError(ErrorKind.DECODE, "Response is missing the 'choices' list")
    if not choices:
        return ""

    first = choices[0]
    message = first.get("message") if isinstance(first, dict) else None
    if not isinstance(message, dict):
        raise TranslationError(ErrorKind.DECODE, "First choice has no 'message' object")
    content = message.get("content")
    if not isinstance(content, str):
        raise TranslationError(ErrorKind.DECODE, "First choice message has no text content")
    return content.strip()


class ChatCompletionClient:
    """Sends chat-completion requests and classifies failures."""

    def __init__(
        self,
        transport: Optional[HttpTransport] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.transport = transport if transport is not None else UrllibTransport()
        self.timeout = timeout

    def complete(
        self,
        request: ChatCompletionRequest,
        *,
        cancel_token: Optional[CancelToken] = None,
        timeout: Optional[float] = None,
    ) -> str:
        timeout = self.timeout if timeout is None else timeout
        logger.debug("POST %s model=%s", request.url, request.payload.get("model"))
        response = self.transport.post(
            request.url,
            request.headers,
            request.body(),
            timeout=timeout,
            cancel_token=cancel_token,
        )
        logger.debug("Response status %s (%d bytes)", response.status, len(response.body))

        if not 200 <= response.status < 300:
            detail = response.body.decode("utf-8", errors="replace").strip()
            raise TranslationError(
                ErrorKind.API,
                f"API returned HTTP {response.status}: {detail[:500]}",
                status=response.status,
            )
        return parse_completion(response.body)
