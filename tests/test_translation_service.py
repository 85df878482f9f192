import io
import json
import socket
import unittest
import unittest.mock as mock
import urllib.error

from fakes import FakeTransport, completion_body
from translation_service import (
    CancelToken,
    ChatCompletionClient,
    ErrorKind,
    HttpResponse,
    RequestBuilder,
    TranslationCancelled,
    TranslationError,
    UrllibTransport,
    parse_completion,
    validate_endpoint,
)


class RequestBuilderTests(unittest.TestCase):
    def test_build_produces_chat_completion_payload(self) -> None:
        builder = RequestBuilder("https://api.example.com/v1/chat/completions", "sk-123")
        request = builder.build("Hello", "en", "ja", "gpt-4o-mini")

        self.assertEqual(request.url, "https://api.example.com/v1/chat/completions")
        self.assertEqual(request.headers["Authorization"], "Bearer sk-123")
        self.assertEqual(request.headers["Content-Type"], "application/json")
        self.assertEqual(
            request.payload,
            {
                "model": "gpt-4o-mini",
                "messages": [
                    {"role": "system", "content": "You are a helpful translator."},
                    {"role": "user", "content": "Translate this text from en to ja:\n\nHello"},
                ],
            },
        )

    def test_body_keeps_non_ascii_text(self) -> None:
        request = RequestBuilder("http://localhost:8080/chat", "").build("こんにちは", "ja", "en", "m")
        self.assertIn("こんにちは".encode("utf-8"), request.body())
        self.assertEqual(json.loads(request.body())["model"], "m")

    def test_unknown_language_codes_pass_through(self) -> None:
        request = RequestBuilder("https://api.example.com", "k").build("x", "xx-invalid", "??", "m")
        self.assertIn("from xx-invalid to ??", request.payload["messages"][1]["content"])

    def test_malformed_urls_are_rejected(self) -> None:
        for url in ("", "not a url", "api.openai.com/v1", "ftp://example.com", "https://", "http://[::1"):
            with self.subTest(url=url):
                with self.assertRaises(TranslationError) as ctx:
                    RequestBuilder(url, "k").build("Hello", "en", "ja", "m")
                self.assertEqual(ctx.exception.kind, ErrorKind.INVALID_ENDPOINT)

    def test_validate_endpoint_strips_whitespace(self) -> None:
        self.assertEqual(validate_endpoint("  https://example.com/v1  "), "https://example.com/v1")


class ParseCompletionTests(unittest.TestCase):
    def test_first_choice_content_is_trimmed(self) -> None:
        self.assertEqual(parse_completion(completion_body("  Bonjour  ")), "Bonjour")

    def test_empty_choices_yield_empty_string(self) -> None:
        self.assertEqual(parse_completion(b'{"choices": []}'), "")

    def test_unexpected_shapes_raise_decode_error(self) -> None:
        bodies = [
            b"not json",
            b"\xff\xfe",
            b"[]",
            b'{"error": "nope"}',
            b'{"choices": [{"text": "legacy"}]}',
            b'{"choices": [{"message": {"role": "assistant", "content": null}}]}',
        ]
        for body in bodies:
            with self.subTest(body=body):
                with self.assertRaises(TranslationError) as ctx:
                    parse_completion(body)
                self.assertEqual(ctx.exception.kind, ErrorKind.DECODE)


class ChatCompletionClientTests(unittest.TestCase):
    def setUp(self) -> None:
        self.request = RequestBuilder("https://api.example.com/v1", "k").build("Hello", "en", "fr", "m")

    def test_complete_returns_trimmed_content(self) -> None:
        transport = FakeTransport(content="\n Bonjour \n")
        client = ChatCompletionClient(transport, timeout=7.5)
        self.assertEqual(client.complete(self.request), "Bonjour")
        self.assertEqual(transport.calls[0]["timeout"], 7.5)

    def test_non_2xx_status_raises_api_error(self) -> None:
        transport = FakeTransport(lambda payload: HttpResponse(429, b'{"error": "rate limited"}'))
        client = ChatCompletionClient(transport)
        with self.assertRaises(TranslationError) as ctx:
            client.complete(self.request)
        self.assertEqual(ctx.exception.kind, ErrorKind.API)
        self.assertEqual(ctx.exception.status, 429)
        self.assertIn("rate limited", str(ctx.exception))


class EndpointValidationTests(unittest.TestCase):
    def test_urls_http_client_would_refuse_are_invalid_endpoints(self) -> None:
        urls = [
            "nonsense",
            "ftp://api.example.com/v1",
            "file:///etc/passwd",
            "http://127.0.0.1:9/v1/chat completions",
            "http://api.example.com:abc/v1",
            "http://api.example.com/v1\n/chat",
            "https://api.example.com/v1\t/chat",
            "http:///v1/chat/completions",
        ]
        for url in urls:
            with self.subTest(url=url):
                with self.assertRaises(TranslationError) as ctx:
                    RequestBuilder(url, "k").build("Hello", "en", "fr", "m")
                self.assertEqual(ctx.exception.kind, ErrorKind.INVALID_ENDPOINT)

    def test_surrounding_whitespace_is_trimmed(self) -> None:
        self.assertEqual(
            validate_endpoint("  https://api.example.com:8443/v1  "),
            "https://api.example.com:8443/v1",
        )


class UrllibTransportTests(unittest.TestCase):
    def test_post_timeout_raises_translation_error(self) -> None:
        transport = UrllibTransport()

        with mock.patch("urllib.request.urlopen", side_effect=socket.timeout):
            with self.assertRaises(TranslationError) as ctx:
                transport.post("https://example.com", {}, b"{}", timeout=0.01)

        self.assertEqual(ctx.exception.kind, ErrorKind.TRANSPORT)
        self.assertIn("timed out", str(ctx.exception))

    def test_connection_failure_is_transport_error(self) -> None:
        error = urllib.error.URLError(ConnectionRefusedError("refused"))
        with mock.patch("urllib.request.urlopen", side_effect=error):
            with self.assertRaises(TranslationError) as ctx:
                UrllibTransport().post("https://example.com", {}, b"{}", timeout=1)
        self.assertEqual(ctx.exception.kind, ErrorKind.TRANSPORT)

    def test_header_values_http_client_rejects_are_transport_errors(self) -> None:
        for api_key in ("sk-ключ", "sk-12\n34"):
            with self.subTest(api_key=api_key):
                request = RequestBuilder("http://127.0.0.1:9/v1", api_key).build("Hello", "en", "fr", "m")
                with self.assertRaises(TranslationError) as ctx:
                    UrllibTransport().post(request.url, request.headers, request.body(), timeout=1)
                self.assertEqual(ctx.exception.kind, ErrorKind.TRANSPORT)

    def test_value_error_without_cancellation_is_transport_error(self) -> None:
        with mock.patch("urllib.request.urlopen", side_effect=ValueError("bad request line")):
            with self.assertRaises(TranslationError) as ctx:
                UrllibTransport().post(
                    "https://example.com", {}, b"{}", timeout=1, cancel_token=CancelToken()
                )
        self.assertEqual(ctx.exception.kind, ErrorKind.TRANSPORT)
        self.assertIn("bad request line", str(ctx.exception))

    def test_http_error_is_returned_as_response(self) -> None:
        error = urllib.error.HTTPError(
            "https://example.com", 401, "Unauthorized", {}, io.BytesIO(b'{"error": "bad key"}')
        )
        with mock.patch("urllib.request.urlopen", side_effect=error):
            response = UrllibTransport().post("https://example.com", {}, b"{}", timeout=1)
        self.assertEqual(response.status, 401)
        self.assertEqual(response.body, b'{"error": "bad key"}')

    def test_successful_post_sends_headers_and_body(self) -> None:
        response = mock.MagicMock()
        response.read.return_value = completion_body("ok")
        response.status = 200
        context = mock.MagicMock()
        context.__enter__.return_value = response

        with mock.patch("urllib.request.urlopen", return_value=context) as urlopen:
            result = UrllibTransport().post(
                "https://example.com/v1",
                {"Authorization": "Bearer k", "Content-Type": "application/json"},
                b'{"model": "m"}',
                timeout=3,
            )

        sent = urlopen.call_args[0][0]
        self.assertEqual(sent.get_method(), "POST")
        self.assertEqual(sent.data, b'{"model": "m"}')
        self.assertEqual(sent.get_header("Authorization"), "Bearer k")
        self.assertEqual(urlopen.call_args[1]["timeout"], 3)
        self.assertEqual(result.status, 200)

    def test_cancelled_token_skips_network(self) -> None:
        token = CancelToken()
        token.cancel()
        with mock.patch("urllib.request.urlopen") as urlopen:
            with self.assertRaises(TranslationCancelled):
                UrllibTransport().post("https://example.com", {}, b"{}", timeout=1, cancel_token=token)
        urlopen.assert_not_called()

    def test_cancel_during_read_closes_response(self) -> None:
        token = CancelToken()
        response = mock.MagicMock()
        response.status = 200

        def read():
            token.cancel()
            raise ValueError("I/O operation on closed file")

        response.read.side_effect = read
        context = mock.MagicMock()
        context.__enter__.return_value = response

        with mock.patch("urllib.request.urlopen", return_value=context):
            with self.assertRaises(TranslationCancelled):
                UrllibTransport().post("https://example.com", {}, b"{}", timeout=1, cancel_token=token)
        response.close.assert_called_once_with()


class CancelTokenTests(unittest.TestCase):
    def test_callbacks_run_once_on_cancel(self) -> None:
        token = CancelToken()
        calls = []
        token.add_callback(lambda: calls.append("closed"))
        token.cancel()
        token.cancel()
        self.assertTrue(token.cancelled)
        self.assertEqual(calls, ["closed"])

    def test_callback_added_after_cancel_runs_immediately(self) -> None:
        token = CancelToken()
        token.cancel()
        calls = []
        token.add_callback(lambda: calls.append("closed"))
        self.assertEqual(calls, ["closed"])
        with self.assertRaises(TranslationCancelled):
            token.raise_if_cancelled()


if __name__ == "__main__":  # pragma: no cover - allows direct execution
    unittest.main()
