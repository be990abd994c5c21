import base64
import unittest
from unittest.mock import patch

import requests

from core.config import cfg
from core.exceptions import ConfigError, ExtractionError, ExtractionTimeoutError, ValidationError
from core.ocr_provider import EXTRACTION_PROMPT, decode_image, ensure_configured, extract, sniff_mime_type


class _MockResp:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("not json")
        return self._payload


def _gemini_payload(text):
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


class DecodeImageTestCase(unittest.TestCase):
    def test_raw_and_data_url(self):
        raw = base64.b64encode(b"png-bytes").decode("ascii")
        self.assertEqual(decode_image(raw), b"png-bytes")
        self.assertEqual(decode_image(f"data:image/png;base64,{raw}"), b"png-bytes")
        self.assertEqual(sniff_mime_type(f"data:image/webp;base64,{raw}"), "image/webp")
        self.assertEqual(sniff_mime_type(raw), "image/png")

    def test_invalid_input(self):
        for bad in ["", "   ", "***", "data:image/png;base64,"]:
            with self.assertRaises(ValidationError):
                decode_image(bad)


class GeminiExtractTestCase(unittest.TestCase):
    def setUp(self):
        cfg.set("ocr.base_url", "https://gemini.example/v1beta")
        cfg.set("ocr.api_key", "test-key")
        cfg.set("ocr.model", "gemini-2.0-flash-exp")

    def test_posts_image_and_prompt(self):
        with patch("core.ocr_provider.requests.post") as post_mock:
            post_mock.return_value = _MockResp(payload=_gemini_payload("  Line 1\n    indented\n"))
            text = extract(b"img", "image/jpeg")

        self.assertEqual(text, "Line 1\n    indented")
        args, kwargs = post_mock.call_args
        self.assertEqual(args[0], "https://gemini.example/v1beta/models/gemini-2.0-flash-exp:generateContent")
        self.assertEqual(kwargs["params"], {"key": "test-key"})
        self.assertEqual(kwargs["timeout"], (5.0, 60.0))
        parts = kwargs["json"]["contents"][0]["parts"]
        self.assertEqual(parts[0]["inline_data"], {"mime_type": "image/jpeg", "data": base64.b64encode(b"img").decode()})
        self.assertEqual(parts[1]["text"], EXTRACTION_PROMPT)
        self.assertEqual(
            kwargs["json"]["generationConfig"],
            {"temperature": 0, "topP": 0.95, "topK": 20, "maxOutputTokens": 8192},
        )

    def test_timeout_raises_distinct_error(self):
        with patch("core.ocr_provider.requests.post", side_effect=requests.Timeout("slow")) as post_mock:
            with self.assertRaises(ExtractionTimeoutError):
                extract(b"img", timeout=3)
        self.assertEqual(post_mock.call_count, 1)
        self.assertEqual(post_mock.call_args.kwargs["timeout"], (5.0, 3.0))

    def test_provider_errors(self):
        cases = [
            _MockResp(status_code=500, text="internal"),
            _MockResp(status_code=200, payload=None),
            _MockResp(status_code=200, payload=_gemini_payload("   ")),
            _MockResp(status_code=200, payload={"candidates": []}),
        ]
        for resp in cases:
            with patch("core.ocr_provider.requests.post", return_value=resp):
                with self.assertRaises(ExtractionError) as ctx:
                    extract(b"img")
            self.assertNotIsInstance(ctx.exception, ExtractionTimeoutError)

        with patch("core.ocr_provider.requests.post", side_effect=requests.ConnectionError("down")):
            with self.assertRaises(ExtractionError):
                extract(b"img")

    def test_missing_key(self):
        cfg.set("ocr.api_key", "")
        with self.assertRaises(ConfigError):
            ensure_configured()
        with self.assertRaises(ConfigError):
            extract(b"img")

        cfg.set("ocr.base_url", "mock://ocr")
        ensure_configured()

    def test_mock_mode_skips_network(self):
        cfg.set("ocr.base_url", "mock://ocr")
        with patch("core.ocr_provider.requests.post") as post_mock:
            first = extract(b"img")
            second = extract(b"img")
        post_mock.assert_not_called()
        self.assertEqual(first, second)
        self.assertTrue(first)


if __name__ == "__main__":
    unittest.main()
