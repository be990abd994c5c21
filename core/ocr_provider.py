"""
图片文字提取：调用 Gemini generateContent 接口

请求携带 base64 图片与保留排版的提取提示词，采样参数固定为
temperature 0 / topP 0.95 / topK 20 / maxOutputTokens 8192。
超时单独抛出 ExtractionTimeoutError，调用方据此区分“可能仍在处理”和“明确失败”，这里不做内部重试。
"""

import base64
import binascii
import hashlib
import re
from typing import Optional, Tuple

import requests

from core.config import cfg
from core.exceptions import ConfigError, ExtractionError, ExtractionTimeoutError, ValidationError
from core.log import get_logger

logger = get_logger(__name__)


DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
DEFAULT_MODEL = "gemini-2.0-flash-exp"
MAX_IMAGE_BYTES = 20 * 1024 * 1024

EXTRACTION_PROMPT = """Extract ALL text from this image with EXACT formatting preservation.

CRITICAL REQUIREMENTS:
1. Maintain original line breaks, spacing, and indentation exactly as shown
2. Preserve column alignment and table structures
3. Keep bullet points, numbering, and hierarchies
4. Detect and preserve multi-column layouts (read left-to-right, top-to-bottom)
5. Maintain paragraph breaks and vertical spacing between sections
6. Preserve mathematical formulas, special characters, and symbols
7. Support ALL languages (English, Hindi, code, etc.)
8. Keep code formatting if present (indentation, syntax)

OUTPUT FORMAT:
- Return ONLY the extracted text with preserved formatting
- Use spaces/tabs to maintain horizontal alignment
- Use line breaks exactly as they appear in the image
- Use blank lines to preserve vertical spacing between sections
- DO NOT add explanations, descriptions, or markdown formatting
- DO NOT translate, modify, or interpret the text
- DO NOT add "Here is the text:" or any prefix/suffix

Extract the text now:"""

GENERATION_CONFIG = {
    "temperature": 0,
    "topP": 0.95,
    "topK": 20,
    "maxOutputTokens": 8192,
}

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(;[\w=.+-]+)*;base64,", re.IGNORECASE)


def decode_image(image_base64: str) -> bytes:
    """接受纯 base64 或 data: URL，返回图片字节。"""
    text = str(image_base64 or "").strip()
    if not text:
        raise ValidationError("Missing imageBase64 field")
    match = _DATA_URL_RE.match(text)
    if match:
        text = text[match.end():]
    text = re.sub(r"\s+", "", text)
    try:
        data = base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("imageBase64 is not valid base64")
    if not data:
        raise ValidationError("imageBase64 decodes to an empty image")
    if len(data) > MAX_IMAGE_BYTES:
        raise ValidationError("Image is too large")
    return data


def sniff_mime_type(image_base64: str, default: str = "image/png") -> str:
    match = _DATA_URL_RE.match(str(image_base64 or "").strip())
    if match and match.group("mime"):
        return match.group("mime").lower()
    return default


def _timeouts(timeout: Optional[float]) -> Tuple[float, float]:
    connect = float(cfg.get("ocr.connect_timeout_seconds", 5) or 5)
    read = float(timeout or cfg.get("ocr.read_timeout_seconds", 60) or 60)
    return connect, read


def _mock_text(image_bytes: bytes) -> str:
    digest = hashlib.sha1(image_bytes).hexdigest()[:12]
    return f"Mock extracted text\nimage={digest} bytes={len(image_bytes)}"


def _parse_text(data) -> str:
    candidates = (data or {}).get("candidates") or []
    if not candidates:
        return ""
    parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
    if not parts:
        return ""
    return str((parts[0] or {}).get("text") or "")


def _settings() -> Tuple[str, str, str]:
    base_url = str(cfg.get("ocr.base_url", DEFAULT_BASE_URL) or DEFAULT_BASE_URL).strip()
    api_key = str(cfg.get("ocr.api_key", "") or "").strip()
    model = str(cfg.get("ocr.model", DEFAULT_MODEL) or DEFAULT_MODEL).strip()
    return base_url, api_key, model


def _is_mock(base_url: str, api_key: str) -> bool:
    return base_url.lower().startswith("mock://") or api_key.lower() in ["mock", "mock-key", "test-mock"]


def ensure_configured() -> None:
    """缺少 api_key 时抛出 ConfigError，计量入口在预占额度之前调用。"""
    base_url, api_key, _ = _settings()
    if not _is_mock(base_url, api_key) and not api_key:
        raise ConfigError("ocr.api_key is not configured")


def extract(image_bytes: bytes, mime_type: str = "image/png", timeout: Optional[float] = None) -> str:
    base_url, api_key, model = _settings()
    if _is_mock(base_url, api_key):
        return _mock_text(image_bytes)
    ensure_configured()

    endpoint = f"{base_url.rstrip('/')}/models/{model}:generateContent"
    payload = {
        "contents": [
            {
                "parts": [
                    {
                        "inline_data": {
                            "mime_type": mime_type or "image/png",
                            "data": base64.b64encode(image_bytes).decode("ascii"),
                        }
                    },
                    {"text": EXTRACTION_PROMPT},
                ]
            }
        ],
        "generationConfig": dict(GENERATION_CONFIG),
    }
    connect_timeout, read_timeout = _timeouts(timeout)
    try:
        resp = requests.post(
            endpoint,
            params={"key": api_key},
            json=payload,
            headers={"Content-Type": "application/json"},
            timeout=(connect_timeout, read_timeout),
        )
    except requests.Timeout as e:
        logger.warning("Gemini request timed out. model=%s read_timeout=%s err=%s", model, read_timeout, type(e).__name__)
        raise ExtractionTimeoutError(f"Extraction provider timed out after {read_timeout:g}s")
    except requests.RequestException as e:
        logger.warning("Gemini request failed. model=%s err=%s", model, type(e).__name__)
        raise ExtractionError(f"Extraction provider unreachable: {type(e).__name__}")

    if int(resp.status_code or 0) >= 400:
        raise ExtractionError(
            f"Gemini API error {resp.status_code}: {str(resp.text or '')[:300]}",
            status_code=int(resp.status_code),
        )
    try:
        data = resp.json()
    except ValueError:
        raise ExtractionError("Gemini API returned non-JSON data", status_code=int(resp.status_code or 0))

    text = _parse_text(data).strip()
    if not text:
        raise ExtractionError("No text extracted from image")
    return text
