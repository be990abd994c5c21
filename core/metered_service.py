"""
计量操作入口：凭证校验 -> 输入解码 -> 提取服务配置检查 -> 配额预占 -> 调用提取服务

配额在调用提取服务之前提交，提取失败或超时时不回退，宁可浪费一次额度也不引入补偿事务带来的重复计数。
凭证无效时直接返回，不访问数据库也不调用外部服务。
"""

import time
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, Optional

from pydantic import BaseModel

from core.credential_service import CredentialStatus, validate
from core.events import log_event, E
from core.exceptions import ConfigError, ExtractionError, ExtractionTimeoutError, QuotaBusyError, ValidationError
from core.log import get_logger
from core.models.base import utc_now
from core import ocr_provider, quota_service

logger = get_logger(__name__)


class MeteredStatus(str, Enum):
    OK = "ok"
    INVALID = "invalid"
    EXPIRED = "expired"
    INVALID_INPUT = "invalid_input"
    QUOTA_EXCEEDED = "quota_exceeded"
    BUSY = "busy"
    PROVIDER_TIMEOUT = "provider_timeout"
    PROVIDER_ERROR = "provider_error"
    UNAVAILABLE = "unavailable"


class MeteredResult(BaseModel):
    status: MeteredStatus
    text: str = ""
    used: int = 0
    limit: int = 0
    remaining: int = 0
    plan: str = ""
    message: str = ""

    @property
    def ok(self) -> bool:
        return self.status == MeteredStatus.OK

    def usage(self) -> Dict:
        return {"used": self.used, "limit": self.limit, "remaining": self.remaining, "plan": self.plan}


def perform_metered_operation(
    session,
    token: str,
    image_base64: str,
    mime_type: str = "image/png",
    extractor: Optional[Callable[[bytes, str], str]] = None,
    limits: Optional[Dict[str, int]] = None,
    now: Optional[datetime] = None,
) -> MeteredResult:
    now = now or utc_now()
    check = validate(token, now=now)
    if check.status == CredentialStatus.EXPIRED:
        return MeteredResult(status=MeteredStatus.EXPIRED, message="Token expired")
    if not check.valid:
        return MeteredResult(status=MeteredStatus.INVALID, message="Invalid token")

    user_id = str(check.claims.get("sub"))
    plan = str(check.claims.get("plan") or "")

    try:
        image_bytes = ocr_provider.decode_image(image_base64)
    except ValidationError as e:
        return MeteredResult(status=MeteredStatus.INVALID_INPUT, plan=plan, message=str(e))
    mime = str(mime_type or "").strip() or ocr_provider.sniff_mime_type(image_base64)

    extract = extractor or ocr_provider.extract
    if extractor is None:
        # 提取服务未配置时不能扣额度
        try:
            ocr_provider.ensure_configured()
        except ConfigError as e:
            log_event(logger, E.OCR_UNAVAILABLE, level="error", user_id=user_id, error=str(e))
            return MeteredResult(status=MeteredStatus.UNAVAILABLE, plan=plan, message="OCR service is not configured")

    try:
        reserved = quota_service.check_and_reserve(session, user_id, plan, limits=limits, now=now)
    except QuotaBusyError as e:
        return MeteredResult(status=MeteredStatus.BUSY, plan=plan, message=str(e))

    if not reserved.allowed:
        return MeteredResult(
            status=MeteredStatus.QUOTA_EXCEEDED,
            used=reserved.used,
            limit=reserved.limit,
            remaining=0,
            plan=reserved.plan,
            message="Daily limit exceeded",
        )

    used = reserved.used + 1
    figures = dict(used=used, limit=reserved.limit, remaining=max(0, reserved.limit - used), plan=reserved.plan)
    log_event(logger, E.OCR_START, user_id=user_id, bytes=len(image_bytes), mime=mime)
    started = time.time()
    try:
        text = extract(image_bytes, mime)
    except ExtractionTimeoutError as e:
        log_event(logger, E.OCR_PROVIDER_TIMEOUT, level="warning", user_id=user_id, error=str(e)[:200])
        return MeteredResult(status=MeteredStatus.PROVIDER_TIMEOUT, message=str(e), **figures)
    except ExtractionError as e:
        log_event(logger, E.OCR_PROVIDER_FAIL, level="warning", user_id=user_id, error=str(e)[:200])
        return MeteredResult(status=MeteredStatus.PROVIDER_ERROR, message=str(e), **figures)

    log_event(
        logger,
        E.OCR_COMPLETE,
        user_id=user_id,
        chars=len(text),
        ms=int((time.time() - started) * 1000),
        used=used,
        limit=reserved.limit,
    )
    return MeteredResult(status=MeteredStatus.OK, text=text, **figures)
