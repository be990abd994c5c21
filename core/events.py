"""
core/events.py：结构化事件日志

格式：event=xxx | key=val | key=val

用法：
    from core.log import get_logger
    from core.events import log_event, E

    logger = get_logger(__name__)
    log_event(logger, E.QUOTA_RESERVE_DENIED, user_id=uid, used=20, limit=20)
    # 输出：event=quota.reserve.denied | user_id=... | used=20 | limit=20
"""

import logging
from typing import Any


class E:
    """结构化事件类型常量，按功能模块分组。"""

    # ── 登录会话 Auth ──────────────────────────────────────────────────────────
    AUTH_LOGIN_REQUEST = "auth.login.request"
    AUTH_LOGIN_INVALID = "auth.login.invalid"
    AUTH_LINK_DELIVER = "auth.link.deliver"
    AUTH_VERIFY_OK = "auth.verify.ok"
    AUTH_VERIFY_NOT_FOUND = "auth.verify.not_found"
    AUTH_VERIFY_EXPIRED = "auth.verify.expired"
    AUTH_POLL_PENDING = "auth.poll.pending"
    AUTH_POLL_CONSUMED = "auth.poll.consumed"
    AUTH_POLL_MISS = "auth.poll.miss"
    AUTH_FEDERATED_OK = "auth.federated.ok"
    AUTH_FEDERATED_INVALID = "auth.federated.invalid"
    AUTH_FEDERATED_MISMATCH = "auth.federated.email_mismatch"

    # ── 凭证 Credential ────────────────────────────────────────────────────────
    AUTH_TOKEN_ISSUE = "auth.token.issue"
    AUTH_TOKEN_REFRESH = "auth.token.refresh"
    AUTH_TOKEN_INVALID = "auth.token.invalid"
    AUTH_TOKEN_EXPIRE = "auth.token.expire"

    # ── 用户 Identity ──────────────────────────────────────────────────────────
    USER_CREATE = "user.create"
    USER_PLAN_CHANGE = "user.plan.change"

    # ── 配额 Quota ─────────────────────────────────────────────────────────────
    QUOTA_RESERVE_ALLOWED = "quota.reserve.allowed"
    QUOTA_RESERVE_DENIED = "quota.reserve.denied"
    QUOTA_RESERVE_CONTENTION = "quota.reserve.contention"
    QUOTA_RESERVE_BUSY = "quota.reserve.busy"

    # ── OCR ────────────────────────────────────────────────────────────────────
    OCR_START = "ocr.start"
    OCR_COMPLETE = "ocr.complete"
    OCR_PROVIDER_FAIL = "ocr.provider.fail"
    OCR_PROVIDER_TIMEOUT = "ocr.provider.timeout"
    OCR_UNAVAILABLE = "ocr.unavailable"

    # ── 错误上报 Telemetry ─────────────────────────────────────────────────────
    TELEMETRY_ERROR_RECORD = "telemetry.error.record"
    TELEMETRY_RATE_LIMIT = "telemetry.error.rate_limit"

    # ── 系统 System ────────────────────────────────────────────────────────────
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_DB_INIT = "system.db_init"
    SESSION_SWEEP_START = "jobs.session_sweep.start"
    SESSION_SWEEP_COMPLETE = "jobs.session_sweep.complete"


def log_event(
    logger: logging.Logger,
    event: str,
    level: str = "info",
    **fields: Any,
) -> None:
    """
    记录结构化事件日志，格式：event=xxx | key=val | key=val

    示例：
        log_event(logger, E.OCR_PROVIDER_FAIL, level="warning",
                  user_id="u1", reason="http_503")
        # → event=ocr.provider.fail | user_id=u1 | reason=http_503
    """
    parts = [f"event={event}"]
    for k, v in fields.items():
        sv = str(v) if not isinstance(v, str) else v
        # 截断超长字段，避免单行日志过大
        if len(sv) > 300:
            sv = sv[:297] + "..."
        parts.append(f"{k}={sv}")
    msg = " | ".join(parts)
    getattr(logger, level)(msg, stacklevel=2)
