import json
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel
from sqlalchemy import func

from core.config import cfg
from core.events import log_event, E
from core.log import get_logger
from core.models.base import utc_now
from core.models.error_log import ErrorLog

logger = get_logger(__name__)


ANONYMOUS_USER = "anonymous"


class TelemetryStatus(str, Enum):
    ACCEPTED = "accepted"
    RATE_LIMITED = "rate_limited"


class TelemetryResult(BaseModel):
    status: TelemetryStatus
    id: Optional[int] = None

    @property
    def accepted(self) -> bool:
        return self.status == TelemetryStatus.ACCEPTED


def _safe_text(value: Any, limit: int = 255) -> str:
    text = str(value or "").strip()
    if not text:
        return ""
    return text[:limit]


def _to_json_text(value: Any) -> str:
    if value is None:
        return "{}"
    if isinstance(value, str):
        return value[:4000]
    try:
        return json.dumps(value, ensure_ascii=False)[:4000]
    except (TypeError, ValueError):
        return _safe_text(value, 4000)


def _parse_timestamp(value: Any, fallback: datetime) -> datetime:
    """客户端时间戳只做记录，解析失败时使用服务端时间。"""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value) / 1000.0 if value > 1e11 else float(value)
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc).replace(tzinfo=None)
        except (OverflowError, OSError, ValueError):
            return fallback
    text = _safe_text(value, 64)
    if not text:
        return fallback
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return fallback
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def max_errors_per_minute() -> int:
    return max(1, int(cfg.get("telemetry.max_errors_per_minute", 10) or 10))


def _recent_count(session, user_id: str, now: datetime) -> int:
    return int(session.query(func.count(ErrorLog.id)).filter(
        ErrorLog.user_id == user_id,
        ErrorLog.created_at > now - timedelta(minutes=1),
    ).scalar() or 0)


def record_client_error(session, payload: Dict, now: Optional[datetime] = None) -> TelemetryResult:
    """
    记录扩展端上报的错误。同一 userId 一分钟内超过上限的上报直接丢弃。
    限流窗口按服务端写入时间计算，不信任客户端时间戳。
    """
    payload = payload if isinstance(payload, dict) else {}
    now = now or utc_now()
    user_id = _safe_text(payload.get("userId"), 64) or ANONYMOUS_USER
    error = payload.get("error") if isinstance(payload.get("error"), dict) else {}
    limit = max_errors_per_minute()

    # 先查一次，已超限的上报不开启写事务
    recent = _recent_count(session, user_id, now)
    if recent >= limit:
        log_event(logger, E.TELEMETRY_RATE_LIMIT, level="warning", user_id=user_id, recent=recent)
        return TelemetryResult(status=TelemetryStatus.RATE_LIMITED)

    code = error.get("code")
    row = ErrorLog(
        user_id=user_id,
        error_message=_safe_text(error.get("message"), 2000) or "Unknown",
        error_type=_safe_text(error.get("type"), 64) or "UNKNOWN",
        error_stack=_safe_text(error.get("stack"), 8000) or None,
        error_code=_safe_text(code, 64) if code not in [None, ""] else None,
        context=_to_json_text(payload.get("context") or {}),
        timestamp=_parse_timestamp(payload.get("timestamp"), now),
        created_at=now,
    )
    session.add(row)
    session.flush()

    # 插入后在同一写事务内复核，计数包含本行；SQLite 写事务串行，上限严格成立
    recent = _recent_count(session, user_id, now)
    if recent > limit:
        session.rollback()
        log_event(logger, E.TELEMETRY_RATE_LIMIT, level="warning", user_id=user_id, recent=recent - 1, race=True)
        return TelemetryResult(status=TelemetryStatus.RATE_LIMITED)

    session.commit()
    log_event(logger, E.TELEMETRY_ERROR_RECORD, user_id=user_id, type=row.error_type)
    return TelemetryResult(status=TelemetryStatus.ACCEPTED, id=row.id)
