"""
每日配额账本

按 (user_id, 自然日) 记录计量操作次数，自然日按固定参考时区（quota.timezone，默认 UTC）划分。
check_and_reserve 用一条条件 upsert 同时完成“检查 + 预占”，并发请求不会越过套餐上限：

    INSERT INTO usage_daily (user_id, date, count) VALUES (?, ?, 1)
    ON CONFLICT (user_id, date) DO UPDATE SET count = count + 1
    WHERE usage_daily.count < :limit
    RETURNING count

没有返回行即表示已达上限，此时不写入任何数据。
"""

import time
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional
from zoneinfo import ZoneInfo

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import OperationalError

from core.config import cfg
from core.events import log_event, E
from core.exceptions import QuotaBusyError
from core.log import get_logger
from core.models.base import utc_now
from core.models.usage_daily import UsageDaily

logger = get_logger(__name__)


DEFAULT_PLAN = "free"

PLAN_LIMITS: Dict[str, int] = {
    "free": 20,
    "pro": 1000,
    "pro-plus": 5000,
    "enterprise": 999999,
}


class ReserveStatus(str, Enum):
    ALLOWED = "allowed"
    DENIED = "denied"


class ReserveResult(BaseModel):
    status: ReserveStatus
    used: int
    limit: int
    plan: str
    date: str

    @property
    def allowed(self) -> bool:
        return self.status == ReserveStatus.ALLOWED


class UsageSnapshot(BaseModel):
    plan: str
    used: int
    limit: int
    remaining: int
    date: str


def get_plan_limits() -> Dict[str, int]:
    limits = dict(PLAN_LIMITS)
    overrides = cfg.get("quota.limits", {}) or {}
    if isinstance(overrides, dict):
        for key, value in overrides.items():
            try:
                limits[str(key).strip().lower()] = int(value)
            except (TypeError, ValueError):
                logger.warning("忽略无效的配额配置 quota.limits.%s=%r", key, value)
    return limits


def normalize_plan(plan: str, limits: Optional[Dict[str, int]] = None) -> str:
    table = limits if limits is not None else get_plan_limits()
    value = str(plan or "").strip().lower()
    return value if value in table else DEFAULT_PLAN


def get_plan_limit(plan: str, limits: Optional[Dict[str, int]] = None) -> int:
    table = limits if limits is not None else get_plan_limits()
    # 未知套餐按 free 上限处理
    return int(table.get(normalize_plan(plan, table), table.get(DEFAULT_PLAN, PLAN_LIMITS[DEFAULT_PLAN])))


def _reference_tz():
    name = str(cfg.get("quota.timezone", "UTC") or "UTC")
    if name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def usage_day(now: Optional[datetime] = None, tz=None) -> str:
    """naive 时间视为 UTC，换算到参考时区后取日期。"""
    target = now or utc_now()
    if target.tzinfo is None:
        target = target.replace(tzinfo=timezone.utc)
    return target.astimezone(tz or _reference_tz()).strftime("%Y-%m-%d")


def _upsert_increment(session, user_id: str, day: str, limit: int, now: datetime):
    dialect = session.get_bind().dialect.name
    if dialect == "sqlite":
        insert = sqlite.insert
    elif dialect == "postgresql":
        insert = postgresql.insert
    else:
        raise NotImplementedError(f"quota ledger does not support dialect {dialect}")

    stmt = insert(UsageDaily).values(
        user_id=user_id,
        date=day,
        count=1,
        created_at=now,
        updated_at=now,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=[UsageDaily.user_id, UsageDaily.date],
        set_={"count": UsageDaily.count + 1, "updated_at": now},
        where=UsageDaily.count < limit,
    ).returning(UsageDaily.count)
    return session.execute(stmt).scalar()


def _current_count(session, user_id: str, day: str) -> int:
    value = session.execute(
        select(UsageDaily.count).where(UsageDaily.user_id == user_id, UsageDaily.date == day)
    ).scalar()
    return max(0, int(value or 0))


def check_and_reserve(
    session,
    user_id: str,
    plan: str,
    day: Optional[str] = None,
    limits: Optional[Dict[str, int]] = None,
    max_attempts: Optional[int] = None,
    now: Optional[datetime] = None,
) -> ReserveResult:
    """
    原子地检查并预占一次额度，成功时立即提交。

    返回:
    - ALLOWED: used 为预占前的次数
    - DENIED: used 为当前次数，未写入
    存储层锁竞争重试 max_attempts 次后抛出 QuotaBusyError。
    """
    table = limits if limits is not None else get_plan_limits()
    tier = normalize_plan(plan, table)
    limit = get_plan_limit(tier, table)
    now = now or utc_now()
    day = day or usage_day(now)
    attempts = max(1, int(max_attempts or cfg.get("quota.max_attempts", 5) or 5))

    for attempt in range(1, attempts + 1):
        try:
            if limit <= 0:
                used = _current_count(session, user_id, day)
                session.commit()
                break
            after = _upsert_increment(session, user_id, day, limit, now)
            if after is None:
                used = _current_count(session, user_id, day)
                session.commit()
                break
            session.commit()
            result = ReserveResult(
                status=ReserveStatus.ALLOWED,
                used=int(after) - 1,
                limit=limit,
                plan=tier,
                date=day,
            )
            log_event(logger, E.QUOTA_RESERVE_ALLOWED, user_id=user_id, used=result.used, limit=limit, date=day)
            return result
        except OperationalError as e:
            session.rollback()
            log_event(
                logger,
                E.QUOTA_RESERVE_CONTENTION,
                level="warning",
                user_id=user_id,
                attempt=attempt,
                error=str(e.orig or e)[:120],
            )
            if attempt < attempts:
                time.sleep(min(0.5, 0.05 * attempt))
    else:
        log_event(logger, E.QUOTA_RESERVE_BUSY, level="error", user_id=user_id, attempts=attempts)
        raise QuotaBusyError("Quota service is busy, please retry", attempts=attempts)

    log_event(logger, E.QUOTA_RESERVE_DENIED, user_id=user_id, used=used, limit=limit, date=day)
    return ReserveResult(status=ReserveStatus.DENIED, used=used, limit=limit, plan=tier, date=day)


def peek(
    session,
    user_id: str,
    plan: str,
    day: Optional[str] = None,
    limits: Optional[Dict[str, int]] = None,
    now: Optional[datetime] = None,
) -> UsageSnapshot:
    table = limits if limits is not None else get_plan_limits()
    tier = normalize_plan(plan, table)
    limit = get_plan_limit(tier, table)
    day = day or usage_day(now)
    used = _current_count(session, user_id, day)
    return UsageSnapshot(
        plan=tier,
        used=used,
        limit=limit,
        remaining=max(0, limit - used),
        date=day,
    )
