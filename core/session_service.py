"""
Magic link 登录会话状态机

    CREATED (verified=False) --verify--> VERIFIED (verified=True) --poll--> CONSUMED (行删除)

EXPIRED 不落库，只是 expires_at < now 的判断，每次读取和每条破坏性语句都会重新检查。
状态迁移全部用带条件的 UPDATE / DELETE 完成，按影响行数判断并发竞争的输家：

    UPDATE auth_sessions SET verified=1
     WHERE session_id=? AND verify_token=? AND verified=0 AND expires_at>=now
    DELETE FROM auth_sessions
     WHERE session_id=? AND verified=1 AND expires_at>=now
"""

import secrets
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional
from urllib.parse import urlencode

from pydantic import BaseModel

from core.config import cfg
from core.events import log_event, E
from core.identity_service import get_or_create_user, validate_email
from core.log import get_logger
from core.models.auth_session import AuthSession
from core.models.base import utc_now
from core.models.user import User

logger = get_logger(__name__)


class VerifyOutcome(str, Enum):
    OK = "ok"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"


class PollStatus(str, Enum):
    NOT_FOUND_OR_EXPIRED = "not_found_or_expired"
    PENDING = "pending"
    CONSUMED = "consumed"


class LoginStart(BaseModel):
    session_id: str
    verify_token: str
    user_id: str
    email: str
    expires_at: datetime


class PollResult(BaseModel):
    status: PollStatus
    user: Optional[Dict[str, str]] = None


def _session_ttl() -> timedelta:
    return timedelta(minutes=int(cfg.get("auth.session_ttl_minutes", 10) or 10))


def _short(session_id: str) -> str:
    text = str(session_id or "")
    return text[:8] + "…" if len(text) > 8 else text


def _new_secret() -> str:
    return secrets.token_urlsafe(32)


def start_login(session, email: str, now: Optional[datetime] = None) -> LoginStart:
    """
    创建新的登录会话。同一邮箱重复调用会各自生成独立会话，旧会话在各自过期前仍然有效。
    session_id 与 verify_token 是两份独立的随机值，验证时必须同时出示。
    """
    address = validate_email(email)
    now = now or utc_now()
    user = get_or_create_user(session, address, now=now)

    item = AuthSession(
        session_id=_new_secret(),
        user_id=user.id,
        verify_token=_new_secret(),
        verified=False,
        expires_at=now + _session_ttl(),
        created_at=now,
    )
    session.add(item)
    session.commit()
    log_event(logger, E.AUTH_LOGIN_REQUEST, user_id=user.id, session=_short(item.session_id))
    return LoginStart(
        session_id=item.session_id,
        verify_token=item.verify_token,
        user_id=user.id,
        email=user.email,
        expires_at=item.expires_at,
    )


def _find_pair(session, session_id: str, verify_token: str) -> Optional[AuthSession]:
    return session.query(AuthSession).filter(
        AuthSession.session_id == session_id,
        AuthSession.verify_token == verify_token,
    ).first()


def _find_live(session, session_id: str, now: datetime):
    return session.query(AuthSession, User).join(User, AuthSession.user_id == User.id).filter(
        AuthSession.session_id == session_id,
        AuthSession.expires_at >= now,
    ).first()


def _classify(row: Optional[AuthSession], now: datetime) -> VerifyOutcome:
    if row is None:
        return VerifyOutcome.NOT_FOUND
    if row.expires_at < now:
        return VerifyOutcome.EXPIRED
    return VerifyOutcome.OK if row.verified else VerifyOutcome.NOT_FOUND


def verify_session(session, session_id: str, verify_token: str, now: Optional[datetime] = None) -> VerifyOutcome:
    """
    用户点击 magic link。session_id 与 verify_token 必须同时匹配同一行。
    对已验证且未过期的会话重复调用返回 OK，不产生写入。
    """
    sid = str(session_id or "").strip()
    token = str(verify_token or "").strip()
    if not sid or not token:
        return VerifyOutcome.NOT_FOUND
    now = now or utc_now()

    row = _find_pair(session, sid, token)
    if row is None:
        log_event(logger, E.AUTH_VERIFY_NOT_FOUND, session=_short(sid))
        return VerifyOutcome.NOT_FOUND
    if row.expires_at < now:
        log_event(logger, E.AUTH_VERIFY_EXPIRED, session=_short(sid))
        return VerifyOutcome.EXPIRED
    if row.verified:
        return VerifyOutcome.OK

    affected = session.query(AuthSession).filter(
        AuthSession.session_id == sid,
        AuthSession.verify_token == token,
        AuthSession.verified.is_(False),
        AuthSession.expires_at >= now,
    ).update({AuthSession.verified: True}, synchronize_session=False)
    session.commit()

    if affected == 1:
        log_event(logger, E.AUTH_VERIFY_OK, user_id=row.user_id, session=_short(sid))
        return VerifyOutcome.OK

    # 条件更新落空：被并发验证、已被轮询消费或刚好过期，重新读取一次判定
    session.expire_all()
    outcome = _classify(_find_pair(session, sid, token), now)
    log_event(logger, E.AUTH_VERIFY_OK if outcome == VerifyOutcome.OK else E.AUTH_VERIFY_NOT_FOUND, session=_short(sid), race=True)
    return outcome


def poll_session(session, session_id: str, now: Optional[datetime] = None) -> PollResult:
    """
    扩展端轮询。已验证的会话在本次调用中被删除并返回所属用户，这是状态机唯一的出口，
    同一 session_id 之后的任何调用都只会得到 NOT_FOUND_OR_EXPIRED。
    """
    sid = str(session_id or "").strip()
    if not sid:
        return PollResult(status=PollStatus.NOT_FOUND_OR_EXPIRED)
    now = now or utc_now()

    row = _find_live(session, sid, now)
    if row is None:
        log_event(logger, E.AUTH_POLL_MISS, session=_short(sid))
        return PollResult(status=PollStatus.NOT_FOUND_OR_EXPIRED)

    auth_session, user = row
    if not auth_session.verified:
        return PollResult(status=PollStatus.PENDING)

    snapshot = {"id": user.id, "email": user.email, "plan": user.plan}
    affected = session.query(AuthSession).filter(
        AuthSession.session_id == sid,
        AuthSession.verified.is_(True),
        AuthSession.expires_at >= now,
    ).delete(synchronize_session=False)
    session.commit()

    if affected != 1:
        log_event(logger, E.AUTH_POLL_MISS, session=_short(sid), race=True)
        return PollResult(status=PollStatus.NOT_FOUND_OR_EXPIRED)

    log_event(logger, E.AUTH_POLL_CONSUMED, user_id=user.id, session=_short(sid))
    return PollResult(status=PollStatus.CONSUMED, user=snapshot)


def sweep_expired_sessions(session, now: Optional[datetime] = None, limit: int = 1000) -> Dict:
    """清理过期会话，仅为节省存储，过期判断本身不依赖它。"""
    now = now or utc_now()
    ids = [
        x[0]
        for x in session.query(AuthSession.session_id)
        .filter(AuthSession.expires_at < now)
        .limit(max(1, min(int(limit or 1000), 10000)))
        .all()
    ]
    if not ids:
        return {"total": 0}
    deleted = session.query(AuthSession).filter(
        AuthSession.session_id.in_(ids),
        AuthSession.expires_at < now,
    ).delete(synchronize_session=False)
    session.commit()
    return {"total": int(deleted or 0)}


def build_magic_link(base_url: str, session_id: str, verify_token: str) -> str:
    query = urlencode({"token": verify_token, "session": session_id})
    return f"{str(base_url or '').rstrip('/')}/api/auth/verify?{query}"
