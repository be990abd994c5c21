"""
访问凭证签发与校验

凭证为 HMAC 签名的 JWT（PyJWT），载荷：sub / email / plan / iat / exp / amr。
校验只依赖签名与过期时间，不查库；签名校验先于任何载荷读取。

有效期：
- magic_link 轮询登录：7 天
- 主登录流程（federated / refresh）：30 天
"""

import secrets
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Optional

import jwt
from pydantic import BaseModel

from core.config import cfg
from core.events import log_event, E
from core.identity_service import get_user_by_id
from core.log import get_logger
from core.models.base import utc_now

logger = get_logger(__name__)


METHOD_MAGIC_LINK = "magic_link"
METHOD_FEDERATED = "federated"
METHOD_REFRESH = "refresh"

_PROCESS_SECRET = ""


class CredentialStatus(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    EXPIRED = "expired"


class IssuedCredential(BaseModel):
    token: str
    expires_at: datetime
    claims: Dict[str, Any]


class CredentialCheck(BaseModel):
    status: CredentialStatus
    claims: Dict[str, Any] = {}

    @property
    def valid(self) -> bool:
        return self.status == CredentialStatus.VALID


class RefreshResult(BaseModel):
    status: CredentialStatus
    credential: Optional[IssuedCredential] = None


def _algorithm() -> str:
    return str(cfg.get("auth.algorithm", "HS256") or "HS256")


def _secret_key() -> str:
    global _PROCESS_SECRET
    configured = str(cfg.get("auth.secret_key", "") or "")
    if configured:
        return configured
    if not _PROCESS_SECRET:
        _PROCESS_SECRET = secrets.token_urlsafe(48)
        logger.warning("auth.secret_key 未配置，已生成进程内随机密钥，重启后已签发凭证全部失效")
    return _PROCESS_SECRET


def token_lifetime(method: str) -> timedelta:
    if method == METHOD_MAGIC_LINK:
        return timedelta(days=int(cfg.get("auth.magic_link_token_days", 7) or 7))
    return timedelta(days=int(cfg.get("auth.primary_token_days", 30) or 30))


def _epoch(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def issue(user, method: str = METHOD_FEDERATED, now: Optional[datetime] = None) -> IssuedCredential:
    """为用户签发凭证，载荷是签发时刻的用户快照，套餐变更需 refresh 后生效。"""
    now = now or utc_now()
    expires_at = now + token_lifetime(method)
    claims = {
        "sub": str(user.id),
        "email": str(user.email or ""),
        "plan": str(user.plan or ""),
        "iat": _epoch(now),
        "exp": _epoch(expires_at),
        "amr": method,
    }
    token = jwt.encode(claims, _secret_key(), algorithm=_algorithm())
    log_event(logger, E.AUTH_TOKEN_ISSUE, user_id=user.id, method=method, expires_at=expires_at.isoformat())
    return IssuedCredential(token=token, expires_at=expires_at, claims=claims)


def validate(token: str, now: Optional[datetime] = None) -> CredentialCheck:
    text = str(token or "").strip()
    if not text:
        return CredentialCheck(status=CredentialStatus.INVALID)

    # exp / iat 不交给 PyJWT 按系统时钟判断，统一由下面按 now 判断
    try:
        claims = jwt.decode(
            text,
            _secret_key(),
            algorithms=[_algorithm()],
            options={"require": ["sub", "exp", "iat"], "verify_exp": False, "verify_iat": False},
        )
    except jwt.InvalidTokenError as e:
        log_event(logger, E.AUTH_TOKEN_INVALID, level="warning", reason=type(e).__name__)
        return CredentialCheck(status=CredentialStatus.INVALID)

    if not str(claims.get("sub") or "").strip():
        return CredentialCheck(status=CredentialStatus.INVALID)

    try:
        exp = int(claims["exp"])
    except (TypeError, ValueError):
        return CredentialCheck(status=CredentialStatus.INVALID)
    if exp <= _epoch(now or utc_now()):
        log_event(logger, E.AUTH_TOKEN_EXPIRE, user_id=claims.get("sub"))
        return CredentialCheck(status=CredentialStatus.EXPIRED)

    return CredentialCheck(status=CredentialStatus.VALID, claims=claims)


def refresh(session, token: str, now: Optional[datetime] = None) -> RefreshResult:
    """重新读取用户记录后签发新的 30 天凭证，使套餐变更生效。"""
    check = validate(token, now=now)
    if not check.valid:
        return RefreshResult(status=check.status)
    user = get_user_by_id(session, check.claims.get("sub"))
    if not user:
        return RefreshResult(status=CredentialStatus.INVALID)
    credential = issue(user, method=METHOD_REFRESH, now=now)
    log_event(logger, E.AUTH_TOKEN_REFRESH, user_id=user.id, plan=user.plan)
    return RefreshResult(status=CredentialStatus.VALID, credential=credential)
