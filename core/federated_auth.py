"""
Google 账号登录

扩展端拿到 Google access token 后连同它声称的邮箱一起提交，服务端调用 userinfo 接口确认身份，
邮箱一致才签发主凭证（30 天），与 magic link 登录使用同一个签发方。
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

import requests
from pydantic import BaseModel

from core.config import cfg
from core.credential_service import METHOD_FEDERATED, IssuedCredential, issue
from core.events import log_event, E
from core.exceptions import IntrospectionError
from core.identity_service import get_or_create_user, serialize_user, update_profile
from core.log import get_logger
from core.models.base import utc_now

logger = get_logger(__name__)


DEFAULT_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"


class FederatedIdentity(BaseModel):
    email: str
    name: str = ""
    picture: str = ""
    email_verified: bool = False


class FederatedStatus(str, Enum):
    OK = "ok"
    INVALID = "invalid"
    EMAIL_MISMATCH = "email_mismatch"


class FederatedLoginResult(BaseModel):
    status: FederatedStatus
    credential: Optional[IssuedCredential] = None
    user: Optional[Dict] = None


def introspect(provider_token: str) -> Optional[FederatedIdentity]:
    """4xx 或缺少邮箱视为 token 无效返回 None；网络故障与 5xx 抛 IntrospectionError。"""
    token = str(provider_token or "").strip()
    if not token:
        return None
    url = str(cfg.get("federated.userinfo_url", DEFAULT_USERINFO_URL) or DEFAULT_USERINFO_URL)
    timeout = float(cfg.get("federated.timeout_seconds", 10) or 10)
    try:
        resp = requests.get(url, headers={"Authorization": f"Bearer {token}"}, timeout=(5, timeout))
    except requests.RequestException as e:
        raise IntrospectionError(f"Identity provider unreachable: {type(e).__name__}")

    code = int(resp.status_code or 0)
    if code >= 500:
        raise IntrospectionError(f"Identity provider error {code}")
    if code >= 400:
        return None
    try:
        data = resp.json() or {}
    except ValueError:
        raise IntrospectionError("Identity provider returned non-JSON data")

    email = str(data.get("email") or "").strip()
    if not email:
        return None
    verified = data.get("verified_email", data.get("email_verified", False))
    return FederatedIdentity(
        email=email,
        name=str(data.get("name") or ""),
        picture=str(data.get("picture") or ""),
        email_verified=str(verified).lower() in ["1", "true"],
    )


def federated_login(
    session,
    provider_token: str,
    claimed_email: str,
    now: Optional[datetime] = None,
) -> FederatedLoginResult:
    identity = introspect(provider_token)
    if identity is None:
        log_event(logger, E.AUTH_FEDERATED_INVALID, level="warning")
        return FederatedLoginResult(status=FederatedStatus.INVALID)

    if identity.email.strip().lower() != str(claimed_email or "").strip().lower():
        log_event(logger, E.AUTH_FEDERATED_MISMATCH, level="warning")
        return FederatedLoginResult(status=FederatedStatus.EMAIL_MISMATCH)

    now = now or utc_now()
    user = get_or_create_user(session, identity.email, name=identity.name, picture=identity.picture, now=now)
    user = update_profile(session, user, name=identity.name, picture=identity.picture)
    credential = issue(user, method=METHOD_FEDERATED, now=now)
    log_event(logger, E.AUTH_FEDERATED_OK, user_id=user.id)
    return FederatedLoginResult(status=FederatedStatus.OK, credential=credential, user=serialize_user(user))
