from html import escape

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import HTMLResponse
from pydantic import BaseModel, Field

from core.auth import get_bearer_token, get_current_user
from core.config import cfg
from core.credential_service import METHOD_MAGIC_LINK, CredentialStatus, issue, refresh
from core.db import DB
from core.events import log_event, E
from core.exceptions import IntrospectionError, ValidationError
from core.federated_auth import FederatedStatus, federated_login
from core.identity_service import get_user_by_id, serialize_user
from core.log import get_logger
from core.session_service import (
    PollStatus,
    VerifyOutcome,
    build_magic_link,
    poll_session,
    start_login,
    verify_session,
)
from .base import success_response, error_response

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["认证"])


class LoginRequest(BaseModel):
    email: str = Field(default="", max_length=255)


class GoogleLoginRequest(BaseModel):
    accessToken: str = Field(default="", max_length=4096)
    email: str = Field(default="", max_length=255)


_PAGES = {
    "ok": ("Login successful", "You can close this tab and return to the SnipText extension."),
    "missing": ("Invalid link", "This login link is missing required parameters."),
    "not_found": ("Invalid link", "This login link is invalid or has already been used."),
    "expired": ("Link expired", "This login link has expired. Request a new one from the extension."),
}


def _page(kind: str, status_code: int) -> HTMLResponse:
    title, message = _PAGES[kind]
    body = (
        "<!DOCTYPE html><html><head><meta charset=\"utf-8\">"
        f"<title>{escape(title)} - SnipText</title></head>"
        f"<body><h1>{escape(title)}</h1><p>{escape(message)}</p></body></html>"
    )
    return HTMLResponse(content=body, status_code=status_code)


def _public_base_url(request: Request) -> str:
    configured = str(cfg.get("auth.public_base_url", "") or "").strip()
    if configured:
        return configured.rstrip("/")
    return str(request.base_url).rstrip("/")


def _credential_payload(credential, user: dict) -> dict:
    return {
        "token": credential.token,
        "expiresAt": credential.expires_at.isoformat() + "Z",
        "user": user,
    }


@router.post("/login", summary="发起 magic link 登录")
def login(payload: LoginRequest, request: Request):
    session = DB.get_session()
    try:
        try:
            started = start_login(session, payload.email)
        except ValidationError as e:
            log_event(logger, E.AUTH_LOGIN_INVALID, level="warning")
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=error_response(code=40001, message=str(e)),
            )
        link = build_magic_link(_public_base_url(request), started.session_id, started.verify_token)
        log_event(logger, E.AUTH_LINK_DELIVER, user_id=started.user_id, channel="out_of_band")
        data = {
            "sessionId": started.session_id,
            "expiresAt": started.expires_at.isoformat() + "Z",
        }
        if cfg.get("auth.expose_dev_link", False):
            data["devMagicLink"] = link
        return success_response(data, message="Check your email for the login link")
    finally:
        session.close()


@router.get("/verify", summary="magic link 验证页", response_class=HTMLResponse)
def verify(token: str = Query(default=""), session_id: str = Query(default="", alias="session")):
    if not token.strip() or not session_id.strip():
        return _page("missing", status.HTTP_400_BAD_REQUEST)
    session = DB.get_session()
    try:
        outcome = verify_session(session, session_id, token)
    finally:
        session.close()
    if outcome == VerifyOutcome.OK:
        return _page("ok", status.HTTP_200_OK)
    if outcome == VerifyOutcome.EXPIRED:
        return _page("expired", status.HTTP_410_GONE)
    return _page("not_found", status.HTTP_404_NOT_FOUND)


@router.get("/poll", summary="扩展端轮询登录结果")
def poll(session_id: str = Query(default="", alias="sessionId")):
    if not session_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response(code=40002, message="Missing sessionId parameter"),
        )
    session = DB.get_session()
    try:
        result = poll_session(session, session_id)
        if result.status == PollStatus.PENDING:
            log_event(logger, E.AUTH_POLL_PENDING)
            return success_response(
                {"authenticated": False, "status": "pending"},
                message="Waiting for email verification",
            )
        if result.status != PollStatus.CONSUMED:
            return success_response(
                {"authenticated": False, "status": "invalid"},
                message="Invalid or expired session",
            )
        user = get_user_by_id(session, result.user["id"])
        if user is None:
            return success_response(
                {"authenticated": False, "status": "invalid"},
                message="Invalid or expired session",
            )
        credential = issue(user, method=METHOD_MAGIC_LINK)
        data = {"authenticated": True, **_credential_payload(credential, result.user)}
        return success_response(data, message="Authenticated")
    finally:
        session.close()


@router.post("/google", summary="Google 账号登录")
def google_login(payload: GoogleLoginRequest):
    if not payload.accessToken.strip() or not payload.email.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response(code=40003, message="accessToken and email are required"),
        )
    session = DB.get_session()
    try:
        try:
            result = federated_login(session, payload.accessToken, payload.email)
        except IntrospectionError as e:
            logger.warning("Google userinfo 请求失败: %s", e)
            raise HTTPException(
                status_code=status.HTTP_502_BAD_GATEWAY,
                detail=error_response(code=50201, message="Identity provider unavailable"),
            )
        if result.status == FederatedStatus.EMAIL_MISMATCH:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=error_response(code=40104, message="Email does not match the Google account"),
            )
        if result.status != FederatedStatus.OK:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=error_response(code=40105, message="Invalid Google access token"),
            )
        return success_response(_credential_payload(result.credential, result.user), message="Authenticated")
    finally:
        session.close()


@router.post("/refresh", summary="刷新凭证")
def refresh_token(token: str = Depends(get_bearer_token)):
    session = DB.get_session()
    try:
        result = refresh(session, token)
    finally:
        session.close()
    if result.status == CredentialStatus.EXPIRED:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response(code=40102, message="Token expired"),
            headers={"WWW-Authenticate": "Bearer"},
        )
    if result.credential is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response(code=40103, message="Invalid token"),
            headers={"WWW-Authenticate": "Bearer"},
        )
    claims = result.credential.claims
    user = {"id": claims["sub"], "email": claims["email"], "plan": claims["plan"]}
    return success_response(_credential_payload(result.credential, user))


@router.get("/me", summary="当前用户信息")
def me(current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        user = get_user_by_id(session, current_user["user_id"])
        if not user:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=error_response(code=40401, message="User not found"),
            )
        return success_response({"user": serialize_user(user)})
    finally:
        session.close()
