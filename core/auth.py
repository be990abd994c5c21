from typing import Dict

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.credential_service import CredentialStatus, validate

bearer_scheme = HTTPBearer(auto_error=False)


def _unauthorized(code: int, message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": code, "message": message, "data": None},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_bearer_token(credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme)) -> str:
    if credentials is None or str(credentials.scheme or "").lower() != "bearer" or not credentials.credentials:
        raise _unauthorized(40101, "Missing or invalid authorization header")
    return credentials.credentials


def get_current_user(token: str = Depends(get_bearer_token)) -> Dict:
    """校验 Bearer 凭证并返回载荷，不访问数据库。"""
    check = validate(token)
    if check.status == CredentialStatus.EXPIRED:
        raise _unauthorized(40102, "Token expired")
    if not check.valid:
        raise _unauthorized(40103, "Invalid token")
    claims = check.claims
    return {
        "user_id": claims.get("sub"),
        "email": claims.get("email", ""),
        "plan": claims.get("plan", ""),
        "method": claims.get("amr", ""),
        "exp": claims.get("exp"),
    }
