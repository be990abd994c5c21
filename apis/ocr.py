from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from core.auth import get_bearer_token, get_current_user
from core.db import DB
from core.metered_service import MeteredStatus, perform_metered_operation
from core.quota_service import peek
from .base import success_response, error_response


router = APIRouter(tags=["OCR"])


class OcrRequest(BaseModel):
    imageBase64: str = Field(default="")
    mimeType: Optional[str] = Field(default=None, max_length=64)


# 状态 -> (HTTP 状态码, 业务错误码)
_FAILURES = {
    MeteredStatus.INVALID: (status.HTTP_401_UNAUTHORIZED, 40103),
    MeteredStatus.EXPIRED: (status.HTTP_401_UNAUTHORIZED, 40102),
    MeteredStatus.INVALID_INPUT: (status.HTTP_400_BAD_REQUEST, 40004),
    MeteredStatus.QUOTA_EXCEEDED: (status.HTTP_429_TOO_MANY_REQUESTS, 42901),
    MeteredStatus.BUSY: (status.HTTP_503_SERVICE_UNAVAILABLE, 50301),
    MeteredStatus.PROVIDER_ERROR: (status.HTTP_502_BAD_GATEWAY, 50202),
    MeteredStatus.PROVIDER_TIMEOUT: (status.HTTP_504_GATEWAY_TIMEOUT, 50401),
    MeteredStatus.UNAVAILABLE: (status.HTTP_503_SERVICE_UNAVAILABLE, 50302),
}


@router.post("/ocr", summary="图片文字提取（计量）")
def ocr(payload: OcrRequest, token: str = Depends(get_bearer_token)):
    session = DB.get_session()
    try:
        result = perform_metered_operation(session, token, payload.imageBase64, mime_type=payload.mimeType or "")
    finally:
        session.close()

    if result.ok:
        return success_response({"text": result.text, "usage": result.usage()})

    status_code, code = _FAILURES[result.status]
    data = None
    headers = None
    if result.status == MeteredStatus.QUOTA_EXCEEDED:
        data = result.usage()
        message = "Daily limit exceeded. Upgrade your plan to continue using SnipText OCR"
    elif result.status in [MeteredStatus.PROVIDER_ERROR, MeteredStatus.PROVIDER_TIMEOUT]:
        # 额度已扣除，附带最新用量
        data = result.usage()
        message = "OCR processing failed, please retry"
    else:
        message = result.message
    if status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    raise HTTPException(
        status_code=status_code,
        detail=error_response(code=code, message=message, data=data),
        headers=headers,
    )


@router.get("/usage", summary="今日用量")
def usage(current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        snapshot = peek(session, current_user["user_id"], current_user["plan"])
    finally:
        session.close()
    return success_response(snapshot.model_dump())
