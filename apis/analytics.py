from typing import Any, Dict, Optional, Union

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from core.db import DB
from core.error_log_service import record_client_error
from .base import success_response, error_response


router = APIRouter(prefix="/analytics", tags=["错误上报"])


class ClientError(BaseModel):
    message: str = Field(default="")
    type: str = Field(default="")
    stack: Optional[str] = Field(default=None)
    code: Optional[Union[int, str]] = Field(default=None)


class ErrorReport(BaseModel):
    userId: Optional[str] = Field(default=None, max_length=64)
    error: ClientError = Field(default_factory=ClientError)
    context: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[Union[int, float, str]] = Field(default=None)


@router.post("/error", summary="扩展端错误上报")
def report_error(payload: ErrorReport):
    session = DB.get_session()
    try:
        result = record_client_error(session, payload.model_dump())
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
    if not result.accepted:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=error_response(code=42902, message="Rate limit"),
        )
    return success_response({"accepted": True})
