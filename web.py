import json
import time
from typing import Any

from fastapi import APIRouter, FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from apis.analytics import router as analytics_router
from apis.auth import router as auth_router
from apis.base import error_response, success_response
from apis.ocr import router as ocr_router
from core.config import cfg, VERSION, API_BASE
from core.db import DB
from core.events import log_event, E
from core.log import get_logger, set_trace_id
from jobs import start_session_sweep_worker

logger = get_logger(__name__)


class UnicodeJSONResponse(JSONResponse):
    """自定义 JSON 响应类，确保非 ASCII 字符不被转义"""
    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


app = FastAPI(
    title=cfg.get("app_name", "SnipText API"),
    description="SnipText 浏览器扩展后端：magic link 登录、凭证签发与按日计量的 OCR",
    version=VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    default_response_class=UnicodeJSONResponse,
)

# CORS配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type", "X-Request-Id"],
)


@app.middleware("http")
async def log_request(request: Request, call_next):
    tid = set_trace_id(request.headers.get("X-Request-Id"))
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = int((time.perf_counter() - start) * 1000)
    logger.info("%s %s - %s (%sms)", request.method, request.url.path, response.status_code, duration_ms)
    response.headers["X-Request-Id"] = tid
    response.headers["X-Version"] = VERSION
    return response


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    detail = exc.detail
    if not isinstance(detail, dict):
        message = "Not Found" if exc.status_code == status.HTTP_404_NOT_FOUND else str(detail or "")
        detail = error_response(code=exc.status_code * 100 + 1, message=message)
    return UnicodeJSONResponse(status_code=exc.status_code, content=detail, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Invalid request"
    if errors:
        first = errors[0]
        field = ".".join(str(x) for x in first.get("loc", [])[1:])
        message = f"{field}: {first.get('msg', '')}" if field else str(first.get("msg", message))
    return UnicodeJSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=error_response(code=40000, message=message),
    )


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("未处理的异常: %s %s", request.method, request.url.path)
    return UnicodeJSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=error_response(code=50000, message="Internal server error"),
    )


# 创建API路由分组
api_router = APIRouter(prefix=f"{API_BASE}")
api_router.include_router(auth_router)
api_router.include_router(ocr_router)
api_router.include_router(analytics_router)
app.include_router(api_router)


@app.get("/health", tags=["默认"])
def health():
    db_ok = DB.ping()
    content = success_response(
        {"status": "ok" if db_ok else "degraded", "database": db_ok, "version": VERSION}
    )
    return UnicodeJSONResponse(
        status_code=status.HTTP_200_OK if db_ok else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=content,
    )


@app.get("/", tags=["默认"], include_in_schema=False)
async def serve_root():
    landing = str(cfg.get("site.landing_url", "https://sniptext.pages.dev/") or "https://sniptext.pages.dev/")
    return RedirectResponse(url=landing, status_code=status.HTTP_301_MOVED_PERMANENTLY)


@app.on_event("startup")
async def startup():
    DB.create_tables()
    if cfg.get("jobs.session_sweep_enabled", True):
        start_session_sweep_worker()
    log_event(logger, E.SYSTEM_STARTUP, version=VERSION, app=cfg.get("app_name", "SnipText API"))
