"""
core/log.py：SnipText API 日志

每行日志带一个 trace_id，便于把一次登录轮询或一次 OCR 请求的所有行串起来：
  - web.py 的请求中间件调用 set_trace_id()，优先沿用客户端的 X-Request-Id，并写回响应头
  - jobs/session_sweep.py 的每轮清理在 trace_ctx() 内运行
  - 领域模块通过 core.events.log_event 输出 event=... | k=v 结构化行

输出到 stdout（colorlog 着色），配置 log.file 时另写一份滚动文件。
uvicorn 自带的 access 日志与请求中间件重复，默认调到 WARNING，可用 log.quiet 覆盖。

    from core.log import get_logger
    logger = get_logger(__name__)
"""

import logging
import logging.handlers
import sys
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Generator, List, Optional

import colorlog

from core.config import cfg

_trace_id_var: ContextVar[str] = ContextVar("trace_id", default="-")

_TRACE_ID_MAX = 16
_FMT = "%(asctime)s [%(levelname)-5s] [%(trace_id)s] %(name)s.%(funcName)s:%(lineno)d - %(message)s"
_DATE_FMT = "%Y-%m-%d %H:%M:%S"
_COLORS = {
    "DEBUG": "cyan",
    "INFO": "green",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red,bg_white",
}
_DEFAULT_QUIET = ["uvicorn.access", "urllib3"]

# uvicorn --reload 会重复 import，按标记判断 handler 是否已注册
_HANDLER_MARKER = "_sniptext_handler"


def _clean_trace_id(value: Optional[str]) -> str:
    return str(value or "").strip()[:_TRACE_ID_MAX] or uuid.uuid4().hex[:8]


def set_trace_id(tid: Optional[str] = None) -> str:
    """为当前请求设置 trace_id，空值时生成新的，返回实际值。"""
    tid = _clean_trace_id(tid)
    _trace_id_var.set(tid)
    return tid


@contextmanager
def trace_ctx(trace_id: Optional[str] = None) -> Generator[str, None, None]:
    token = _trace_id_var.set(_clean_trace_id(trace_id))
    try:
        yield _trace_id_var.get()
    finally:
        _trace_id_var.reset(token)


class _TraceIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = _trace_id_var.get()
        return True


def _level_from(name, default: int = logging.INFO) -> int:
    level = logging.getLevelName(str(name or "").upper())
    return level if isinstance(level, int) else default


def _console_handler(level: int, trace_filter: logging.Filter) -> logging.Handler:
    handler = colorlog.StreamHandler(stream=sys.stdout)
    handler.setFormatter(colorlog.ColoredFormatter("%(log_color)s" + _FMT, datefmt=_DATE_FMT, log_colors=_COLORS))
    handler.setLevel(level)
    handler.addFilter(trace_filter)
    return handler


def _file_handler(path: str, level: int, trace_filter: logging.Filter) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        f"{path}.log",
        maxBytes=5 * 1024 * 1024,
        backupCount=7,
        encoding="utf-8",
    )
    handler.setFormatter(logging.Formatter(_FMT, datefmt=_DATE_FMT))
    handler.setLevel(level)
    handler.addFilter(trace_filter)
    return handler


def _quiet_loggers() -> List[str]:
    names = cfg.get("log.quiet", _DEFAULT_QUIET)
    if isinstance(names, str):
        names = [x.strip() for x in names.split(",")]
    return [str(x) for x in names or [] if str(x).strip()]


def _setup_logging() -> None:
    root = logging.getLogger()
    if any(getattr(h, _HANDLER_MARKER, False) for h in root.handlers):
        return

    level = _level_from(cfg.get("log.level", "INFO"))
    trace_filter = _TraceIdFilter()
    handlers = [_console_handler(level, trace_filter)]
    log_file = str(cfg.get("log.file", "") or "").strip()
    if log_file:
        handlers.append(_file_handler(log_file, level, trace_filter))

    root.setLevel(level)
    for handler in handlers:
        setattr(handler, _HANDLER_MARKER, True)
        root.addHandler(handler)

    for name in _quiet_loggers():
        logging.getLogger(name).setLevel(logging.WARNING)


_setup_logging()


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
