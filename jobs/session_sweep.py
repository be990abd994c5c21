import time
from threading import Thread

from core.config import cfg
from core.db import DB
from core.events import log_event, E
from core.log import get_logger, trace_ctx
from core.session_service import sweep_expired_sessions

logger = get_logger(__name__)

_worker = None


def run_once() -> int:
    session = DB.get_session()
    try:
        log_event(logger, E.SESSION_SWEEP_START)
        result = sweep_expired_sessions(session=session, limit=1000)
        total = int(result.get("total", 0) or 0)
        log_event(logger, E.SESSION_SWEEP_COMPLETE, total=total)
        return total
    finally:
        session.close()


def _worker_loop():
    interval = max(60, int(cfg.get("jobs.session_sweep_interval_seconds", 600) or 600))
    while True:
        with trace_ctx():
            try:
                run_once()
            except Exception:
                logger.exception("过期登录会话清理异常")
        time.sleep(interval)


def start_session_sweep_worker():
    global _worker
    if _worker is not None and _worker.is_alive():
        return _worker
    _worker = Thread(target=_worker_loop, name="session-sweep", daemon=True)
    _worker.start()
    return _worker
