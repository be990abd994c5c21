"""
数据库连接管理（SQLAlchemy）

DB.get_session() 每次返回新的 Session，调用方负责 commit / close。
测试中通过 DB.configure(url) 切换到临时库。
"""

import os
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from core.config import cfg
from core.log import get_logger
from core.events import log_event, E

logger = get_logger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./data/sniptext.db"


class Database:
    def __init__(self):
        self.engine: Optional[Engine] = None
        self.SessionLocal = None
        self.url = ""

    def configure(self, url: Optional[str] = None) -> Engine:
        target = str(url or cfg.get("db.url", DEFAULT_DATABASE_URL)).strip()
        timeout = int(cfg.get("db.timeout_seconds", 30) or 30)
        connect_args = {}
        if target.startswith("sqlite"):
            path = target.split("///", 1)[-1]
            if path and path != ":memory:":
                os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
            # timeout 即 sqlite busy timeout，写锁等待有上限
            connect_args = {"check_same_thread": False, "timeout": timeout}
        else:
            connect_args = {"connect_timeout": timeout}

        if self.engine is not None:
            self.engine.dispose()
        self.engine = create_engine(
            target,
            echo=bool(cfg.get("db.echo", False)),
            pool_pre_ping=True,
            connect_args=connect_args,
        )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        self.url = target
        return self.engine

    def get_engine(self) -> Engine:
        if self.engine is None:
            self.configure()
        return self.engine

    def get_session(self) -> Session:
        if self.SessionLocal is None:
            self.configure()
        return self.SessionLocal()

    def create_tables(self) -> None:
        from core.models.base import Base
        import core.models  # noqa: F401  注册全部模型

        Base.metadata.create_all(bind=self.get_engine())
        log_event(logger, E.SYSTEM_DB_INIT, url=self.url.split("@")[-1])

    def ping(self) -> bool:
        try:
            with self.get_engine().connect() as conn:
                return conn.execute(text("SELECT 1")).scalar() == 1
        except SQLAlchemyError as e:
            logger.error("数据库连接检查失败: %s", e)
            return False


DB = Database()
