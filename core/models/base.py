from datetime import datetime, timezone

from sqlalchemy import (  # noqa: F401  模型文件统一从这里导入列类型
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    PrimaryKeyConstraint,
    String,
    Text,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utc_now() -> datetime:
    """库内统一存储 naive UTC 时间。"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
