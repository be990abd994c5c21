from .base import Base, Column, String, DateTime


class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    # 邮箱按原样存储，区分大小写
    email = Column(String(255), unique=True, index=True, nullable=False)
    name = Column(String(255), default="")
    picture = Column(String(512), default="")
    plan = Column(String(20), nullable=False, default="free", index=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
