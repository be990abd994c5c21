from .base import Base, Column, String, DateTime, Boolean, ForeignKey


class AuthSession(Base):
    """Magic link 登录会话。verified 只会 False -> True；被轮询成功消费后整行删除。"""

    __tablename__ = "auth_sessions"

    session_id = Column(String(64), primary_key=True)
    user_id = Column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    verify_token = Column(String(64), nullable=False, index=True)
    verified = Column(Boolean, nullable=False, default=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime)
