from .base import Base, Column, String, Integer, DateTime, Text


class ErrorLog(Base):
    __tablename__ = "error_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False, index=True)
    error_message = Column(Text, nullable=False)
    error_type = Column(String(64), nullable=False, index=True)
    error_stack = Column(Text)
    error_code = Column(String(64))
    context = Column(Text)
    timestamp = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, index=True)
