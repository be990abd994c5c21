from .base import Base, Column, String, Integer, DateTime, PrimaryKeyConstraint


class UsageDaily(Base):
    __tablename__ = "usage_daily"
    __table_args__ = (PrimaryKeyConstraint("user_id", "date", name="pk_usage_daily"),)

    user_id = Column(String(64), nullable=False)
    date = Column(String(10), nullable=False, index=True)  # YYYY-MM-DD
    count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
