from .base import Base, Column, String, Integer, Date, DateTime


class AIAssistantUsage(Base):
    __tablename__ = "ai_assistant_usage"

    user_id = Column(String(255), primary_key=True, index=True)
    questions_used = Column(Integer, nullable=False, default=0)
    daily_limit = Column(Integer, nullable=True)  # NULL = 不限量
    plan = Column(String(50), nullable=False, default="free")
    period_start = Column(Date, nullable=False)
    last_reset_date = Column(Date, nullable=False, index=True)
    last_updated = Column(DateTime(timezone=True))
