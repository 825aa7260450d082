from .base import Base, Column, String, Integer, DateTime, Text


class AIAssistantLog(Base):
    __tablename__ = "ai_assistant_logs"

    id = Column(String(64), primary_key=True)
    user_id = Column(String(255), index=True, nullable=False)
    plan = Column(String(50), index=True)
    category = Column(String(120), index=True)
    artifact_size = Column(Integer, default=0)
    question = Column(Text)
    session_id = Column(String(120), index=True)
    created_at = Column(DateTime(timezone=True), index=True)
