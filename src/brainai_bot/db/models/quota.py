"""
Per-period usage counters
"""
from sqlalchemy import Column, Integer, Date, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.orm import relationship
from datetime import datetime

from ..base import Base


class UserQuota(Base):
    """Usage counters per user and billing period"""
    __tablename__ = "user_quotas"
    
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("bot_users.id", ondelete="CASCADE"), nullable=False, index=True)
    period_start = Column(Date, nullable=False, index=True)
    period_end = Column(Date, nullable=False)
    text_used = Column(Integer, default=0, nullable=False)
    image_used = Column(Integer, default=0, nullable=False)
    video_used = Column(Integer, default=0, nullable=False)
    reset_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    
    # Unique constraint makes lazy creation race-safe at the storage layer
    __table_args__ = (
        UniqueConstraint("user_id", "period_start", name="uq_user_quotas_user_period"),
    )
    
    user = relationship("BotUser", back_populates="quotas")
