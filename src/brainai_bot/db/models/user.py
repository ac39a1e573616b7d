"""
Bot user model
"""
from sqlalchemy import Column, Integer, BigInteger, Boolean, Date, DateTime, String
from sqlalchemy.orm import relationship
from datetime import datetime

from ..base import Base


class BotUser(Base):
    """Chat user with premium status and quota anchors"""
    __tablename__ = "bot_users"
    
    id = Column(Integer, primary_key=True, index=True)
    telegram_id = Column(BigInteger, unique=True, index=True, nullable=False)
    is_premium = Column(Boolean, default=False, nullable=False)
    
    # Anchor for the rolling 7-day free window; falls back to created_at
    free_period_start = Column(Date, nullable=True)
    
    # Set if and only if is_premium; anchors the monthly premium window
    premium_started_at = Column(DateTime, nullable=True)
    premium_end_date = Column(DateTime, nullable=True, index=True)
    
    # Preferred image provider; NULL means the configured default
    image_provider = Column(String(16), nullable=True)
    
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    
    quotas = relationship("UserQuota", back_populates="user", cascade="all, delete-orphan")
    
    @property
    def quota_anchor(self):
        """Anchor date for the user's current billing window"""
        if self.is_premium and self.premium_started_at is not None:
            return self.premium_started_at
        return self.free_period_start or self.created_at
