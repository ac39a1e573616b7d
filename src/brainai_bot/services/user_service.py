"""
User lifecycle - lookup, creation and premium transitions
"""
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from ..db.models import BotUser
from .generation_providers import IMAGE_PROVIDER_CHOICES

logger = logging.getLogger(__name__)


class UserService:
    """Owns the bot_users rows the quota layer reads anchors from"""
    
    def __init__(
        self,
        session_factory: sessionmaker,
        clock: Callable[[], datetime] = datetime.utcnow,
        premium_duration_days: int = 30,
    ):
        self._session_factory = session_factory
        self._clock = clock
        self.premium_duration_days = premium_duration_days
    
    @staticmethod
    def _detach(db: Session, user: Optional[BotUser]) -> Optional[BotUser]:
        if user is not None:
            db.refresh(user)
            db.expunge(user)
        return user
    
    @staticmethod
    def _query(db: Session, telegram_id: int) -> Optional[BotUser]:
        return db.query(BotUser).filter(BotUser.telegram_id == telegram_id).first()
    
    def find_user(self, telegram_id: int) -> Optional[BotUser]:
        """Find user by Telegram ID"""
        with self._session_factory() as db:
            return self._detach(db, self._query(db, telegram_id))
    
    def find_or_create(self, telegram_id: int) -> BotUser:
        """
        Get a user, creating a free-tier account on first contact
        
        New users get free_period_start = today so their first weekly window
        starts on signup day.
        """
        with self._session_factory() as db:
            user = self._query(db, telegram_id)
            if user is not None:
                return self._detach(db, user)
            
            now = self._clock()
            user = BotUser(
                telegram_id=telegram_id,
                is_premium=False,
                free_period_start=now.date(),
                created_at=now,
                updated_at=now,
            )
            db.add(user)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                user = self._query(db, telegram_id)
            else:
                logger.info(f"Created user {telegram_id}")
            return self._detach(db, user)
    
    def activate_premium(self, telegram_id: int) -> bool:
        """
        Switch a user to premium
        
        The premium anchor takes effect immediately, so any running free
        window is cut short and a fresh monthly window starts today.
        """
        with self._session_factory() as db:
            user = self._query(db, telegram_id)
            if user is None:
                logger.warning(f"Cannot activate premium for unknown user {telegram_id}")
                return False
            
            now = self._clock()
            user.is_premium = True
            user.premium_started_at = now
            user.premium_end_date = now + timedelta(days=self.premium_duration_days)
            user.updated_at = now
            db.commit()
            logger.info(f"Premium activated for user {telegram_id} until {user.premium_end_date.isoformat()}")
            return True
    
    def set_image_provider(self, telegram_id: int, provider: Optional[str]) -> bool:
        """
        Store the user's preferred image provider
    
        Args:
            telegram_id: Telegram user ID
            provider: One of IMAGE_PROVIDER_CHOICES, or None to follow the configured default
    
        Returns:
            False if the user does not exist
    
        Raises:
            ValueError: If the provider is not a known choice
        """
        if provider is not None and provider not in IMAGE_PROVIDER_CHOICES:
            raise ValueError(f"Unknown image provider: {provider}")
    
        with self._session_factory() as db:
            user = self._query(db, telegram_id)
            if user is None:
                logger.warning(f"Cannot set image provider for unknown user {telegram_id}")
                return False
    
            user.image_provider = provider
            user.updated_at = self._clock()
            db.commit()
            logger.info(f"User {telegram_id} switched image provider to {provider or 'default'}")
            return True
    
    def _expire(self, user: BotUser, now: datetime) -> None:
        user.is_premium = False
        user.premium_started_at = None
        user.premium_end_date = None
        user.free_period_start = now.date()
        user.updated_at = now
    
    def expire_premium(self, telegram_id: int) -> bool:
        """Revert a premium user to free if the subscription has ended"""
        with self._session_factory() as db:
            user = self._query(db, telegram_id)
            if user is None or not user.is_premium:
                return False
            
            now = self._clock()
            if user.premium_end_date is not None and user.premium_end_date > now:
                return False
            
            self._expire(user, now)
            db.commit()
            logger.info(f"Premium expired for user {telegram_id}")
            return True
    
    def find_expired_premium(self) -> List[int]:
        """Telegram ids of premium users whose end date has passed"""
        now = self._clock()
        with self._session_factory() as db:
            return [
                row.telegram_id
                for row in db.query(BotUser.telegram_id).filter(
                    BotUser.is_premium.is_(True),
                    BotUser.premium_end_date.isnot(None),
                    BotUser.premium_end_date <= now,
                ).all()
            ]
    
    def check_and_expire_all_premium(self) -> Dict[str, int]:
        """
        Expire every premium subscription whose end date has passed
        
        Returns:
            Dictionary with 'expired' and 'errors' counts
        """
        stats = {"expired": 0, "errors": 0}
        
        for telegram_id in self.find_expired_premium():
            try:
                if self.expire_premium(telegram_id):
                    stats["expired"] += 1
            except Exception as e:
                stats["errors"] += 1
                logger.error(f"Failed to expire premium for user {telegram_id}: {e}", exc_info=True)
        
        return stats
