"""
Usage row storage - backing store for per-period quota counters
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Optional
import logging

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..db.models import UserQuota
from ..exceptions import QuotaUnavailableError

logger = logging.getLogger(__name__)


class ResourceKind(str, Enum):
    """Metered resource kinds"""
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    
    @property
    def column(self) -> str:
        return f"{self.value}_used"


@dataclass
class UsageRecord:
    """Counters for one (user, period-start) pair"""
    user_id: int
    period_start: date
    period_end: date
    text_used: int = 0
    image_used: int = 0
    video_used: int = 0
    
    def used(self, resource: ResourceKind) -> int:
        return getattr(self, resource.column)


class UsageRowStore(ABC):
    """Row store keyed by (user, period-start)"""
    
    @abstractmethod
    def get(self, user_id: int, period_start: date) -> Optional[UsageRecord]:
        """Return the record for the period, or None if it was never referenced"""
        pass
    
    @abstractmethod
    def upsert(self, record: UsageRecord) -> UsageRecord:
        """Insert the record, or overwrite the counters of an existing one"""
        pass
    
    @abstractmethod
    def create_if_absent(self, record: UsageRecord) -> UsageRecord:
        """Insert the record unless the row exists; an existing row is returned untouched"""
        pass
    
    @abstractmethod
    def reopen(self, user_id: int, period_start: date, period_end: date) -> UsageRecord:
        """Zero the counters and move period_end, only when the stored period_end differs"""
        pass
    
    @abstractmethod
    def increment(self, user_id: int, period_start: date, resource: ResourceKind, amount: int) -> UsageRecord:
        """Add amount to one counter in a single read-modify-write"""
        pass
    
    @abstractmethod
    def reset(self, user_id: int, period_start: date) -> bool:
        """Zero all counters of the period; False if the row does not exist"""
        pass


def _to_record(row: UserQuota) -> UsageRecord:
    return UsageRecord(
        user_id=row.user_id,
        period_start=row.period_start,
        period_end=row.period_end,
        text_used=row.text_used,
        image_used=row.image_used,
        video_used=row.video_used,
    )


class SqlUsageRowStore(UsageRowStore):
    """UsageRowStore backed by the user_quotas table"""
    
    def __init__(self, session_factory: sessionmaker):
        """
        Initialize store
        
        Args:
            session_factory: SQLAlchemy sessionmaker bound to the application engine
        """
        self._session_factory = session_factory
    
    def _find(self, db, user_id: int, period_start: date) -> Optional[UserQuota]:
        return db.query(UserQuota).filter(
            UserQuota.user_id == user_id,
            UserQuota.period_start == period_start
        ).first()
    
    def get(self, user_id: int, period_start: date) -> Optional[UsageRecord]:
        try:
            with self._session_factory() as db:
                row = self._find(db, user_id, period_start)
                return _to_record(row) if row else None
        except SQLAlchemyError as e:
            logger.error(f"Failed to read usage for user {user_id} period {period_start}: {e}")
            raise QuotaUnavailableError(str(e)) from e
    
    def upsert(self, record: UsageRecord) -> UsageRecord:
        """Write the record as given. Quota accounting never calls this; it is for corrections."""
        try:
            with self._session_factory() as db:
                row = self._find(db, record.user_id, record.period_start)
                if row is None:
                    row = UserQuota(
                        user_id=record.user_id,
                        period_start=record.period_start,
                        period_end=record.period_end,
                        text_used=record.text_used,
                        image_used=record.image_used,
                        video_used=record.video_used,
                    )
                    db.add(row)
                else:
                    row.period_end = record.period_end
                    row.text_used = record.text_used
                    row.image_used = record.image_used
                    row.video_used = record.video_used
                
                db.commit()
                db.refresh(row)
                return _to_record(row)
        except SQLAlchemyError as e:
            logger.error(f"Failed to upsert usage for user {record.user_id}: {e}")
            raise QuotaUnavailableError(str(e)) from e
    
    def create_if_absent(self, record: UsageRecord) -> UsageRecord:
        try:
            with self._session_factory() as db:
                row = self._find(db, record.user_id, record.period_start)
                if row is None:
                    db.add(UserQuota(
                        user_id=record.user_id,
                        period_start=record.period_start,
                        period_end=record.period_end,
                        text_used=record.text_used,
                        image_used=record.image_used,
                        video_used=record.video_used,
                    ))
                    try:
                        db.commit()
                    except IntegrityError:
                        # Lost the insert race; the winner's row and counters stand
                        db.rollback()
                        logger.info(
                            f"Usage row for user {record.user_id} period {record.period_start} created concurrently"
                        )
                    row = self._find(db, record.user_id, record.period_start)
                return _to_record(row)
        except SQLAlchemyError as e:
            logger.error(f"Failed to create usage row for user {record.user_id}: {e}")
            raise QuotaUnavailableError(str(e)) from e
    
    def reopen(self, user_id: int, period_start: date, period_end: date) -> UsageRecord:
        now = datetime.utcnow()
        try:
            with self._session_factory() as db:
                result = db.execute(
                    update(UserQuota)
                    .where(
                        UserQuota.user_id == user_id,
                        UserQuota.period_start == period_start,
                        UserQuota.period_end != period_end,
                    )
                    .values(
                        period_end=period_end,
                        text_used=0,
                        image_used=0,
                        video_used=0,
                        reset_at=now,
                        updated_at=now,
                    )
                )
                db.commit()
                row = self._find(db, user_id, period_start)
                if row is None:
                    raise QuotaUnavailableError(f"No usage row for user {user_id} period {period_start}")
                if result.rowcount:
                    logger.info(f"Reopened usage row for user {user_id} period {period_start} until {period_end}")
                return _to_record(row)
        except SQLAlchemyError as e:
            logger.error(f"Failed to reopen usage row for user {user_id}: {e}")
            raise QuotaUnavailableError(str(e)) from e
    
    def increment(self, user_id: int, period_start: date, resource: ResourceKind, amount: int) -> UsageRecord:
        if amount < 0:
            raise ValueError("amount must be non-negative")
        
        column = getattr(UserQuota, resource.column)
        try:
            with self._session_factory() as db:
                result = db.execute(
                    update(UserQuota)
                    .where(UserQuota.user_id == user_id, UserQuota.period_start == period_start)
                    .values({column: column + amount, UserQuota.updated_at: datetime.utcnow()})
                )
                db.commit()
                if result.rowcount == 0:
                    raise QuotaUnavailableError(
                        f"No usage row for user {user_id} period {period_start}"
                    )
                return _to_record(self._find(db, user_id, period_start))
        except SQLAlchemyError as e:
            logger.error(f"Failed to increment {resource.value} usage for user {user_id}: {e}")
            raise QuotaUnavailableError(str(e)) from e
    
    def reset(self, user_id: int, period_start: date) -> bool:
        now = datetime.utcnow()
        try:
            with self._session_factory() as db:
                result = db.execute(
                    update(UserQuota)
                    .where(UserQuota.user_id == user_id, UserQuota.period_start == period_start)
                    .values(text_used=0, image_used=0, video_used=0, reset_at=now, updated_at=now)
                )
                db.commit()
                return result.rowcount > 0
        except SQLAlchemyError as e:
            logger.error(f"Failed to reset usage for user {user_id}: {e}")
            raise QuotaUnavailableError(str(e)) from e
