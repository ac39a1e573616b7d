"""
Quota Store - per-user, per-period usage limits for text, image and video
Resolves the current billing period, lazily creates its usage row and
enforces the configured free/premium limits against it
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Tuple, Union
import logging

from sqlalchemy.exc import SQLAlchemyError

from .metrics import increment_counter
from .period_calculator import BillingPeriod, current_period
from .usage_store import ResourceKind, UsageRecord, UsageRowStore
from .user_service import UserService
from ..db.models import BotUser
from ..exceptions import QuotaUnavailableError

logger = logging.getLogger(__name__)

Resource = Union[ResourceKind, str]


@dataclass(frozen=True)
class ResourceLimits:
    """Per-period limits for one tier"""
    text: int
    image: int
    video: int
    
    def __post_init__(self):
        for name in ("text", "image", "video"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} limit must be a positive integer")
    
    def for_resource(self, resource: ResourceKind) -> int:
        return getattr(self, resource.value)


@dataclass(frozen=True)
class QuotaLimits:
    """Limit table injected at startup: {free: {...}, premium: {...}}"""
    free: ResourceLimits
    premium: ResourceLimits
    
    def limit(self, resource: ResourceKind, is_premium: bool) -> int:
        tier = self.premium if is_premium else self.free
        return tier.for_resource(resource)


@dataclass
class QuotaSnapshot:
    """Remaining counts for every resource in the user's current period"""
    user_id: int
    is_premium: bool
    period: BillingPeriod
    remaining: Dict[str, int] = field(default_factory=dict)


class QuotaStore:
    """
    Metered quota enforcement
    
    consume() is an at-least count rather than a reservation: can_consume()
    followed by consume() is not atomic, so two near-simultaneous requests can
    both pass the check. The increment itself is a single atomic update.
    """
    
    def __init__(
        self,
        row_store: UsageRowStore,
        users: UserService,
        limits: QuotaLimits,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        """
        Initialize QuotaStore
        
        Args:
            row_store: Backing store for usage rows
            users: User lookup providing premium status and anchors
            limits: Free/premium limit table
            clock: Returns the current UTC instant
        """
        self.row_store = row_store
        self.users = users
        self.limits = limits
        self._clock = clock
    
    def _resolve(self, user_id: int) -> Tuple[BotUser, BillingPeriod]:
        try:
            user = self.users.find_user(user_id)
        except SQLAlchemyError as e:
            raise QuotaUnavailableError(f"User lookup failed: {e}") from e
        
        if user is None:
            raise QuotaUnavailableError(f"Unknown user {user_id}")
        
        period = current_period(self._clock(), user.quota_anchor, user.is_premium)
        return user, period
    
    def _current_record(self, user: BotUser, period: BillingPeriod) -> UsageRecord:
        """Fetch the usage row for the period, creating it zeroed on first reference"""
        record = self.row_store.get(user.id, period.start)
        if record is not None and record.period_end == period.end:
            return record

        if record is not None:
            # Same start day but a different window: the tier or anchor changed,
            # and the window that row belonged to was cut short
            logger.info(
                f"Reopening usage row {period.start} for user {user.telegram_id}: "
                f"window changed from ending {record.period_end} to {period.end}"
            )
            return self.row_store.reopen(user.id, period.start, period.end)

        record = self.row_store.create_if_absent(UsageRecord(
            user_id=user.id,
            period_start=period.start,
            period_end=period.end,
        ))
        logger.info(f"Started usage period {period.start} - {period.end} for user {user.telegram_id}")
        return record
    
    def _remaining(self, user: BotUser, record: UsageRecord, resource: ResourceKind) -> int:
        limit = self.limits.limit(resource, user.is_premium)
        return max(0, limit - record.used(resource))
    
    def remaining(self, user_id: int, resource: Resource) -> int:
        """
        Get remaining requests for a resource in the current period
        
        Raises:
            QuotaUnavailableError: If the user or usage storage cannot be read
        """
        resource = ResourceKind(resource)
        user, period = self._resolve(user_id)
        record = self._current_record(user, period)
        return self._remaining(user, record, resource)
    
    def can_consume(self, user_id: int, resource: Resource, amount: int = 1) -> bool:
        """Check if the user has at least amount left. Fails closed on storage errors."""
        try:
            return self.remaining(user_id, resource) >= amount
        except QuotaUnavailableError as e:
            logger.warning(f"Quota check failed closed for user {user_id}: {e}")
            return False
    
    def consume(self, user_id: int, resource: Resource, amount: int = 1) -> int:
        """
        Record usage against the current period
        
        Args:
            user_id: Telegram user ID
            resource: Resource kind to charge
            amount: Units to add (non-negative)
        
        Returns:
            Remaining requests after the charge
        """
        if amount < 0:
            raise ValueError("amount must be non-negative")
        
        resource = ResourceKind(resource)
        user, period = self._resolve(user_id)
        # Make sure the row exists before the atomic increment
        self._current_record(user, period)
        record = self.row_store.increment(user.id, period.start, resource, amount)
        
        increment_counter("quota_units_consumed_total", amount, {"resource": resource.value})
        remaining = self._remaining(user, record, resource)
        logger.info(f"Consumed {amount} {resource.value} for user {user_id}: {remaining} left")
        return remaining
    
    def reset_current_period(self, user_id: int) -> bool:
        """Zero all counters in the user's current period (administrative override)"""
        try:
            user, period = self._resolve(user_id)
            self._current_record(user, period)
            reset = self.row_store.reset(user.id, period.start)
        except QuotaUnavailableError as e:
            logger.error(f"Failed to reset quota for user {user_id}: {e}")
            return False
        
        if reset:
            logger.info(f"Quota reset for user {user_id} period {period.start}")
        return reset
    
    def get_user_stats(self, user_id: int) -> QuotaSnapshot:
        """
        Get remaining counts for all resources
        
        Used when declining a request so the user sees every balance.
        """
        user, period = self._resolve(user_id)
        record = self._current_record(user, period)
        return QuotaSnapshot(
            user_id=user_id,
            is_premium=user.is_premium,
            period=period,
            remaining={kind.value: self._remaining(user, record, kind) for kind in ResourceKind},
        )
