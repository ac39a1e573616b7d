"""
Admission Gate - single-flight guard for generation requests
At most one task per (user, category) may be in flight at a time
"""
from contextlib import contextmanager
from threading import Lock
from typing import Iterator, Set, Tuple
import logging

from ..exceptions import AdmissionConflict

logger = logging.getLogger(__name__)


class AdmissionGate:
    """Tracks which users have a generation task in flight, per category"""
    
    def __init__(self):
        self._busy: Set[Tuple[int, str]] = set()
        self._lock = Lock()
    
    def try_acquire(self, user_id: int, category: str) -> bool:
        """
        Mark the user busy for a category
        
        Returns:
            True if the slot was free and is now held, False if already busy
        """
        key = (user_id, category)
        with self._lock:
            if key in self._busy:
                return False
            self._busy.add(key)
        logger.debug(f"Admitted {category} request for user {user_id}")
        return True
    
    def release(self, user_id: int, category: str):
        """Clear the busy flag. Safe to call when it was never acquired."""
        with self._lock:
            self._busy.discard((user_id, category))
    
    def is_busy(self, user_id: int, category: str) -> bool:
        with self._lock:
            return (user_id, category) in self._busy
    
    def in_flight(self) -> int:
        """Number of held slots"""
        with self._lock:
            return len(self._busy)
    
    @contextmanager
    def hold(self, user_id: int, category: str) -> Iterator[None]:
        """
        Hold the slot for the duration of the block
        
        Raises:
            AdmissionConflict: If the slot is already held
        """
        if not self.try_acquire(user_id, category):
            raise AdmissionConflict(user_id, category)
        try:
            yield
        finally:
            self.release(user_id, category)
