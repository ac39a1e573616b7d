"""
Update Deduplicator - makes inbound webhook delivery idempotent
Keeps the most recent N update ids in insertion order
"""
from collections import OrderedDict
from threading import Lock
import logging

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 1000


class UpdateDeduplicator:
    """Bounded FIFO set of processed update ids"""
    
    def __init__(self, capacity: int = DEFAULT_CAPACITY):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._seen: "OrderedDict[int, None]" = OrderedDict()
        self._lock = Lock()
    
    def should_process(self, update_id: int) -> bool:
        """
        Record an update id on first sight
        
        Args:
            update_id: Unique id of the inbound update
        
        Returns:
            True the first time an id is seen, False on redelivery
        """
        with self._lock:
            if update_id in self._seen:
                logger.info(f"Skipping duplicate update {update_id}")
                return False
            
            self._seen[update_id] = None
            # Evict oldest first
            while len(self._seen) > self.capacity:
                self._seen.popitem(last=False)
            return True
    
    def __len__(self) -> int:
        with self._lock:
            return len(self._seen)
    
    def __contains__(self, update_id: int) -> bool:
        with self._lock:
            return update_id in self._seen
