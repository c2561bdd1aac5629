"""
Sliding-window rate limiting for outgoing notification integrations.
"""
import logging
from datetime import datetime, timedelta
from collections import defaultdict
from typing import Dict, Hashable, List, Optional


class SlidingWindowLimiter:
    """
    Allows at most `rate` events per `per` seconds for each key.
    """

    def __init__(self, per: int = 60):
        self.per = per
        self.events: Dict[Hashable, List[datetime]] = defaultdict(list)

    def allow(self, key: Hashable, rate: int, now: Optional[datetime] = None) -> bool:
        """Record an event for `key` if it fits in the window."""
        now = now or datetime.now()

        # Clean old events
        self.events[key] = [
            ts for ts in self.events[key]
            if now - ts < timedelta(seconds=self.per)
        ]

        if len(self.events[key]) >= rate:
            logging.warning(
                f"Rate limit exceeded for {key}: "
                f"{len(self.events[key])} events in {self.per}s"
            )
            return False

        self.events[key].append(now)
        return True
