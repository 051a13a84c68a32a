"""
Cached URL Model
Signed download link with monotonic and wall-clock expiry
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Tuple

EntityKey = Tuple[str, int]


@dataclass
class CachedUrlEntry:
    """In-memory cache entry for a signed URL"""
    entity_key: EntityKey
    signed_url: str
    expires_at_monotonic: float
    expires_at_wallclock: datetime

    def remaining(self, now_monotonic: float) -> float:
        """Seconds of TTL left (negative once expired)"""
        return self.expires_at_monotonic - now_monotonic

    def is_fresh(self, now_monotonic: float, refresh_margin: float) -> bool:
        return self.remaining(now_monotonic) > refresh_margin

    def is_expired(self, now_monotonic: float) -> bool:
        return self.remaining(now_monotonic) <= 0
