"""
Short-lived state kept in Django's cache framework.

Pending sessions live only between prepare and confirm. With the local-memory
backend they are lost on restart and invisible to other replicas; point the
configured cache alias at Redis for multi-instance deployments.
"""
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from django.core.cache import caches

CLAIMED = 'claimed'


@dataclass
class PendingSession:
    """Prepared but not yet confirmed deposit or top-up."""
    session_id: str
    user_wallet: str
    delegate_public_key: str
    delegate_key_encrypted: str
    deposit_units: int
    total_approval_units: int
    is_top_up: bool
    expires_in_hours: int
    existing_session_id: Optional[str] = None
    existing_remaining_units: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PendingSession':
        return cls(**data)


class CachePendingSessionStore:
    """
    Pending sessions keyed by session id, with a TTL.

    ``claim`` is an atomic ``cache.add`` of a marker key, so at most one
    confirm can hold a given session id at a time.
    """

    KEY_PREFIX = 'payflix:pending-session:'

    def __init__(self, alias: str = 'default', ttl_seconds: int = 600):
        self._alias = alias
        self.ttl_seconds = ttl_seconds

    @property
    def _cache(self):
        return caches[self._alias]

    def _key(self, session_id: str) -> str:
        return f'{self.KEY_PREFIX}{session_id}'

    def _claim_key(self, session_id: str) -> str:
        return f'{self._key(session_id)}:claim'

    def put(self, pending: PendingSession) -> None:
        self._cache.set(self._key(pending.session_id), pending.to_dict(),
                        timeout=self.ttl_seconds)

    def get(self, session_id: str) -> Optional[PendingSession]:
        data = self._cache.get(self._key(session_id))
        if data is None:
            return None
        return PendingSession.from_dict(data)

    def claim(self, session_id: str) -> Optional[PendingSession]:
        """Take exclusive hold of a pending session; None if missing or already held."""
        pending = self.get(session_id)
        if pending is None:
            return None
        if not self._cache.add(self._claim_key(session_id), CLAIMED,
                               timeout=self.ttl_seconds):
            return None
        return pending

    def release(self, session_id: str) -> None:
        """Give a claimed session back so the caller may retry confirm."""
        self._cache.delete(self._claim_key(session_id))

    def delete(self, session_id: str) -> None:
        # Claim marker is left to expire; a late duplicate confirm finds no entry.
        self._cache.delete(self._key(session_id))


class CacheLease:
    """Expiring mutual exclusion over ``cache.add``."""

    KEY_PREFIX = 'payflix:lease:'

    def __init__(self, alias: str = 'default', ttl_seconds: int = 120):
        self._alias = alias
        self.ttl_seconds = ttl_seconds

    def _key(self, name: str) -> str:
        return f'{self.KEY_PREFIX}{name}'

    def acquire(self, name: str) -> bool:
        return caches[self._alias].add(self._key(name), CLAIMED,
                                       timeout=self.ttl_seconds)

    def release(self, name: str) -> None:
        caches[self._alias].delete(self._key(name))
