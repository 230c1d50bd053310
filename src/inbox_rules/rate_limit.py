"""
Advisory per-account gate in front of provider calls
"""
from datetime import datetime, timedelta
from typing import Optional

import structlog

from .database.models import utcnow
from .database.repository import Repository

logger = structlog.get_logger(__name__)

DEFAULT_RETRY_AFTER_SECONDS = 30
RETRY_BUFFER_SECONDS = 5


class RateLimitGate:
    """
    Reads the stored retry-at time before a provider call and records a new
    one after a RateLimited error. Two workers may briefly both pass the gate;
    that only costs an extra rejected call.
    """

    def __init__(self, repo: Repository, clock=utcnow):
        self.repo = repo
        self.clock = clock

    def blocked_until(self, account_id: int) -> Optional[datetime]:
        state = self.repo.get_rate_limit_state(account_id)
        if state is None:
            return None
        if state.retry_at > self.clock():
            return state.retry_at
        return None

    def is_blocked(self, account_id: int) -> bool:
        return self.blocked_until(account_id) is not None

    def record(self, account_id: int, provider: str, retry_after: Optional[float] = None,
               source: Optional[str] = None) -> datetime:
        seconds = retry_after if retry_after is not None else DEFAULT_RETRY_AFTER_SECONDS
        retry_at = self.clock() + timedelta(seconds=seconds + RETRY_BUFFER_SECONDS)
        state = self.repo.set_rate_limit_state(account_id, provider, retry_at, source)
        logger.warning("Provider rate limit recorded", account_id=account_id, provider=provider,
                       retry_at=state.retry_at.isoformat(), source=source)
        return state.retry_at
