"""
Normalized provider errors. Every provider maps its native failures onto these.
"""
from datetime import datetime, timezone
from typing import Optional

from dateutil import parser as date_parser


class ProviderError(Exception):
    """Base class for mail provider failures"""

    retryable = False


class RateLimited(ProviderError):
    retryable = True

    def __init__(self, retry_after: Optional[float] = None, message: str = 'Rate limited'):
        super().__init__(message)
        self.retry_after = retry_after


class NotFound(ProviderError):
    pass


class PermissionDenied(ProviderError):
    pass


class Transient(ProviderError):
    retryable = True


class Permanent(ProviderError):
    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


def is_retryable(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.retryable


def error_from_status(status: int, detail: str, retry_after: Optional[float] = None) -> ProviderError:
    """Map an HTTP status from either backend onto the taxonomy"""
    if status == 429:
        return RateLimited(retry_after, detail)
    if status == 404:
        return NotFound(detail)
    if status in (401, 403):
        # Gmail reports per-user quota exhaustion as 403
        if 'ratelimitexceeded' in detail.lower().replace(' ', '') or 'quota' in detail.lower():
            return RateLimited(retry_after, detail)
        return PermissionDenied(detail)
    if status in (408, 500, 502, 503, 504):
        return Transient(detail)
    return Permanent(detail)


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Retry-After is either delta-seconds or an HTTP date"""
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = date_parser.parse(value)
    except (ValueError, OverflowError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max((when - datetime.now(timezone.utc)).total_seconds(), 0.0)
