"""
Delayed actions: sweep, cancel and retry
"""
from .scheduler import EMAIL_GONE, DelayedActionScheduler, SweepResult

__all__ = ['EMAIL_GONE', 'DelayedActionScheduler', 'SweepResult']
