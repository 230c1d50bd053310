"""
Database package for the inbox rules engine
"""
from .connection import create_session_factory, get_db_session, get_session_factory, init_db
from .models import (
    Action,
    ActionType,
    Base,
    Category,
    EmailAccount,
    ExecutedAction,
    ExecutedRule,
    Group,
    GroupItem,
    ProviderRateLimit,
    Rule,
    ScheduledAction,
    Sender,
)
from .repository import Repository

__all__ = [
    'Base',
    'EmailAccount',
    'Rule',
    'Action',
    'ActionType',
    'Category',
    'Sender',
    'Group',
    'GroupItem',
    'ExecutedRule',
    'ExecutedAction',
    'ScheduledAction',
    'ProviderRateLimit',
    'Repository',
    'create_session_factory',
    'init_db',
    'get_db_session',
    'get_session_factory',
]
