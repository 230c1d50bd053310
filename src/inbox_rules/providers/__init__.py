"""
Mail provider abstraction: Gmail and Outlook behind one capability interface
"""
from .base import EmailProvider, Envelope, Label, LabelResult, Message, MessageHeaders, MessageRef, Thread
from .errors import NotFound, Permanent, PermissionDenied, ProviderError, RateLimited, Transient, is_retryable
from .factory import create_provider
from .gmail import GmailProvider
from .outlook import OutlookProvider

__all__ = [
    'EmailProvider',
    'Envelope',
    'Label',
    'LabelResult',
    'Message',
    'MessageHeaders',
    'MessageRef',
    'Thread',
    'ProviderError',
    'RateLimited',
    'NotFound',
    'PermissionDenied',
    'Transient',
    'Permanent',
    'is_retryable',
    'create_provider',
    'GmailProvider',
    'OutlookProvider',
]
