"""
Build the provider for an email account
"""
from ..config import Settings
from .base import EmailProvider
from .gmail import GmailProvider
from .outlook import OutlookProvider


def create_provider(account, settings: Settings, gmail_service=None) -> EmailProvider:
    """Pick the backend from the account's provider field"""
    if account.provider == 'google':
        if gmail_service is None:
            from .auth import get_gmail_service
            gmail_service = get_gmail_service()
        return GmailProvider(gmail_service)
    if account.provider == 'microsoft':
        if not settings.outlook_access_token:
            raise ValueError("OUTLOOK_ACCESS_TOKEN is required for Microsoft accounts")
        return OutlookProvider(settings.outlook_access_token, timeout=settings.provider_timeout_seconds)
    raise ValueError(f"Unsupported provider: {account.provider}")
