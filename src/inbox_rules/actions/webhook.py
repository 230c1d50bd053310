"""
Outbound webhooks: the per-account completion notification and the CALL_WEBHOOK action
"""
from typing import Dict, Optional

import requests
import structlog

from ..providers.base import Message
from ..providers.errors import ProviderError, Transient, error_from_status

logger = structlog.get_logger(__name__)

SECRET_HEADER = 'X-Webhook-Secret'


def build_payload(message: Message, executed_rule) -> Dict:
    email = {
        'threadId': message.thread_id,
        'messageId': message.id,
        'subject': message.headers.subject,
        'from': message.headers.from_,
        'headerMessageId': message.headers.message_id,
    }
    if message.headers.cc:
        email['cc'] = message.headers.cc
    if message.headers.bcc:
        email['bcc'] = message.headers.bcc
    return {
        'email': email,
        'executedRule': {
            'id': executed_rule.id,
            'ruleId': executed_rule.rule_id,
            'reason': executed_rule.reason,
            'automated': executed_rule.automated,
            'createdAt': executed_rule.created_at.isoformat() if executed_rule.created_at else None,
        },
    }


class WebhookClient:
    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 1.0):
        self.session = session or requests.Session()
        self.timeout = timeout

    def send(self, url: str, payload: Dict, secret: Optional[str] = None) -> None:
        """POST the payload; failures are raised as provider-style errors"""
        headers = {'Content-Type': 'application/json'}
        if secret:
            headers[SECRET_HEADER] = secret
        try:
            response = self.session.post(url, json=payload, headers=headers, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise Transient(f"Webhook request failed: {e}") from e
        if response.status_code >= 400:
            raise error_from_status(response.status_code, f"Webhook returned HTTP {response.status_code}")

    def notify(self, url: str, payload: Dict, secret: Optional[str] = None) -> bool:
        """Fire-and-forget: a failure is logged and never raised"""
        try:
            self.send(url, payload, secret)
        except (ProviderError, requests.RequestException) as e:
            logger.warning("Webhook call failed", url=url, error=str(e), error_type=type(e).__name__)
            return False
        return True
