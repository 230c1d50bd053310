"""
Provider calls for each action type
"""
from dataclasses import dataclass
from typing import Optional

import structlog

from ..database.models import ActionType
from ..providers.base import EmailProvider, Envelope, Message, reply_subject
from ..providers.errors import Permanent
from .webhook import WebhookClient, build_payload

logger = structlog.get_logger(__name__)


@dataclass
class ActionResult:
    draft_id: Optional[str] = None
    label_id: Optional[str] = None
    used_fallback: bool = False


def run_action(provider: EmailProvider, webhook: WebhookClient, item, message: Message, executed_rule,
               webhook_secret: Optional[str] = None) -> ActionResult:
    """
    Perform one resolved action item. Provider errors propagate so the
    caller can decide between retrying and failing the item.
    """
    logger.info("Running action", action_type=item.type, message_id=message.id,
                executed_rule_id=executed_rule.id)

    if item.type == ActionType.ARCHIVE:
        provider.archive_thread(message.thread_id)
        return ActionResult()

    elif item.type == ActionType.LABEL:
        result = provider.label_message(message.id, item.label_id, item.label)
        return ActionResult(label_id=result.applied_label_id, used_fallback=result.used_fallback)

    elif item.type == ActionType.DRAFT_EMAIL:
        envelope = Envelope(
            to=item.to or message.headers.reply_to or message.headers.from_,
            subject=item.subject or reply_subject(message.headers.subject),
            content=item.content or '',
            cc=item.cc,
            bcc=item.bcc,
            thread_id=message.thread_id,
            in_reply_to=message.headers.message_id,
            references=' '.join(filter(None, [message.headers.references, message.headers.message_id])) or None,
        )
        return ActionResult(draft_id=provider.create_draft(envelope, in_reply_to=message))

    elif item.type == ActionType.REPLY:
        if not item.content:
            raise Permanent("Reply has no content")
        provider.reply_to_message(message, item.content, cc=item.cc, bcc=item.bcc)
        return ActionResult()

    elif item.type == ActionType.SEND_EMAIL:
        provider.send_message(Envelope(
            to=item.to, subject=item.subject or '', content=item.content or '', cc=item.cc, bcc=item.bcc,
        ))
        return ActionResult()

    elif item.type == ActionType.FORWARD:
        provider.forward_message(message, item.to, content=item.content, cc=item.cc, bcc=item.bcc)
        return ActionResult()

    elif item.type == ActionType.MARK_SPAM:
        provider.mark_spam(message.thread_id)
        return ActionResult()

    elif item.type == ActionType.MARK_READ:
        provider.mark_read_thread(message.thread_id)
        return ActionResult()

    elif item.type == ActionType.CALL_WEBHOOK:
        webhook.send(item.url, build_payload(message, executed_rule), webhook_secret)
        return ActionResult()

    raise Permanent(f"Unknown action type: {item.type}")
