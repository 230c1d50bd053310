"""
Compact textual form of a message for model prompts
"""
import re
from dataclasses import dataclass
from typing import Optional

from ..providers.base import Message

MAX_BODY_LENGTH = 2000

_TAGS = re.compile(r'<[^>]+>')
_BLANK_LINES = re.compile(r'\n\s*\n+')


@dataclass
class EmailForLLM:
    id: str
    from_: str
    to: str
    subject: str
    content: str
    reply_to: Optional[str] = None
    cc: Optional[str] = None


def get_email_for_llm(message: Message, max_length: int = MAX_BODY_LENGTH) -> EmailForLLM:
    content = message.text_plain or _TAGS.sub(' ', message.text_html or '') or message.snippet or ''
    content = _BLANK_LINES.sub('\n\n', content).strip()
    if len(content) > max_length:
        content = content[:max_length] + '...'
    return EmailForLLM(
        id=message.id,
        from_=message.headers.from_,
        to=message.headers.to,
        subject=message.headers.subject,
        content=content,
        reply_to=message.headers.reply_to,
        cc=message.headers.cc,
    )


def stringify_email(email: EmailForLLM) -> str:
    parts = [f"<from>{email.from_}</from>"]
    if email.reply_to:
        parts.append(f"<replyTo>{email.reply_to}</replyTo>")
    parts.append(f"<to>{email.to}</to>")
    if email.cc:
        parts.append(f"<cc>{email.cc}</cc>")
    parts.append(f"<subject>{email.subject}</subject>")
    parts.append(f"<body>{email.content}</body>")
    return '\n'.join(parts)
