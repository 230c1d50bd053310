"""
Provider-independent mail types and the capability interface every backend implements
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import getaddresses, parseaddr
from typing import Dict, List, Optional, Tuple

from .errors import NotFound


@dataclass
class MessageHeaders:
    from_: str = ''
    to: str = ''
    subject: str = ''
    cc: Optional[str] = None
    bcc: Optional[str] = None
    reply_to: Optional[str] = None
    message_id: str = ''
    references: Optional[str] = None
    in_reply_to: Optional[str] = None
    date: Optional[str] = None


@dataclass
class Message:
    """A parsed message as every engine component sees it"""
    id: str
    thread_id: str
    headers: MessageHeaders
    text_plain: str = ''
    text_html: str = ''
    snippet: str = ''
    label_ids: List[str] = field(default_factory=list)
    internal_date: Optional[datetime] = None
    conversation_index: Optional[str] = None


@dataclass
class MessageRef:
    id: str
    thread_id: str


@dataclass
class Thread:
    id: str
    messages: List[Message]


@dataclass
class Label:
    id: str
    name: str


@dataclass
class LabelResult:
    applied_label_id: Optional[str]
    used_fallback: bool = False


@dataclass
class Envelope:
    """Outgoing mail. Address fields are comma-separated strings."""
    to: str
    subject: str
    content: str
    cc: Optional[str] = None
    bcc: Optional[str] = None
    thread_id: Optional[str] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None


def extract_email_address(value: str) -> str:
    """'Jane <jane@example.com>' -> 'jane@example.com'"""
    return parseaddr(value or '')[1].lower()


def split_addresses(value: Optional[str]) -> List[str]:
    return [address for _, address in getaddresses([value or '']) if address]


def single_line(value: Optional[str]) -> Optional[str]:
    """Fold CR/LF out of a header value"""
    if value is None:
        return None
    return ' '.join(part.strip() for part in value.splitlines() if part.strip())


def reply_subject(subject: str) -> str:
    subject = subject or ''
    return subject if subject.lower().startswith('re:') else f"Re: {subject}"


def forward_subject(subject: str) -> str:
    subject = subject or ''
    return subject if subject.lower().startswith('fwd:') else f"Fwd: {subject}"


def quote_original(message: Message) -> str:
    """Plain-text quote block appended to replies and forwards"""
    date = message.headers.date or ''
    quoted = '\n'.join(f"> {line}" for line in (message.text_plain or message.snippet or '').splitlines())
    return f"On {date}, {message.headers.from_} wrote:\n{quoted}"


class EmailProvider(ABC):
    """
    Capability set shared by all mail backends. Mutating calls are not
    deduplicated provider-side; callers track what has already run.
    """

    name = 'base'

    @abstractmethod
    def list_messages(self, query: Optional[str] = None, page_token: Optional[str] = None,
                      max_results: Optional[int] = None) -> Tuple[List[MessageRef], Optional[str]]:
        """One page of message references and the next page token"""

    def list_all_messages(self, query: Optional[str] = None, max_total: Optional[int] = None) -> List[MessageRef]:
        """List all messages, handling pagination"""
        messages: List[MessageRef] = []
        page_token = None
        while True:
            remaining = max_total - len(messages) if max_total else None
            if remaining is not None and remaining <= 0:
                break
            refs, page_token = self.list_messages(query=query, page_token=page_token, max_results=remaining)
            messages.extend(refs)
            if not page_token:
                break
        return messages[:max_total] if max_total else messages

    @abstractmethod
    def get_message(self, message_id: str) -> Message:
        """Raises NotFound when the message is gone"""

    def get_messages_batch(self, message_ids: List[str]) -> Dict[str, Message]:
        """Fetch several messages; missing ones are left out of the result"""
        messages = {}
        for message_id in message_ids:
            try:
                messages[message_id] = self.get_message(message_id)
            except NotFound:
                continue
        return messages

    @abstractmethod
    def get_thread(self, thread_id: str) -> Thread:
        pass

    @abstractmethod
    def get_or_create_label(self, name: str) -> Label:
        pass

    @abstractmethod
    def label_message(self, message_id: str, label_id: Optional[str], label_name: Optional[str]) -> LabelResult:
        """
        Apply a label by id. If the id no longer exists and a name is known,
        fall back to the label with that name (creating it if needed) and report
        used_fallback=True with the id actually applied.
        """

    @abstractmethod
    def archive_thread(self, thread_id: str) -> None:
        pass

    @abstractmethod
    def mark_read_thread(self, thread_id: str) -> None:
        pass

    @abstractmethod
    def mark_spam(self, thread_id: str) -> None:
        pass

    @abstractmethod
    def send_message(self, envelope: Envelope) -> str:
        """Send and return the provider message id"""

    @abstractmethod
    def create_draft(self, envelope: Envelope, in_reply_to: Optional[Message] = None) -> str:
        """Create a draft (threaded under in_reply_to when given) and return its id"""

    def reply_to_message(self, message: Message, content: str, cc: Optional[str] = None,
                         bcc: Optional[str] = None) -> str:
        envelope = Envelope(
            to=message.headers.reply_to or message.headers.from_,
            subject=reply_subject(message.headers.subject),
            content=f"{content}\n\n{quote_original(message)}",
            cc=cc,
            bcc=bcc,
            thread_id=message.thread_id,
            in_reply_to=message.headers.message_id,
            references=' '.join(filter(None, [message.headers.references, message.headers.message_id])) or None,
        )
        return self.send_message(envelope)

    def forward_message(self, message: Message, to: str, content: Optional[str] = None,
                        cc: Optional[str] = None, bcc: Optional[str] = None) -> str:
        body = '\n\n'.join(filter(None, [
            content,
            '---------- Forwarded message ---------',
            f"From: {message.headers.from_}\nDate: {message.headers.date or ''}\n"
            f"Subject: {message.headers.subject}\nTo: {message.headers.to}",
            message.text_plain or message.snippet,
        ]))
        envelope = Envelope(to=to, subject=forward_subject(message.headers.subject), content=body, cc=cc, bcc=bcc)
        return self.send_message(envelope)

    def is_reply_in_thread(self, message: Message) -> bool:
        """True when the message continues an existing conversation"""
        return bool(message.headers.in_reply_to) or message.id != message.thread_id
