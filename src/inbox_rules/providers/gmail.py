"""
Gmail API provider
"""
import base64
from datetime import datetime, timezone
from email.message import EmailMessage
from typing import Dict, List, Optional, Tuple

import structlog
from googleapiclient.discovery import Resource
from googleapiclient.errors import HttpError

from .base import (
    EmailProvider,
    Envelope,
    Label,
    LabelResult,
    Message,
    MessageHeaders,
    MessageRef,
    Thread,
    single_line,
)
from .errors import NotFound, Permanent, ProviderError, Transient, error_from_status, parse_retry_after

logger = structlog.get_logger(__name__)

_HEADER_FIELDS = {
    'from': 'from_',
    'to': 'to',
    'subject': 'subject',
    'cc': 'cc',
    'bcc': 'bcc',
    'reply-to': 'reply_to',
    'message-id': 'message_id',
    'references': 'references',
    'in-reply-to': 'in_reply_to',
    'date': 'date',
}


def normalize_http_error(error: HttpError) -> ProviderError:
    """Map a googleapiclient HttpError onto the provider error taxonomy"""
    status = int(getattr(error.resp, 'status', 0) or 0)
    detail = error.reason if hasattr(error, 'reason') and error.reason else str(error)
    retry_after = parse_retry_after(error.resp.get('retry-after')) if hasattr(error.resp, 'get') else None
    # Gmail answers 400 for an unknown label id
    if status == 400 and 'label' in detail.lower() and 'not found' in detail.lower():
        return NotFound(detail)
    return error_from_status(status, detail, retry_after)


def _decode(data: Optional[str]) -> str:
    if not data:
        return ''
    return base64.urlsafe_b64decode(data + '=' * (-len(data) % 4)).decode('utf-8', errors='replace')


def _collect_bodies(payload: Dict, bodies: Dict[str, str]) -> None:
    mime_type = payload.get('mimeType', '')
    data = payload.get('body', {}).get('data')
    if data and mime_type in ('text/plain', 'text/html') and mime_type not in bodies:
        bodies[mime_type] = _decode(data)
    for part in payload.get('parts', []) or []:
        _collect_bodies(part, bodies)


def parse_message(message: Dict) -> Message:
    """Convert a Gmail API message resource into a Message"""
    payload = message.get('payload', {})
    headers = MessageHeaders()
    for header in payload.get('headers', []):
        attr = _HEADER_FIELDS.get(header['name'].lower())
        if attr and not getattr(headers, attr):
            setattr(headers, attr, header['value'])

    bodies: Dict[str, str] = {}
    _collect_bodies(payload, bodies)

    internal_date = None
    if message.get('internalDate'):
        internal_date = datetime.fromtimestamp(int(message['internalDate']) / 1000, tz=timezone.utc)

    return Message(
        id=message['id'],
        thread_id=message.get('threadId', message['id']),
        headers=headers,
        text_plain=bodies.get('text/plain', ''),
        text_html=bodies.get('text/html', ''),
        snippet=message.get('snippet', ''),
        label_ids=message.get('labelIds', []),
        internal_date=internal_date,
    )


def build_raw_message(envelope: Envelope) -> str:
    mime = EmailMessage()
    try:
        mime['To'] = envelope.to
        if envelope.cc:
            mime['Cc'] = envelope.cc
        if envelope.bcc:
            mime['Bcc'] = envelope.bcc
        mime['Subject'] = single_line(envelope.subject) or ''
        if envelope.in_reply_to:
            mime['In-Reply-To'] = envelope.in_reply_to
            mime['References'] = envelope.references or envelope.in_reply_to
        mime.set_content(envelope.content)
        return base64.urlsafe_b64encode(mime.as_bytes()).decode()
    except ValueError as e:
        raise Permanent(f"Invalid message: {e}") from e


class GmailProvider(EmailProvider):
    """Gmail API client for email operations"""

    name = 'google'

    def __init__(self, service: Resource, user_id: str = 'me'):
        self.service = service
        self.user_id = user_id

    def _execute(self, request):
        try:
            return request.execute()
        except HttpError as e:
            error = normalize_http_error(e)
            logger.warning("Gmail API error", status=getattr(e.resp, 'status', None), error=str(error),
                           error_type=type(error).__name__)
            raise error from e
        except OSError as e:
            raise Transient(str(e)) from e

    def list_messages(self, query: Optional[str] = None, page_token: Optional[str] = None,
                      max_results: Optional[int] = None) -> Tuple[List[MessageRef], Optional[str]]:
        response = self._execute(self.service.users().messages().list(
            userId=self.user_id,
            q=query,
            maxResults=max_results,
            pageToken=page_token,
        ))
        refs = [MessageRef(id=m['id'], thread_id=m.get('threadId', m['id'])) for m in response.get('messages', [])]
        return refs, response.get('nextPageToken')

    def get_message(self, message_id: str) -> Message:
        message = self._execute(self.service.users().messages().get(
            userId=self.user_id, id=message_id, format='full'
        ))
        return parse_message(message)

    def get_messages_batch(self, message_ids: List[str]) -> Dict[str, Message]:
        """Fetch messages through a single batch HTTP request"""
        results: Dict[str, Message] = {}
        failures: Dict[str, ProviderError] = {}

        def callback(request_id, response, exception):
            if exception is None:
                results[request_id] = parse_message(response)
            elif isinstance(exception, HttpError):
                failures[request_id] = normalize_http_error(exception)
            else:
                failures[request_id] = Transient(str(exception))

        batch = self.service.new_batch_http_request(callback=callback)
        for message_id in message_ids:
            batch.add(
                self.service.users().messages().get(userId=self.user_id, id=message_id, format='full'),
                request_id=message_id,
            )
        self._execute(batch)

        for message_id, error in failures.items():
            if not isinstance(error, NotFound):
                raise error
            logger.debug("Message missing from batch", message_id=message_id)
        return results

    def get_thread(self, thread_id: str) -> Thread:
        thread = self._execute(self.service.users().threads().get(
            userId=self.user_id, id=thread_id, format='full'
        ))
        return Thread(id=thread['id'], messages=[parse_message(m) for m in thread.get('messages', [])])

    def _list_labels(self) -> List[Dict]:
        return self._execute(self.service.users().labels().list(userId=self.user_id)).get('labels', [])

    def get_label_by_name(self, name: str) -> Optional[Label]:
        for label in self._list_labels():
            if label['name'].lower() == name.lower():
                return Label(id=label['id'], name=label['name'])
        return None

    def get_or_create_label(self, name: str) -> Label:
        existing = self.get_label_by_name(name)
        if existing:
            return existing
        created = self._execute(self.service.users().labels().create(
            userId=self.user_id,
            body={
                'name': name,
                'labelListVisibility': 'labelShow',
                'messageListVisibility': 'show',
            },
        ))
        logger.info("Created label", name=name, label_id=created['id'])
        return Label(id=created['id'], name=created['name'])

    def _modify_message(self, message_id: str, add: List[str] = (), remove: List[str] = ()) -> None:
        self._execute(self.service.users().messages().modify(
            userId=self.user_id,
            id=message_id,
            body={'addLabelIds': list(add), 'removeLabelIds': list(remove)},
        ))

    def _modify_thread(self, thread_id: str, add: List[str] = (), remove: List[str] = ()) -> None:
        self._execute(self.service.users().threads().modify(
            userId=self.user_id,
            id=thread_id,
            body={'addLabelIds': list(add), 'removeLabelIds': list(remove)},
        ))

    def label_message(self, message_id: str, label_id: Optional[str], label_name: Optional[str]) -> LabelResult:
        if not label_id:
            if not label_name:
                raise Permanent("Label action has neither a label id nor a name")
            label = self.get_or_create_label(label_name)
            self._modify_message(message_id, add=[label.id])
            return LabelResult(applied_label_id=label.id)

        try:
            self._modify_message(message_id, add=[label_id])
            return LabelResult(applied_label_id=label_id)
        except NotFound:
            if not label_name:
                raise
            logger.warning("Label not found by ID, trying to get or create by name",
                           label_id=label_id, label_name=label_name)
            label = self.get_or_create_label(label_name)
            self._modify_message(message_id, add=[label.id])
            return LabelResult(applied_label_id=label.id, used_fallback=True)

    def archive_thread(self, thread_id: str) -> None:
        self._modify_thread(thread_id, remove=['INBOX'])

    def mark_read_thread(self, thread_id: str) -> None:
        self._modify_thread(thread_id, remove=['UNREAD'])

    def mark_spam(self, thread_id: str) -> None:
        self._modify_thread(thread_id, add=['SPAM'], remove=['INBOX'])

    def send_message(self, envelope: Envelope) -> str:
        body = {'raw': build_raw_message(envelope)}
        if envelope.thread_id:
            body['threadId'] = envelope.thread_id
        result = self._execute(self.service.users().messages().send(userId=self.user_id, body=body))
        return result['id']

    def create_draft(self, envelope: Envelope, in_reply_to: Optional[Message] = None) -> str:
        if in_reply_to is not None:
            envelope.thread_id = envelope.thread_id or in_reply_to.thread_id
            envelope.in_reply_to = envelope.in_reply_to or in_reply_to.headers.message_id or None
        message = {'raw': build_raw_message(envelope)}
        if envelope.thread_id:
            message['threadId'] = envelope.thread_id
        result = self._execute(self.service.users().drafts().create(
            userId=self.user_id, body={'message': message}
        ))
        return result['id']
