"""
Microsoft Graph (Outlook) provider. Outlook categories play the role of labels.
"""
import base64
from typing import Dict, List, Optional, Tuple

import requests
import structlog

from .base import (
    EmailProvider,
    Envelope,
    Label,
    LabelResult,
    Message,
    MessageHeaders,
    MessageRef,
    Thread,
    split_addresses,
)
from .errors import NotFound, Permanent, ProviderError, Transient, error_from_status, parse_retry_after

logger = structlog.get_logger(__name__)

GRAPH_URL = 'https://graph.microsoft.com/v1.0'
MESSAGE_FIELDS = (
    'id,conversationId,conversationIndex,internetMessageId,subject,from,toRecipients,ccRecipients,'
    'bccRecipients,replyTo,body,bodyPreview,receivedDateTime,categories,isRead,internetMessageHeaders'
)
# Graph limits a JSON batch to 20 requests
BATCH_LIMIT = 20
# A conversation index longer than its 22-byte header means the message is a reply
CONVERSATION_INDEX_HEADER_BYTES = 22


def _format_recipient(recipient: Dict) -> str:
    address = recipient.get('emailAddress', {})
    name, email = address.get('name'), address.get('address', '')
    return f"{name} <{email}>" if name and name != email else email


def _join_recipients(recipients: Optional[List[Dict]]) -> Optional[str]:
    if not recipients:
        return None
    return ', '.join(_format_recipient(r) for r in recipients)


def _recipients(value: Optional[str]) -> List[Dict]:
    return [{'emailAddress': {'address': address}} for address in split_addresses(value)]


def parse_message(data: Dict) -> Message:
    """Convert a Graph message resource into a Message"""
    extra_headers = {h['name'].lower(): h['value'] for h in data.get('internetMessageHeaders') or []}
    headers = MessageHeaders(
        from_=_format_recipient(data['from']) if data.get('from') else '',
        to=_join_recipients(data.get('toRecipients')) or '',
        subject=data.get('subject') or '',
        cc=_join_recipients(data.get('ccRecipients')),
        bcc=_join_recipients(data.get('bccRecipients')),
        reply_to=_join_recipients(data.get('replyTo')),
        message_id=data.get('internetMessageId') or '',
        references=extra_headers.get('references'),
        in_reply_to=extra_headers.get('in-reply-to'),
        date=data.get('receivedDateTime'),
    )
    body = data.get('body') or {}
    is_html = (body.get('contentType') or '').lower() == 'html'
    return Message(
        id=data['id'],
        thread_id=data.get('conversationId') or data['id'],
        headers=headers,
        text_plain='' if is_html else body.get('content', ''),
        text_html=body.get('content', '') if is_html else '',
        snippet=data.get('bodyPreview', ''),
        label_ids=list(data.get('categories') or []),
        conversation_index=data.get('conversationIndex'),
    )


class OutlookProvider(EmailProvider):
    """Microsoft Graph client for email operations"""

    name = 'microsoft'

    def __init__(self, access_token: str, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.session = session or requests.Session()
        self.session.headers.update({
            'Authorization': f"Bearer {access_token}",
            'Content-Type': 'application/json',
            'Prefer': 'outlook.body-content-type="text"',
        })
        self.timeout = timeout

    def _request(self, method: str, path: str, **kwargs) -> Optional[Dict]:
        url = path if path.startswith('http') else f"{GRAPH_URL}{path}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise Transient(str(e)) from e
        except requests.RequestException as e:
            raise Permanent(str(e) or type(e).__name__) from e
        if response.status_code >= 400:
            error = self._normalize_error(response)
            logger.warning("Graph API error", method=method, path=path, status=response.status_code,
                           error=str(error), error_type=type(error).__name__)
            raise error
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise Transient(f"Invalid JSON from Graph API: {e}") from e

    @staticmethod
    def _normalize_error(response: requests.Response) -> ProviderError:
        try:
            detail = response.json().get('error', {}).get('message') or response.text
        except ValueError:
            detail = response.text
        retry_after = parse_retry_after(response.headers.get('Retry-After'))
        return error_from_status(response.status_code, detail or f"HTTP {response.status_code}", retry_after)

    def list_messages(self, query: Optional[str] = None, page_token: Optional[str] = None,
                      max_results: Optional[int] = None) -> Tuple[List[MessageRef], Optional[str]]:
        if page_token:
            data = self._request('GET', page_token)
        else:
            params = {'$select': 'id,conversationId', '$top': min(max_results or 50, 1000)}
            if query:
                params['$search'] = f'"{query}"'
            data = self._request('GET', '/me/mailFolders/inbox/messages', params=params)
        refs = [MessageRef(id=m['id'], thread_id=m.get('conversationId') or m['id']) for m in data.get('value', [])]
        return refs, data.get('@odata.nextLink')

    def get_message(self, message_id: str) -> Message:
        data = self._request('GET', f"/me/messages/{message_id}", params={'$select': MESSAGE_FIELDS})
        return parse_message(data)

    def get_messages_batch(self, message_ids: List[str]) -> Dict[str, Message]:
        results: Dict[str, Message] = {}
        for start in range(0, len(message_ids), BATCH_LIMIT):
            chunk = message_ids[start:start + BATCH_LIMIT]
            payload = {'requests': [
                {'id': message_id, 'method': 'GET', 'url': f"/me/messages/{message_id}?$select={MESSAGE_FIELDS}"}
                for message_id in chunk
            ]}
            data = self._request('POST', '/$batch', json=payload)
            for item in data.get('responses', []):
                status = int(item.get('status', 500))
                if status == 200:
                    results[item['id']] = parse_message(item['body'])
                elif status != 404:
                    detail = (item.get('body') or {}).get('error', {}).get('message', f"HTTP {status}")
                    raise error_from_status(status, detail, parse_retry_after((item.get('headers') or {}).get('Retry-After')))
        return results

    def get_thread(self, thread_id: str) -> Thread:
        data = self._request('GET', '/me/messages', params={
            '$filter': f"conversationId eq '{thread_id}'",
            '$select': MESSAGE_FIELDS,
            '$top': 100,
        })
        messages = [parse_message(m) for m in data.get('value', [])]
        messages.sort(key=lambda m: m.headers.date or '')
        return Thread(id=thread_id, messages=messages)

    def _thread_message_ids(self, thread_id: str) -> List[str]:
        data = self._request('GET', '/me/messages', params={
            '$filter': f"conversationId eq '{thread_id}'",
            '$select': 'id',
            '$top': 100,
        })
        return [m['id'] for m in data.get('value', [])]

    def get_label_by_id(self, label_id: str) -> Optional[Label]:
        try:
            data = self._request('GET', f"/me/outlook/masterCategories/{label_id}")
        except NotFound:
            return None
        return Label(id=data['id'], name=data['displayName'])

    def get_label_by_name(self, name: str) -> Optional[Label]:
        data = self._request('GET', '/me/outlook/masterCategories')
        for category in data.get('value', []):
            if category['displayName'].lower() == name.lower():
                return Label(id=category['id'], name=category['displayName'])
        return None

    def get_or_create_label(self, name: str) -> Label:
        existing = self.get_label_by_name(name)
        if existing:
            return existing
        data = self._request('POST', '/me/outlook/masterCategories', json={'displayName': name, 'color': 'preset0'})
        logger.info("Created category", name=name, label_id=data['id'])
        return Label(id=data['id'], name=data['displayName'])

    def label_message(self, message_id: str, label_id: Optional[str], label_name: Optional[str]) -> LabelResult:
        used_fallback = False
        category = self.get_label_by_id(label_id) if label_id else None
        if category is None:
            if not label_name:
                raise NotFound(f"Category with ID {label_id} not found")
            if label_id:
                logger.warning("Category not found by ID, trying to get by name",
                               label_id=label_id, label_name=label_name)
                used_fallback = True
            category = self.get_or_create_label(label_name)

        data = self._request('GET', f"/me/messages/{message_id}", params={'$select': 'categories'})
        current = data.get('categories') or []
        if category.name not in current:
            self._request('PATCH', f"/me/messages/{message_id}", json={'categories': current + [category.name]})
        else:
            logger.info("Label already present, skipped", label_id=category.id)
        return LabelResult(applied_label_id=category.id, used_fallback=used_fallback)

    def _move_thread(self, thread_id: str, destination: str) -> None:
        for message_id in self._thread_message_ids(thread_id):
            self._request('POST', f"/me/messages/{message_id}/move", json={'destinationId': destination})

    def archive_thread(self, thread_id: str) -> None:
        self._move_thread(thread_id, 'archive')

    def mark_spam(self, thread_id: str) -> None:
        self._move_thread(thread_id, 'junkemail')

    def mark_read_thread(self, thread_id: str) -> None:
        for message_id in self._thread_message_ids(thread_id):
            self._request('PATCH', f"/me/messages/{message_id}", json={'isRead': True})

    def _message_body(self, envelope: Envelope) -> Dict:
        body = {
            'subject': envelope.subject,
            'body': {'contentType': 'Text', 'content': envelope.content},
            'toRecipients': _recipients(envelope.to),
        }
        if envelope.cc:
            body['ccRecipients'] = _recipients(envelope.cc)
        if envelope.bcc:
            body['bccRecipients'] = _recipients(envelope.bcc)
        return body

    def send_message(self, envelope: Envelope) -> str:
        # Draft first so the sent message has an id to report back
        draft = self._request('POST', '/me/messages', json=self._message_body(envelope))
        self._request('POST', f"/me/messages/{draft['id']}/send")
        return draft['id']

    def reply_to_message(self, message: Message, content: str, cc: Optional[str] = None,
                         bcc: Optional[str] = None) -> str:
        draft = self._request('POST', f"/me/messages/{message.id}/createReply")
        update = {'body': {'contentType': 'Text', 'content': content}}
        if cc:
            update['ccRecipients'] = _recipients(cc)
        if bcc:
            update['bccRecipients'] = _recipients(bcc)
        self._request('PATCH', f"/me/messages/{draft['id']}", json=update)
        self._request('POST', f"/me/messages/{draft['id']}/send")
        return draft['id']

    def forward_message(self, message: Message, to: str, content: Optional[str] = None,
                        cc: Optional[str] = None, bcc: Optional[str] = None) -> str:
        payload = {'comment': content or '', 'toRecipients': _recipients(to)}
        if cc or bcc:
            payload['message'] = {}
            if cc:
                payload['message']['ccRecipients'] = _recipients(cc)
            if bcc:
                payload['message']['bccRecipients'] = _recipients(bcc)
        self._request('POST', f"/me/messages/{message.id}/forward", json=payload)
        return message.id

    def create_draft(self, envelope: Envelope, in_reply_to: Optional[Message] = None) -> str:
        if in_reply_to is None:
            draft = self._request('POST', '/me/messages', json=self._message_body(envelope))
            return draft['id']

        draft = self._request('POST', f"/me/messages/{in_reply_to.id}/createReply")
        update = {'body': {'contentType': 'Text', 'content': envelope.content}}
        if envelope.to:
            update['toRecipients'] = _recipients(envelope.to)
        if envelope.subject:
            update['subject'] = envelope.subject
        if envelope.cc:
            update['ccRecipients'] = _recipients(envelope.cc)
        if envelope.bcc:
            update['bccRecipients'] = _recipients(envelope.bcc)
        self._request('PATCH', f"/me/messages/{draft['id']}", json=update)
        return draft['id']

    def is_reply_in_thread(self, message: Message) -> bool:
        if message.headers.in_reply_to:
            return True
        if not message.conversation_index:
            return False
        try:
            return len(base64.b64decode(message.conversation_index)) > CONVERSATION_INDEX_HEADER_BYTES
        except (ValueError, TypeError):
            return False
