"""
Shared fixtures for the test suite: in-memory database, model factories,
a scripted language model and a mocked mail provider
"""
import os
import sys
from datetime import datetime
from unittest.mock import MagicMock

sys.path.append(os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), 'src'))

from inbox_rules.ai.llm import FunctionCall, LanguageModel
from inbox_rules.database.connection import create_session_factory
from inbox_rules.database.models import Action, EmailAccount, Rule
from inbox_rules.providers.base import EmailProvider, LabelResult, Message, MessageHeaders, Thread
from inbox_rules.templates import templated_field_names

NOW = datetime(2024, 5, 1, 12, 0, 0)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def make_session():
    """A session on a fresh in-memory database"""
    return create_session_factory('sqlite://')()


def make_account(db, email='me@example.com', **kwargs):
    values = {'provider': 'google', 'multi_rule_selection_enabled': False}
    values.update(kwargs)
    account = EmailAccount(email=email, **values)
    db.add(account)
    db.commit()
    return account


def make_action(type_, **fields):
    values = {'type': type_}
    values.update(fields)
    values['templated_fields'] = templated_field_names(values)
    return Action(**values)


def make_rule(db, account, name='Rule', type_='STATIC', actions=None, position=0, identifier=None, **kwargs):
    values = {
        'conditional_operator': 'AND',
        'automate': True,
        'run_on_threads': True,
        'enabled': True,
    }
    values.update(kwargs)
    rule = Rule(
        email_account_id=account.id,
        identifier=identifier or f"{name.lower().replace(' ', '-')}-{position}",
        name=name,
        type=type_,
        position=position,
        **values,
    )
    rule.actions = actions if actions is not None else [make_action('ARCHIVE')]
    db.add(rule)
    db.commit()
    return rule


def make_message(id='msg-1', thread_id=None, from_='Sender <sender@example.com>', to='me@example.com',
                 subject='Hello', body='Body text', **header_fields):
    headers = MessageHeaders(from_=from_, to=to, subject=subject, message_id=f"<{id}@mail.example.com>",
                             **header_fields)
    return Message(id=id, thread_id=thread_id or id, headers=headers, text_plain=body, snippet=body[:50])


def make_provider(messages=None):
    """MagicMock provider with sensible return values; `messages` backs get_message"""
    provider = MagicMock(spec=EmailProvider)
    provider.name = 'google'
    messages = {m.id: m for m in (messages or [])}
    provider.is_reply_in_thread.return_value = False
    provider.label_message.return_value = LabelResult(applied_label_id='Label_1')
    provider.create_draft.return_value = 'draft-1'
    provider.send_message.return_value = 'sent-1'
    provider.reply_to_message.return_value = 'sent-2'
    provider.forward_message.return_value = 'sent-3'
    provider.get_message.side_effect = lambda message_id: messages[message_id]
    provider.get_messages_batch.side_effect = lambda ids: {i: messages[i] for i in ids if i in messages}
    provider.get_thread.side_effect = lambda thread_id: Thread(
        id=thread_id, messages=[m for m in messages.values() if m.thread_id == thread_id],
    )
    return provider


class FakeLLM(LanguageModel):
    """
    Scripted model. With `by_function`, answers the first offered function
    that has a scripted argument dict; otherwise returns `result`.
    """

    def __init__(self, result=None, by_function=None, error=None):
        self.result = result
        self.by_function = by_function or {}
        self.error = error
        self.calls = []

    def call_function(self, system, prompt, functions):
        self.calls.append({'system': system, 'prompt': prompt, 'functions': functions})
        if self.error is not None:
            raise self.error
        for function in functions:
            if function.name in self.by_function:
                return FunctionCall(name=function.name, arguments=self.by_function[function.name])
        return self.result
