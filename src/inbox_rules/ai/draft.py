"""
Reply drafting over the thread context
"""
from typing import List, Optional

import structlog

from ..providers.base import Message
from .email_format import get_email_for_llm, stringify_email
from .llm import FunctionSchema, LanguageModel, LLMError

logger = structlog.get_logger(__name__)

DRAFT_REPLY_FUNCTION = 'draft_reply'
# Only the most recent messages of a long thread are shown
MAX_THREAD_MESSAGES = 10

SYSTEM_PROMPT = """You are an expert assistant that drafts email replies.
Use context from the previous emails to make the reply relevant.
Do not simply repeat what the last email said.
Don't reply with a subject. Only write the body of the email, in plain text.
Do not add a signature and do not invent information.
Keep it concise and friendly. Aim for two sentences at most."""


class ReplyDrafter:
    def __init__(self, llm: LanguageModel):
        self.llm = llm

    def draft_reply(self, messages: List[Message], about: Optional[str] = None) -> Optional[str]:
        """Body text for a reply to the last message, or None if the model gave nothing usable"""
        if not messages:
            return None
        recent = messages[-MAX_THREAD_MESSAGES:]
        history = '\n'.join(
            f"<email>\n{stringify_email(get_email_for_llm(m, max_length=1000))}\n</email>" for m in recent
        )
        prompt = f"Draft a reply to the last email in this thread.\n\n<thread>\n{history}\n</thread>"
        if about:
            prompt += f"\n\nContext about the user:\n<user_about>\n{about}\n</user_about>"

        function = FunctionSchema(
            name=DRAFT_REPLY_FUNCTION,
            description='Write the body of the reply',
            parameters={
                'type': 'object',
                'properties': {'content': {'type': 'string', 'description': 'The reply body'}},
                'required': ['content'],
            },
        )
        try:
            call = self.llm.call_function(SYSTEM_PROMPT, prompt, [function])
        except LLMError as e:
            logger.error("Failed to generate draft", thread_id=recent[-1].thread_id, error=str(e))
            return None
        if call is None or call.name != DRAFT_REPLY_FUNCTION:
            return None
        content = call.arguments.get('content')
        return content.strip() if isinstance(content, str) and content.strip() else None
