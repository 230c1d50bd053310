"""
Argument synthesizer: resolves a rule's actions into concrete action items.

Literal fields are copied verbatim. Templated fields are filled by one
function call whose parameters mirror exactly the rule's templated fields,
so the model can only supply values, never new actions.
"""
from dataclasses import asdict, dataclass
from typing import Dict, List, Optional

import structlog

from ..database.models import ActionType, ExecutedActionStatus
from ..providers.base import EmailProvider, Message, single_line
from ..providers.errors import ProviderError
from ..templates import TemplatedValue, action_field_values, literal_values, templated_fields
from .draft import ReplyDrafter
from .email_format import get_email_for_llm, stringify_email
from .llm import FunctionSchema, LanguageModel, LLMError

logger = structlog.get_logger(__name__)

GENERATE_ARGS_FUNCTION = 'apply_rule'

# A resolved action is unusable without these
REQUIRED_FIELDS = {
    ActionType.LABEL: 'label',
    ActionType.FORWARD: 'to',
    ActionType.SEND_EMAIL: 'to',
    ActionType.CALL_WEBHOOK: 'url',
    ActionType.REPLY: 'content',
    ActionType.DRAFT_EMAIL: 'content',
}

DRAFTED_TYPES = (ActionType.DRAFT_EMAIL, ActionType.REPLY)


@dataclass
class ActionItem:
    """A fully resolved action, ready to snapshot into an ExecutedAction row"""
    type: str
    action_id: Optional[int] = None
    label: Optional[str] = None
    label_id: Optional[str] = None
    subject: Optional[str] = None
    content: Optional[str] = None
    to: Optional[str] = None
    cc: Optional[str] = None
    bcc: Optional[str] = None
    url: Optional[str] = None
    delay_in_minutes: Optional[int] = None
    error: Optional[str] = None

    def to_row(self) -> Dict:
        row = asdict(self)
        row['status'] = ExecutedActionStatus.FAILED if self.error else ExecutedActionStatus.PENDING
        return row


def action_key(action) -> str:
    return f"{action.type}-{action.id}"


def build_arguments_function(templated_by_action: Dict) -> FunctionSchema:
    """
    Parameters object keyed "{TYPE}-{id}", then by field, then var1..varN.
    `templated_by_action` maps Action -> {field: TemplatedValue}.
    """
    properties = {}
    for action, fields in templated_by_action.items():
        field_properties = {}
        for name, value in fields.items():
            field_properties[name] = {
                'type': 'object',
                'description': value.model_instructions(name),
                'properties': {var: {'type': 'string'} for var in value.var_names()},
                'required': value.var_names(),
            }
        properties[action_key(action)] = {
            'type': 'object',
            'properties': field_properties,
            'required': list(fields),
        }
    return FunctionSchema(
        name=GENERATE_ARGS_FUNCTION,
        description='Apply the rule with the given arguments',
        parameters={'type': 'object', 'properties': properties, 'required': list(properties)},
    )


def _system_prompt(rule, about: Optional[str]) -> str:
    prompt = (
        "You are an AI assistant that helps people manage their emails.\n"
        f"The rule \"{rule.name}\" has been selected for the email below.\n"
        "Fill in every template variable so the actions can be applied. Keep any fixed text "
        "around the variables unchanged and only return values for the variables asked for."
    )
    if rule.instructions:
        prompt += f"\n\n<rule_instructions>\n{rule.instructions}\n</rule_instructions>"
    if about:
        prompt += f"\n\nContext about the user:\n<user_about>\n{about}\n</user_about>"
    return prompt


class ArgumentSynthesizer:
    def __init__(self, llm: LanguageModel, drafter: Optional[ReplyDrafter] = None):
        self.llm = llm
        self.drafter = drafter or ReplyDrafter(llm)

    def resolve(self, message: Message, rule, provider: Optional[EmailProvider] = None,
                about: Optional[str] = None) -> List[ActionItem]:
        """
        One ActionItem per rule action, in rule order. A field that could not
        be generated fails only its own action item.
        """
        values_by_action = {action: action_field_values(action) for action in rule.actions}
        templated_by_action = {
            action: templated_fields(values)
            for action, values in values_by_action.items()
            if templated_fields(values)
        }

        draft = None
        if any(a.type in DRAFTED_TYPES and 'content' not in templated_by_action.get(a, {}) and not a.content
               for a in rule.actions):
            draft = self.drafter.draft_reply(self._thread_messages(message, provider), about)

        generated = None
        if templated_by_action:
            generated = self._generate(message, rule, about, templated_by_action)

        return [
            self._build_item(action, values_by_action[action], templated_by_action.get(action, {}),
                             generated, draft)
            for action in rule.actions
        ]

    @staticmethod
    def _thread_messages(message: Message, provider: Optional[EmailProvider]) -> List[Message]:
        if provider is None:
            return [message]
        try:
            messages = provider.get_thread(message.thread_id).messages
        except ProviderError as e:
            logger.warning("Could not load thread for drafting", thread_id=message.thread_id, error=str(e))
            return [message]
        return messages or [message]

    def _generate(self, message: Message, rule, about: Optional[str],
                  templated_by_action: Dict) -> Optional[Dict]:
        function = build_arguments_function(templated_by_action)
        prompt = f"<email>\n{stringify_email(get_email_for_llm(message))}\n</email>"
        try:
            call = self.llm.call_function(_system_prompt(rule, about), prompt, [function])
        except LLMError as e:
            logger.error("Failed to generate action arguments", rule=rule.name, error=str(e))
            return None
        if call is None or call.name != GENERATE_ARGS_FUNCTION:
            logger.warning("No action arguments generated", rule=rule.name)
            return None
        return call.arguments

    @staticmethod
    def _build_item(action, values: Dict, templated: Dict[str, TemplatedValue], generated: Optional[Dict],
                    draft: Optional[str]) -> ActionItem:
        resolved = literal_values(values)
        errors = []

        action_args = (generated or {}).get(action_key(action))
        for name, value in templated.items():
            variables = action_args.get(name) if isinstance(action_args, dict) else None
            if not isinstance(variables, dict) or not any(variables.get(v) for v in value.var_names()):
                errors.append(f"Failed to generate {name}")
                resolved[name] = None
                continue
            resolved[name] = value.merge(variables)

        if action.type in DRAFTED_TYPES and not resolved.get('content') and 'content' not in templated:
            if draft:
                resolved['content'] = draft
            else:
                errors.append("Failed to draft reply content")

        required = REQUIRED_FIELDS.get(action.type)
        if required and not (resolved.get(required) or '').strip():
            message = f"Missing required field: {required}"
            if not any(required in e for e in errors) and message not in errors:
                errors.append(message)

        return ActionItem(
            type=action.type,
            action_id=action.id,
            label=resolved.get('label'),
            label_id=action.label_id,
            subject=single_line(resolved.get('subject')),
            content=resolved.get('content'),
            to=resolved.get('to'),
            cc=resolved.get('cc'),
            bcc=resolved.get('bcc'),
            url=resolved.get('url'),
            delay_in_minutes=action.delay_in_minutes,
            error='; '.join(errors) or None,
        )
