"""
JSON schema for rule configuration. Malformed rules are rejected here, at
save/load time, so they never surface during execution.
"""
from typing import Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..templates import templated_field_names

NINETY_DAYS_MINUTES = 90 * 24 * 60

ActionTypeName = Literal[
    'ARCHIVE', 'LABEL', 'DRAFT_EMAIL', 'REPLY', 'SEND_EMAIL', 'FORWARD', 'MARK_SPAM', 'MARK_READ', 'CALL_WEBHOOK'
]


class RuleValidationError(ValueError):
    """Raised when a rule configuration cannot be saved"""


class AiField(BaseModel):
    """A field whose whole value is written by the model, e.g. {"ai": true, "value": "a short label"}"""
    ai: Literal[True]
    value: str = Field(min_length=1)


TextField = Optional[Union[str, AiField]]


class RuleAction(BaseModel):
    """Schema for a rule action"""
    type: ActionTypeName
    label: TextField = None
    label_id: Optional[str] = None
    subject: TextField = None
    content: TextField = None
    to: TextField = None
    cc: TextField = None
    bcc: TextField = None
    url: TextField = None
    delay_in_minutes: Optional[int] = Field(None, ge=1, le=NINETY_DAYS_MINUTES)

    @model_validator(mode='after')
    def check_required_fields(self):
        required = {
            'LABEL': ('label',),
            'FORWARD': ('to',),
            'SEND_EMAIL': ('to',),
            'CALL_WEBHOOK': ('url',),
        }.get(self.type, ())
        missing = [name for name in required if not getattr(self, name)]
        if missing:
            raise ValueError(f"{self.type} action requires: {', '.join(missing)}")
        return self

    def column_values(self) -> Dict:
        """Values for the stored Action row; AI fields become a single {{prompt}}"""
        values = {'type': self.type, 'label_id': self.label_id, 'delay_in_minutes': self.delay_in_minutes}
        for name in ('label', 'subject', 'content', 'to', 'cc', 'bcc', 'url'):
            value = getattr(self, name)
            values[name] = f"{{{{{value.value}}}}}" if isinstance(value, AiField) else value
        values['templated_fields'] = templated_field_names(values)
        return values


class StaticConditions(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_: Optional[str] = Field(None, alias='from')
    to: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None

    def is_empty(self) -> bool:
        return not (self.from_ or self.to or self.subject or self.body)


class Rule(BaseModel):
    """Schema for a single rule"""
    identifier: str = Field(min_length=1)  # Permanent identifier for the rule
    name: str = Field(min_length=1)
    type: Literal['AI', 'STATIC', 'GROUP'] = 'AI'
    instructions: Optional[str] = None
    conditions: StaticConditions = Field(default_factory=StaticConditions)
    conditional_operator: Literal['AND', 'OR'] = 'AND'
    group: Optional[str] = None
    category_filter_type: Optional[Literal['INCLUDE', 'EXCLUDE']] = None
    category_filters: List[str] = Field(default_factory=list)
    automate: bool = True
    run_on_threads: bool = False
    enabled: bool = True
    actions: List[RuleAction] = Field(min_length=1)

    @model_validator(mode='after')
    def check_rule_type(self):
        if self.type == 'AI' and not (self.instructions or '').strip():
            raise ValueError(f"AI rule '{self.name}' requires instructions")
        if self.type == 'STATIC' and self.conditions.is_empty():
            raise ValueError(f"Static rule '{self.name}' requires at least one from/to/subject/body condition")
        if self.type == 'GROUP' and not self.group:
            raise ValueError(f"Group rule '{self.name}' requires a group")
        if self.type != 'AI' and self.instructions:
            raise ValueError(f"Only AI rules may carry instructions ('{self.name}')")
        if self.category_filters and not self.category_filter_type:
            raise ValueError(f"Rule '{self.name}' has category filters but no category_filter_type")
        return self


class Category(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None


class Sender(BaseModel):
    email: str = Field(min_length=3)
    category: str

    @field_validator('email')
    @classmethod
    def lower_email(cls, value: str) -> str:
        return value.strip().lower()


class GroupItem(BaseModel):
    type: Literal['FROM', 'SUBJECT']
    value: str = Field(min_length=1)
    exclude: bool = False


class Group(BaseModel):
    name: str = Field(min_length=1)
    items: List[GroupItem] = Field(default_factory=list)


class Account(BaseModel):
    email: str
    provider: Literal['google', 'microsoft'] = 'google'
    about: Optional[str] = None
    multi_rule_selection_enabled: bool = False
    webhook_url: Optional[str] = None
    webhook_secret: Optional[str] = None


class RulesConfig(BaseModel):
    """Schema for the entire rules configuration"""
    account: Account
    categories: List[Category] = Field(default_factory=list)
    senders: List[Sender] = Field(default_factory=list)
    groups: List[Group] = Field(default_factory=list)
    rules: List[Rule]

    @model_validator(mode='after')
    def check_references(self):
        identifiers = [rule.identifier for rule in self.rules]
        duplicates = sorted({i for i in identifiers if identifiers.count(i) > 1})
        if duplicates:
            raise ValueError(f"Duplicate rule identifiers: {', '.join(duplicates)}")

        category_names = {category.name for category in self.categories}
        group_names = {group.name for group in self.groups}
        for sender in self.senders:
            if sender.category not in category_names:
                raise ValueError(f"Sender {sender.email} references unknown category '{sender.category}'")
        for rule in self.rules:
            unknown = [name for name in rule.category_filters if name not in category_names]
            if unknown:
                raise ValueError(f"Rule '{rule.name}' references unknown categories: {', '.join(unknown)}")
            if rule.group and rule.group not in group_names:
                raise ValueError(f"Rule '{rule.name}' references unknown group '{rule.group}'")
        return self


def parse_rules_config(data: Dict) -> RulesConfig:
    try:
        return RulesConfig(**data)
    except ValidationError as e:
        raise RuleValidationError(str(e)) from e
