"""
Action field values: either a literal copied verbatim or a {{template}} the
language model fills in at execution time.

Example:
    "Hello {{write greeting}},\n\n{{draft response}}"
    -> prompts ("write greeting", "draft response")
    -> fixed parts ("Hello ", ",\n\n", "")
"""
import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple, Union

from .database.models import ACTION_TEXT_FIELDS

TEMPLATE_PATTERN = re.compile(r'\{\{([\s\S]*?)\}\}')


@dataclass(frozen=True)
class LiteralValue:
    value: Optional[str]


@dataclass(frozen=True)
class TemplatedValue:
    template: str
    prompts: Tuple[str, ...]
    fixed_parts: Tuple[str, ...]

    def model_instructions(self, field: str) -> str:
        """Template rewritten with var1..varN markers, as shown to the model"""
        template = self.fixed_parts[0]
        for index, prompt in enumerate(self.prompts, start=1):
            template += f"{{{{var{index}: {prompt}}}}}" + self.fixed_parts[index]
        description = f"Generate this template: {template}"
        if field == 'content':
            description += "\nMake sure to maintain the exact formatting."
        return description

    def var_names(self) -> List[str]:
        return [f"var{index}" for index in range(1, len(self.prompts) + 1)]

    def merge(self, variables: Mapping[str, str]) -> str:
        """Fill each placeholder with its generated value; missing ones become empty"""
        result = self.fixed_parts[0]
        for index in range(len(self.prompts)):
            result += str(variables.get(f"var{index + 1}") or '') + self.fixed_parts[index + 1]
        return result


FieldValue = Union[LiteralValue, TemplatedValue]


def parse_template(template: str) -> Tuple[List[str], List[str]]:
    """Split a template into its AI prompts and the fixed text around them"""
    prompts: List[str] = []
    fixed_parts: List[str] = []
    last_index = 0
    for match in TEMPLATE_PATTERN.finditer(template):
        fixed_parts.append(template[last_index:match.start()])
        prompts.append(match.group(1).strip())
        last_index = match.end()
    fixed_parts.append(template[last_index:])
    return prompts, fixed_parts


def has_template(value: Optional[str]) -> bool:
    return bool(value) and TEMPLATE_PATTERN.search(value) is not None


def templated_field_names(values: Mapping[str, Optional[str]]) -> List[str]:
    """Which text fields hold templates; computed once when a rule is saved"""
    return [field for field in ACTION_TEXT_FIELDS if has_template(values.get(field))]


def to_field_value(value: Optional[str], templated: bool) -> FieldValue:
    if not templated or value is None:
        return LiteralValue(value)
    prompts, fixed_parts = parse_template(value)
    return TemplatedValue(template=value, prompts=tuple(prompts), fixed_parts=tuple(fixed_parts))


def action_field_values(action) -> Dict[str, FieldValue]:
    """Tagged field values of a stored Action"""
    templated = set(action.templated_fields or [])
    return {field: to_field_value(getattr(action, field), field in templated) for field in ACTION_TEXT_FIELDS}


def templated_fields(values: Dict[str, FieldValue]) -> Dict[str, TemplatedValue]:
    return {field: value for field, value in values.items() if isinstance(value, TemplatedValue)}


def literal_values(values: Dict[str, FieldValue]) -> Dict[str, Optional[str]]:
    return {field: value.value for field, value in values.items() if isinstance(value, LiteralValue)}


def merge_template_with_vars(template: str, variables: Mapping[str, str]) -> str:
    prompts, fixed_parts = parse_template(template)
    return TemplatedValue(template, tuple(prompts), tuple(fixed_parts)).merge(variables)

