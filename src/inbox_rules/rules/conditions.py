"""
Deterministic matching of a message against a rule's static conditions,
learned patterns and category filters
"""
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import structlog

from ..database.models import CategoryFilterType, Group, GroupItem, GroupItemType, LogicalOperator, Rule, RuleType
from ..database.repository import Repository
from ..providers.base import Message, extract_email_address

logger = structlog.get_logger(__name__)

STATIC = 'STATIC'
LEARNED_PATTERN = 'LEARNED_PATTERN'
AI = 'AI'

_PATTERN_SEPARATORS = re.compile(r'\s*\bor\b\s*|[|,]', re.IGNORECASE)
_DIGITS = re.compile(r'\d+')
_SPACES = re.compile(r'\s+')


@dataclass
class MatchReason:
    type: str
    group_item: Optional[GroupItem] = None

    def describe(self) -> str:
        if self.type == STATIC:
            return "Matched static conditions"
        if self.type == LEARNED_PATTERN and self.group_item is not None:
            return f'Matched learned pattern: "{self.group_item.type}: {self.group_item.value}"'
        return "Matched by AI"


@dataclass
class RuleEvaluation:
    matched: bool = False
    potential_ai_match: bool = False
    reasons: List[MatchReason] = field(default_factory=list)


@dataclass
class GroupMatch:
    item: Optional[GroupItem] = None
    excluded: bool = False


@dataclass
class PotentialMatches:
    matches: List[tuple] = field(default_factory=list)  # (Rule, [MatchReason])
    potential_ai_matches: List[Rule] = field(default_factory=list)


def split_email_patterns(pattern: str) -> List[str]:
    """'@a.com|@b.com', '@a.com, @b.com' and '@a.com OR @b.com' all mean either address"""
    return [p.strip() for p in _PATTERN_SEPARATORS.split(pattern) if p and p.strip()]


def wildcard_search(pattern: str, text: str) -> bool:
    """Case-insensitive substring search where * matches anything"""
    regex = '.*'.join(re.escape(part) for part in pattern.split('*'))
    return re.search(regex, text or '', re.IGNORECASE | re.DOTALL) is not None


def _field_matches(pattern: str, text: str, allow_alternatives: bool) -> bool:
    patterns = split_email_patterns(pattern) if allow_alternatives else [pattern]
    return any(wildcard_search(p, text) for p in patterns)


def has_static_conditions(rule: Rule) -> bool:
    return bool(rule.from_pattern or rule.to_pattern or rule.subject_pattern or rule.body_pattern)


def matches_static(rule: Rule, message: Message) -> bool:
    """
    Compare the rule's from/to/subject/body patterns with the message.
    STATIC rules combine their fields with the rule's conditional operator;
    on other rule types the operator joins static and AI conditions, so the
    fields themselves are always ANDed.
    """
    checks = []
    if rule.from_pattern:
        checks.append(_field_matches(rule.from_pattern, message.headers.from_, True))
    if rule.to_pattern:
        checks.append(_field_matches(rule.to_pattern, message.headers.to, True))
    if rule.subject_pattern:
        checks.append(_field_matches(rule.subject_pattern, message.headers.subject, False))
    if rule.body_pattern:
        checks.append(_field_matches(rule.body_pattern, message.text_plain or message.snippet, False))
    if not checks:
        return False
    if rule.type == RuleType.STATIC and rule.conditional_operator == LogicalOperator.OR:
        return any(checks)
    return all(checks)


def _normalize_subject(subject: str) -> str:
    return _SPACES.sub(' ', _DIGITS.sub('', subject or '').lower()).strip()


def _group_item_matches(item: GroupItem, message: Message) -> bool:
    if item.type == GroupItemType.FROM:
        return item.value.lower() in (message.headers.from_ or '').lower()
    if item.type == GroupItemType.SUBJECT:
        value = _normalize_subject(item.value)
        return bool(value) and value in _normalize_subject(message.headers.subject)
    return False


def match_group(group: Group, message: Message) -> GroupMatch:
    """Any matching exclude item vetoes the group; otherwise the first include match wins"""
    included = None
    for item in group.items:
        if not _group_item_matches(item, message):
            continue
        if item.exclude:
            return GroupMatch(excluded=True)
        if included is None:
            included = item
    return GroupMatch(item=included)


def category_allows(rule: Rule, sender_category_id: Optional[int]) -> bool:
    if not rule.category_filters:
        return True
    filter_ids = {category.id for category in rule.category_filters}
    in_filter = sender_category_id is not None and sender_category_id in filter_ids
    if rule.category_filter_type == CategoryFilterType.INCLUDE:
        return in_filter
    return not in_filter


def evaluate_rule(rule: Rule, message: Message, group: Optional[Group] = None,
                  sender_category_id: Optional[int] = None) -> RuleEvaluation:
    """
    Decide whether a rule matches deterministically, needs the AI chooser, or
    is out. AI rules are only ever marked eligible, never matched.
    """
    evaluation = _evaluate_primary(rule, message, group)
    if (evaluation.matched or evaluation.potential_ai_match) and not category_allows(rule, sender_category_id):
        logger.debug("Rule excluded by category filter", rule=rule.name, category_id=sender_category_id)
        return RuleEvaluation()
    return evaluation


def _evaluate_primary(rule: Rule, message: Message, group: Optional[Group]) -> RuleEvaluation:
    if rule.type == RuleType.GROUP:
        if group is not None:
            result = match_group(group, message)
            if result.excluded:
                return RuleEvaluation()
            if result.item is not None:
                return RuleEvaluation(matched=True, reasons=[MatchReason(LEARNED_PATTERN, result.item)])
        if has_static_conditions(rule) and matches_static(rule, message):
            return RuleEvaluation(matched=True, reasons=[MatchReason(STATIC)])
        return RuleEvaluation()

    if rule.type == RuleType.STATIC:
        if matches_static(rule, message):
            return RuleEvaluation(matched=True, reasons=[MatchReason(STATIC)])
        return RuleEvaluation()

    # AI rule, optionally narrowed by static fields
    if not has_static_conditions(rule):
        return RuleEvaluation(potential_ai_match=True)
    static_match = matches_static(rule, message)
    if rule.conditional_operator == LogicalOperator.OR:
        if static_match:
            return RuleEvaluation(matched=True, reasons=[MatchReason(STATIC)])
        return RuleEvaluation(potential_ai_match=True)
    if not static_match:
        return RuleEvaluation()
    return RuleEvaluation(potential_ai_match=True, reasons=[MatchReason(STATIC)])


class ConditionEvaluator:
    """Loads the read-only data rules need (groups, sender category, thread history) and evaluates them"""

    def __init__(self, repo: Repository):
        self.repo = repo

    def find_potential_matches(self, account_id: int, rules: List[Rule], message: Message,
                               is_thread: bool) -> PotentialMatches:
        result = PotentialMatches()
        groups: Dict[int, Optional[Group]] = {}
        previous_rule_ids: Optional[Set[int]] = None
        sender_category_id = self.repo.get_sender_category_id(
            account_id, extract_email_address(message.headers.from_)
        )

        for rule in rules:
            # Thread continuity: keep applying a rule already used in this thread
            if is_thread and not rule.run_on_threads:
                if previous_rule_ids is None:
                    previous_rule_ids = self.repo.previous_thread_rule_ids(account_id, message.thread_id)
                if rule.id not in previous_rule_ids:
                    continue

            group = None
            if rule.group_id is not None:
                if rule.group_id not in groups:
                    groups[rule.group_id] = self.repo.get_group(rule.group_id)
                group = groups[rule.group_id]

            evaluation = evaluate_rule(rule, message, group, sender_category_id)
            if evaluation.matched:
                result.matches.append((rule, evaluation.reasons))
            elif evaluation.potential_ai_match:
                result.potential_ai_matches.append(rule)

        # Learned patterns are trusted: skip the model entirely when one matched
        if any(reason.type == LEARNED_PATTERN for _, reasons in result.matches for reason in reasons):
            result.potential_ai_matches = []
        return result
