"""
Rule configuration, condition matching and the processing engine
"""
from .conditions import ConditionEvaluator, evaluate_rule, matches_static
from .engine import RulesEngine, limit_draft_email_actions
from .loader import load_rules_file, sync_rules
from .schema import RulesConfig, RuleValidationError, parse_rules_config

__all__ = [
    'ConditionEvaluator',
    'evaluate_rule',
    'matches_static',
    'RulesEngine',
    'limit_draft_email_actions',
    'load_rules_file',
    'sync_rules',
    'RulesConfig',
    'RuleValidationError',
    'parse_rules_config',
]
