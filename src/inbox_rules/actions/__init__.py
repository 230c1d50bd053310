"""
Action execution against a mail provider
"""
from .executor import ActionExecutor, settle_executed_rule, settle_status
from .handlers import ActionResult, run_action
from .webhook import WebhookClient, build_payload

__all__ = [
    'ActionExecutor',
    'settle_executed_rule',
    'settle_status',
    'ActionResult',
    'run_action',
    'WebhookClient',
    'build_payload',
]
