"""
Action executor: records one decision per (message, rule) and runs its actions
"""
import time
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Sequence

import structlog

from ..ai.arguments import ActionItem
from ..database.models import ExecutedActionStatus, ExecutedRuleStatus, utcnow
from ..database.repository import Repository
from ..providers.base import EmailProvider, Message
from ..providers.errors import ProviderError, RateLimited, Transient
from ..rate_limit import RateLimitGate
from ..retry import backoff_delay, call_with_retries
from .handlers import run_action
from .webhook import WebhookClient, build_payload

logger = structlog.get_logger(__name__)

RETRYABLE_PREFIX = '[RETRYABLE]'


class ActionExecutor:
    """
    State machine per ExecutedRule: PENDING, then APPLIED, SKIPPED or FAILED.
    Replaying the same (message, rule) is a no-op.
    """

    def __init__(self, repo: Repository, provider: EmailProvider, webhook: Optional[WebhookClient] = None,
                 rate_limit: Optional[RateLimitGate] = None, max_retries: int = 3, base_delay: float = 1.0,
                 sleep: Callable[[float], None] = time.sleep, clock: Callable[[], datetime] = utcnow):
        self.repo = repo
        self.provider = provider
        self.webhook = webhook or WebhookClient()
        self.rate_limit = rate_limit or RateLimitGate(repo, clock=clock)
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.sleep = sleep
        self.clock = clock

    def run(self, account, message: Message, rule, action_items: Sequence[ActionItem],
            reason: Optional[str] = None):
        """Record and execute `rule` for `message`; returns the ExecutedRule"""
        rule_id = rule.id if rule is not None else None
        existing = self.repo.find_active_executed_rule(account.id, message.id, rule_id)
        if existing is not None:
            if self._is_resumable(existing):
                logger.info("Resuming executed rule", executed_rule_id=existing.id, message_id=message.id)
                return self.execute_executed_rule(account, message, existing)
            logger.info("Rule already executed for message, skipping", message_id=message.id, rule_id=rule_id,
                        status=existing.status)
            return existing

        if rule is None:
            executed_rule, _ = self.repo.create_executed_rule(
                account.id, message.id, message.thread_id, None, ExecutedRuleStatus.SKIPPED, reason, automated=True,
            )
            return executed_rule

        executed_rule, created = self.repo.create_executed_rule(
            account.id,
            message.id,
            message.thread_id,
            rule.id,
            ExecutedRuleStatus.PENDING,
            reason,
            automated=rule.automate,
            action_items=[item.to_row() for item in action_items],
        )
        if not created:
            # Another worker recorded the same decision first
            return executed_rule
        if not rule.automate:
            logger.info("Rule requires approval", executed_rule_id=executed_rule.id, rule=rule.name)
            return executed_rule
        return self.execute_executed_rule(account, message, executed_rule)

    def _is_resumable(self, executed_rule) -> bool:
        if executed_rule.status != ExecutedRuleStatus.PENDING or not executed_rule.automated:
            return False
        return any(self._is_runnable(item) for item in executed_rule.action_items)

    def _is_runnable(self, item) -> bool:
        return item.status == ExecutedActionStatus.PENDING and not self.repo.has_scheduled_action(item.id)

    def execute_executed_rule(self, account, message: Message, executed_rule):
        """Run every runnable action item in order, then settle the rule's status"""
        for item in executed_rule.action_items:
            if not self._is_runnable(item):
                continue
            if item.delay_in_minutes and item.delay_in_minutes > 0:
                execute_at = self.clock() + timedelta(minutes=item.delay_in_minutes)
                scheduled = self.repo.create_scheduled_action(executed_rule, item, execute_at)
                logger.info("Scheduled delayed action", scheduled_action_id=scheduled.id, action_type=item.type,
                            execute_at=execute_at.isoformat())
                continue
            self.execute_action(account, message, executed_rule, item)
        return self.finalize(account, message, executed_rule)

    def execute_action(self, account, message: Message, executed_rule, item, allow_defer: bool = True,
                       finish: Optional[Callable[[str, Optional[str]], bool]] = None) -> str:
        """
        Single-action path, shared with the scheduler. Returns the item's new
        status; PENDING means it was deferred to a scheduled retry.

        `finish(status, error)` lets the caller finalize its own record first;
        when it returns False the item is left as it is.
        """
        blocked_until = self.rate_limit.blocked_until(account.id)
        if blocked_until is not None:
            logger.warning("Account is rate limited, skipping provider call", account_id=account.id,
                           retry_at=blocked_until.isoformat(), action_type=item.type)
            return self._defer_or_fail(executed_rule, item, blocked_until, allow_defer,
                                       f"Rate limited until {blocked_until.isoformat()}", finish)

        try:
            result = call_with_retries(
                lambda: run_action(self.provider, self.webhook, item, message, executed_rule,
                                   webhook_secret=account.webhook_secret),
                attempts=self.max_retries,
                base_delay=self.base_delay,
                sleep=self.sleep,
            )
        except RateLimited as e:
            retry_at = self.rate_limit.record(account.id, self.provider.name, e.retry_after, source=item.type)
            return self._defer_or_fail(executed_rule, item, retry_at, allow_defer,
                                       f"Rate limited until {retry_at.isoformat()}", finish)
        except Transient as e:
            retry_at = self.clock() + timedelta(seconds=backoff_delay(self.max_retries + 1, self.base_delay))
            logger.warning("Action still failing after retries", action_type=item.type,
                           executed_rule_id=executed_rule.id, error=str(e), retry_at=retry_at.isoformat())
            return self._defer_or_fail(executed_rule, item, retry_at, allow_defer, str(e) or 'Transient error',
                                       finish)
        except ProviderError as e:
            error = str(e) or type(e).__name__
            logger.error("Action failed", action_type=item.type, executed_rule_id=executed_rule.id, error=error,
                         error_type=type(e).__name__)
            return self._record(item, ExecutedActionStatus.FAILED, finish, error=error)
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.exception("Action crashed", action_type=item.type, executed_rule_id=executed_rule.id)
            return self._record(item, ExecutedActionStatus.FAILED, finish, error=error)

        if result.used_fallback and result.label_id and item.label_id and result.label_id != item.label_id:
            updated = self.repo.update_label_references(account.id, item.label_id, result.label_id)
            logger.warning("Label reference was stale, updated stored actions", old_label_id=item.label_id,
                           new_label_id=result.label_id, actions_updated=updated)

        fields = {}
        if result.draft_id:
            fields['draft_id'] = result.draft_id
        if result.label_id:
            fields['label_id'] = result.label_id
        return self._record(item, ExecutedActionStatus.APPLIED, finish, **fields)

    def _record(self, item, status: str, finish: Optional[Callable[[str, Optional[str]], bool]] = None,
                error: Optional[str] = None, **fields) -> str:
        if finish is not None and not finish(status, error):
            logger.warning("Action result not recorded, its scheduled run was finalized elsewhere",
                           executed_action_id=item.id, status=status)
            return status
        self.repo.set_action_status(item, status, error=error, **fields)
        return status

    def _defer_or_fail(self, executed_rule, item, retry_at: datetime, allow_defer: bool, error: str,
                       finish: Optional[Callable[[str, Optional[str]], bool]] = None) -> str:
        if allow_defer:
            self.repo.create_scheduled_action(executed_rule, item, retry_at)
            return ExecutedActionStatus.PENDING
        return self._record(item, ExecutedActionStatus.FAILED, finish, error=f"{RETRYABLE_PREFIX} {error}")

    def skip_action(self, item, reason: str) -> None:
        self.repo.set_action_status(item, ExecutedActionStatus.SKIPPED, error=reason)

    def finalize(self, account, message: Optional[Message], executed_rule):
        return settle_executed_rule(self.repo, self.webhook, account, message, executed_rule)


def settle_executed_rule(repo: Repository, webhook: WebhookClient, account, message: Optional[Message],
                         executed_rule):
    """
    Settle the ExecutedRule from its items: still PENDING while anything
    waits, FAILED if everything failed, APPLIED otherwise. The account
    webhook fires once the rule leaves PENDING.
    """
    if executed_rule.status == ExecutedRuleStatus.CANCELLED:
        return executed_rule
    status = settle_status([item.status for item in executed_rule.action_items])
    if status == executed_rule.status:
        return executed_rule
    repo.set_executed_rule_status(executed_rule, status)
    logger.info("Executed rule settled", executed_rule_id=executed_rule.id, status=status)
    if status != ExecutedRuleStatus.PENDING and account.webhook_url and message is not None:
        webhook.notify(account.webhook_url, build_payload(message, executed_rule), account.webhook_secret)
    return executed_rule


def settle_status(action_statuses: List[str]) -> str:
    if any(s == ExecutedActionStatus.PENDING for s in action_statuses):
        return ExecutedRuleStatus.PENDING
    if action_statuses and all(s == ExecutedActionStatus.FAILED for s in action_statuses):
        return ExecutedRuleStatus.FAILED
    if action_statuses and all(s == ExecutedActionStatus.SKIPPED for s in action_statuses):
        return ExecutedRuleStatus.SKIPPED
    return ExecutedRuleStatus.APPLIED
