"""
Narrow storage operations shared by the engine, executor and scheduler.

Every write here is either an upsert keyed on a natural key or a single
conditional UPDATE, so concurrent workers never need application-level locks.
"""
from datetime import datetime
from typing import Iterable, List, Optional, Set, Tuple

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from .models import (
    NO_RULE_KEY,
    Action,
    EmailAccount,
    ExecutedAction,
    ExecutedActionStatus,
    ExecutedRule,
    ExecutedRuleStatus,
    Group,
    ProviderRateLimit,
    Rule,
    ScheduledAction,
    ScheduledActionStatus,
    Sender,
    utcnow,
)

logger = structlog.get_logger(__name__)

CANCELLED_REASON = 'Cancelled'


def rule_key(rule_id: Optional[int]) -> str:
    return str(rule_id) if rule_id is not None else NO_RULE_KEY


class Repository:
    """Storage gateway bound to one SQLAlchemy session"""

    def __init__(self, db: Session):
        self.db = db

    def rollback(self) -> None:
        """Discard a failed unit of work so the session can be used again"""
        self.db.rollback()

    # Accounts and rules

    def get_account(self, account_id: int) -> Optional[EmailAccount]:
        return self.db.get(EmailAccount, account_id)

    def get_account_by_email(self, email: str) -> Optional[EmailAccount]:
        return self.db.execute(select(EmailAccount).where(EmailAccount.email == email)).scalar_one_or_none()

    def list_accounts(self) -> List[EmailAccount]:
        return list(self.db.execute(select(EmailAccount).order_by(EmailAccount.id)).scalars())

    def list_enabled_rules(self, account_id: int) -> List[Rule]:
        """Enabled rules in the user's configured order"""
        stmt = (
            select(Rule)
            .where(Rule.email_account_id == account_id, Rule.enabled.is_(True))
            .options(selectinload(Rule.actions), selectinload(Rule.category_filters))
            .order_by(Rule.position, Rule.id)
        )
        return list(self.db.execute(stmt).scalars())

    def get_group(self, group_id: int) -> Optional[Group]:
        stmt = select(Group).where(Group.id == group_id).options(selectinload(Group.items))
        return self.db.execute(stmt).scalar_one_or_none()

    def get_sender_category_id(self, account_id: int, sender_email: str) -> Optional[int]:
        stmt = select(Sender.category_id).where(
            Sender.email_account_id == account_id,
            func.lower(Sender.email) == sender_email.lower(),
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def update_label_references(self, account_id: int, old_label_id: str, new_label_id: str) -> int:
        """Point every stored action of the account at a recreated label"""
        rule_ids = select(Rule.id).where(Rule.email_account_id == account_id)
        result = self.db.execute(
            update(Action)
            .where(Action.label_id == old_label_id, Action.rule_id.in_(rule_ids))
            .values(label_id=new_label_id)
            .execution_options(synchronize_session='fetch')
        )
        self.db.commit()
        return result.rowcount

    # Executed rules

    def has_active_executed_rules(self, account_id: int, message_id: str) -> bool:
        stmt = select(func.count(ExecutedRule.id)).where(
            ExecutedRule.email_account_id == account_id,
            ExecutedRule.message_id == message_id,
            ExecutedRule.status != ExecutedRuleStatus.CANCELLED,
        )
        return self.db.execute(stmt).scalar_one() > 0

    def find_active_executed_rule(self, account_id: int, message_id: str,
                                  rule_id: Optional[int]) -> Optional[ExecutedRule]:
        stmt = select(ExecutedRule).where(
            ExecutedRule.email_account_id == account_id,
            ExecutedRule.message_id == message_id,
            ExecutedRule.rule_key == rule_key(rule_id),
            ExecutedRule.status != ExecutedRuleStatus.CANCELLED,
        )
        return self.db.execute(stmt).scalar_one_or_none()

    def get_executed_rule(self, executed_rule_id: int) -> Optional[ExecutedRule]:
        return self.db.get(ExecutedRule, executed_rule_id)

    def create_executed_rule(
        self,
        account_id: int,
        message_id: str,
        thread_id: str,
        rule_id: Optional[int],
        status: str,
        reason: Optional[str],
        automated: bool,
        action_items: Iterable[dict] = (),
    ) -> Tuple[ExecutedRule, bool]:
        """
        Insert the audit record unless a non-cancelled one exists for the same
        (account, message, rule). Returns (record, created).
        """
        executed_rule = ExecutedRule(
            email_account_id=account_id,
            message_id=message_id,
            thread_id=thread_id,
            rule_id=rule_id,
            rule_key=rule_key(rule_id),
            status=status,
            reason=reason,
            automated=automated,
        )
        executed_rule.action_items = [ExecutedAction(**item) for item in action_items]
        self.db.add(executed_rule)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.find_active_executed_rule(account_id, message_id, rule_id)
            if existing is None:
                raise
            logger.info("Executed rule already recorded", message_id=message_id, rule_id=rule_id,
                        executed_rule_id=existing.id)
            return existing, False
        return executed_rule, True

    def set_executed_rule_status(self, executed_rule: ExecutedRule, status: str) -> None:
        executed_rule.status = status
        self.db.commit()

    def set_action_status(self, executed_action: ExecutedAction, status: str, error: Optional[str] = None,
                          **result_fields) -> None:
        executed_action.status = status
        executed_action.error = error
        if status == ExecutedActionStatus.APPLIED:
            executed_action.executed_at = utcnow()
        for name, value in result_fields.items():
            setattr(executed_action, name, value)
        self.db.commit()

    def cancel_executed_rules_for_message(self, account_id: int, message_id: str) -> int:
        """Cancel PENDING and SKIPPED decisions for a message so it can be re-run"""
        rows = self.db.execute(
            select(ExecutedRule).where(
                ExecutedRule.email_account_id == account_id,
                ExecutedRule.message_id == message_id,
                ExecutedRule.status.in_([ExecutedRuleStatus.PENDING, ExecutedRuleStatus.SKIPPED]),
            )
        ).scalars().all()
        for executed_rule in rows:
            self.db.execute(
                update(ScheduledAction)
                .where(
                    ScheduledAction.executed_rule_id == executed_rule.id,
                    ScheduledAction.status == ScheduledActionStatus.PENDING,
                )
                .values(status=ScheduledActionStatus.CANCELLED)
            )
            self.db.execute(
                update(ExecutedAction)
                .where(
                    ExecutedAction.executed_rule_id == executed_rule.id,
                    ExecutedAction.status == ExecutedActionStatus.PENDING,
                )
                .values(status=ExecutedActionStatus.SKIPPED, error=CANCELLED_REASON)
                .execution_options(synchronize_session='fetch')
            )
            executed_rule.status = ExecutedRuleStatus.CANCELLED
        self.db.commit()
        return len(rows)

    def previous_thread_rule_ids(self, account_id: int, thread_id: str) -> Set[int]:
        """Ids of rules already APPLIED somewhere in this thread"""
        stmt = select(ExecutedRule.rule_id).distinct().where(
            ExecutedRule.email_account_id == account_id,
            ExecutedRule.thread_id == thread_id,
            ExecutedRule.status == ExecutedRuleStatus.APPLIED,
            ExecutedRule.rule_id.is_not(None),
        )
        return set(self.db.execute(stmt).scalars())

    # Scheduled actions

    def create_scheduled_action(self, executed_rule: ExecutedRule, executed_action: ExecutedAction,
                                execute_at: datetime) -> ScheduledAction:
        scheduled = ScheduledAction(
            email_account_id=executed_rule.email_account_id,
            executed_rule_id=executed_rule.id,
            executed_action_id=executed_action.id,
            message_id=executed_rule.message_id,
            thread_id=executed_rule.thread_id,
            action_type=executed_action.type,
            execute_at=execute_at,
            status=ScheduledActionStatus.PENDING,
        )
        self.db.add(scheduled)
        self.db.commit()
        return scheduled

    def get_scheduled_action(self, scheduled_action_id: int) -> Optional[ScheduledAction]:
        return self.db.get(ScheduledAction, scheduled_action_id)

    def has_scheduled_action(self, executed_action_id: int) -> bool:
        stmt = select(func.count(ScheduledAction.id)).where(
            ScheduledAction.executed_action_id == executed_action_id,
        )
        return self.db.execute(stmt).scalar_one() > 0

    def due_scheduled_action_ids(self, now: datetime, limit: int) -> List[int]:
        stmt = (
            select(ScheduledAction.id)
            .where(ScheduledAction.status == ScheduledActionStatus.PENDING, ScheduledAction.execute_at <= now)
            .order_by(ScheduledAction.execute_at, ScheduledAction.id)
            .limit(limit)
        )
        return list(self.db.execute(stmt).scalars())

    def count_scheduled(self, status: str) -> int:
        stmt = select(func.count(ScheduledAction.id)).where(ScheduledAction.status == status)
        return self.db.execute(stmt).scalar_one()

    def count_unfinished_scheduled(self, executed_rule_id: int) -> int:
        stmt = select(func.count(ScheduledAction.id)).where(
            ScheduledAction.executed_rule_id == executed_rule_id,
            ScheduledAction.status.in_([ScheduledActionStatus.PENDING, ScheduledActionStatus.PROCESSING]),
        )
        return self.db.execute(stmt).scalar_one()

    def _transition_scheduled(self, scheduled_action_id: int, expected: str, **values) -> bool:
        """Compare-and-swap on status: succeeds only if the row is still in `expected`"""
        result = self.db.execute(
            update(ScheduledAction)
            .where(ScheduledAction.id == scheduled_action_id, ScheduledAction.status == expected)
            .values(**values)
            .execution_options(synchronize_session='fetch')
        )
        self.db.commit()
        return result.rowcount == 1

    def claim_scheduled_action(self, scheduled_action_id: int, now: datetime) -> bool:
        return self._transition_scheduled(
            scheduled_action_id, ScheduledActionStatus.PENDING,
            status=ScheduledActionStatus.PROCESSING, claimed_at=now,
        )

    def finish_scheduled_action(self, scheduled_action_id: int, status: str, now: datetime,
                                error_message: Optional[str] = None) -> bool:
        if status not in (ScheduledActionStatus.COMPLETED, ScheduledActionStatus.FAILED):
            raise ValueError(f"Invalid final status {status}")
        return self._transition_scheduled(
            scheduled_action_id, ScheduledActionStatus.PROCESSING,
            status=status, executed_at=now, error_message=error_message,
        )

    def cancel_scheduled_action(self, scheduled_action_id: int) -> bool:
        return self._transition_scheduled(
            scheduled_action_id, ScheduledActionStatus.PENDING,
            status=ScheduledActionStatus.CANCELLED,
        )

    def retry_scheduled_action(self, scheduled_action_id: int, now: datetime) -> bool:
        return self._transition_scheduled(
            scheduled_action_id, ScheduledActionStatus.FAILED,
            status=ScheduledActionStatus.PENDING,
            execute_at=now,
            claimed_at=None,
            error_message=None,
            retry_count=ScheduledAction.retry_count + 1,
        )

    def cancel_scheduled_actions_for_thread(self, account_id: int, thread_id: str) -> List[int]:
        """Cancel every still-PENDING scheduled action of a thread; returns the ids actually cancelled"""
        stmt = select(ScheduledAction.id).where(
            ScheduledAction.email_account_id == account_id,
            ScheduledAction.thread_id == thread_id,
            ScheduledAction.status == ScheduledActionStatus.PENDING,
        )
        pending_ids = list(self.db.execute(stmt).scalars())
        return [
            scheduled_action_id for scheduled_action_id in pending_ids
            if self.cancel_scheduled_action(scheduled_action_id)
        ]

    def fail_stale_processing(self, cutoff: datetime, now: datetime) -> List[int]:
        """
        Finalize rows whose worker died after claiming them. Uses the same
        PROCESSING -> FAILED swap as a live worker, so if that worker finishes
        late exactly one of the two writes lands.
        """
        stmt = select(ScheduledAction.id).where(
            ScheduledAction.status == ScheduledActionStatus.PROCESSING,
            ScheduledAction.claimed_at < cutoff,
        )
        stale_ids = list(self.db.execute(stmt).scalars())
        return [
            scheduled_action_id for scheduled_action_id in stale_ids
            if self.finish_scheduled_action(scheduled_action_id, ScheduledActionStatus.FAILED, now,
                                            error_message='Processing timed out')
        ]

    # Provider rate limits

    def get_rate_limit_state(self, account_id: int) -> Optional[ProviderRateLimit]:
        return self.db.get(ProviderRateLimit, account_id)

    def set_rate_limit_state(self, account_id: int, provider: str, retry_at: datetime,
                             source: Optional[str] = None) -> ProviderRateLimit:
        state = self.db.get(ProviderRateLimit, account_id)
        if state is None:
            state = ProviderRateLimit(email_account_id=account_id, provider=provider, retry_at=retry_at,
                                      source=source)
            self.db.add(state)
            try:
                self.db.commit()
                return state
            except IntegrityError:
                # Another worker recorded it first
                self.db.rollback()
                state = self.db.get(ProviderRateLimit, account_id)
        if retry_at > state.retry_at:
            state.retry_at = retry_at
            state.provider = provider
            state.source = source
        self.db.commit()
        return state
