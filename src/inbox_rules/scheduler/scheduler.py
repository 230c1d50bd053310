"""
Delayed action scheduler.

A sweep picks due PENDING rows, claims each with a compare-and-swap to
PROCESSING, runs it through the executor's single-action path and swaps it
to COMPLETED or FAILED. Cancel and retry are swaps too, so a cancel racing a
claim leaves exactly one terminal status.
"""
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

import structlog

from ..actions.executor import ActionExecutor, settle_executed_rule
from ..actions.webhook import WebhookClient
from ..database.models import ExecutedActionStatus, ScheduledActionStatus, utcnow
from ..database.repository import CANCELLED_REASON, Repository
from ..providers.errors import NotFound

logger = structlog.get_logger(__name__)

EMAIL_GONE = 'Email no longer exists'


@dataclass
class SweepResult:
    processed: int = 0
    failed: int = 0
    pending: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class DelayedActionScheduler:
    def __init__(self, repo: Repository, executor_factory: Callable[[object], ActionExecutor],
                 webhook: Optional[WebhookClient] = None, batch_size: int = 100,
                 processing_timeout_minutes: int = 15, clock: Callable[[], datetime] = utcnow):
        """`executor_factory(account)` builds an executor bound to that account's provider"""
        self.repo = repo
        self.executor_factory = executor_factory
        self.webhook = webhook or WebhookClient()
        self.batch_size = batch_size
        self.processing_timeout = timedelta(minutes=processing_timeout_minutes)
        self.clock = clock
        self._executors: Dict[int, ActionExecutor] = {}

    def _executor_for(self, account) -> ActionExecutor:
        if account.id not in self._executors:
            self._executors[account.id] = self.executor_factory(account)
        return self._executors[account.id]

    def sweep(self) -> SweepResult:
        result = SweepResult()
        now = self.clock()

        for scheduled_action_id in self.repo.fail_stale_processing(now - self.processing_timeout, now):
            logger.warning("Scheduled action timed out in processing", scheduled_action_id=scheduled_action_id)
            self._mark_item(scheduled_action_id, ExecutedActionStatus.FAILED, 'Processing timed out')
            result.failed += 1

        for scheduled_action_id in self.repo.due_scheduled_action_ids(now, self.batch_size):
            try:
                outcome = self.process(scheduled_action_id)
            except Exception:
                logger.exception("Scheduled action could not be processed", scheduled_action_id=scheduled_action_id)
                self.repo.rollback()
                outcome = ScheduledActionStatus.FAILED
            if outcome == ScheduledActionStatus.COMPLETED:
                result.processed += 1
            elif outcome == ScheduledActionStatus.FAILED:
                result.failed += 1

        result.pending = self.repo.count_scheduled(ScheduledActionStatus.PENDING)
        logger.info("Scheduled action sweep finished", **result.as_dict())
        return result

    def process(self, scheduled_action_id: int) -> Optional[str]:
        """Claim and run one due action. Returns its final status, or None if another worker owns it."""
        if not self.repo.claim_scheduled_action(scheduled_action_id, self.clock()):
            logger.info("Scheduled action already claimed or cancelled", scheduled_action_id=scheduled_action_id)
            return None

        scheduled = self.repo.get_scheduled_action(scheduled_action_id)
        log = logger.bind(scheduled_action_id=scheduled_action_id, action_type=scheduled.action_type,
                          message_id=scheduled.message_id)
        try:
            return self._run_claimed(scheduled, log)
        except Exception as e:
            log.exception("Scheduled action crashed")
            self.repo.rollback()
            self._settle_claimed(scheduled, ScheduledActionStatus.FAILED, ExecutedActionStatus.FAILED,
                                 str(e) or type(e).__name__)
            return ScheduledActionStatus.FAILED

    def _run_claimed(self, scheduled, log) -> Optional[str]:
        account = self.repo.get_account(scheduled.email_account_id)
        executor = self._executor_for(account)
        try:
            message = executor.provider.get_message(scheduled.message_id)
        except NotFound:
            log.info("Email for scheduled action no longer exists")
            self._settle_claimed(scheduled, ScheduledActionStatus.COMPLETED, ExecutedActionStatus.SKIPPED,
                                 EMAIL_GONE)
            return ScheduledActionStatus.COMPLETED

        finished = []

        def finish(status: str, error: Optional[str]) -> bool:
            final = ScheduledActionStatus.COMPLETED if status == ExecutedActionStatus.APPLIED \
                else ScheduledActionStatus.FAILED
            if not self._finish(scheduled.id, final, error if final == ScheduledActionStatus.FAILED else None):
                return False
            finished.append(final)
            return True

        executor.execute_action(account, message, scheduled.executed_rule, scheduled.executed_action,
                                allow_defer=False, finish=finish)
        if not finished:
            # A stale-claim sweep finalized the row while this worker was running
            return None
        final = finished[0]
        if self.repo.count_unfinished_scheduled(scheduled.executed_rule_id) == 0:
            executor.finalize(account, message, scheduled.executed_rule)
        log.info("Scheduled action finished", status=final)
        return final

    def _settle_claimed(self, scheduled, final: str, item_status: str, error: str) -> None:
        """Finalize a claimed row, then its item, unless another worker finalized the row first"""
        if self._finish(scheduled.id, final, error):
            self._mark_item(scheduled.id, item_status, error)

    def _finish(self, scheduled_action_id: int, status: str, error_message: Optional[str]) -> bool:
        if not self.repo.finish_scheduled_action(scheduled_action_id, status, self.clock(), error_message):
            logger.warning("Scheduled action was finalized elsewhere", scheduled_action_id=scheduled_action_id,
                           status=status)
            return False
        return True

    def _mark_item(self, scheduled_action_id: int, status: str, error: Optional[str]) -> None:
        scheduled = self.repo.get_scheduled_action(scheduled_action_id)
        self.repo.set_action_status(scheduled.executed_action, status, error=error)
        account = self.repo.get_account(scheduled.email_account_id)
        settle_executed_rule(self.repo, self.webhook, account, None, scheduled.executed_rule)

    def cancel(self, scheduled_action_id: int) -> bool:
        """PENDING -> CANCELLED. False (a conflict) once the row is PROCESSING or beyond."""
        if not self.repo.cancel_scheduled_action(scheduled_action_id):
            return False
        self._mark_item(scheduled_action_id, ExecutedActionStatus.SKIPPED, CANCELLED_REASON)
        logger.info("Scheduled action cancelled", scheduled_action_id=scheduled_action_id)
        return True

    def retry(self, scheduled_action_id: int) -> bool:
        """FAILED -> PENDING, due immediately. False for any other status."""
        if not self.repo.retry_scheduled_action(scheduled_action_id, self.clock()):
            return False
        self._mark_item(scheduled_action_id, ExecutedActionStatus.PENDING, None)
        logger.info("Scheduled action queued for retry", scheduled_action_id=scheduled_action_id)
        return True

    def cancel_for_thread(self, account_id: int, thread_id: str) -> List[int]:
        """Cancel every PENDING scheduled action of a thread, e.g. after the user replied"""
        cancelled = self.repo.cancel_scheduled_actions_for_thread(account_id, thread_id)
        for scheduled_action_id in cancelled:
            self._mark_item(scheduled_action_id, ExecutedActionStatus.SKIPPED, CANCELLED_REASON)
        if cancelled:
            logger.info("Cancelled scheduled actions for thread", thread_id=thread_id, count=len(cancelled))
        return cancelled
