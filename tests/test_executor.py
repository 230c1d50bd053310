"""
Action executor tests: idempotent recording, delays, error handling,
the rate-limit gate, label self-healing and the completion webhook
"""
import unittest
from datetime import timedelta
from unittest.mock import MagicMock, call

from support import NOW, FakeClock, make_account, make_action, make_message, make_provider, make_rule, make_session

from inbox_rules.actions.executor import ActionExecutor, settle_status
from inbox_rules.actions.webhook import WebhookClient
from inbox_rules.ai.arguments import ActionItem
from inbox_rules.database.models import (
    ExecutedActionStatus,
    ExecutedRuleStatus,
    ScheduledAction,
    ScheduledActionStatus,
)
from inbox_rules.database.repository import Repository
from inbox_rules.providers.base import LabelResult
from inbox_rules.providers.errors import Permanent, RateLimited, Transient
from inbox_rules.scheduler import DelayedActionScheduler


class ExecutorTestCase(unittest.TestCase):
    def setUp(self):
        self.db = make_session()
        self.repo = Repository(self.db)
        self.account = make_account(self.db)
        self.rule = make_rule(self.db, self.account, from_pattern='sender@example.com')
        self.message = make_message()
        self.provider = make_provider([self.message])
        self.webhook = MagicMock(spec=WebhookClient)
        self.sleep = MagicMock()
        self.clock = FakeClock(NOW)
        self.executor = ActionExecutor(self.repo, self.provider, webhook=self.webhook, sleep=self.sleep,
                                       clock=self.clock)

    def tearDown(self):
        self.db.close()

    def run_items(self, *items, rule=None):
        return self.executor.run(self.account, self.message, rule or self.rule, list(items), reason='Matched')

    def scheduled_actions(self):
        return self.db.query(ScheduledAction).order_by(ScheduledAction.id).all()


class TestRun(ExecutorTestCase):
    def test_immediate_action_applied(self):
        executed_rule = self.run_items(ActionItem(type='ARCHIVE'))

        self.provider.archive_thread.assert_called_once_with('msg-1')
        self.assertEqual(executed_rule.status, ExecutedRuleStatus.APPLIED)
        self.assertEqual(executed_rule.reason, 'Matched')
        item = executed_rule.action_items[0]
        self.assertEqual(item.status, ExecutedActionStatus.APPLIED)
        self.assertIsNotNone(item.executed_at)

    def test_replay_is_noop(self):
        first = self.run_items(ActionItem(type='ARCHIVE'))
        second = self.run_items(ActionItem(type='ARCHIVE'))

        self.assertEqual(first.id, second.id)
        self.provider.archive_thread.assert_called_once()

    def test_delayed_action_is_scheduled(self):
        executed_rule = self.run_items(ActionItem(type='ARCHIVE'), ActionItem(type='MARK_READ', delay_in_minutes=60))

        self.provider.archive_thread.assert_called_once()
        self.provider.mark_read_thread.assert_not_called()
        self.assertEqual(executed_rule.status, ExecutedRuleStatus.PENDING)
        scheduled = self.scheduled_actions()
        self.assertEqual(len(scheduled), 1)
        self.assertEqual(scheduled[0].execute_at, NOW + timedelta(minutes=60))
        self.assertEqual(scheduled[0].action_type, 'MARK_READ')

        # Replay neither re-runs the archive nor schedules twice
        self.run_items(ActionItem(type='ARCHIVE'), ActionItem(type='MARK_READ', delay_in_minutes=60))
        self.provider.archive_thread.assert_called_once()
        self.assertEqual(len(self.scheduled_actions()), 1)

    def test_no_rule_is_recorded_skipped(self):
        executed_rule = self.executor.run(self.account, self.message, None, [], reason='No rule applies')
        self.assertEqual(executed_rule.status, ExecutedRuleStatus.SKIPPED)
        self.assertIsNone(executed_rule.rule_id)
        self.assertEqual(executed_rule.action_items, [])

    def test_unautomated_rule_awaits_approval(self):
        rule = make_rule(self.db, self.account, name='Manual', automate=False, from_pattern='x')
        executed_rule = self.run_items(ActionItem(type='ARCHIVE'), rule=rule)

        self.assertEqual(executed_rule.status, ExecutedRuleStatus.PENDING)
        self.assertFalse(executed_rule.automated)
        self.provider.archive_thread.assert_not_called()

        # Awaiting approval is not resumed by a replay
        self.run_items(ActionItem(type='ARCHIVE'), rule=rule)
        self.provider.archive_thread.assert_not_called()

    def test_interrupted_run_resumes(self):
        executed_rule, _ = self.repo.create_executed_rule(
            self.account.id, 'msg-1', 'msg-1', self.rule.id, ExecutedRuleStatus.PENDING, 'Matched', True,
            [{'type': 'ARCHIVE', 'status': ExecutedActionStatus.APPLIED}, {'type': 'MARK_SPAM'}],
        )
        result = self.run_items(ActionItem(type='ARCHIVE'), ActionItem(type='MARK_SPAM'))

        self.assertEqual(result.id, executed_rule.id)
        self.provider.archive_thread.assert_not_called()
        self.provider.mark_spam.assert_called_once_with('msg-1')
        self.assertEqual(result.status, ExecutedRuleStatus.APPLIED)

    def test_item_with_generation_error_is_not_run(self):
        executed_rule = self.run_items(ActionItem(type='LABEL', error='Failed to generate label'),
                                       ActionItem(type='ARCHIVE'))
        self.provider.label_message.assert_not_called()
        self.assertEqual([i.status for i in executed_rule.action_items],
                         [ExecutedActionStatus.FAILED, ExecutedActionStatus.APPLIED])
        self.assertEqual(executed_rule.status, ExecutedRuleStatus.APPLIED)


class TestErrors(ExecutorTestCase):
    def test_permanent_error_fails_without_retry(self):
        self.provider.archive_thread.side_effect = Permanent('Invalid request')
        executed_rule = self.run_items(ActionItem(type='ARCHIVE'))

        self.provider.archive_thread.assert_called_once()
        self.sleep.assert_not_called()
        item = executed_rule.action_items[0]
        self.assertEqual(item.status, ExecutedActionStatus.FAILED)
        self.assertEqual(item.error, 'Invalid request')
        self.assertEqual(executed_rule.status, ExecutedRuleStatus.FAILED)

    def test_transient_error_retried_then_applied(self):
        self.provider.archive_thread.side_effect = [Transient('503'), None]
        executed_rule = self.run_items(ActionItem(type='ARCHIVE'))

        self.assertEqual(self.provider.archive_thread.call_count, 2)
        self.sleep.assert_called_once_with(1.0)
        self.assertEqual(executed_rule.status, ExecutedRuleStatus.APPLIED)

    def test_unexpected_error_fails_only_its_action(self):
        self.provider.create_draft.side_effect = ValueError('Header values may not contain linefeed')
        items = [ActionItem(type='DRAFT_EMAIL', subject='Pricing', content='Thanks'), ActionItem(type='ARCHIVE')]

        executed_rule = self.run_items(*items)

        self.provider.archive_thread.assert_called_once_with('msg-1')
        draft, archive = executed_rule.action_items
        self.assertEqual(draft.status, ExecutedActionStatus.FAILED)
        self.assertEqual(draft.error, 'Header values may not contain linefeed')
        self.assertEqual(archive.status, ExecutedActionStatus.APPLIED)
        self.assertEqual(executed_rule.status, ExecutedRuleStatus.APPLIED)
        self.sleep.assert_not_called()

        # Settled, so a replay runs nothing again
        self.run_items(*items)
        self.provider.create_draft.assert_called_once()
        self.provider.archive_thread.assert_called_once()

    def test_exhausted_retries_defer_to_scheduled_retry(self):
        self.provider.archive_thread.side_effect = Transient('timeout')
        executed_rule = self.run_items(ActionItem(type='LABEL', label='Work'), ActionItem(type='ARCHIVE'))

        self.assertEqual(self.provider.archive_thread.call_count, 3)
        self.assertEqual(self.sleep.call_args_list, [call(1.0), call(2.0)])
        label, archive = executed_rule.action_items
        self.assertEqual(label.status, ExecutedActionStatus.APPLIED)
        self.assertEqual(archive.status, ExecutedActionStatus.PENDING)
        scheduled = self.scheduled_actions()
        self.assertEqual([s.action_type for s in scheduled], ['ARCHIVE'])
        self.assertEqual(scheduled[0].execute_at, NOW + timedelta(seconds=8))
        self.assertEqual(executed_rule.status, ExecutedRuleStatus.PENDING)

        # The provider recovers and the next sweep applies the action
        self.provider.archive_thread.side_effect = None
        self.clock.now = NOW + timedelta(seconds=10)
        scheduler = DelayedActionScheduler(self.repo, lambda account: self.executor, webhook=self.webhook,
                                           clock=self.clock)
        self.assertEqual(scheduler.sweep().processed, 1)
        self.assertEqual(self.provider.archive_thread.call_count, 4)
        self.assertEqual(archive.status, ExecutedActionStatus.APPLIED)
        self.assertEqual(executed_rule.status, ExecutedRuleStatus.APPLIED)

    def test_exhausted_retries_without_defer_fail_retryable(self):
        executed_rule, _ = self.repo.create_executed_rule(
            self.account.id, 'msg-1', 'msg-1', self.rule.id, ExecutedRuleStatus.PENDING, None, True,
            [{'type': 'ARCHIVE'}],
        )
        item = executed_rule.action_items[0]
        self.provider.archive_thread.side_effect = Transient('503')

        status = self.executor.execute_action(self.account, self.message, executed_rule, item, allow_defer=False)

        self.assertEqual(status, ExecutedActionStatus.FAILED)
        self.assertEqual(item.error, '[RETRYABLE] 503')
        self.assertEqual(self.scheduled_actions(), [])

    def test_refused_finish_leaves_item_untouched(self):
        executed_rule, _ = self.repo.create_executed_rule(
            self.account.id, 'msg-1', 'msg-1', self.rule.id, ExecutedRuleStatus.PENDING, None, True,
            [{'type': 'ARCHIVE'}],
        )
        item = executed_rule.action_items[0]
        finish = MagicMock(return_value=False)

        self.executor.execute_action(self.account, self.message, executed_rule, item, allow_defer=False,
                                     finish=finish)

        finish.assert_called_once_with(ExecutedActionStatus.APPLIED, None)
        self.provider.archive_thread.assert_called_once()
        self.assertEqual(item.status, ExecutedActionStatus.PENDING)
        self.assertIsNone(item.executed_at)

    def test_rate_limit_defers_action(self):
        self.provider.archive_thread.side_effect = RateLimited(retry_after=120)
        executed_rule = self.run_items(ActionItem(type='ARCHIVE'), ActionItem(type='MARK_READ'))

        # The gate now blocks the second action without a provider call
        self.provider.mark_read_thread.assert_not_called()
        retry_at = NOW + timedelta(seconds=125)
        self.assertEqual(self.repo.get_rate_limit_state(self.account.id).retry_at, retry_at)
        scheduled = self.scheduled_actions()
        self.assertEqual([s.action_type for s in scheduled], ['ARCHIVE', 'MARK_READ'])
        self.assertTrue(all(s.execute_at == retry_at for s in scheduled))
        self.assertEqual(executed_rule.status, ExecutedRuleStatus.PENDING)
        self.assertEqual(self.sleep.call_args_list, [call(30.0), call(30.0)])

    def test_rate_limit_without_defer_fails(self):
        self.repo.set_rate_limit_state(self.account.id, 'google', NOW + timedelta(minutes=10))
        executed_rule, _ = self.repo.create_executed_rule(
            self.account.id, 'msg-1', 'msg-1', self.rule.id, ExecutedRuleStatus.PENDING, None, True,
            [{'type': 'ARCHIVE'}],
        )
        item = executed_rule.action_items[0]

        status = self.executor.execute_action(self.account, self.message, executed_rule, item, allow_defer=False)

        self.assertEqual(status, ExecutedActionStatus.FAILED)
        self.assertTrue(item.error.startswith('[RETRYABLE] Rate limited until'))
        self.provider.archive_thread.assert_not_called()
        self.assertEqual(self.scheduled_actions(), [])


class TestLabelsAndWebhooks(ExecutorTestCase):
    def test_stale_label_reference_is_healed(self):
        rule = make_rule(self.db, self.account, name='Label', from_pattern='x',
                         actions=[make_action('LABEL', label='Work', label_id='Label_old')])
        self.provider.label_message.return_value = LabelResult(applied_label_id='Label_new', used_fallback=True)

        executed_rule = self.run_items(ActionItem(type='LABEL', label='Work', label_id='Label_old'), rule=rule)

        self.provider.label_message.assert_called_once_with('msg-1', 'Label_old', 'Work')
        self.assertEqual(executed_rule.action_items[0].label_id, 'Label_new')
        self.db.refresh(rule.actions[0])
        self.assertEqual(rule.actions[0].label_id, 'Label_new')

    def test_draft_id_recorded(self):
        executed_rule = self.run_items(ActionItem(type='DRAFT_EMAIL', content='Thanks'))
        self.assertEqual(executed_rule.action_items[0].draft_id, 'draft-1')

    def test_account_webhook_notified_when_settled(self):
        self.account.webhook_url = 'https://hooks.example.com/done'
        self.account.webhook_secret = 's3cret'
        self.db.commit()

        executed_rule = self.run_items(ActionItem(type='ARCHIVE'))

        self.webhook.notify.assert_called_once()
        url, payload, secret = self.webhook.notify.call_args[0]
        self.assertEqual(url, 'https://hooks.example.com/done')
        self.assertEqual(payload['executedRule']['id'], executed_rule.id)
        self.assertEqual(payload['email']['messageId'], 'msg-1')
        self.assertEqual(secret, 's3cret')

    def test_no_webhook_while_pending(self):
        self.account.webhook_url = 'https://hooks.example.com/done'
        self.db.commit()
        self.run_items(ActionItem(type='ARCHIVE', delay_in_minutes=5))
        self.webhook.notify.assert_not_called()


class TestSettleStatus(unittest.TestCase):
    def test_statuses(self):
        self.assertEqual(settle_status(['APPLIED', 'PENDING']), ExecutedRuleStatus.PENDING)
        self.assertEqual(settle_status(['FAILED', 'FAILED']), ExecutedRuleStatus.FAILED)
        self.assertEqual(settle_status(['SKIPPED']), ExecutedRuleStatus.SKIPPED)
        self.assertEqual(settle_status(['FAILED', 'APPLIED']), ExecutedRuleStatus.APPLIED)
        self.assertEqual(settle_status([]), ExecutedRuleStatus.APPLIED)


if __name__ == '__main__':
    unittest.main()
