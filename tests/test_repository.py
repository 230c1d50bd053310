import unittest
from datetime import timedelta

from support import NOW, make_account, make_action, make_rule, make_session

from inbox_rules.database.models import (
    ExecutedActionStatus,
    ExecutedRuleStatus,
    ScheduledAction,
    ScheduledActionStatus,
)
from inbox_rules.database.repository import Repository


class RepositoryTestCase(unittest.TestCase):
    def setUp(self):
        self.db = make_session()
        self.repo = Repository(self.db)
        self.account = make_account(self.db)
        self.rule = make_rule(self.db, self.account, from_pattern='x')

    def tearDown(self):
        self.db.close()

    def executed_rule(self, message_id='msg-1', status=ExecutedRuleStatus.PENDING, items=None):
        executed_rule, _ = self.repo.create_executed_rule(
            self.account.id, message_id, message_id, self.rule.id, status, 'reason', True,
            items if items is not None else [{'type': 'ARCHIVE'}],
        )
        return executed_rule

    def scheduled(self, executed_rule=None, execute_at=NOW, thread_id=None):
        executed_rule = executed_rule or self.executed_rule()
        scheduled = self.repo.create_scheduled_action(executed_rule, executed_rule.action_items[0], execute_at)
        if thread_id:
            scheduled.thread_id = thread_id
            self.db.commit()
        return scheduled


class TestExecutedRules(RepositoryTestCase):
    def test_duplicate_returns_existing(self):
        first, created = self.repo.create_executed_rule(
            self.account.id, 'msg-1', 'msg-1', self.rule.id, ExecutedRuleStatus.PENDING, None, True,
        )
        second, created_again = self.repo.create_executed_rule(
            self.account.id, 'msg-1', 'msg-1', self.rule.id, ExecutedRuleStatus.PENDING, None, True,
        )
        self.assertTrue(created)
        self.assertFalse(created_again)
        self.assertEqual(first.id, second.id)

    def test_no_rule_decisions_are_unique_too(self):
        self.repo.create_executed_rule(self.account.id, 'msg-1', 'msg-1', None, ExecutedRuleStatus.SKIPPED,
                                       'No match', True)
        _, created = self.repo.create_executed_rule(self.account.id, 'msg-1', 'msg-1', None,
                                                    ExecutedRuleStatus.SKIPPED, 'No match', True)
        self.assertFalse(created)

    def test_cancelled_row_allows_new_one(self):
        executed_rule = self.executed_rule()
        self.assertTrue(self.repo.has_active_executed_rules(self.account.id, 'msg-1'))

        self.assertEqual(self.repo.cancel_executed_rules_for_message(self.account.id, 'msg-1'), 1)
        self.assertEqual(executed_rule.status, ExecutedRuleStatus.CANCELLED)
        self.assertFalse(self.repo.has_active_executed_rules(self.account.id, 'msg-1'))

        _, created = self.repo.create_executed_rule(
            self.account.id, 'msg-1', 'msg-1', self.rule.id, ExecutedRuleStatus.PENDING, None, True,
        )
        self.assertTrue(created)

    def test_cancel_leaves_applied_rows_and_cancels_their_schedule(self):
        pending = self.executed_rule()
        scheduled = self.scheduled(pending)
        applied = self.executed_rule('msg-2', status=ExecutedRuleStatus.APPLIED)

        self.repo.cancel_executed_rules_for_message(self.account.id, 'msg-1')
        self.repo.cancel_executed_rules_for_message(self.account.id, 'msg-2')
        self.db.refresh(scheduled)
        self.assertEqual(scheduled.status, ScheduledActionStatus.CANCELLED)
        self.assertEqual(applied.status, ExecutedRuleStatus.APPLIED)

    def test_cancel_skips_pending_items(self):
        executed_rule = self.executed_rule(items=[{'type': 'LABEL', 'status': ExecutedActionStatus.APPLIED},
                                                  {'type': 'ARCHIVE'}])
        self.scheduled(executed_rule)

        self.repo.cancel_executed_rules_for_message(self.account.id, 'msg-1')

        applied, waiting = executed_rule.action_items
        self.assertEqual(applied.status, ExecutedActionStatus.APPLIED)
        self.assertEqual(waiting.status, ExecutedActionStatus.SKIPPED)
        self.assertEqual(waiting.error, 'Cancelled')

    def test_previous_thread_rule_ids(self):
        self.executed_rule('msg-1', status=ExecutedRuleStatus.APPLIED)
        self.assertEqual(self.repo.previous_thread_rule_ids(self.account.id, 'msg-1'), {self.rule.id})
        self.assertEqual(self.repo.previous_thread_rule_ids(self.account.id, 'other'), set())


class TestScheduledActions(RepositoryTestCase):
    def test_claim_is_exclusive(self):
        scheduled = self.scheduled()
        self.assertTrue(self.repo.claim_scheduled_action(scheduled.id, NOW))
        self.assertFalse(self.repo.claim_scheduled_action(scheduled.id, NOW))

    def test_claim_then_cancel(self):
        scheduled = self.scheduled()
        self.assertTrue(self.repo.claim_scheduled_action(scheduled.id, NOW))
        self.assertFalse(self.repo.cancel_scheduled_action(scheduled.id))
        self.assertEqual(self.repo.get_scheduled_action(scheduled.id).status, ScheduledActionStatus.PROCESSING)

    def test_cancel_then_claim(self):
        scheduled = self.scheduled()
        self.assertTrue(self.repo.cancel_scheduled_action(scheduled.id))
        self.assertFalse(self.repo.claim_scheduled_action(scheduled.id, NOW))
        self.assertEqual(self.repo.get_scheduled_action(scheduled.id).status, ScheduledActionStatus.CANCELLED)

    def test_finish_only_from_processing(self):
        scheduled = self.scheduled()
        self.assertFalse(self.repo.finish_scheduled_action(scheduled.id, ScheduledActionStatus.COMPLETED, NOW))
        self.repo.claim_scheduled_action(scheduled.id, NOW)
        self.assertTrue(self.repo.finish_scheduled_action(scheduled.id, ScheduledActionStatus.COMPLETED, NOW))
        self.assertEqual(self.repo.get_scheduled_action(scheduled.id).executed_at, NOW)

    def test_finish_rejects_non_final_status(self):
        with self.assertRaises(ValueError):
            self.repo.finish_scheduled_action(1, ScheduledActionStatus.PENDING, NOW)

    def test_retry_only_from_failed(self):
        scheduled = self.scheduled()
        self.assertFalse(self.repo.retry_scheduled_action(scheduled.id, NOW))

        self.repo.claim_scheduled_action(scheduled.id, NOW)
        self.repo.finish_scheduled_action(scheduled.id, ScheduledActionStatus.FAILED, NOW, 'boom')
        later = NOW + timedelta(hours=1)
        self.assertTrue(self.repo.retry_scheduled_action(scheduled.id, later))

        row = self.repo.get_scheduled_action(scheduled.id)
        self.assertEqual(row.status, ScheduledActionStatus.PENDING)
        self.assertEqual(row.retry_count, 1)
        self.assertEqual(row.execute_at, later)
        self.assertIsNone(row.error_message)

    def test_due_ids_ordered_and_limited(self):
        executed_rule = self.executed_rule(items=[{'type': 'ARCHIVE'}, {'type': 'MARK_READ'}, {'type': 'MARK_SPAM'}])
        items = executed_rule.action_items
        late = self.repo.create_scheduled_action(executed_rule, items[0], NOW - timedelta(minutes=1))
        early = self.repo.create_scheduled_action(executed_rule, items[1], NOW - timedelta(minutes=5))
        self.repo.create_scheduled_action(executed_rule, items[2], NOW + timedelta(minutes=5))

        self.assertEqual(self.repo.due_scheduled_action_ids(NOW, 10), [early.id, late.id])
        self.assertEqual(self.repo.due_scheduled_action_ids(NOW, 1), [early.id])
        self.assertEqual(self.repo.count_unfinished_scheduled(executed_rule.id), 3)

    def test_stale_processing_rows_fail(self):
        scheduled = self.scheduled()
        self.repo.claim_scheduled_action(scheduled.id, NOW - timedelta(minutes=30))
        fresh = self.scheduled(self.executed_rule('msg-2'))
        self.repo.claim_scheduled_action(fresh.id, NOW)

        stale = self.repo.fail_stale_processing(NOW - timedelta(minutes=15), NOW)
        self.assertEqual(stale, [scheduled.id])
        row = self.repo.get_scheduled_action(scheduled.id)
        self.assertEqual(row.status, ScheduledActionStatus.FAILED)
        self.assertEqual(row.error_message, 'Processing timed out')
        self.assertEqual(self.repo.get_scheduled_action(fresh.id).status, ScheduledActionStatus.PROCESSING)

    def test_cancel_for_thread(self):
        first = self.scheduled(thread_id='thread-1')
        claimed = self.scheduled(self.executed_rule('msg-2'), thread_id='thread-1')
        other = self.scheduled(self.executed_rule('msg-3'), thread_id='thread-2')
        self.repo.claim_scheduled_action(claimed.id, NOW)

        self.assertEqual(self.repo.cancel_scheduled_actions_for_thread(self.account.id, 'thread-1'), [first.id])
        self.assertEqual(self.db.get(ScheduledAction, other.id).status, ScheduledActionStatus.PENDING)


class TestLabelsAndRateLimits(RepositoryTestCase):
    def test_update_label_references(self):
        rule = make_rule(self.db, self.account, name='Labels', position=1,
                         actions=[make_action('LABEL', label='Work', label_id='Label_old')])
        other_account = make_account(self.db, email='other@example.com')
        other_rule = make_rule(self.db, other_account, name='Other',
                               actions=[make_action('LABEL', label='Work', label_id='Label_old')])

        self.assertEqual(self.repo.update_label_references(self.account.id, 'Label_old', 'Label_new'), 1)
        self.db.refresh(rule.actions[0])
        self.db.refresh(other_rule.actions[0])
        self.assertEqual(rule.actions[0].label_id, 'Label_new')
        self.assertEqual(other_rule.actions[0].label_id, 'Label_old')

    def test_rate_limit_keeps_later_value(self):
        later = NOW + timedelta(minutes=10)
        self.repo.set_rate_limit_state(self.account.id, 'google', later, source='send')
        state = self.repo.set_rate_limit_state(self.account.id, 'google', NOW + timedelta(minutes=1))
        self.assertEqual(state.retry_at, later)
        self.assertEqual(state.source, 'send')

        even_later = NOW + timedelta(hours=1)
        self.assertEqual(self.repo.set_rate_limit_state(self.account.id, 'google', even_later).retry_at,
                         even_later)


if __name__ == '__main__':
    unittest.main()
