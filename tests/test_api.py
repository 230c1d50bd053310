"""
HTTP surface tests through FastAPI's TestClient
"""
import unittest
from datetime import timedelta
from unittest.mock import MagicMock

from fastapi.testclient import TestClient
from support import NOW, FakeClock, make_account, make_message, make_provider, make_rule

from inbox_rules.actions.executor import ActionExecutor
from inbox_rules.actions.webhook import WebhookClient
from inbox_rules.api import create_app
from inbox_rules.config import Settings
from inbox_rules.database.connection import create_session_factory
from inbox_rules.database.models import ExecutedRuleStatus, ScheduledActionStatus
from inbox_rules.database.repository import Repository
from inbox_rules.scheduler import DelayedActionScheduler


class ApiTestCase(unittest.TestCase):
    def setUp(self):
        self.session_factory = create_session_factory('sqlite://')
        self.db = self.session_factory()
        self.repo = Repository(self.db)
        account = make_account(self.db)
        rule = make_rule(self.db, account, from_pattern='sender@example.com')
        executed_rule, _ = self.repo.create_executed_rule(
            account.id, 'msg-1', 'msg-1', rule.id, ExecutedRuleStatus.PENDING, 'Matched', True,
            [{'type': 'ARCHIVE', 'delay_in_minutes': 30}],
        )
        self.scheduled_id = self.repo.create_scheduled_action(
            executed_rule, executed_rule.action_items[0], NOW + timedelta(minutes=30)).id

        self.provider = make_provider([make_message()])
        self.clock = FakeClock(NOW + timedelta(hours=1))
        self.client = self.make_client(Settings(cron_secret='s3cret'))

    def tearDown(self):
        self.db.close()

    def make_client(self, settings):
        def scheduler_factory(repo):
            webhook = MagicMock(spec=WebhookClient)
            return DelayedActionScheduler(
                repo,
                executor_factory=lambda account: ActionExecutor(repo, self.provider, webhook=webhook,
                                                                sleep=MagicMock(), clock=self.clock),
                webhook=webhook,
                clock=self.clock,
            )
        app = create_app(settings=settings, session_factory=self.session_factory,
                         scheduler_factory=scheduler_factory)
        return TestClient(app)

    def scheduled_status(self):
        db = self.session_factory()
        try:
            return Repository(db).get_scheduled_action(self.scheduled_id).status
        finally:
            db.close()


class TestSweepEndpoint(ApiTestCase):
    def test_requires_configured_secret(self):
        client = self.make_client(Settings())
        response = client.post('/api/scheduled-actions/sweep', headers={'Authorization': 'Bearer anything'})
        self.assertEqual(response.status_code, 503)

    def test_rejects_bad_secret(self):
        for headers in ({}, {'Authorization': 'Bearer wrong'}, {'Authorization': 's3cret'}):
            response = self.client.post('/api/scheduled-actions/sweep', headers=headers)
            self.assertEqual(response.status_code, 401, headers)
        self.provider.archive_thread.assert_not_called()

    def test_sweep_runs_due_actions(self):
        response = self.client.post('/api/scheduled-actions/sweep', headers={'Authorization': 'Bearer s3cret'})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'processed': 1, 'failed': 0, 'pending': 0})
        self.provider.archive_thread.assert_called_once_with('msg-1')
        self.assertEqual(self.scheduled_status(), ScheduledActionStatus.COMPLETED)


class TestTransitions(ApiTestCase):
    def test_cancel(self):
        response = self.client.post(f'/api/scheduled-actions/{self.scheduled_id}/cancel')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['status'], ScheduledActionStatus.CANCELLED)

        again = self.client.post(f'/api/scheduled-actions/{self.scheduled_id}/cancel')
        self.assertEqual(again.status_code, 409)
        self.assertIn('CANCELLED', again.json()['detail'])

    def test_unknown_id(self):
        self.assertEqual(self.client.post('/api/scheduled-actions/999/cancel').status_code, 404)
        self.assertEqual(self.client.post('/api/scheduled-actions/999/retry').status_code, 404)

    def test_retry_only_failed(self):
        self.assertEqual(self.client.post(f'/api/scheduled-actions/{self.scheduled_id}/retry').status_code, 409)

        self.repo.claim_scheduled_action(self.scheduled_id, NOW)
        self.repo.finish_scheduled_action(self.scheduled_id, ScheduledActionStatus.FAILED, NOW, 'boom')

        response = self.client.post(f'/api/scheduled-actions/{self.scheduled_id}/retry')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {'id': self.scheduled_id, 'status': 'PENDING', 'retry_count': 1})


if __name__ == '__main__':
    unittest.main()
