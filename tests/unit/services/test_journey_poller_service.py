"""
Unit tests for JourneyPollerService - batching, gate decisions, reschedule
queue and the stuck-call sweep
"""

from datetime import datetime, timedelta, timezone
from itertools import chain, repeat
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from repositories.journey_contact_repository import JourneyContactRepository
from repositories.journey_node_execution_repository import JourneyNodeExecutionRepository
from services.enums import GateAction
from services.execution_rules_service import ExecutionRulesService, GateDecision
from services.journey_execution_service import JourneyExecutionService
from services.journey_scheduler_service import JourneySchedulerService
from services.journey_poller_service import JourneyPollerService
from services.journey_settings import JourneySettings

NOW = datetime(2024, 1, 1, 23, 0, tzinfo=timezone.utc)
TOMORROW_8AM = datetime(2024, 1, 2, 8, 0, tzinfo=timezone.utc)


def make_execution(execution_id, node_type='SEND_SMS', day=None):
    config = {'day': day} if day else {}
    node = SimpleNamespace(id=f"node-{execution_id}", type=node_type, config=config)
    return SimpleNamespace(id=execution_id, tenant_id='tenant-1', journey_id='journey-1',
                           journey_contact_id='jc-1', node_id=node.id, node=node, status='PENDING',
                           result={}, scheduled_at=datetime(2024, 1, 1, 22, 0), executed_at=None,
                           completed_at=None)


class TestJourneyPollerService:

    @pytest.fixture
    def execution_repository(self):
        repo = Mock(spec=JourneyNodeExecutionRepository)
        repo.count_overdue_pending.return_value = 0
        repo.claim_due.return_value = []
        repo.find_stuck_calls.return_value = []
        repo.bulk_reschedule.side_effect = lambda ids, new_time: len(ids)
        return repo

    @pytest.fixture
    def journey_contact(self):
        return SimpleNamespace(id='jc-1', journey_id='journey-1', contact=Mock(id=7), status='ACTIVE',
                               current_node_id=None)

    @pytest.fixture
    def journey_contact_repository(self, journey_contact):
        repo = Mock(spec=JourneyContactRepository)
        repo.get_by_id.return_value = journey_contact
        return repo

    @pytest.fixture
    def rules_service(self):
        service = Mock(spec=ExecutionRulesService)
        service.check_execution.return_value = GateDecision.proceed()
        return service

    @pytest.fixture
    def execution_service(self):
        service = Mock(spec=JourneyExecutionService)
        service.run_execution.return_value = 'COMPLETED'
        service.scheduler = Mock(spec=JourneySchedulerService)
        service.scheduler.spread_offset_minutes.return_value = 17
        return service

    @pytest.fixture
    def poller(self, execution_repository, journey_contact_repository, rules_service, execution_service):
        return JourneyPollerService(execution_repository, journey_contact_repository, rules_service,
                                    execution_service, JourneySettings(reschedule_queue_max=2),
                                    clock=lambda: 0.0)

    def feed(self, execution_repository, delays=(), others=()):
        """Return each batch once, then nothing"""
        batches = {'delay': [list(delays), []], 'other': [list(others), []]}

        def claim_due(now, limit, include_types=None, exclude_types=None, exclude_ids=None):
            queue = batches['delay'] if include_types else batches['other']
            return queue.pop(0) if queue else []
        execution_repository.claim_due.side_effect = claim_due

    def test_time_delay_batch_runs_first(self, poller, execution_repository, execution_service):
        delay = make_execution('e-delay', 'TIME_DELAY')
        sms = make_execution('e-sms')
        self.feed(execution_repository, delays=[delay], others=[sms])

        stats = poller.process_pending_executions(NOW)

        ran = [call[0][0].id for call in execution_service.run_execution.call_args_list]
        assert ran == ['e-delay', 'e-sms']
        assert stats['processed'] == 2
        assert stats['skipped_cycle'] is False

    def test_claimed_execution_is_marked_executing(self, poller, execution_repository):
        sms = make_execution('e-sms')
        self.feed(execution_repository, others=[sms])

        poller.process_pending_executions(NOW)

        assert sms.status == 'EXECUTING'
        assert sms.executed_at == datetime(2024, 1, 1, 23, 0)

    def test_failed_status_is_counted(self, poller, execution_repository, execution_service):
        execution_service.run_execution.return_value = 'FAILED'
        self.feed(execution_repository, others=[make_execution('e-1')])

        stats = poller.process_pending_executions(NOW)

        assert stats['failed'] == 1
        assert stats['processed'] == 0

    def test_unexpected_error_marks_execution_failed(self, poller, execution_repository, execution_service):
        execution_service.run_execution.side_effect = RuntimeError("db went away")
        execution = make_execution('e-1')
        self.feed(execution_repository, others=[execution, make_execution('e-2')])

        stats = poller.process_pending_executions(NOW)

        assert stats['failed'] == 2
        execution_repository.rollback.assert_called()
        _, kwargs = execution_repository.update.call_args_list[0]
        assert kwargs['status'] == 'FAILED'
        assert kwargs['result']['error'] == 'db went away'

    def test_overlapping_cycle_is_skipped(self, poller):
        poller._lock.acquire()
        try:
            stats = poller.process_pending_executions(NOW)
        finally:
            poller._lock.release()

        assert stats['skipped_cycle'] is True

    def test_time_budget_stops_cycle(self, execution_repository, journey_contact_repository,
                                     rules_service, execution_service):
        ticks = chain([0.0] * 4, repeat(50.0))
        poller = JourneyPollerService(execution_repository, journey_contact_repository, rules_service,
                                      execution_service, JourneySettings(max_processing_seconds=45),
                                      clock=lambda: next(ticks))
        self.feed(execution_repository, others=[make_execution('e-1'), make_execution('e-2')])

        stats = poller.process_pending_executions(NOW)

        assert stats['budget_exhausted'] is True
        assert execution_service.run_execution.call_count == 1

    def test_reschedule_decision_is_queued(self, poller, execution_repository, rules_service,
                                           execution_service):
        rules_service.check_execution.return_value = GateDecision(
            should_execute=False, action=GateAction.RESCHEDULE, reason='after hours',
            new_scheduled_time=TOMORROW_8AM
        )
        execution = make_execution('e-1')
        self.feed(execution_repository, others=[execution])
        execution_repository.find_by.return_value = [execution]

        stats = poller.process_pending_executions(NOW)

        assert stats['rescheduled'] == 1
        assert stats['flushed'] == 1
        execution_service.run_execution.assert_not_called()
        execution_repository.bulk_reschedule.assert_called_once_with(
            ['e-1'], TOMORROW_8AM + timedelta(minutes=17)
        )

    def test_queued_reschedule_does_not_hide_later_rows(self, execution_repository, journey_contact_repository,
                                                         rules_service, execution_service):
        rows = [make_execution('e-1'), make_execution('e-2'), make_execution('e-3')]

        def claim_due(now, limit, include_types=None, exclude_types=None, exclude_ids=None):
            if include_types:
                return []
            return [r for r in rows if r.status == 'PENDING' and r.id not in (exclude_ids or ())][:limit]
        execution_repository.claim_due.side_effect = claim_due
        execution_repository.find_by.return_value = [rows[0]]
        rules_service.check_execution.side_effect = [
            GateDecision(should_execute=False, action=GateAction.RESCHEDULE, reason='after hours',
                         new_scheduled_time=TOMORROW_8AM),
            GateDecision.proceed(),
            GateDecision.proceed(),
        ]
        poller = JourneyPollerService(execution_repository, journey_contact_repository, rules_service,
                                      execution_service, JourneySettings(batch_size=1), clock=lambda: 0.0)

        stats = poller.process_pending_executions(NOW)

        ran = [call[0][0].id for call in execution_service.run_execution.call_args_list]
        assert ran == ['e-2', 'e-3']
        assert stats['rescheduled'] == 1
        assert stats['processed'] == 2

    def test_later_day_reschedule_has_no_spread(self, poller, execution_repository):
        execution_repository.find_by.return_value = [make_execution('e-1', day=2),
                                                     make_execution('e-2', day=1)]
        poller.queue_reschedule('tenant-1', 'journey-1', 'jc-1', 2, TOMORROW_8AM)

        assert poller.flush_reschedules(NOW) == 1
        execution_repository.bulk_reschedule.assert_called_once_with(['e-1'], TOMORROW_8AM)
        assert poller.queued_reschedules == 0

    def test_queue_deduplicates_and_caps(self, poller):
        assert poller.queue_reschedule('t', 'j', 'jc-1', 1, TOMORROW_8AM) is True
        assert poller.queue_reschedule('t', 'j', 'jc-1', 1, TOMORROW_8AM) is True
        assert poller.queue_reschedule('t', 'j', 'jc-2', 1, TOMORROW_8AM) is True
        assert poller.queue_reschedule('t', 'j', 'jc-3', 1, TOMORROW_8AM) is False
        assert poller.queued_reschedules == 2

    def test_full_queue_reschedules_directly(self, poller, execution_repository, journey_contact):
        poller.queue_reschedule('t', 'j', 'jc-8', 1, TOMORROW_8AM)
        poller.queue_reschedule('t', 'j', 'jc-9', 1, TOMORROW_8AM)
        execution = make_execution('e-1')
        decision = GateDecision(should_execute=False, action=GateAction.RESCHEDULE,
                                new_scheduled_time=TOMORROW_8AM)

        poller.apply_gate_decision(execution, execution.node, journey_contact, decision, NOW)

        execution_repository.bulk_reschedule.assert_called_once_with(['e-1'], TOMORROW_8AM)

    def test_skip_decision(self, poller, journey_contact):
        execution = make_execution('e-1')
        decision = GateDecision(should_execute=False, action=GateAction.SKIP, reason='duplicate')

        poller.apply_gate_decision(execution, execution.node, journey_contact, decision, NOW)

        assert execution.status == 'SKIPPED'
        assert execution.result['action'] == 'SKIPPED'
        assert execution.result['reason'] == 'duplicate'

    def test_pause_decision(self, poller, execution_service, journey_contact):
        execution = make_execution('e-1')
        decision = GateDecision(should_execute=False, action=GateAction.PAUSE, reason='after hours')

        poller.apply_gate_decision(execution, execution.node, journey_contact, decision, NOW)

        assert execution.status == 'SKIPPED'
        execution_service.pause_contact.assert_called_once_with(journey_contact, 'node-e-1', NOW,
                                                                'after hours')

    def test_default_event_routes_to_configured_node(self, poller, execution_service, journey_contact):
        target_id = '66666666-6666-4666-8666-666666666666'
        target = SimpleNamespace(id=target_id)
        execution_service.get_node.return_value = target
        execution = make_execution('e-1')
        decision = GateDecision(should_execute=False, action=GateAction.DEFAULT_EVENT,
                                default_event_node_id=target_id)

        poller.apply_gate_decision(execution, execution.node, journey_contact, decision, NOW)

        assert execution.result['defaultEventNodeId'] == target_id
        assert journey_contact.current_node_id == target_id
        execution_service.scheduler.schedule_node.assert_called_once_with(target, journey_contact, NOW)

    def test_default_event_with_bad_node_id_only_skips(self, poller, execution_service, journey_contact):
        execution = make_execution('e-1')
        decision = GateDecision(should_execute=False, action=GateAction.DEFAULT_EVENT,
                                default_event_node_id='after-hours-node')

        poller.apply_gate_decision(execution, execution.node, journey_contact, decision, NOW)

        assert execution.status == 'SKIPPED'
        execution_service.scheduler.schedule_node.assert_not_called()

    def test_timeout_stuck_calls(self, poller, execution_repository, execution_service):
        stuck = [make_execution('e-1', 'MAKE_CALL'), make_execution('e-2', 'MAKE_CALL')]
        execution_repository.find_stuck_calls.return_value = stuck
        execution_service.time_out_call_execution.side_effect = [None, RuntimeError("boom")]

        result = poller.timeout_stuck_call_executions(NOW)

        assert result == {'timed_out': 1, 'failed': 1}
        execution_repository.find_stuck_calls.assert_called_once_with(NOW - timedelta(minutes=5))
