"""
Unit tests for JourneyExecutionService - status transitions and routing
"""

from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from repositories.journey_contact_repository import JourneyContactRepository
from repositories.journey_node_execution_repository import JourneyNodeExecutionRepository
from repositories.journey_node_repository import JourneyNodeRepository
from repositories.journey_repository import JourneyRepository
from services.common.result import NodeOutcome
from services.journey_exceptions import JourneyConfigurationError
from services.journey_execution_service import JourneyExecutionService, describe_outcome
from services.journey_node_executor import JourneyNodeExecutor
from services.journey_scheduler_service import JourneySchedulerService, ScheduleResult

NOW = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)
SMS_ID = '11111111-1111-4111-8111-111111111111'
DELAY_ID = '22222222-2222-4222-8222-222222222222'
CALL_ID = '33333333-3333-4333-8333-333333333333'


def node_row(node_id, node_type, connections=None, name=None):
    return SimpleNamespace(id=node_id, journey_id='journey-1', tenant_id='tenant-1', type=node_type,
                           name=name or node_type, config={}, connections=connections or {},
                           created_at=None)


def make_execution(node_id=SMS_ID, status='PENDING', **kwargs):
    fields = dict(id='exec-1', journey_id='journey-1', journey_contact_id='jc-1', node_id=node_id,
                  status=status, result={}, executed_at=None, completed_at=None,
                  awaiting_callback=False, call_correlation_id=None)
    fields.update(kwargs)
    return SimpleNamespace(**fields)


class TestJourneyExecutionService:

    @pytest.fixture
    def nodes(self):
        return {
            SMS_ID: node_row(SMS_ID, 'SEND_SMS', {'nextNodeId': DELAY_ID}),
            DELAY_ID: node_row(DELAY_ID, 'TIME_DELAY', {'nextNodeId': CALL_ID}),
            CALL_ID: node_row(CALL_ID, 'MAKE_CALL', {'outputs': {'answered': SMS_ID}}),
        }

    @pytest.fixture
    def journey_contact(self):
        return SimpleNamespace(id='jc-1', journey_id='journey-1', tenant_id='tenant-1',
                               status='ACTIVE', current_node_id=SMS_ID, completed_at=None,
                               paused_at=None, removed_at=None)

    @pytest.fixture
    def repos(self, nodes, journey_contact):
        r = Mock()
        r.journey = Mock(spec=JourneyRepository)
        r.node = Mock(spec=JourneyNodeRepository)
        r.node.get_in_journey.side_effect = lambda node_id, journey_id: nodes.get(node_id)
        r.contact = Mock(spec=JourneyContactRepository)
        r.contact.get_by_id.return_value = journey_contact
        r.execution = Mock(spec=JourneyNodeExecutionRepository)
        r.execution.recent_for_node.return_value = []
        r.execution.latest_executed_for_contact.return_value = None
        return r

    @pytest.fixture
    def executor(self):
        return Mock(spec=JourneyNodeExecutor)

    @pytest.fixture
    def scheduler(self):
        scheduler = Mock(spec=JourneySchedulerService)
        scheduler.schedule_node.return_value = ScheduleResult(Mock(), created=True, due=False)
        return scheduler

    @pytest.fixture
    def service(self, repos, executor, scheduler):
        return JourneyExecutionService(repos.journey, repos.node, repos.contact, repos.execution,
                                       executor, scheduler)

    def test_closed_execution_is_left_alone(self, service, executor):
        execution = make_execution(status='COMPLETED')

        assert service.run_execution(execution, NOW) == 'COMPLETED'
        executor.execute.assert_not_called()

    def test_missing_node_fails_execution(self, service, executor):
        execution = make_execution(node_id='44444444-4444-4444-8444-444444444444')

        assert service.run_execution(execution, NOW) == 'FAILED'
        assert execution.result['error'] == 'Journey contact or node not found'
        executor.execute.assert_not_called()

    def test_inactive_contact_skips(self, service, executor, journey_contact):
        journey_contact.status = 'PAUSED'
        execution = make_execution()

        assert service.run_execution(execution, NOW) == 'SKIPPED'
        assert execution.result['action'] == 'SKIPPED'
        executor.execute.assert_not_called()

    def test_success_completes_and_schedules_next(self, service, executor, scheduler, journey_contact,
                                                  nodes):
        executor.execute.return_value = NodeOutcome.succeeded('success', 'SMS_SENT', messageSid='SM1')
        execution = make_execution()

        status = service.run_execution(execution, NOW)

        assert status == 'COMPLETED'
        assert execution.executed_at == datetime(2024, 1, 1, 10, 0)
        assert execution.result['outcomeDetails'] == 'SMS sent successfully (SID: SM1)'
        assert journey_contact.current_node_id == DELAY_ID
        args, kwargs = scheduler.schedule_node.call_args
        assert args[0].id == DELAY_ID
        assert kwargs['previous_node'].id == SMS_ID

    def test_due_successor_runs_inline(self, service, executor, scheduler):
        """A zero-delay successor is executed in the same call"""
        follow_up = make_execution(node_id=DELAY_ID, id='exec-2')
        scheduler.schedule_node.side_effect = [ScheduleResult(follow_up, created=True, due=True),
                                               ScheduleResult(Mock(), created=True, due=False)]
        executor.execute.side_effect = [
            NodeOutcome.succeeded('success', 'SMS_SENT'),
            NodeOutcome.succeeded('completed', 'DELAY_EXECUTED', delayValue=1, delayUnit='DAYS'),
        ]

        service.run_execution(make_execution(), NOW)

        assert follow_up.status == 'COMPLETED'
        assert follow_up.result['outcomeDetails'] == 'Delayed for 1 days'
        assert executor.execute.call_count == 2

    def test_failure_without_failed_edge_completes_journey(self, service, executor, journey_contact, nodes):
        nodes[SMS_ID] = node_row(SMS_ID, 'SEND_SMS')
        executor.execute.return_value = NodeOutcome.failed('SMS_FAILED', 'provider down')
        execution = make_execution()

        assert service.run_execution(execution, NOW) == 'FAILED'
        assert execution.result['success'] is False
        assert journey_contact.status == 'COMPLETED'

    def test_suspended_call_waits_for_callback(self, service, executor, scheduler):
        executor.execute.return_value = NodeOutcome.suspended('CALL_MADE', callUniqueId='CALL-7')
        execution = make_execution(node_id=CALL_ID)

        status = service.run_execution(execution, NOW)

        assert status == 'EXECUTING'
        assert execution.awaiting_callback is True
        assert execution.call_correlation_id == 'CALL-7'
        scheduler.schedule_node.assert_not_called()

    def test_configuration_error_pauses_contact(self, service, executor, repos, journey_contact):
        executor.execute.side_effect = JourneyConfigurationError("SEND_SMS node has no message content")
        execution = make_execution()

        assert service.run_execution(execution, NOW) == 'FAILED'
        assert journey_contact.status == 'PAUSED'
        assert journey_contact.current_node_id == SMS_ID
        repos.execution.rollback.assert_called_once()

    def test_unexpected_error_follows_failed_edge(self, service, executor, scheduler, journey_contact,
                                                  nodes):
        nodes[SMS_ID] = node_row(SMS_ID, 'SEND_SMS', {'nextNodeId': CALL_ID, 'outputs': {'failed': DELAY_ID}})
        executor.execute.side_effect = RuntimeError("boom")
        execution = make_execution()

        assert service.run_execution(execution, NOW) == 'FAILED'
        assert execution.result['error'] == 'boom'
        assert execution.result['action'] == 'UNEXPECTED_ERROR'
        assert execution.result['outcomeDetails'] == 'Execution failed: boom'
        assert journey_contact.status == 'ACTIVE'
        assert journey_contact.current_node_id == DELAY_ID
        assert scheduler.schedule_node.call_args[0][0].id == DELAY_ID

    def test_unexpected_error_without_failed_edge_completes_journey(self, service, executor, scheduler,
                                                                    journey_contact):
        executor.execute.side_effect = RuntimeError("boom")

        assert service.run_execution(make_execution(), NOW) == 'FAILED'
        assert journey_contact.status == 'COMPLETED'
        scheduler.schedule_node.assert_not_called()

    def test_loop_is_detected(self, service, executor, repos, journey_contact):
        repos.execution.recent_for_node.return_value = [
            SimpleNamespace(id='exec-0', executed_at=datetime(2024, 1, 1, 9, 59, 58))
        ]
        execution = make_execution()

        assert service.run_execution(execution, NOW) == 'FAILED'
        assert execution.result['error'].startswith('Loop detected')
        assert journey_contact.status == 'PAUSED'
        executor.execute.assert_not_called()

    def test_old_run_of_same_node_is_not_a_loop(self, service, executor, repos):
        repos.execution.recent_for_node.return_value = [
            SimpleNamespace(id='exec-0', executed_at=datetime(2023, 12, 31, 10, 0))
        ]
        executor.execute.return_value = NodeOutcome.succeeded('success', 'SMS_SENT')

        assert service.run_execution(make_execution(), NOW) == 'COMPLETED'

    def test_previous_node_is_recorded(self, service, executor, repos):
        repos.execution.latest_executed_for_contact.return_value = SimpleNamespace(
            node_id=CALL_ID, result={'action': 'CALL_COMPLETED'}
        )
        executor.execute.return_value = NodeOutcome.succeeded('success', 'SMS_SENT')
        execution = make_execution()

        service.run_execution(execution, NOW)

        assert execution.result['previousNodeId'] == CALL_ID
        assert execution.result['previousAction'] == 'CALL_COMPLETED'

    def test_terminal_outcome_completes_contact(self, service, scheduler, journey_contact, nodes):
        outcome = NodeOutcome.succeeded('success', 'CONTACT_STATUS_UPDATED', terminal=True)

        service.route(nodes[SMS_ID], journey_contact, outcome, make_execution(), NOW)

        assert journey_contact.status == 'COMPLETED'
        scheduler.schedule_node.assert_not_called()

    def test_temporary_target_pauses_contact(self, service, scheduler, journey_contact):
        node = node_row(SMS_ID, 'SEND_SMS', {'nextNodeId': 'MAKE_CALL-1717171717171'})
        execution = make_execution()

        service.route(node, journey_contact, NodeOutcome.succeeded('success', 'SMS_SENT'), execution, NOW)

        assert execution.status == 'FAILED'
        assert 'Cannot resolve temporary node ID' in execution.result['error']
        assert journey_contact.status == 'PAUSED'
        scheduler.schedule_node.assert_not_called()

    def test_dangling_target_pauses_contact(self, service, journey_contact):
        node = node_row(SMS_ID, 'SEND_SMS', {'nextNodeId': '55555555-5555-4555-8555-555555555555'})
        execution = make_execution()

        service.route(node, journey_contact, NodeOutcome.succeeded('success', 'SMS_SENT'), execution, NOW)

        assert 'Target node not found' in execution.result['error']
        assert journey_contact.status == 'PAUSED'

    def test_remove_contact_membership(self, service, repos, journey_contact):
        repos.execution.cancel_open_for_contact.return_value = 2

        assert service.remove_contact_membership(journey_contact, NOW) == 2
        assert journey_contact.status == 'REMOVED'
        assert journey_contact.removed_at == datetime(2024, 1, 1, 10, 0)

    def test_pause_only_membership(self, service, journey_contact):
        service.remove_contact_membership(journey_contact, NOW, pause_only=True)
        assert journey_contact.status == 'PAUSED'

    def test_complete_call_execution(self, service):
        execution = make_execution(node_id=CALL_ID, status='EXECUTING', awaiting_callback=True)

        outcome = service.complete_call_execution(execution, 'no_answer', {'callStatus': 'NO_ANSWER'}, NOW)

        assert execution.status == 'COMPLETED'
        assert execution.awaiting_callback is False
        assert execution.result['success'] is True
        assert outcome.outcome == 'no_answer'
        assert outcome.action == 'CALL_COMPLETED'

    def test_failed_call_is_unsuccessful(self, service):
        execution = make_execution(node_id=CALL_ID, status='EXECUTING')
        service.complete_call_execution(execution, 'failed', {}, NOW)
        assert execution.result['success'] is False

    def test_time_out_call_execution_routes_failure(self, service, scheduler, nodes, journey_contact):
        nodes[CALL_ID] = node_row(CALL_ID, 'MAKE_CALL', {'outputs': {'failed': SMS_ID}})
        execution = make_execution(node_id=CALL_ID, status='EXECUTING', awaiting_callback=True,
                                   executed_at=NOW - timedelta(minutes=10))

        service.time_out_call_execution(execution, NOW)

        assert execution.status == 'FAILED'
        assert execution.result['callStatus'] == 'timeout'
        assert scheduler.schedule_node.call_args[0][0].id == SMS_ID

    def test_nodes_are_cached(self, service, repos):
        service.get_node(SMS_ID, 'journey-1')
        service.get_node(SMS_ID, 'journey-1')

        repos.node.get_in_journey.assert_called_once_with(SMS_ID, 'journey-1')


class TestDescribeOutcome:

    @pytest.mark.parametrize("node_type,outcome,expected", [
        ('MAKE_CALL', NodeOutcome.suspended('CALL_MADE', callUniqueId='C1'),
         'Call initiated successfully (Unique ID: C1)'),
        ('TIME_DELAY', NodeOutcome.succeeded('completed', 'DELAY_EXECUTED', delayAtTime='09:00'),
         'Delayed until 09:00'),
        ('EXECUTE_WEBHOOK', NodeOutcome.succeeded('success', 'WEBHOOK_EXECUTED', statusCode=204),
         'Webhook executed (HTTP 204)'),
        ('SEND_SMS', NodeOutcome.failed('SMS_FAILED', 'provider down'), 'Execution failed: provider down'),
    ])
    def test_descriptions(self, node_type, outcome, expected):
        assert describe_outcome(node_type, outcome) == expected
