"""
End-to-end journey scenarios against the in-memory database.

The outbound gateways are mocks; everything else (scheduler, executor,
routing, call completion) is the real registry wiring.
"""

from datetime import datetime, timedelta

import pytest

from conftest import MONDAY_10AM, create_test_contact, new_id
from crm_database import JourneyContact, JourneyNodeExecution
from services.journey_exceptions import DuplicateEnrollmentError


def executions_for(db_session, journey_contact):
    return db_session.query(JourneyNodeExecution)\
        .filter_by(journey_contact_id=journey_contact.id)\
        .order_by(JourneyNodeExecution.created_at).all()


def execution_for_node(db_session, journey_contact, node):
    return db_session.query(JourneyNodeExecution)\
        .filter_by(journey_contact_id=journey_contact.id, node_id=node.id).one()


@pytest.fixture
def journey_service(services, gateways):
    return services.get('journey')


class TestSmsDelayCallJourney:

    def test_delay_schedules_call_for_next_day(self, journey_service, services, db_session, journey,
                                               contact, make_node, gateways):
        sms_id, delay_id, call_id = new_id(), new_id(), new_id()
        sms = make_node(journey, 'SEND_SMS', node_id=sms_id, config={'messageContent': 'Thanks for reaching out'},
                        connections={'nextNodeId': delay_id}, minute=1)
        delay = make_node(journey, 'TIME_DELAY', node_id=delay_id, config={'delayValue': 1, 'delayUnit': 'DAYS'},
                          connections={'nextNodeId': call_id}, minute=2)
        call = make_node(journey, 'MAKE_CALL', node_id=call_id, config={'audioFile': 'intro.mp3'}, minute=3)

        journey_contact = journey_service.enroll_contact(journey.tenant_id, journey.id, contact.id,
                                                         now=MONDAY_10AM)

        sms_execution = execution_for_node(db_session, journey_contact, sms)
        assert sms_execution.status == 'COMPLETED'
        gateways.messaging.send_sms.assert_called_once()

        delay_execution = execution_for_node(db_session, journey_contact, delay)
        assert delay_execution.scheduled_at == datetime(2024, 1, 1, 10, 0)
        assert delay_execution.status == 'COMPLETED'

        call_execution = execution_for_node(db_session, journey_contact, call)
        offset = services.get('journey_scheduler').spread_offset_minutes(journey_contact.id)
        assert call_execution.status == 'PENDING'
        assert call_execution.scheduled_at == datetime(2024, 1, 2, 10, 0) + timedelta(minutes=offset)
        assert 0 <= offset < 120
        assert journey_contact.current_node_id == call.id
        assert journey_contact.status == 'ACTIVE'
        gateways.telephony.place_call.assert_not_called()


class TestConditionBranching:

    @pytest.fixture
    def branching_journey(self, journey, make_node):
        sold_id, other_id = new_id(), new_id()
        make_node(journey, 'CONDITION', minute=1, connections={
            'branches': [{'field': 'contact.leadStatus', 'operator': 'equals', 'value': 'SOLD',
                          'nextNodeId': sold_id}],
            'defaultBranch': {'nextNodeId': other_id},
        })
        sold = make_node(journey, 'SEND_SMS', node_id=sold_id, config={'messageContent': 'Welcome aboard'},
                         minute=2)
        other = make_node(journey, 'SEND_SMS', node_id=other_id, config={'messageContent': 'Still interested?'},
                          minute=3)
        return journey, sold, other

    @pytest.mark.parametrize("lead_status,expected", [('SOLD', 'sold'), ('NEW', 'other'), (None, 'other')])
    def test_routes_by_lead_status(self, journey_service, db_session, branching_journey, make_contact,
                                   lead_status, expected):
        journey, sold, other = branching_journey
        contact = make_contact(lead_status=lead_status)

        journey_contact = journey_service.enroll_contact(journey.tenant_id, journey.id, contact.id,
                                                         now=MONDAY_10AM)

        target = sold if expected == 'sold' else other
        skipped = other if expected == 'sold' else sold
        executed_nodes = {e.node_id for e in executions_for(db_session, journey_contact)}
        assert target.id in executed_nodes
        assert skipped.id not in executed_nodes
        assert journey_contact.current_node_id == target.id


class TestCallCompletion:

    def test_answered_call_resumes_journey(self, journey_service, services, db_session, journey, contact,
                                           make_node, gateways):
        follow_up_id = new_id()
        call = make_node(journey, 'MAKE_CALL', config={'audioFile': 'intro.mp3'},
                         connections={'nextNodeId': follow_up_id}, minute=1)
        follow_up = make_node(journey, 'SEND_SMS', node_id=follow_up_id,
                              config={'messageContent': 'Great talking to you'}, minute=2)

        journey_contact = journey_service.enroll_contact(journey.tenant_id, journey.id, contact.id,
                                                         now=MONDAY_10AM)

        call_execution = execution_for_node(db_session, journey_contact, call)
        assert call_execution.status == 'EXECUTING'
        assert call_execution.call_correlation_id == 'CALL-1'
        assert call_execution.result['waitingForCallCompletion'] is True
        gateways.messaging.send_sms.assert_not_called()

        result = services.get('call_completion').handle_call_completion(
            'CALL-1', 'ANSWERED', 'ANSWERED', now=MONDAY_10AM + timedelta(seconds=10)
        )

        assert result.is_success
        assert result.data['outcome'] == 'answered'
        assert call_execution.status == 'COMPLETED'
        assert call_execution.result['outcome'] == 'answered'
        assert call_execution.result['waitingForCallCompletion'] is False
        assert journey_contact.current_node_id == follow_up.id
        assert execution_for_node(db_session, journey_contact, follow_up).status == 'COMPLETED'

    def test_second_callback_finds_nothing(self, journey_service, services, journey, contact, make_node):
        make_node(journey, 'MAKE_CALL', config={'audioFile': 'intro.mp3'})
        journey_service.enroll_contact(journey.tenant_id, journey.id, contact.id, now=MONDAY_10AM)
        completion = services.get('call_completion')
        later = MONDAY_10AM + timedelta(seconds=30)

        assert completion.handle_call_completion('CALL-1', 'COMPLETED', 'BUSY', now=later).is_success
        assert completion.handle_call_completion('CALL-1', 'COMPLETED', 'BUSY', now=later).code == \
            'EXECUTION_NOT_FOUND'


class TestDuplicateEnrollment:

    def test_second_enrollment_is_rejected(self, journey_service, db_session, journey, contact, make_node):
        make_node(journey, 'TIME_DELAY', config={'delayValue': 2, 'delayUnit': 'HOURS'})

        journey_service.enroll_contact(journey.tenant_id, journey.id, contact.id, now=MONDAY_10AM)
        with pytest.raises(DuplicateEnrollmentError):
            journey_service.enroll_contact(journey.tenant_id, journey.id, contact.id, now=MONDAY_10AM)

        assert db_session.query(JourneyContact).filter_by(journey_id=journey.id).count() == 1


class TestMalformedEdge:

    def test_malformed_target_fails_and_pauses(self, journey_service, db_session, journey, contact,
                                               make_node, gateways):
        sms = make_node(journey, 'SEND_SMS', config={'messageContent': 'Hi'},
                        connections={'nextNodeId': 'SEND_SMS-1700000000000'})

        journey_contact = journey_service.enroll_contact(journey.tenant_id, journey.id, contact.id,
                                                         now=MONDAY_10AM)

        [execution] = executions_for(db_session, journey_contact)
        assert execution.node_id == sms.id
        assert execution.status == 'FAILED'
        assert 'SEND_SMS-1700000000000' in execution.result['error']
        assert journey_contact.status == 'PAUSED'
        assert journey_contact.current_node_id == sms.id
        gateways.messaging.send_sms.assert_called_once()


class TestLoadSpreading:

    def test_next_day_executions_spread_across_window(self, services, gateways, db_session, tenant,
                                                      journey, make_node):
        delay = make_node(journey, 'TIME_DELAY', config={'delayValue': 1, 'delayUnit': 'DAYS'}, minute=1)
        follow_up = make_node(journey, 'SEND_SMS', config={'messageContent': 'Day two'}, minute=2)

        contacts = [create_test_contact(tenant_id=tenant.id, phone=f"+1555{i:07d}") for i in range(1000)]
        db_session.add_all(contacts)
        db_session.flush()
        journey_contacts = [
            JourneyContact(tenant_id=tenant.id, journey_id=journey.id, contact_id=c.id, status='ACTIVE',
                           enrolled_at=datetime(2024, 1, 1, 10, 0), created_at=datetime(2024, 1, 1, 10, 0))
            for c in contacts
        ]
        db_session.add_all(journey_contacts)
        db_session.commit()

        scheduler = services.get('journey_scheduler')
        scheduled = {
            jc.id: scheduler.schedule_node(follow_up, jc, MONDAY_10AM, previous_node=delay).scheduled_at
            for jc in journey_contacts
        }

        window_start = MONDAY_10AM + timedelta(days=1)
        assert all(window_start <= at < window_start + timedelta(minutes=120) for at in scheduled.values())
        assert len(set(scheduled.values())) > 60

        # Same contact, same slot
        for jc in journey_contacts[:20]:
            offset = scheduler.spread_offset_minutes(jc.id)
            assert scheduled[jc.id] == window_start + timedelta(minutes=offset)


class TestNodeErrors:

    @staticmethod
    def assert_not_stranded(db_session, journey_contact):
        open_executions = [e for e in executions_for(db_session, journey_contact)
                           if e.status in ('PENDING', 'EXECUTING')]
        assert journey_contact.status != 'ACTIVE' or open_executions

    def test_gateway_crash_follows_failed_edge(self, journey_service, db_session, journey, contact,
                                               make_node, gateways):
        call_id = new_id()
        sms = make_node(journey, 'SEND_SMS', config={'messageContent': 'Hi'},
                        connections={'outputs': {'failed': call_id}}, minute=1)
        call = make_node(journey, 'MAKE_CALL', node_id=call_id, config={'audioFile': 'intro.mp3'}, minute=2)
        gateways.messaging.send_sms.side_effect = RuntimeError("socket closed")

        journey_contact = journey_service.enroll_contact(journey.tenant_id, journey.id, contact.id,
                                                         now=MONDAY_10AM)

        sms_execution = execution_for_node(db_session, journey_contact, sms)
        assert sms_execution.status == 'FAILED'
        assert sms_execution.result['action'] == 'UNEXPECTED_ERROR'
        assert execution_for_node(db_session, journey_contact, call).status == 'EXECUTING'
        assert journey_contact.status == 'ACTIVE'
        assert journey_contact.current_node_id == call.id
        self.assert_not_stranded(db_session, journey_contact)

    def test_gateway_crash_without_failed_edge_completes(self, journey_service, db_session, journey,
                                                         contact, make_node, gateways):
        make_node(journey, 'SEND_SMS', config={'messageContent': 'Hi'}, connections={'nextNodeId': new_id()})
        gateways.messaging.send_sms.side_effect = RuntimeError("socket closed")

        journey_contact = journey_service.enroll_contact(journey.tenant_id, journey.id, contact.id,
                                                         now=MONDAY_10AM)

        assert journey_contact.status == 'COMPLETED'
        self.assert_not_stranded(db_session, journey_contact)

    def test_non_numeric_webhook_retries_pauses_contact(self, journey_service, db_session, journey,
                                                        contact, make_node, mocker):
        http = mocker.patch('services.journey_webhook_client.requests.request')
        follow_up_id = new_id()
        webhook = make_node(journey, 'EXECUTE_WEBHOOK', minute=1,
                            config={'webhookUrl': 'https://hooks.example.com', 'webhookRetries': 'three'},
                            connections={'nextNodeId': follow_up_id})
        make_node(journey, 'SEND_SMS', node_id=follow_up_id, config={'messageContent': 'Hi'}, minute=2)

        journey_contact = journey_service.enroll_contact(journey.tenant_id, journey.id, contact.id,
                                                         now=MONDAY_10AM)

        [execution] = executions_for(db_session, journey_contact)
        assert execution.node_id == webhook.id
        assert execution.status == 'FAILED'
        assert 'webhookRetries' in execution.result['error']
        assert journey_contact.status == 'PAUSED'
        assert journey_contact.current_node_id == webhook.id
        http.assert_not_called()
