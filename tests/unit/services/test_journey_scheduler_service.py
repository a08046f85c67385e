"""
Unit tests for JourneySchedulerService
"""

import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

import pytest

from repositories.activity_repository import ActivityRepository
from repositories.journey_node_execution_repository import JourneyNodeExecutionRepository
from repositories.tenant_repository import TenantRepository
from services.journey_graph import NodeSnapshot
from services.journey_scheduler_service import JourneySchedulerService
from services.journey_settings import JourneySettings
from utils.hashing_utils import string_hash32

NOW = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


def make_node(node_type='SEND_SMS', config=None):
    return NodeSnapshot(id=str(uuid.uuid4()), journey_id='journey-1', tenant_id='tenant-1',
                        type=node_type, name=None, config=config or {}, connections={})


class TestJourneySchedulerService:

    @pytest.fixture
    def execution_repository(self):
        repo = Mock(spec=JourneyNodeExecutionRepository)
        repo.find_open.return_value = None
        repo.create_pending.side_effect = lambda **kwargs: Mock(id='exec-1', **kwargs)
        return repo

    @pytest.fixture
    def tenant_repository(self):
        repo = Mock(spec=TenantRepository)
        repo.get_timezone.return_value = 'UTC'
        return repo

    @pytest.fixture
    def activity_repository(self):
        repo = Mock(spec=ActivityRepository)
        repo.find_recent_call_to_number.return_value = None
        return repo

    @pytest.fixture
    def scheduler(self, execution_repository, tenant_repository, activity_repository):
        return JourneySchedulerService(execution_repository, tenant_repository, activity_repository,
                                       JourneySettings(spread_window_minutes=120, call_cooldown_minutes=5))

    @pytest.fixture
    def journey_contact(self):
        return Mock(id='jc-1', tenant_id='tenant-1', journey_id='journey-1',
                    contact=Mock(timezone=None, phone='+15551234567'))

    # Spreading

    def test_spread_offset_is_stable_and_bounded(self, scheduler):
        offset = scheduler.spread_offset_minutes('jc-1')
        assert offset == abs(string_hash32('jc-1')) % 120
        assert 0 <= offset < 120
        assert scheduler.spread_offset_minutes('jc-1') == offset

    def test_no_spread_with_zero_window(self, execution_repository, tenant_repository, activity_repository):
        scheduler = JourneySchedulerService(execution_repository, tenant_repository, activity_repository,
                                           JourneySettings(spread_window_minutes=0))
        assert scheduler.spread_offset_minutes('jc-1') == 0

    def test_spread_only_applies_on_a_later_day(self, scheduler):
        same_day = NOW + timedelta(hours=2)
        next_day = NOW + timedelta(days=1)

        assert scheduler.apply_spread(same_day, 'jc-1', NOW) == same_day
        assert scheduler.apply_spread(next_day, 'jc-1', NOW) == \
            next_day + timedelta(minutes=scheduler.spread_offset_minutes('jc-1'))

    # Delays

    @pytest.mark.parametrize("value,unit,expected", [
        (30, 'MINUTES', timedelta(minutes=30)),
        (2, 'hours', timedelta(hours=2)),
        ('1.5', 'HOURS', timedelta(minutes=90)),
    ])
    def test_same_day_delays(self, scheduler, journey_contact, value, unit, expected):
        delay = make_node('TIME_DELAY', {'delayValue': value, 'delayUnit': unit})
        assert scheduler.compute_delay(delay, journey_contact, NOW) == NOW + expected

    def test_multi_day_delay_is_spread(self, scheduler, journey_contact):
        delay = make_node('TIME_DELAY', {'delayValue': 1, 'delayUnit': 'DAYS'})

        scheduled = scheduler.compute_delay(delay, journey_contact, NOW)

        offset = scheduler.spread_offset_minutes('jc-1')
        assert scheduled == NOW + timedelta(days=1, minutes=offset)

    def test_delay_at_time_later_today(self, scheduler, journey_contact):
        delay = make_node('TIME_DELAY', {'delayAtTime': '14:30'})
        assert scheduler.compute_delay(delay, journey_contact, NOW) == NOW.replace(hour=14, minute=30)

    def test_delay_at_time_already_passed_moves_to_tomorrow(self, scheduler, journey_contact):
        delay = make_node('TIME_DELAY', {'delayAtTime': '09:00'})

        scheduled = scheduler.compute_delay(delay, journey_contact, NOW)

        offset = scheduler.spread_offset_minutes('jc-1')
        assert scheduled == datetime(2024, 1, 2, 9, 0, tzinfo=timezone.utc) + timedelta(minutes=offset)

    def test_delay_at_time_uses_contact_timezone(self, scheduler, journey_contact):
        """09:00 in New York is 14:00 UTC in January"""
        journey_contact.contact.timezone = 'America/New_York'
        delay = make_node('TIME_DELAY', {'delayAtTime': '09:00'})

        assert scheduler.compute_delay(delay, journey_contact, NOW) == NOW.replace(hour=14)

    @pytest.mark.parametrize("config", [
        {'delayValue': 5, 'delayUnit': 'WEEKS'},
        {'delayValue': 'soon', 'delayUnit': 'MINUTES'},
        {'delayValue': -1, 'delayUnit': 'MINUTES'},
        {},
    ])
    def test_invalid_delay_means_no_delay(self, scheduler, journey_contact, config):
        assert scheduler.compute_delay(make_node('TIME_DELAY', config), journey_contact, NOW) == NOW

    # Scheduling

    def test_successor_of_time_delay_gets_delayed(self, scheduler, journey_contact):
        delay = make_node('TIME_DELAY', {'delayValue': 30, 'delayUnit': 'MINUTES'})
        sms = make_node('SEND_SMS')

        scheduled = scheduler.compute_scheduled_at(sms, journey_contact, NOW, previous_node=delay)

        assert scheduled == NOW + timedelta(minutes=30)

    def test_time_delay_node_itself_is_due_now(self, scheduler, journey_contact):
        delay = make_node('TIME_DELAY', {'delayValue': 30, 'delayUnit': 'MINUTES'})
        assert scheduler.compute_scheduled_at(delay, journey_contact, NOW, previous_node=make_node()) == NOW

    def test_call_spacing_defers_call(self, scheduler, activity_repository, journey_contact):
        activity_repository.find_recent_call_to_number.return_value = Mock(
            created_at=datetime(2024, 1, 1, 9, 58)
        )

        scheduled = scheduler.compute_scheduled_at(make_node('MAKE_CALL'), journey_contact, NOW)

        assert scheduled == datetime(2024, 1, 1, 10, 3, tzinfo=timezone.utc)

    def test_schedule_node_creates_pending_execution(self, scheduler, execution_repository, journey_contact):
        node = make_node()

        result = scheduler.schedule_node(node, journey_contact, NOW)

        assert result.created is True
        assert result.due is True
        execution_repository.create_pending.assert_called_once_with(
            tenant_id='tenant-1', journey_id='journey-1', node_id=node.id,
            journey_contact_id='jc-1', scheduled_at=NOW
        )

    def test_schedule_node_is_idempotent(self, scheduler, execution_repository, journey_contact):
        existing = Mock(id='exec-0', scheduled_at=datetime(2024, 1, 1, 12, 0))
        execution_repository.find_open.return_value = existing

        result = scheduler.schedule_node(make_node(), journey_contact, NOW)

        assert result.created is False
        assert result.execution is existing
        execution_repository.create_pending.assert_not_called()

    def test_lost_insert_race_returns_winner(self, scheduler, execution_repository, journey_contact):
        winner = Mock(id='exec-9')
        execution_repository.create_pending.side_effect = None
        execution_repository.create_pending.return_value = None
        execution_repository.find_open.side_effect = [None, winner]

        result = scheduler.schedule_node(make_node(), journey_contact, NOW)

        assert result.created is False
        assert result.execution is winner

    def test_future_execution_is_not_due(self, scheduler, journey_contact):
        delay = make_node('TIME_DELAY', {'delayValue': 10, 'delayUnit': 'MINUTES'})
        result = scheduler.schedule_node(make_node(), journey_contact, NOW, previous_node=delay)
        assert result.due is False

    def test_day_one_nodes_share_start_time(self, scheduler, execution_repository, journey_contact):
        start = datetime(2024, 1, 2, 8, 0, tzinfo=timezone.utc)
        nodes = [make_node('SEND_SMS'), make_node('MAKE_CALL')]

        results = scheduler.schedule_day_one_nodes(nodes, journey_contact, start, NOW)

        expected = start + timedelta(minutes=scheduler.spread_offset_minutes('jc-1'))
        assert [r.scheduled_at for r in results] == [expected, expected]
        assert execution_repository.create_pending.call_count == 2
