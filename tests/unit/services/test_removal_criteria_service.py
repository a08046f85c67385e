"""
Unit tests for RemovalCriteriaService
"""

from types import SimpleNamespace

import pytest

from services.removal_criteria_service import RemovalContext, RemovalCriteriaService, normalize_phone


def journey_with(*conditions, enabled=True):
    return SimpleNamespace(id='journey-1', removal_criteria={'enabled': enabled,
                                                             'conditions': list(conditions)})


@pytest.fixture
def service():
    return RemovalCriteriaService()


@pytest.fixture
def contact():
    return SimpleNamespace(id=7, phone='+1 (555) 010-0000')


class TestNormalizePhone:

    @pytest.mark.parametrize("value,expected", [
        ('(555) 010-0000', '15550100000'),
        ('+15550100000', '15550100000'),
        ('44 20 7946 0000', '442079460000'),
        ('', None),
        (None, None),
    ])
    def test_normalize(self, value, expected):
        assert normalize_phone(value) == expected


class TestShouldRemove:

    def test_disabled_criteria_never_remove(self, service, contact):
        journey = journey_with({'type': 'call_transferred'}, enabled=False)
        assert service.should_remove(journey, contact, RemovalContext(transfer_status='completed')) is False

    def test_empty_criteria(self, service, contact):
        journey = SimpleNamespace(id='journey-1', removal_criteria=None)
        assert service.should_remove(journey, contact, RemovalContext()) is False

    @pytest.mark.parametrize("transfer_status,expected", [
        ('completed', True), ('transferred', True), ('failed', False), (None, False),
    ])
    def test_call_transferred(self, service, contact, transfer_status, expected):
        journey = journey_with({'type': 'call_transferred'})
        assert service.should_remove(journey, contact,
                                     RemovalContext(transfer_status=transfer_status)) is expected

    def test_call_duration_threshold(self, service, contact):
        journey = journey_with({'type': 'call_duration', 'config': {'minDurationSeconds': 60}})

        assert service.should_remove(journey, contact, RemovalContext(call_duration=60)) is True
        assert service.should_remove(journey, contact, RemovalContext(call_duration=59)) is False
        assert service.should_remove(journey, contact, RemovalContext()) is False

    def test_call_status(self, service, contact):
        journey = journey_with({'type': 'call_status', 'config': {'callStatuses': ['answered', 'transferred']}})

        assert service.should_remove(journey, contact, RemovalContext(call_status='answered')) is True
        assert service.should_remove(journey, contact, RemovalContext(call_status='busy')) is False

    def test_webhook_matches_normalized_phone(self, service, contact):
        journey = journey_with({'type': 'webhook', 'config': {'webhookPayloadField': 'phone'}})

        matching = RemovalContext(webhook_payload={'phone': '555-010-0000'})
        other = RemovalContext(webhook_payload={'phone': '555-010-9999'})

        assert service.should_remove(journey, contact, matching) is True
        assert service.should_remove(journey, contact, other) is False

    def test_custom_conditions_never_match(self, service, contact):
        journey = journey_with({'type': 'custom', 'config': {'customCondition': 'score > 5'}})
        assert service.should_remove(journey, contact, RemovalContext(call_status='answered')) is False

    def test_first_matching_condition_wins(self, service, contact):
        journey = journey_with({'type': 'unknown'},
                               {'type': 'call_status', 'config': {'callStatuses': ['busy']}})
        assert service.should_remove(journey, contact, RemovalContext(call_status='busy')) is True
