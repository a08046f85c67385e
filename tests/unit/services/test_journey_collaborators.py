"""
Tests for the default collaborator implementations
"""

from types import SimpleNamespace
from unittest.mock import Mock

import pytest
import requests

from repositories.campaign_template_repository import CampaignTemplateRepository
from repositories.contact_flag_repository import ContactFlagRepository
from services.journey_collaborators import (
    CALL_ACTION, SMS_ACTION, CollaboratorError, ContactFlagComplianceGate, HttpAudioRenderer,
    HttpTelephonyGateway, OpenPhoneMessagingGateway, StoredTemplateRenderer
)
from services.openphone_api_client import OpenPhoneAPIClient, OpenPhoneAPIError


class TestContactFlagComplianceGate:

    @pytest.fixture
    def flags(self):
        return Mock(spec=ContactFlagRepository)

    def test_allows_unflagged_contact(self, flags):
        flags.get_active_flags_for_contact.return_value = []
        gate = ContactFlagComplianceGate(flags)

        decision = gate.check_compliance('tenant-1', SimpleNamespace(id=7), SMS_ACTION)

        assert decision.can_proceed is True
        flags.get_active_flags_for_contact.assert_called_once_with(
            7, flag_types=['opted_out', 'do_not_contact'], channel='sms'
        )

    def test_denies_flagged_contact(self, flags):
        flags.get_active_flags_for_contact.return_value = [SimpleNamespace(flag_type='opted_out'),
                                                           SimpleNamespace(flag_type='do_not_contact')]
        gate = ContactFlagComplianceGate(flags)

        decision = gate.check_compliance('tenant-1', SimpleNamespace(id=7), CALL_ACTION)

        assert decision.can_proceed is False
        assert decision.violations == ['do_not_contact', 'opted_out']
        assert decision.message == "Contact blocked for call: do_not_contact, opted_out"


class TestOpenPhoneMessagingGateway:

    def test_send_sms(self):
        api = Mock(spec=OpenPhoneAPIClient)
        api.send_message.return_value = {'id': 'MSG1', 'status': 'queued'}
        gateway = OpenPhoneMessagingGateway(api, default_from_number='+15550000000')

        result = gateway.send_sms('tenant-1', '+15551234567', 'Hi')

        api.send_message.assert_called_once_with('+15551234567', '+15550000000', 'Hi')
        assert result == {'id': 'MSG1', 'status': 'queued', 'from': '+15550000000'}

    def test_explicit_from_number_wins(self):
        api = Mock(spec=OpenPhoneAPIClient)
        api.send_message.return_value = {'id': 'MSG1'}
        gateway = OpenPhoneMessagingGateway(api, default_from_number='+15550000000')

        assert gateway.send_sms('tenant-1', '+1555', 'Hi', from_number='+15559999999')['from'] == '+15559999999'

    def test_no_sender(self):
        gateway = OpenPhoneMessagingGateway(Mock(spec=OpenPhoneAPIClient))
        with pytest.raises(CollaboratorError, match="No sending number"):
            gateway.send_sms('tenant-1', '+1555', 'Hi')

    def test_api_errors_become_collaborator_errors(self):
        api = Mock(spec=OpenPhoneAPIClient)
        api.send_message.side_effect = OpenPhoneAPIError("carrier rejected", 400)
        gateway = OpenPhoneMessagingGateway(api, default_from_number='+15550000000')

        with pytest.raises(CollaboratorError, match="carrier rejected"):
            gateway.send_sms('tenant-1', '+1555', 'Hi')


class TestHttpTelephonyGateway:

    def test_place_call(self, mocker):
        post = mocker.patch('services.journey_collaborators.requests.post')
        post.return_value.json.return_value = {'uniqueId': 'CALL-9', 'from': '+15550000001'}
        gateway = HttpTelephonyGateway('https://dialer.example.com/', api_key='secret')

        result = gateway.place_call('tenant-1', '+15551234567', 'intro.mp3', transfer_number='+15557654321')

        assert result == {'correlationId': 'CALL-9', 'from': '+15550000001'}
        args, kwargs = post.call_args
        assert args[0] == 'https://dialer.example.com/calls'
        assert kwargs['headers']['Authorization'] == 'Bearer secret'
        assert kwargs['json']['transferNumber'] == '+15557654321'

    def test_missing_call_id(self, mocker):
        post = mocker.patch('services.journey_collaborators.requests.post')
        post.return_value.json.return_value = {}

        with pytest.raises(CollaboratorError, match="no call id"):
            HttpTelephonyGateway('https://dialer.example.com').place_call('t', '+1555', 'a.mp3')

    def test_request_failure(self, mocker):
        mocker.patch('services.journey_collaborators.requests.post',
                     side_effect=requests.exceptions.ConnectionError("refused"))

        with pytest.raises(CollaboratorError, match="Request to calls failed"):
            HttpTelephonyGateway('https://dialer.example.com').place_call('t', '+1555', 'a.mp3')

    def test_unconfigured_endpoint(self):
        with pytest.raises(CollaboratorError, match="not configured"):
            HttpTelephonyGateway(None).place_call('t', '+1555', 'a.mp3')


class TestHttpAudioRenderer:

    def test_render_audio(self, mocker):
        post = mocker.patch('services.journey_collaborators.requests.post')
        post.return_value.content = b'ID3'
        post.return_value.headers = {'X-Audio-Duration': '3.5'}

        result = HttpAudioRenderer('https://tts.example.com').render_audio('Hello', {'voice': 'alloy'})

        assert result == {'audio': b'ID3', 'durationSeconds': 3.5}
        assert post.call_args[1]['json'] == {'text': 'Hello', 'voice': {'voice': 'alloy'}}


class TestStoredTemplateRenderer:

    def test_renders_tenant_template(self):
        templates = Mock(spec=CampaignTemplateRepository)
        templates.get_active.return_value = SimpleNamespace(tenant_id='tenant-1', content='Hi {{firstName}}')

        rendered = StoredTemplateRenderer(templates).render('tenant-1', 5, {'firstName': 'Ana'})

        assert rendered == 'Hi Ana'
        templates.get_active.assert_called_once_with(5, 'standard')

    def test_other_tenants_template_is_ignored(self):
        templates = Mock(spec=CampaignTemplateRepository)
        templates.get_active.return_value = SimpleNamespace(tenant_id='tenant-2', content='Hi')

        assert StoredTemplateRenderer(templates).render('tenant-1', 5, {}) is None

    def test_missing_template(self):
        templates = Mock(spec=CampaignTemplateRepository)
        templates.get_active.return_value = None

        assert StoredTemplateRenderer(templates).render('tenant-1', 5, {}) is None
