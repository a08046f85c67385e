"""
JourneyNodeExecutor - performs the side effect of one journey node.

Every call returns a NodeOutcome: SUCCESS, FAILURE (recoverable, routed like
any other outcome) or SUSPENDED (MAKE_CALL waiting for its completion
callback). Missing configuration raises JourneyConfigurationError, which the
execution service turns into a paused journey contact.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from logging_config import get_logger
from repositories.activity_repository import ActivityRepository
from repositories.campaign_membership_repository import CampaignMembershipRepository
from repositories.campaign_repository import CampaignRepository
from repositories.contact_repository import ContactRepository
from repositories.tenant_repository import TenantRepository
from services.common.result import NodeOutcome
from services.enums import JourneyNodeType, NodeOutcomeName
from services.journey_audio_service import JourneyAudioService
from services.journey_collaborators import (
    CALL_ACTION, SMS_ACTION, CollaboratorError, ComplianceGate, MessageRenderer,
    MessagingGateway, TelephonyGateway
)
from services.journey_condition_evaluator import JourneyConditionEvaluator
from services.journey_exceptions import (
    CallSpacingError, JourneyConfigurationError, WebhookExecutionError
)
from services.journey_settings import JourneySettings
from services.journey_webhook_client import JourneyWebhookClient
from services.number_pool_service import NumberPoolService
from services.template_variables import contact_variables, has_placeholder, substitute
from utils.datetime_utils import ensure_utc, utc_now

logger = get_logger(__name__)

DNC_STATUS = 'DNC'


class JourneyNodeExecutor:

    def __init__(self, contact_repository: ContactRepository,
                 tenant_repository: TenantRepository,
                 campaign_repository: CampaignRepository,
                 campaign_membership_repository: CampaignMembershipRepository,
                 activity_repository: ActivityRepository,
                 condition_evaluator: JourneyConditionEvaluator,
                 number_pool_service: NumberPoolService,
                 audio_service: JourneyAudioService,
                 webhook_client: JourneyWebhookClient,
                 compliance_gate: ComplianceGate,
                 messaging_gateway: MessagingGateway,
                 telephony_gateway: TelephonyGateway,
                 message_renderer: MessageRenderer,
                 settings: Optional[JourneySettings] = None):
        self.contact_repository = contact_repository
        self.tenant_repository = tenant_repository
        self.campaign_repository = campaign_repository
        self.campaign_membership_repository = campaign_membership_repository
        self.activity_repository = activity_repository
        self.condition_evaluator = condition_evaluator
        self.number_pool_service = number_pool_service
        self.audio_service = audio_service
        self.webhook_client = webhook_client
        self.compliance_gate = compliance_gate
        self.messaging_gateway = messaging_gateway
        self.telephony_gateway = telephony_gateway
        self.message_renderer = message_renderer
        self.settings = settings or JourneySettings()

        self._handlers = {
            JourneyNodeType.SEND_SMS.value: self._execute_send_sms,
            JourneyNodeType.MAKE_CALL.value: self._execute_make_call,
            JourneyNodeType.ADD_TO_CAMPAIGN.value: self._execute_add_to_campaign,
            JourneyNodeType.REMOVE_FROM_CAMPAIGN.value: self._execute_remove_from_campaign,
            JourneyNodeType.EXECUTE_WEBHOOK.value: self._execute_webhook,
            JourneyNodeType.TIME_DELAY.value: self._execute_time_delay,
            JourneyNodeType.CONDITION.value: self._execute_condition,
            JourneyNodeType.WEIGHTED_PATH.value: self._execute_weighted_path,
            JourneyNodeType.UPDATE_CONTACT_STATUS.value: self._execute_update_contact_status,
        }

    def execute(self, node, journey_contact, journey=None,
                now: Optional[datetime] = None) -> NodeOutcome:
        """
        Run one node for one journey contact.

        Raises:
            JourneyConfigurationError: Unknown node type or missing required config
        """
        handler = self._handlers.get(node.type)
        if handler is None:
            raise JourneyConfigurationError(f"Unknown node type: {node.type}")

        contact = journey_contact.contact
        if contact is None:
            raise JourneyConfigurationError(f"Contact {journey_contact.contact_id} not found")

        now = now or utc_now()
        logger.info("Executing journey node", node_id=node.id, node_type=node.type,
                    journey_contact_id=journey_contact.id)
        return handler(node, node.config or {}, contact, journey_contact, journey, now)

    # SMS

    def _execute_send_sms(self, node, config, contact, journey_contact, journey, now) -> NodeOutcome:
        if not contact.phone:
            return NodeOutcome.failed('SMS_FAILED', 'Contact has no phone number')

        if contact.is_opted_out:
            logger.info("Contact opted out, SMS not sent", contact_id=contact.id, node_id=node.id)
            return NodeOutcome.failed('SMS_OPTED_OUT', 'Contact has opted out of SMS',
                                      outcome=NodeOutcomeName.OPTED_OUT.value, to=contact.phone)

        decision = self.compliance_gate.check_compliance(
            journey_contact.tenant_id, contact, SMS_ACTION,
            {'journeyId': journey_contact.journey_id, 'nodeId': node.id}
        )
        if not decision.can_proceed:
            return NodeOutcome.failed('SMS_BLOCKED', decision.message or 'Blocked by compliance rules',
                                      outcome=NodeOutcomeName.BLOCKED.value,
                                      violations=decision.violations, to=contact.phone)

        body = self.render_message(journey_contact.tenant_id, config, contact)
        if not body:
            raise JourneyConfigurationError("SEND_SMS node has no message content")

        from_number = self._select_from_number(journey_contact, config, contact, now)

        try:
            sent = self.messaging_gateway.send_sms(journey_contact.tenant_id, contact.phone, body,
                                                   from_number)
        except CollaboratorError as e:
            logger.warning("SMS dispatch failed", contact_id=contact.id, node_id=node.id, error=str(e))
            return NodeOutcome.failed('SMS_FAILED', str(e), to=contact.phone)

        from_number = sent.get('from') or from_number
        self.activity_repository.log_message(
            tenant_id=journey_contact.tenant_id,
            contact_id=contact.id,
            to_number=contact.phone,
            from_number=from_number,
            body=body,
            external_id=sent.get('id'),
            journey_id=journey_contact.journey_id,
            created_at=now,
        )
        return NodeOutcome.succeeded(NodeOutcomeName.SUCCESS.value, 'SMS_SENT',
                                     messageSid=sent.get('id'), to=contact.phone,
                                     fromNumber=from_number, message=body)

    def render_message(self, tenant_id: str, config: Dict[str, Any], contact) -> str:
        """
        Message text for a SEND_SMS node.

        AI template, then stored template, then inline ``messageContent``. A
        booking link is generated when ``eventTypeId`` is set and appended if the
        text has no ``{{calendarLink}}`` placeholder.
        """
        extra: Dict[str, Any] = {}
        if self.settings.app_base_url:
            extra['appUrl'] = extra['baseUrl'] = self.settings.app_base_url
        calendar_link = None
        if config.get('eventTypeId') and self.settings.booking_link_base_url:
            calendar_link = (f"{self.settings.booking_link_base_url.rstrip('/')}/book/"
                             f"{config['eventTypeId']}?leadId={contact.id}")
            extra['calendarLink'] = calendar_link
        variables = contact_variables(contact, extra)

        body = None
        if config.get('aiTemplateId'):
            body = self.message_renderer.render(tenant_id, config['aiTemplateId'], variables, 'ai')
        if not body and config.get('templateId'):
            body = self.message_renderer.render(tenant_id, config['templateId'], variables)
        raw = config.get('messageContent') or config.get('message')
        if not body and raw:
            if calendar_link and not has_placeholder(raw, 'calendarLink'):
                raw = f"{raw}\n\n{calendar_link}"
            body = substitute(raw, variables)
        elif body and calendar_link and calendar_link not in body:
            body = f"{body}\n\n{calendar_link}"
        return body

    def _select_from_number(self, journey_contact, config, contact, now) -> Optional[str]:
        pool_id = config.get('numberPoolId')
        if not pool_id:
            return config.get('fromNumber')
        timezone = contact.timezone or self.tenant_repository.get_timezone(journey_contact.tenant_id) or 'UTC'
        entry = self.number_pool_service.select_number(journey_contact.tenant_id, pool_id,
                                                       contact.id, now, timezone)
        if entry is None:
            return config.get('fromNumber')
        return entry.get('phoneNumberId') or entry.get('phoneNumber')

    # Calls

    def check_call_spacing(self, phone: str, now: datetime) -> None:
        """
        Enforce minimum spacing between calls to one number.

        Raises:
            CallSpacingError: A call is in flight, or one was placed inside the cooldown
        """
        lookback = now - timedelta(minutes=self.settings.in_flight_call_lookback_minutes)
        in_flight = self.activity_repository.find_in_flight_call(phone, lookback)
        if in_flight is not None:
            raise CallSpacingError(f"Call already in progress to {phone}",
                                   retry_after_seconds=self.settings.call_cooldown_minutes * 60)

        cooldown = timedelta(minutes=self.settings.call_cooldown_minutes)
        recent = self.activity_repository.find_recent_call_to_number(phone, now - cooldown)
        if recent is not None:
            elapsed = now - ensure_utc(recent.created_at)
            remaining = max(int((cooldown - elapsed).total_seconds()), 0)
            raise CallSpacingError(f"Call to {phone} placed {int(elapsed.total_seconds())}s ago",
                                   retry_after_seconds=remaining)

    def _execute_make_call(self, node, config, contact, journey_contact, journey, now) -> NodeOutcome:
        if not contact.phone:
            return NodeOutcome.failed('CALL_FAILED', 'Contact has no phone number')

        try:
            self.check_call_spacing(contact.phone, now)
        except CallSpacingError as e:
            logger.info("Call spacing prevented call", contact_id=contact.id, node_id=node.id,
                        reason=str(e))
            return NodeOutcome.failed('CALL_FAILED', str(e), to=contact.phone,
                                      retryAfterSeconds=e.retry_after_seconds)

        try:
            audio = self.audio_service.resolve_audio(journey_contact.tenant_id, config, contact)
        except CollaboratorError as e:
            return NodeOutcome.failed('CALL_FAILED', str(e), to=contact.phone)

        decision = self.compliance_gate.check_compliance(
            journey_contact.tenant_id, contact, CALL_ACTION,
            {'journeyId': journey_contact.journey_id, 'nodeId': node.id}
        )
        if not decision.can_proceed:
            return NodeOutcome.failed('CALL_BLOCKED', decision.message or 'Blocked by compliance rules',
                                      outcome=NodeOutcomeName.BLOCKED.value,
                                      violations=decision.violations, to=contact.phone)

        try:
            placed = self.telephony_gateway.place_call(
                journey_contact.tenant_id,
                contact.phone,
                audio['audioRef'],
                from_number=config.get('fromNumber'),
                transfer_number=config.get('transferNumber'),
                metadata={'journeyId': journey_contact.journey_id, 'nodeId': node.id,
                          'journeyContactId': journey_contact.id},
            )
        except CollaboratorError as e:
            logger.warning("Call dispatch failed", contact_id=contact.id, node_id=node.id, error=str(e))
            return NodeOutcome.failed('CALL_FAILED', str(e), to=contact.phone)

        correlation_id = placed['correlationId']
        self.activity_repository.log_call(
            tenant_id=journey_contact.tenant_id,
            contact_id=contact.id,
            to_number=contact.phone,
            from_number=placed.get('from'),
            external_id=correlation_id,
            journey_id=journey_contact.journey_id,
            metadata={'nodeId': node.id, 'audioSource': audio['source']},
            created_at=now,
        )
        return NodeOutcome.suspended('CALL_MADE', callUniqueId=correlation_id, to=contact.phone,
                                     waitingForCallCompletion=True, audioSource=audio['source'],
                                     message='Call initiated - waiting for completion')

    # Campaigns

    def _campaign(self, config, journey_contact):
        campaign_id = config.get('campaignId')
        if not campaign_id:
            raise JourneyConfigurationError("Campaign ID is required")
        return campaign_id, self.campaign_repository.get_for_tenant(campaign_id, journey_contact.tenant_id)

    def _execute_add_to_campaign(self, node, config, contact, journey_contact, journey, now) -> NodeOutcome:
        campaign_id, campaign = self._campaign(config, journey_contact)
        if campaign is None:
            return NodeOutcome.failed('ADD_TO_CAMPAIGN_FAILED', f"Campaign not found: {campaign_id}",
                                      campaignId=campaign_id)
        self.campaign_membership_repository.add_contact(
            campaign.id, contact.id, metadata={'journeyId': journey_contact.journey_id}
        )
        return NodeOutcome.succeeded(NodeOutcomeName.SUCCESS.value, 'ADDED_TO_CAMPAIGN',
                                     campaignId=campaign.id, campaignName=campaign.name)

    def _execute_remove_from_campaign(self, node, config, contact, journey_contact, journey,
                                      now) -> NodeOutcome:
        campaign_id, campaign = self._campaign(config, journey_contact)
        if campaign is None:
            return NodeOutcome.failed('REMOVE_FROM_CAMPAIGN_FAILED',
                                      f"Campaign not found: {campaign_id}", campaignId=campaign_id)
        was_member = self.campaign_membership_repository.remove_contact(campaign.id, contact.id)
        return NodeOutcome.succeeded(NodeOutcomeName.SUCCESS.value, 'REMOVED_FROM_CAMPAIGN',
                                     campaignId=campaign.id, campaignName=campaign.name,
                                     wasMember=was_member)

    # Webhooks

    def _execute_webhook(self, node, config, contact, journey_contact, journey, now) -> NodeOutcome:
        try:
            response = self.webhook_client.execute(journey_contact.tenant_id, config, contact, journey)
        except (WebhookExecutionError, CollaboratorError) as e:
            logger.warning("Webhook node failed", node_id=node.id, error=str(e))
            return NodeOutcome.failed('WEBHOOK_FAILED', str(e),
                                      statusCode=getattr(e, 'status_code', None))
        return NodeOutcome.succeeded(NodeOutcomeName.SUCCESS.value, 'WEBHOOK_EXECUTED',
                                     statusCode=response['statusCode'],
                                     extracted=response['extracted'],
                                     attempts=response['attempts'])

    # Flow control

    def _execute_time_delay(self, node, config, contact, journey_contact, journey, now) -> NodeOutcome:
        return NodeOutcome.succeeded(NodeOutcomeName.COMPLETED.value, 'DELAY_EXECUTED',
                                     delayValue=config.get('delayValue'),
                                     delayUnit=config.get('delayUnit'),
                                     delayAtTime=config.get('delayAtTime'))

    def _execute_condition(self, node, config, contact, journey_contact, journey, now) -> NodeOutcome:
        next_node_id = self.condition_evaluator.evaluate_condition(node, contact, journey_contact)
        outcome = NodeOutcome.succeeded(NodeOutcomeName.EVALUATED.value, 'CONDITION_EVALUATED')
        outcome.next_node_id = next_node_id
        return outcome

    def _execute_weighted_path(self, node, config, contact, journey_contact, journey,
                               now) -> NodeOutcome:
        next_node_id = self.condition_evaluator.evaluate_weighted_path(node, contact)
        outcome = NodeOutcome.succeeded(NodeOutcomeName.EVALUATED.value, 'PATH_SELECTED')
        outcome.next_node_id = next_node_id
        return outcome

    # Contact status

    def _execute_update_contact_status(self, node, config, contact, journey_contact, journey,
                                       now) -> NodeOutcome:
        status = config.get('leadStatus') or config.get('status')
        if not status:
            raise JourneyConfigurationError("UPDATE_CONTACT_STATUS node has no leadStatus")
        allowed = self.tenant_repository.get_lead_statuses(journey_contact.tenant_id)
        if status not in allowed:
            raise JourneyConfigurationError(f"Invalid lead status: {status}")

        previous = contact.lead_status
        self.contact_repository.set_lead_status(contact, status)
        return NodeOutcome.succeeded(NodeOutcomeName.SUCCESS.value, 'CONTACT_STATUS_UPDATED',
                                     previousStatus=previous, newStatus=status,
                                     terminal=status == DNC_STATUS)
