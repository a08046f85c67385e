"""
Narrow interfaces the journey engine uses to reach the outside world, plus the
default implementations wired in ``app.py``.

Gateways raise CollaboratorError for delivery problems; the node executor turns
those into failure outcomes instead of letting them escape.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from logging_config import get_logger
from repositories.campaign_template_repository import CampaignTemplateRepository
from repositories.contact_flag_repository import ContactFlagRepository
from services.journey_exceptions import JourneyError
from services.openphone_api_client import OpenPhoneAPIClient, OpenPhoneAPIError
from services.template_variables import substitute

logger = get_logger(__name__)

SMS_ACTION = 'SEND_SMS'
CALL_ACTION = 'MAKE_CALL'


class CollaboratorError(JourneyError):
    """An external capability failed (provider down, rejected request, ...)"""
    pass


@dataclass
class ComplianceDecision:
    can_proceed: bool
    violations: List[str] = field(default_factory=list)
    message: Optional[str] = None

    @classmethod
    def allow(cls) -> 'ComplianceDecision':
        return cls(can_proceed=True)


class ComplianceGate(ABC):
    @abstractmethod
    def check_compliance(self, tenant_id: str, contact, action_type: str,
                         context: Optional[Dict[str, Any]] = None) -> ComplianceDecision:
        """Allow or deny an outbound SMS / call to a contact"""


class MessagingGateway(ABC):
    @abstractmethod
    def send_sms(self, tenant_id: str, to_number: str, body: str,
                 from_number: Optional[str] = None) -> Dict[str, Any]:
        """Send an SMS; returns at least ``{'id': provider message id}``"""


class TelephonyGateway(ABC):
    @abstractmethod
    def place_call(self, tenant_id: str, to_number: str, audio_ref: str,
                   from_number: Optional[str] = None,
                   transfer_number: Optional[str] = None,
                   metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Dispatch a call; returns at least ``{'correlationId': ...}``"""


class AudioRenderer(ABC):
    @abstractmethod
    def render_audio(self, text: str, voice_config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Synthesize speech; returns ``{'audio': bytes, 'durationSeconds': float}``"""


class MessageRenderer(ABC):
    @abstractmethod
    def render(self, tenant_id: str, template_id: Any, variables: Dict[str, Any],
               template_kind: str = 'standard') -> Optional[str]:
        """Render a stored template, or None when it doesn't exist"""


# Default implementations

class ContactFlagComplianceGate(ComplianceGate):
    """Denies contacts carrying an active opt-out or do-not-contact flag for the channel"""

    BLOCKING_FLAGS = ['opted_out', 'do_not_contact']

    def __init__(self, contact_flag_repository: ContactFlagRepository):
        self.contact_flag_repository = contact_flag_repository

    def check_compliance(self, tenant_id, contact, action_type, context=None):
        channel = 'call' if action_type == CALL_ACTION else 'sms'
        flags = self.contact_flag_repository.get_active_flags_for_contact(
            contact.id, flag_types=self.BLOCKING_FLAGS, channel=channel
        )
        if not flags:
            return ComplianceDecision.allow()
        violations = sorted({flag.flag_type for flag in flags})
        return ComplianceDecision(
            can_proceed=False,
            violations=violations,
            message=f"Contact blocked for {channel}: {', '.join(violations)}",
        )


class OpenPhoneMessagingGateway(MessagingGateway):
    """Sends SMS through the OpenPhone API"""

    def __init__(self, api_client: OpenPhoneAPIClient, default_from_number: Optional[str] = None):
        self.api_client = api_client
        self.default_from_number = default_from_number

    def send_sms(self, tenant_id, to_number, body, from_number=None):
        sender = from_number or self.default_from_number
        if not sender:
            raise CollaboratorError("No sending number available")
        try:
            message = self.api_client.send_message(to_number, sender, body)
        except OpenPhoneAPIError as e:
            raise CollaboratorError(str(e)) from e
        return {'id': message.get('id'), 'status': message.get('status'), 'from': sender}


class _JsonHttpClient:
    """POSTs JSON to a collaborator endpoint with a bearer key"""

    def __init__(self, base_url: Optional[str], api_key: Optional[str] = None, timeout: float = 30):
        self.base_url = (base_url or '').rstrip('/')
        self.api_key = api_key
        self.timeout = timeout

    def post(self, path: str, payload: Dict[str, Any]) -> requests.Response:
        if not self.base_url:
            raise CollaboratorError("Collaborator endpoint not configured")
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f"Bearer {self.api_key}"
        try:
            response = requests.post(f"{self.base_url}/{path}", json=payload,
                                     headers=headers, timeout=self.timeout)
            response.raise_for_status()
            return response
        except requests.exceptions.RequestException as e:
            logger.error("Collaborator request failed", path=path, error=str(e))
            raise CollaboratorError(f"Request to {path} failed: {e}") from e


class HttpTelephonyGateway(TelephonyGateway):
    """Places voice-drop calls through an HTTP dialer API"""

    def __init__(self, base_url: Optional[str], api_key: Optional[str] = None, timeout: float = 30):
        self.client = _JsonHttpClient(base_url, api_key, timeout)

    def place_call(self, tenant_id, to_number, audio_ref, from_number=None,
                   transfer_number=None, metadata=None):
        response = self.client.post('calls', {
            'tenantId': tenant_id,
            'to': to_number,
            'from': from_number,
            'audio': audio_ref,
            'transferNumber': transfer_number,
            'metadata': metadata or {},
        })
        data = response.json()
        correlation_id = data.get('correlationId') or data.get('uniqueId') or data.get('id')
        if not correlation_id:
            raise CollaboratorError("Telephony provider returned no call id")
        return {'correlationId': correlation_id, 'from': data.get('from', from_number)}


class HttpAudioRenderer(AudioRenderer):
    """Text-to-speech through an HTTP API returning raw audio bytes"""

    def __init__(self, base_url: Optional[str], api_key: Optional[str] = None, timeout: float = 60):
        self.client = _JsonHttpClient(base_url, api_key, timeout)

    def render_audio(self, text, voice_config=None):
        response = self.client.post('speech', {'text': text, 'voice': voice_config or {}})
        duration = response.headers.get('X-Audio-Duration')
        return {
            'audio': response.content,
            'durationSeconds': float(duration) if duration else None,
        }


class StoredTemplateRenderer(MessageRenderer):
    """Renders CampaignTemplate rows with ``{{variable}}`` substitution"""

    def __init__(self, campaign_template_repository: CampaignTemplateRepository):
        self.campaign_template_repository = campaign_template_repository

    def render(self, tenant_id, template_id, variables, template_kind='standard'):
        template = self.campaign_template_repository.get_active(template_id, template_kind)
        if template is None or (template.tenant_id and template.tenant_id != tenant_id):
            return None
        return substitute(template.content, variables)
