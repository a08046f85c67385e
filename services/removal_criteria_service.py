"""
RemovalCriteriaService - decides whether a contact leaves a journey early.

Journeys carry ``removal_criteria``:

    {
        "enabled": true,
        "webhookToken": "...",
        "conditions": [
            {"type": "call_transferred"},
            {"type": "call_duration", "config": {"minDurationSeconds": 60}},
            {"type": "call_status", "config": {"callStatuses": ["answered"]}},
            {"type": "webhook", "config": {"webhookPayloadField": "phone"}},
            {"type": "custom", "config": {"customCondition": "..."}}
        ]
    }

Conditions are checked in order and the first match removes the contact.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from logging_config import get_logger
from services.enums import RemovalConditionType

logger = get_logger(__name__)

TRANSFERRED_STATUSES = ('completed', 'transferred')
_NON_DIGITS = re.compile(r'[^0-9]')


def normalize_phone(phone: Any) -> Optional[str]:
    """
    Digits-only form of a phone number for comparisons.

    Ten-digit North American numbers get the leading country code so
    ``(555) 010-0000`` and ``+15550100000`` compare equal.
    """
    if phone is None:
        return None
    digits = _NON_DIGITS.sub('', str(phone))
    if not digits:
        return None
    if len(digits) == 10:
        digits = '1' + digits
    return digits


@dataclass
class RemovalContext:
    """What just happened to the contact"""
    call_status: Optional[str] = None
    transfer_status: Optional[str] = None
    call_duration: Optional[float] = None
    webhook_payload: Dict[str, Any] = field(default_factory=dict)


class RemovalCriteriaService:

    def should_remove(self, journey, contact, context: RemovalContext) -> bool:
        """
        Evaluate a journey's removal criteria for a contact.

        Disabled or empty criteria never remove anyone.
        """
        criteria = (journey.removal_criteria if journey is not None else None) or {}
        if not criteria.get('enabled') or not criteria.get('conditions'):
            return False
        if contact is None:
            return False

        for condition in criteria['conditions']:
            if self.matches(condition, contact, context):
                logger.info("Removal criteria matched", journey_id=journey.id,
                            contact_id=contact.id, condition_type=condition.get('type'))
                return True
        return False

    def matches(self, condition: Dict[str, Any], contact, context: RemovalContext) -> bool:
        condition_type = condition.get('type')
        config = condition.get('config') or {}

        if condition_type == RemovalConditionType.CALL_TRANSFERRED.value:
            return context.transfer_status in TRANSFERRED_STATUSES

        if condition_type == RemovalConditionType.CALL_DURATION.value:
            threshold = config.get('minDurationSeconds')
            if not threshold or not context.call_duration:
                return False
            return context.call_duration >= threshold

        if condition_type == RemovalConditionType.CALL_STATUS.value:
            statuses = config.get('callStatuses') or []
            return bool(context.call_status) and context.call_status in statuses

        if condition_type == RemovalConditionType.WEBHOOK.value:
            field_name = config.get('webhookPayloadField')
            if not field_name or not context.webhook_payload:
                return False
            payload_phone = normalize_phone(context.webhook_payload.get(field_name))
            return payload_phone is not None and payload_phone == normalize_phone(contact.phone)

        if condition_type == RemovalConditionType.CUSTOM.value:
            if config.get('customCondition'):
                logger.debug("Custom removal conditions are not evaluated",
                             contact_id=contact.id, custom_condition=config['customCondition'])
            return False

        logger.warning("Unknown removal condition type", condition_type=condition_type)
        return False
