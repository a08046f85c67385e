"""
Branch predicates for CONDITION nodes and path selection for WEIGHTED_PATH nodes.
"""

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from logging_config import get_logger
from repositories.activity_repository import ActivityRepository
from repositories.campaign_membership_repository import CampaignMembershipRepository
from services.journey_graph import branches_of, default_branch_of, paths_of
from utils.datetime_utils import ensure_utc
from utils.hashing_utils import stable_bucket

logger = get_logger(__name__)

CONTACT_FIELDS = {
    'firstName': 'first_name',
    'lastName': 'last_name',
    'email': 'email',
    'phoneNumber': 'phone',
    'phone': 'phone',
    'leadStatus': 'lead_status',
    'leadSource': 'lead_source',
    'timezone': 'timezone',
}

FAILED_CALL_STATUSES = ('failed', 'busy', 'canceled', 'cancelled', 'error')
NO_ANSWER_STATUSES = ('no_answer', 'no-answer', 'missed', 'voicemail')
ANSWERED_CALL_STATUSES = ('answered', 'completed', 'transferred')


def evaluate_operator(field_value: Any, operator: str, value: Any) -> bool:
    """
    Apply one comparison operator.

    Booleans compare against ``true``/``false`` strings; ``exists`` treats
    None and the empty string as missing. Unknown operators never match.
    """
    if operator == 'equals':
        return _equals(field_value, value)
    if operator == 'not_equals':
        return not _equals(field_value, value)
    if operator == 'contains':
        if field_value is None or value is None:
            return False
        return str(value).lower() in str(field_value).lower()
    if operator in ('greater_than', 'less_than'):
        left, right = _as_float(field_value), _as_float(value)
        if left is None or right is None:
            return False
        return left > right if operator == 'greater_than' else left < right
    if operator == 'exists':
        return field_value is not None and field_value != ''
    if operator == 'not_exists':
        return field_value is None or field_value == ''
    logger.warning("Unknown condition operator", operator=operator)
    return False


def _equals(field_value: Any, value: Any) -> bool:
    if isinstance(field_value, bool):
        expected = value if isinstance(value, bool) else str(value).strip().lower() == 'true'
        return field_value == expected
    if field_value is None:
        return value is None or value == ''
    return str(field_value) == str(value)


def _as_float(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None or value == '':
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def select_weighted_path(paths, contact_id) -> Optional[Dict[str, Any]]:
    """
    Deterministic path choice for one contact.

    Percentages are normalised to sum to 100 and the contact id is hashed into
    [0, 100); the first path whose running total exceeds that value wins.
    """
    usable = [p for p in paths or [] if p.get('nextNodeId')]
    if not usable:
        return None
    weights = [max(_as_float(p.get('percentage')) or 0.0, 0.0) for p in usable]
    total = sum(weights)
    if total <= 0:
        return usable[-1]
    scaled = [w * 100.0 / total for w in weights]

    point = stable_bucket(contact_id, 10000) / 100.0
    running = 0.0
    for path, weight in zip(usable, scaled):
        running += weight
        if point < running:
            return path
    return usable[-1]


class JourneyConditionEvaluator:
    """Resolves predicate fields against contact data and conversation history"""

    def __init__(self, activity_repository: ActivityRepository,
                 campaign_membership_repository: CampaignMembershipRepository):
        self.activity_repository = activity_repository
        self.campaign_membership_repository = campaign_membership_repository

    def evaluate_condition(self, node, contact, journey_contact) -> Optional[str]:
        """
        Walk the node's branches in order and return the first matching target.

        Returns:
            Target node id, the default branch target, or None (journey ends)
        """
        for index, branch in enumerate(branches_of(node)):
            predicate = branch.get('condition') or branch
            target = branch.get('nextNodeId')
            if not target or not predicate.get('field') or not predicate.get('operator'):
                logger.debug("Skipping incomplete branch", node_id=node.id, branch=index)
                continue
            field_value = self.resolve_field(predicate['field'], contact, journey_contact, predicate)
            if evaluate_operator(field_value, predicate['operator'], predicate.get('value')):
                logger.info("Condition branch matched", node_id=node.id, branch=index,
                            field=predicate['field'], next_node_id=target)
                return target

        default = default_branch_of(node) or {}
        logger.info("No condition branch matched, using default", node_id=node.id,
                    next_node_id=default.get('nextNodeId'))
        return default.get('nextNodeId')

    def evaluate_weighted_path(self, node, contact) -> Optional[str]:
        path = select_weighted_path(paths_of(node), contact.id)
        return path.get('nextNodeId') if path else None

    # Field resolution

    def resolve_field(self, field_name: str, contact, journey_contact,
                      predicate: Optional[Dict[str, Any]] = None) -> Any:
        """
        Value of a predicate field.

        Supported prefixes: ``contact.`` (columns and ``attributes.*``),
        ``message.`` (inbound replies) and ``call.`` (latest call outcome).
        A bare name is treated as a contact field.
        """
        predicate = predicate or {}
        namespace, _, name = field_name.partition('.')
        if not name:
            namespace, name = 'contact', field_name

        if namespace == 'contact':
            return self._contact_field(contact, name)
        if namespace == 'message':
            return self._message_field(name, contact, journey_contact, predicate)
        if namespace == 'call':
            return self._call_field(name, contact, journey_contact)
        logger.warning("Unknown condition field", field=field_name)
        return None

    def _contact_field(self, contact, name: str) -> Any:
        if name == 'isOptedOut':
            return contact.is_opted_out
        if name == 'fullName':
            return contact.full_name
        attributes = contact.contact_metadata or {}
        if name.startswith('attributes.'):
            return attributes.get(name[len('attributes.'):])
        if name in CONTACT_FIELDS:
            return getattr(contact, CONTACT_FIELDS[name])
        return attributes.get(name)

    def _enrolled_at(self, journey_contact) -> Optional[datetime]:
        stamp = journey_contact.enrolled_at or journey_contact.created_at
        return ensure_utc(stamp) if stamp else None

    def _message_field(self, name: str, contact, journey_contact, predicate) -> Optional[bool]:
        if name == 'received':
            return self.activity_repository.has_inbound_message(contact.id)
        if name == 'receivedInJourney':
            return self.activity_repository.has_inbound_message(
                contact.id, since=self._enrolled_at(journey_contact)
            )
        if name == 'receivedInCampaign':
            campaign_id = predicate.get('campaignId')
            if not campaign_id:
                logger.warning("message.receivedInCampaign needs a campaignId")
                return False
            membership = self.campaign_membership_repository.find_by_contact_and_campaign(
                contact.id, campaign_id
            )
            if not membership or not membership.created_at:
                return False
            return self.activity_repository.has_inbound_message(
                contact.id, since=ensure_utc(membership.created_at)
            )
        logger.warning("Unknown message field", field=name)
        return None

    def _latest_call(self, contact, journey_contact) -> Tuple[Optional[object], Dict[str, Any]]:
        since = self._enrolled_at(journey_contact)
        call = None
        if contact.phone and since is not None:
            call = self.activity_repository.find_recent_call_to_number(contact.phone, since)
        return call, (call.activity_metadata or {}) if call else {}

    def _call_field(self, name: str, contact, journey_contact) -> Any:
        call, metadata = self._latest_call(contact, journey_contact)
        status = (call.status or '').lower() if call else None

        if name == 'status':
            return status
        if name == 'received':
            return call is not None
        if name == 'answered':
            return status in ANSWERED_CALL_STATUSES
        if name == 'noAnswer':
            return status in NO_ANSWER_STATUSES
        if name == 'failed':
            return status in FAILED_CALL_STATUSES
        if name == 'transferred':
            return str(metadata.get('transferStatus', '')).lower() in ('completed', 'transferred')
        if name == 'duration':
            return call.duration_seconds if call else None
        logger.warning("Unknown call field", field=name)
        return None
