"""
JourneyService - the engine's public surface for journeys.

Covers the journey lifecycle, enrollment and removal of contacts, node CRUD
that keeps the graph consistent, removal-criteria management and execution
history. Execution itself is delegated to JourneyExecutionService.
"""

import copy
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError

from logging_config import get_logger
from repositories.contact_repository import ContactRepository
from repositories.journey_contact_repository import JourneyContactRepository
from repositories.journey_node_execution_repository import JourneyNodeExecutionRepository
from repositories.journey_node_repository import JourneyNodeRepository
from repositories.journey_repository import JourneyRepository
from services.common.result import Result
from services.enums import (
    EnrollmentSource, JourneyContactStatus, JourneyNodeType, JourneyStatus, RemovalConditionType
)
from services.execution_rules_service import ExecutionRulesService
from services.journey_exceptions import (
    ContactNotFoundError, DuplicateEnrollmentError, JourneyNotEnrollableError, JourneyNotFoundError
)
from services.journey_execution_service import JourneyExecutionService
from services.journey_graph import (
    DAY_MARKER_PREFIX, NodeSnapshot, find_day_one_nodes, is_valid_node_id, outbound_targets,
    parse_temporary_id, resolve_entry_node, validate_journey_graph
)
from services.removal_criteria_service import RemovalContext, RemovalCriteriaService, normalize_phone
from utils.datetime_utils import ensure_utc, to_db_time, utc_now

logger = get_logger(__name__)

NODE_TYPES = {node_type.value for node_type in JourneyNodeType}
REMOVAL_CONDITION_TYPES = {condition.value for condition in RemovalConditionType}
TEMPORARY_ID_MATCH_WINDOW = timedelta(minutes=5)
NOT_ENROLLABLE_STATUSES = (JourneyStatus.PAUSED.value, JourneyStatus.ARCHIVED.value)


class JourneyService:

    def __init__(self, journey_repository: JourneyRepository,
                 journey_node_repository: JourneyNodeRepository,
                 journey_contact_repository: JourneyContactRepository,
                 contact_repository: ContactRepository,
                 execution_repository: JourneyNodeExecutionRepository,
                 execution_service: JourneyExecutionService,
                 execution_rules_service: ExecutionRulesService,
                 removal_criteria_service: RemovalCriteriaService):
        self.journey_repository = journey_repository
        self.journey_node_repository = journey_node_repository
        self.journey_contact_repository = journey_contact_repository
        self.contact_repository = contact_repository
        self.execution_repository = execution_repository
        self.execution_service = execution_service
        self.execution_rules_service = execution_rules_service
        self.removal_criteria_service = removal_criteria_service

    # Journey lifecycle

    def create_journey(self, tenant_id: str, name: str, description: Optional[str] = None,
                       **fields) -> Result:
        if not name:
            return Result.failure("Journey name is required", code='INVALID_JOURNEY')
        journey = self.journey_repository.create(
            tenant_id=tenant_id,
            name=name,
            description=description,
            status=JourneyStatus.DRAFT.value,
            **fields
        )
        self.journey_repository.commit()
        logger.info("Journey created", journey_id=journey.id, tenant_id=tenant_id)
        return Result.success(journey)

    def launch_journey(self, tenant_id: str, journey_id: str,
                       now: Optional[datetime] = None) -> Result:
        """Validate the graph and make the journey ACTIVE"""
        journey = self.journey_repository.get_for_tenant(journey_id, tenant_id)
        if journey is None:
            return Result.failure("Journey not found", code='JOURNEY_NOT_FOUND')
        if journey.status == JourneyStatus.ACTIVE.value:
            return Result.failure("Journey is already active", code='ALREADY_ACTIVE')
        if journey.status == JourneyStatus.ARCHIVED.value:
            return Result.failure("Archived journeys cannot be launched", code='JOURNEY_ARCHIVED')

        report = validate_journey_graph(self.journey_node_repository.find_by_journey(journey_id))
        if not report.is_valid:
            logger.warning("Journey graph invalid, not launching", journey_id=journey_id,
                           errors=report.errors)
            return Result.failure("; ".join(report.errors), code='INVALID_GRAPH',
                                  metadata=report.to_dict())

        now = now or utc_now()
        self.journey_repository.update(journey, status=JourneyStatus.ACTIVE.value,
                                       started_at=to_db_time(now), paused_at=None)
        self.journey_repository.commit()
        logger.info("Journey launched", journey_id=journey_id, warnings=report.warnings)
        return Result.success(journey, metadata=report.to_dict())

    def pause_journey(self, tenant_id: str, journey_id: str, now: Optional[datetime] = None) -> Result:
        journey = self.journey_repository.get_for_tenant(journey_id, tenant_id)
        if journey is None:
            return Result.failure("Journey not found", code='JOURNEY_NOT_FOUND')
        if journey.status != JourneyStatus.ACTIVE.value:
            return Result.failure("Journey is not active", code='NOT_ACTIVE')
        now = now or utc_now()
        self.journey_repository.update(journey, status=JourneyStatus.PAUSED.value,
                                       paused_at=to_db_time(now))
        self.journey_repository.commit()
        logger.info("Journey paused", journey_id=journey_id)
        return Result.success(journey)

    def archive_journey(self, tenant_id: str, journey_id: str) -> Result:
        journey = self.journey_repository.get_for_tenant(journey_id, tenant_id)
        if journey is None:
            return Result.failure("Journey not found", code='JOURNEY_NOT_FOUND')
        self.journey_repository.update(journey, status=JourneyStatus.ARCHIVED.value)
        self.journey_repository.commit()
        logger.info("Journey archived", journey_id=journey_id)
        return Result.success(journey)

    # Enrollment

    def enroll_contact(self, tenant_id: str, journey_id: str, contact_id: int,
                       source: str = EnrollmentSource.MANUAL.value,
                       data: Optional[Dict[str, Any]] = None,
                       now: Optional[datetime] = None):
        """
        Enroll a contact and start its journey.

        Outside business hours the day-1 entry nodes are scheduled together at
        the next business window; otherwise the entry node is scheduled now and
        runs inline.

        Returns:
            The ACTIVE JourneyContact

        Raises:
            JourneyNotFoundError: Unknown journey for this tenant
            JourneyNotEnrollableError: Journey paused, archived or empty
            ContactNotFoundError: Unknown contact for this tenant
            DuplicateEnrollmentError: Contact already ACTIVE in the journey
        """
        now = now or utc_now()
        journey = self.journey_repository.get_for_tenant(journey_id, tenant_id)
        if journey is None:
            raise JourneyNotFoundError(f"Journey {journey_id} not found")
        if journey.status in NOT_ENROLLABLE_STATUSES:
            raise JourneyNotEnrollableError(
                f"Cannot enroll contacts in a {journey.status.lower()} journey"
            )

        contact = self.contact_repository.get_for_tenant(contact_id, tenant_id)
        if contact is None:
            raise ContactNotFoundError(f"Contact {contact_id} not found")

        nodes = self.journey_node_repository.find_by_journey(journey_id)
        if not nodes:
            raise JourneyNotEnrollableError("Journey has no nodes")

        existing = self.journey_contact_repository.find_by_journey_and_contact(journey_id, contact_id)
        if existing is not None and existing.status == JourneyContactStatus.ACTIVE.value:
            raise DuplicateEnrollmentError(f"Contact {contact_id} is already enrolled in journey {journey_id}")

        if existing is not None:
            journey_contact = self._reactivate(existing, source, data, now)
        else:
            try:
                journey_contact = self.journey_contact_repository.create(
                    tenant_id=tenant_id,
                    journey_id=journey_id,
                    contact_id=contact_id,
                    status=JourneyContactStatus.ACTIVE.value,
                    enrolled_at=to_db_time(now),
                    created_at=to_db_time(now),
                    enrollment_source=source,
                    enrollment_data=data,
                )
            except IntegrityError:
                raise DuplicateEnrollmentError(
                    f"Contact {contact_id} is already enrolled in journey {journey_id}"
                )
        self.journey_contact_repository.commit()
        logger.info("Contact enrolled in journey", journey_id=journey_id, contact_id=contact_id,
                    journey_contact_id=journey_contact.id, source=source)

        self._start_journey(journey_contact, nodes, now)
        return journey_contact

    def _reactivate(self, journey_contact, source: str, data, now: datetime):
        self.execution_repository.cancel_open_for_contact(journey_contact.id, 'Contact re-enrolled')
        return self.journey_contact_repository.update(
            journey_contact,
            status=JourneyContactStatus.ACTIVE.value,
            current_node_id=None,
            enrolled_at=to_db_time(now),
            completed_at=None,
            paused_at=None,
            removed_at=None,
            enrollment_source=source,
            enrollment_data=data,
        )

    def _start_journey(self, journey_contact, nodes: List, now: datetime) -> None:
        scheduler = self.execution_service.scheduler
        start_time = self.execution_rules_service.is_enrollment_after_hours(journey_contact.tenant_id, now)

        if start_time is not None:
            day_one = find_day_one_nodes(nodes) or [resolve_entry_node(nodes)]
            journey_contact.current_node_id = day_one[0].id
            scheduler.schedule_day_one_nodes(day_one, journey_contact, start_time, now)
            self.journey_contact_repository.commit()
            logger.info("Enrolled after hours, day 1 deferred", journey_contact_id=journey_contact.id,
                        start_time=start_time.isoformat(), nodes=len(day_one))
            return

        entry = resolve_entry_node(nodes)
        journey_contact.current_node_id = entry.id
        schedule = scheduler.schedule_node(entry, journey_contact, now)
        self.journey_contact_repository.commit()
        if schedule.created and schedule.due:
            self.execution_service.run_execution(schedule.execution, now)

    def bulk_enroll_contacts(self, tenant_id: str, journey_id: str, contact_ids: List[int],
                             source: str = EnrollmentSource.MANUAL.value,
                             data: Optional[Dict[str, Any]] = None,
                             now: Optional[datetime] = None) -> Result[Dict[str, int]]:
        """
        Enroll many contacts; already-enrolled contacts are skipped.

        Returns:
            Result with ``{success, failed, skipped}`` counts
        """
        journey = self.journey_repository.get_for_tenant(journey_id, tenant_id)
        if journey is None:
            return Result.failure("Journey not found", code='JOURNEY_NOT_FOUND')
        if journey.status in NOT_ENROLLABLE_STATUSES:
            return Result.failure("Cannot enroll contacts in paused or archived journeys",
                                  code='JOURNEY_NOT_ENROLLABLE')

        counts = {'success': 0, 'failed': 0, 'skipped': 0}
        for contact_id in contact_ids:
            try:
                self.enroll_contact(tenant_id, journey_id, contact_id, source, data, now)
                counts['success'] += 1
            except DuplicateEnrollmentError:
                counts['skipped'] += 1
            except ContactNotFoundError:
                counts['failed'] += 1
            except JourneyNotEnrollableError as e:
                return Result.failure(str(e), code='JOURNEY_NOT_ENROLLABLE', metadata=counts)
            except Exception:
                logger.exception("Bulk enrollment failed for contact", journey_id=journey_id,
                                 contact_id=contact_id)
                self.journey_contact_repository.rollback()
                counts['failed'] += 1

        logger.info("Bulk enrollment finished", journey_id=journey_id, **counts)
        return Result.success(counts)

    def remove_contact(self, tenant_id: str, journey_id: str, contact_id: int,
                       pause_only: bool = False, now: Optional[datetime] = None) -> Result[int]:
        """
        Remove (or pause) a contact's membership and cancel its PENDING executions.

        Returns:
            Result with the number of cancelled executions
        """
        journey_contact = self.journey_contact_repository.find_by_journey_and_contact(journey_id, contact_id)
        if journey_contact is None or journey_contact.tenant_id != tenant_id:
            return Result.failure("Contact is not enrolled in this journey", code='NOT_ENROLLED')
        cancelled = self.execution_service.remove_contact_membership(
            journey_contact, now or utc_now(), pause_only=pause_only,
            reason='Paused by request' if pause_only else 'Removed by request'
        )
        return Result.success(cancelled)

    # Nodes

    def get_nodes(self, tenant_id: str, journey_id: str) -> Result[List]:
        journey = self.journey_repository.get_for_tenant(journey_id, tenant_id)
        if journey is None:
            return Result.failure("Journey not found", code='JOURNEY_NOT_FOUND')
        return Result.success(self.journey_node_repository.find_by_journey(journey_id))

    def add_node(self, tenant_id: str, journey_id: str, node_type: str,
                 name: Optional[str] = None, config: Optional[Dict[str, Any]] = None,
                 connections: Optional[Dict[str, Any]] = None,
                 created_at: Optional[datetime] = None) -> Result:
        """
        Add a node; temporary ids in its edges are resolved first and every edge
        must point at a node of this journey.
        """
        journey = self.journey_repository.get_for_tenant(journey_id, tenant_id)
        if journey is None:
            return Result.failure("Journey not found", code='JOURNEY_NOT_FOUND')
        if node_type not in NODE_TYPES:
            return Result.failure(f"Unknown node type: {node_type}", code='INVALID_NODE_TYPE')

        config = self._normalize_edges(journey_id, copy.deepcopy(config or {}))
        connections = self._normalize_edges(journey_id, copy.deepcopy(connections or {}))
        error = self._check_edges(journey_id, node_type, config, connections)
        if error:
            return Result.failure(error, code='INVALID_EDGE')

        fields = {}
        if created_at is not None:
            fields['created_at'] = to_db_time(created_at)
        node = self.journey_node_repository.create(
            journey_id=journey_id,
            tenant_id=tenant_id,
            type=node_type,
            name=name,
            config=config,
            connections=connections,
            **fields
        )
        self.journey_node_repository.commit()
        logger.info("Journey node added", journey_id=journey_id, node_id=node.id, node_type=node_type)
        return Result.success(node)

    def update_node(self, tenant_id: str, journey_id: str, node_id: str,
                    config: Optional[Dict[str, Any]] = None,
                    connections: Optional[Dict[str, Any]] = None,
                    name: Optional[str] = None,
                    node_type: Optional[str] = None) -> Result:
        """
        Merge changes into a node.

        Config and connections are shallow-merged over the stored values and
        ``connections.outputs`` is merged key by key. Keys set to None are ignored.
        """
        node = self.journey_node_repository.get_in_journey(node_id, journey_id)
        if node is None or node.tenant_id != tenant_id:
            return Result.failure("Node not found", code='NODE_NOT_FOUND')
        if node_type is not None and node_type not in NODE_TYPES:
            return Result.failure(f"Unknown node type: {node_type}", code='INVALID_NODE_TYPE')

        merged_config = dict(node.config or {})
        if config:
            updates = self._normalize_edges(journey_id, copy.deepcopy(config))
            merged_config.update({k: v for k, v in updates.items() if v is not None})

        merged_connections = dict(node.connections or {})
        if connections is not None:
            updates = self._normalize_edges(journey_id, copy.deepcopy(connections))
            updates = {k: v for k, v in updates.items() if v is not None}
            if 'outputs' in updates and isinstance(merged_connections.get('outputs'), dict):
                outputs = dict(merged_connections['outputs'])
                outputs.update(updates['outputs'])
                updates['outputs'] = outputs
            merged_connections.update(updates)

        new_type = node_type or node.type
        error = self._check_edges(journey_id, new_type, merged_config, merged_connections, node.id)
        if error:
            return Result.failure(error, code='INVALID_EDGE')

        updates = {'config': merged_config, 'connections': merged_connections, 'type': new_type}
        if name is not None:
            updates['name'] = name
        self.journey_node_repository.update(node, **updates)
        self.journey_node_repository.commit()
        self.execution_service.invalidate_node(node.id, journey_id)
        logger.info("Journey node updated", journey_id=journey_id, node_id=node.id)
        return Result.success(node)

    def delete_node(self, tenant_id: str, journey_id: str, node_id: str) -> Result[int]:
        """
        Delete a node and drop every edge that pointed at it.

        Refused while ACTIVE or PAUSED journey contacts sit on the node; finished
        memberships pointing at it have their current node cleared.

        Returns:
            Result with the number of nodes whose edges were cleared
        """
        node = self.journey_node_repository.get_in_journey(node_id, journey_id)
        if node is None or node.tenant_id != tenant_id:
            return Result.failure("Node not found", code='NODE_NOT_FOUND')

        occupants = self.journey_contact_repository.find_by(journey_id=journey_id, current_node_id=node_id)
        waiting = [jc for jc in occupants if jc.status in (JourneyContactStatus.ACTIVE.value,
                                                           JourneyContactStatus.PAUSED.value)]
        if waiting:
            return Result.failure(
                f"{len(waiting)} contact(s) are currently at this node", code='NODE_IN_USE'
            )
        for journey_contact in occupants:
            journey_contact.current_node_id = None

        cleared = 0
        for other in self.journey_node_repository.find_by_journey(journey_id):
            if other.id == node_id:
                continue
            new_config = _strip_target(other.config or {}, node_id)
            new_connections = _strip_target(other.connections or {}, node_id)
            if new_config != (other.config or {}) or new_connections != (other.connections or {}):
                self.journey_node_repository.update(other, config=new_config, connections=new_connections)
                self.execution_service.invalidate_node(other.id, journey_id)
                cleared += 1

        self.journey_node_repository.delete(node)
        self.journey_node_repository.commit()
        self.execution_service.invalidate_node(node_id, journey_id)
        logger.info("Journey node deleted", journey_id=journey_id, node_id=node_id,
                    references_cleared=cleared)
        return Result.success(cleared)

    def validate_journey_graph(self, tenant_id: str, journey_id: str) -> Result[Dict[str, Any]]:
        journey = self.journey_repository.get_for_tenant(journey_id, tenant_id)
        if journey is None:
            return Result.failure("Journey not found", code='JOURNEY_NOT_FOUND')
        report = validate_journey_graph(self.journey_node_repository.find_by_journey(journey_id))
        return Result.success(report.to_dict())

    def resolve_temporary_node_id(self, journey_id: str, temporary_id: str) -> Optional[str]:
        """
        Map an editor placeholder (``TYPE-timestamp``) to the node of that type
        created within five minutes of the timestamp.

        Real node ids pass through unchanged.
        """
        if is_valid_node_id(temporary_id):
            return temporary_id
        parsed = parse_temporary_id(temporary_id)
        if parsed is None:
            logger.warning("Invalid temporary node id", temporary_id=temporary_id)
            return None
        prefix, timestamp_ms = parsed
        window_ms = TEMPORARY_ID_MATCH_WINDOW.total_seconds() * 1000

        nodes = self.journey_node_repository.find_by_journey(journey_id)
        for node in reversed(nodes):
            if node.created_at is None or not node.type.startswith(prefix):
                continue
            created_ms = ensure_utc(node.created_at).timestamp() * 1000
            if abs(created_ms - timestamp_ms) < window_ms:
                return node.id
        logger.warning("Could not resolve temporary node id", temporary_id=temporary_id)
        return None

    def _normalize_edges(self, journey_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Resolve temporary ids and drop day-marker references in a config/connections dict"""
        def resolve(target):
            if not isinstance(target, str) or is_valid_node_id(target):
                return target
            return self.resolve_temporary_node_id(journey_id, target) or target

        next_id = data.get('nextNodeId')
        if isinstance(next_id, str) and next_id.startswith(DAY_MARKER_PREFIX):
            del data['nextNodeId']
        elif next_id:
            data['nextNodeId'] = resolve(next_id)

        if isinstance(data.get('outputs'), dict):
            outputs = {}
            for outcome, target in data['outputs'].items():
                if isinstance(target, str) and target.startswith(DAY_MARKER_PREFIX):
                    continue
                outputs[outcome] = resolve(target)
            data['outputs'] = outputs

        for key in ('branches', 'paths'):
            for edge in data.get(key) or []:
                if edge.get('nextNodeId'):
                    edge['nextNodeId'] = resolve(edge['nextNodeId'])
        default = data.get('defaultBranch')
        if isinstance(default, dict) and default.get('nextNodeId'):
            default['nextNodeId'] = resolve(default['nextNodeId'])
        return data

    def _check_edges(self, journey_id: str, node_type: str, config: Dict[str, Any],
                     connections: Dict[str, Any], node_id: Optional[str] = None) -> Optional[str]:
        probe = NodeSnapshot(id=node_id or '', journey_id=journey_id, tenant_id='', type=node_type,
                             name=None, config=config, connections=connections)
        known = {node.id for node in self.journey_node_repository.find_by_journey(journey_id)}
        for target in outbound_targets(probe):
            if not is_valid_node_id(target):
                return f"Cannot resolve temporary node ID: {target}"
            if target not in known:
                return f"Target node not found: {target}"
        return None

    # Removal criteria

    def get_removal_criteria(self, tenant_id: str, journey_id: str) -> Result[Dict[str, Any]]:
        journey = self.journey_repository.get_for_tenant(journey_id, tenant_id)
        if journey is None:
            return Result.failure("Journey not found", code='JOURNEY_NOT_FOUND')
        return Result.success(journey.removal_criteria or {'enabled': False, 'conditions': []})

    def update_removal_criteria(self, tenant_id: str, journey_id: str,
                                criteria: Dict[str, Any]) -> Result[Dict[str, Any]]:
        """Replace a journey's removal criteria; a webhook condition gets a token if none is set"""
        journey = self.journey_repository.get_for_tenant(journey_id, tenant_id)
        if journey is None:
            return Result.failure("Journey not found", code='JOURNEY_NOT_FOUND')

        criteria = copy.deepcopy(criteria or {})
        conditions = criteria.get('conditions') or []
        unknown = [c.get('type') for c in conditions if c.get('type') not in REMOVAL_CONDITION_TYPES]
        if unknown:
            return Result.failure(f"Unknown removal condition type: {unknown[0]}", code='INVALID_CRITERIA')
        criteria['conditions'] = conditions

        has_webhook = any(c.get('type') == RemovalConditionType.WEBHOOK.value for c in conditions)
        if has_webhook and not criteria.get('webhookToken'):
            criteria['webhookToken'] = (journey.removal_criteria or {}).get('webhookToken') \
                or secrets.token_hex(32)

        self.journey_repository.update(journey, removal_criteria=criteria)
        self.journey_repository.commit()
        logger.info("Removal criteria updated", journey_id=journey_id, conditions=len(conditions))
        return Result.success(criteria)

    def generate_webhook_token(self, tenant_id: str, journey_id: str) -> Result[str]:
        journey = self.journey_repository.get_for_tenant(journey_id, tenant_id)
        if journey is None:
            return Result.failure("Journey not found", code='JOURNEY_NOT_FOUND')
        token = secrets.token_hex(32)
        criteria = dict(journey.removal_criteria or {'enabled': False, 'conditions': []})
        criteria['webhookToken'] = token
        self.journey_repository.update(journey, removal_criteria=criteria)
        self.journey_repository.commit()
        logger.info("Generated removal webhook token", journey_id=journey_id)
        return Result.success(token)

    def check_removal_criteria_for_webhook(self, tenant_id: str, journey_id: str, contact_id: int,
                                           payload: Dict[str, Any]) -> bool:
        """Whether an inbound webhook payload matches the journey's removal criteria for a contact"""
        journey = self.journey_repository.get_for_tenant(journey_id, tenant_id)
        contact = self.contact_repository.get_for_tenant(contact_id, tenant_id)
        return self.removal_criteria_service.should_remove(
            journey, contact, RemovalContext(webhook_payload=payload or {})
        )

    def process_removal_webhook(self, journey_id: str, token: str, payload: Dict[str, Any],
                                now: Optional[datetime] = None) -> Result[Dict[str, Any]]:
        """
        Handle the token-authenticated removal webhook.

        The contact is found by the phone number in the payload field named by
        the journey's webhook condition, and removed when the criteria match.
        """
        journey = self.journey_repository.get_by_id(journey_id)
        if journey is None:
            return Result.failure("Journey not found", code='JOURNEY_NOT_FOUND')
        expected = (journey.removal_criteria or {}).get('webhookToken')
        if not expected or not token or not secrets.compare_digest(expected, token):
            logger.warning("Invalid removal webhook token", journey_id=journey_id)
            return Result.failure("Invalid webhook token", code='INVALID_TOKEN')

        fields = [
            (c.get('config') or {}).get('webhookPayloadField')
            for c in (journey.removal_criteria or {}).get('conditions') or []
            if c.get('type') == RemovalConditionType.WEBHOOK.value
        ]
        phone = next((payload.get(f) for f in fields if f and payload.get(f)), None)
        if not phone:
            return Result.failure("Payload carries no phone number", code='CONTACT_NOT_FOUND')

        contact = self._find_enrolled_contact_by_phone(journey, phone)
        if contact is None:
            return Result.failure(f"No contact enrolled with phone {phone}", code='CONTACT_NOT_FOUND')

        if not self.check_removal_criteria_for_webhook(journey.tenant_id, journey_id, contact.id, payload):
            return Result.success({'removed': False, 'contactId': contact.id})
        removal = self.remove_contact(journey.tenant_id, journey_id, contact.id, now=now)
        if removal.is_failure:
            return removal
        return Result.success({'removed': True, 'contactId': contact.id, 'cancelled': removal.data})

    def _find_enrolled_contact_by_phone(self, journey, phone: str):
        """
        Contact enrolled in ``journey`` with this phone, ACTIVE memberships first.

        Only this journey's memberships are searched, so a tenant contact that
        shares the number but isn't enrolled is never returned.
        """
        wanted = normalize_phone(phone)
        candidates = [phone, wanted, f"+{wanted}" if wanted else None]
        memberships = self.journey_contact_repository.find_by_journey_and_phones(journey.id, candidates)
        if not memberships:
            memberships = [
                jc for jc in self.journey_contact_repository.find_by_journey(journey.id)
                if jc.contact is not None and normalize_phone(jc.contact.phone) == wanted
            ]
        if not memberships:
            return None
        active = [jc for jc in memberships if jc.status == JourneyContactStatus.ACTIVE.value]
        return (active or memberships)[0].contact

    # History

    def get_contact_executions(self, tenant_id: str, journey_id: str,
                               contact_id: int) -> Result[List[Dict[str, Any]]]:
        journey_contact = self.journey_contact_repository.find_by_journey_and_contact(journey_id, contact_id)
        if journey_contact is None or journey_contact.tenant_id != tenant_id:
            return Result.failure("Contact not enrolled in this journey", code='NOT_ENROLLED')

        history = []
        for execution in self.execution_repository.list_for_contact(journey_contact.id):
            node = execution.node
            history.append({
                'id': execution.id,
                'nodeId': execution.node_id,
                'nodeType': node.type if node is not None else None,
                'nodeName': node.name if node is not None else None,
                'status': execution.status,
                'scheduledAt': _isoformat(execution.scheduled_at),
                'executedAt': _isoformat(execution.executed_at),
                'completedAt': _isoformat(execution.completed_at),
                'result': execution.result or {},
            })
        return Result.success(history)

    def get_journey_contacts(self, journey_id: str,
                             status: Optional[str] = JourneyContactStatus.ACTIVE.value) -> List:
        return self.journey_contact_repository.find_by_journey(journey_id, status)


def _strip_target(data: Dict[str, Any], node_id: str) -> Dict[str, Any]:
    """Copy of a config/connections dict with every edge to ``node_id`` removed"""
    data = copy.deepcopy(data)
    if data.get('nextNodeId') == node_id:
        del data['nextNodeId']
    if isinstance(data.get('outputs'), dict):
        data['outputs'] = {k: v for k, v in data['outputs'].items() if v != node_id}
    for key in ('branches', 'paths'):
        for edge in data.get(key) or []:
            if edge.get('nextNodeId') == node_id:
                edge['nextNodeId'] = None
    default = data.get('defaultBranch')
    if isinstance(default, dict) and default.get('nextNodeId') == node_id:
        data['defaultBranch'] = None
    return data


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return ensure_utc(value).isoformat() if value is not None else None
