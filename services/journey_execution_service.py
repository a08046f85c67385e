"""
JourneyExecutionService - runs one execution and routes the journey contact onward.

This is the single routing path shared by the poller, inline (zero-delay)
chains, the call-completion router and the stuck-call sweep.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from logging_config import get_logger
from repositories.journey_contact_repository import JourneyContactRepository
from repositories.journey_node_execution_repository import JourneyNodeExecutionRepository
from repositories.journey_node_repository import JourneyNodeRepository
from repositories.journey_repository import JourneyRepository
from services.cache_service import CacheService
from services.common.result import NodeOutcome
from services.enums import ExecutionStatus, JourneyContactStatus, JourneyNodeType, OPEN_EXECUTION_STATUSES
from services.journey_exceptions import JourneyConfigurationError, JourneyRoutingError
from services.journey_graph import NodeSnapshot, check_target, resolve_next_node_id
from services.journey_node_executor import JourneyNodeExecutor
from services.journey_scheduler_service import JourneySchedulerService
from services.journey_settings import JourneySettings
from utils.datetime_utils import ensure_utc, to_db_time, utc_now

logger = get_logger(__name__)


def describe_outcome(node_type: str, outcome: NodeOutcome) -> str:
    """Human-readable ``outcomeDetails`` for an execution result"""
    details = outcome.details
    if outcome.is_failure:
        return f"Execution failed: {details.get('error', outcome.action)}"
    if node_type == JourneyNodeType.SEND_SMS.value:
        return f"SMS sent successfully (SID: {details.get('messageSid')})"
    if node_type == JourneyNodeType.MAKE_CALL.value:
        return f"Call initiated successfully (Unique ID: {details.get('callUniqueId')})"
    if node_type == JourneyNodeType.CONDITION.value:
        return "Condition evaluated"
    if node_type == JourneyNodeType.WEIGHTED_PATH.value:
        return "Path selected"
    if node_type == JourneyNodeType.TIME_DELAY.value:
        if details.get('delayAtTime'):
            return f"Delayed until {details['delayAtTime']}"
        unit = str(details.get('delayUnit') or '').lower()
        return f"Delayed for {details.get('delayValue')} {unit}".rstrip()
    if node_type == JourneyNodeType.ADD_TO_CAMPAIGN.value:
        return f"Added to campaign {details.get('campaignName') or details.get('campaignId')}"
    if node_type == JourneyNodeType.REMOVE_FROM_CAMPAIGN.value:
        return f"Removed from campaign {details.get('campaignName') or details.get('campaignId')}"
    if node_type == JourneyNodeType.EXECUTE_WEBHOOK.value:
        return f"Webhook executed (HTTP {details.get('statusCode')})"
    if node_type == JourneyNodeType.UPDATE_CONTACT_STATUS.value:
        return f"Lead status changed to {details.get('newStatus')}"
    return outcome.action


class JourneyExecutionService:

    def __init__(self, journey_repository: JourneyRepository,
                 journey_node_repository: JourneyNodeRepository,
                 journey_contact_repository: JourneyContactRepository,
                 execution_repository: JourneyNodeExecutionRepository,
                 node_executor: JourneyNodeExecutor,
                 scheduler: JourneySchedulerService,
                 settings: Optional[JourneySettings] = None,
                 node_cache: Optional[CacheService] = None):
        self.journey_repository = journey_repository
        self.journey_node_repository = journey_node_repository
        self.journey_contact_repository = journey_contact_repository
        self.execution_repository = execution_repository
        self.node_executor = node_executor
        self.scheduler = scheduler
        self.settings = settings or JourneySettings()
        self.node_cache = node_cache or CacheService(
            default_ttl=self.settings.cache_ttl_seconds,
            max_size=self.settings.node_cache_size,
            name='journey_nodes',
        )

    # Node lookup

    def get_node(self, node_id: str, journey_id: str) -> Optional[NodeSnapshot]:
        """Read-through cached node lookup scoped to a journey"""
        def load():
            node = self.journey_node_repository.get_in_journey(node_id, journey_id)
            return NodeSnapshot.from_model(node) if node is not None else None
        return self.node_cache.get_or_set(f"node:{journey_id}:{node_id}", load)

    def invalidate_node(self, node_id: str, journey_id: str) -> None:
        self.node_cache.delete(f"node:{journey_id}:{node_id}")

    # Execution

    def run_execution(self, execution, now: Optional[datetime] = None) -> str:
        """
        Execute one PENDING (or poller-claimed EXECUTING) execution and route onward.

        Returns:
            The execution's status after the call
        """
        now = now or utc_now()
        if execution.status not in OPEN_EXECUTION_STATUSES:
            logger.info("Execution no longer open, skipping", execution_id=execution.id,
                        status=execution.status)
            return execution.status

        journey_contact = self.journey_contact_repository.get_by_id(execution.journey_contact_id)
        node = self.get_node(execution.node_id, execution.journey_id)
        if journey_contact is None or node is None:
            self._finish(execution, ExecutionStatus.FAILED,
                         {'success': False, 'error': 'Journey contact or node not found'}, now)
            self.execution_repository.commit()
            return execution.status

        if journey_contact.status != JourneyContactStatus.ACTIVE.value:
            self._finish(execution, ExecutionStatus.SKIPPED,
                         {'success': False, 'action': 'SKIPPED',
                          'reason': f"Journey contact is {journey_contact.status}"}, now)
            self.execution_repository.commit()
            return execution.status

        if self._is_looping(node, journey_contact, execution, now):
            self.fail_and_pause(
                execution, journey_contact, node,
                f"Loop detected: node {node.name or node.id} executed repeatedly within "
                f"{self.settings.loop_window_seconds} seconds", now
            )
            return execution.status

        self._mark_executing(execution, journey_contact, node, now)
        self.execution_repository.commit()

        journey = self.journey_repository.get_by_id(journey_contact.journey_id)
        try:
            outcome = self.node_executor.execute(node, journey_contact, journey, now)
        except JourneyConfigurationError as e:
            self.execution_repository.rollback()
            self.fail_and_pause(execution, journey_contact, node, str(e), now)
            return execution.status
        except Exception as e:
            logger.exception("Unexpected error executing node", execution_id=execution.id,
                             node_id=node.id)
            self.execution_repository.rollback()
            outcome = NodeOutcome.failed('UNEXPECTED_ERROR', str(e))

        result = dict(execution.result or {})
        result.update(outcome.to_result())
        result['outcomeDetails'] = describe_outcome(node.type, outcome)

        if outcome.is_suspended:
            execution.result = result
            execution.awaiting_callback = True
            execution.call_correlation_id = outcome.details.get('callUniqueId')
            self.execution_repository.commit()
            logger.info("Execution suspended awaiting callback", execution_id=execution.id,
                        node_id=node.id, correlation_id=execution.call_correlation_id)
            return execution.status

        status = ExecutionStatus.FAILED if outcome.is_failure else ExecutionStatus.COMPLETED
        self._finish(execution, status, result, now)
        self.execution_repository.commit()
        logger.info("Execution finished", execution_id=execution.id, node_id=node.id,
                    status=status.value, outcome=outcome.outcome, action=outcome.action)

        self.route(node, journey_contact, outcome, execution, now)
        return execution.status

    def _is_looping(self, node, journey_contact, execution, now: datetime) -> bool:
        previous = [
            run for run in self.execution_repository.recent_for_node(node.id, journey_contact.id, limit=3)
            if run.id != execution.id
        ]
        if not previous or previous[0].executed_at is None:
            return False
        elapsed = now - ensure_utc(previous[0].executed_at)
        return elapsed < timedelta(seconds=self.settings.loop_window_seconds)

    def _mark_executing(self, execution, journey_contact, node, now: datetime) -> None:
        result = dict(execution.result or {})
        previous = self.execution_repository.latest_executed_for_contact(journey_contact.id,
                                                                        exclude_id=execution.id)
        if previous is not None and previous.node_id != node.id:
            previous_node = self.get_node(previous.node_id, execution.journey_id)
            result['previousNodeId'] = previous.node_id
            result['previousAction'] = (previous.result or {}).get('action')
            result['previousNodeName'] = previous_node.name if previous_node else None
        execution.result = result
        if execution.status == ExecutionStatus.PENDING.value or execution.executed_at is None:
            execution.executed_at = to_db_time(now)
        execution.status = ExecutionStatus.EXECUTING.value

    def _finish(self, execution, status: ExecutionStatus, result: Dict[str, Any], now: datetime) -> None:
        merged = dict(execution.result or {})
        merged.update(result)
        execution.result = merged
        execution.status = status.value
        execution.awaiting_callback = False
        execution.completed_at = to_db_time(now)

    # Routing

    def route(self, node, journey_contact, outcome: NodeOutcome, execution,
              now: Optional[datetime] = None) -> None:
        """
        Move the journey contact along the edge chosen for ``outcome``.

        No edge completes the journey. A malformed or dangling edge fails the
        execution and pauses the contact on the current node. A newly scheduled
        execution that is already due runs inline.
        """
        now = now or utc_now()
        if outcome.details.get('terminal'):
            self.complete_contact(journey_contact, now, reason='Contact marked DNC')
            return

        target_id = resolve_next_node_id(node, outcome)
        if not target_id:
            self.complete_contact(journey_contact, now)
            return

        try:
            check_target(target_id)
            target = self.get_node(target_id, journey_contact.journey_id)
            if target is None:
                raise JourneyRoutingError(f"Target node not found: {target_id}", target_id)
        except JourneyRoutingError as e:
            self.fail_and_pause(execution, journey_contact, node, str(e), now)
            return

        journey_contact.current_node_id = target.id
        schedule = self.scheduler.schedule_node(target, journey_contact, now, previous_node=node)
        self.execution_repository.commit()

        if schedule.created and schedule.due:
            self.run_execution(schedule.execution, now)

    def complete_contact(self, journey_contact, now: datetime, reason: Optional[str] = None) -> None:
        journey_contact.status = JourneyContactStatus.COMPLETED.value
        journey_contact.completed_at = to_db_time(now)
        self.journey_contact_repository.commit()
        logger.info("Journey completed for contact", journey_contact_id=journey_contact.id,
                    journey_id=journey_contact.journey_id, reason=reason)

    def pause_contact(self, journey_contact, node_id: Optional[str], now: datetime,
                      reason: Optional[str] = None) -> None:
        journey_contact.status = JourneyContactStatus.PAUSED.value
        journey_contact.paused_at = to_db_time(now)
        if node_id:
            journey_contact.current_node_id = node_id
        self.journey_contact_repository.commit()
        logger.warning("Journey contact paused", journey_contact_id=journey_contact.id,
                       journey_id=journey_contact.journey_id, node_id=node_id, reason=reason)

    def fail_and_pause(self, execution, journey_contact, node, error: str, now: datetime) -> None:
        """Record a configuration or routing error and park the contact on ``node``"""
        self._finish(execution, ExecutionStatus.FAILED, {'success': False, 'error': error}, now)
        self.execution_repository.flush()
        self.pause_contact(journey_contact, node.id, now, reason=error)

    def remove_contact_membership(self, journey_contact, now: datetime, pause_only: bool = False,
                                  reason: str = 'Removed from journey') -> int:
        """
        Take a contact out of a journey (or pause it) and cancel its PENDING executions.

        Returns:
            Number of executions cancelled
        """
        cancelled = self.execution_repository.cancel_open_for_contact(journey_contact.id, reason)
        if pause_only:
            journey_contact.status = JourneyContactStatus.PAUSED.value
            journey_contact.paused_at = to_db_time(now)
        else:
            journey_contact.status = JourneyContactStatus.REMOVED.value
            journey_contact.removed_at = to_db_time(now)
        self.journey_contact_repository.commit()
        logger.info("Journey contact removed" if not pause_only else "Journey contact paused",
                    journey_contact_id=journey_contact.id, cancelled=cancelled, reason=reason)
        return cancelled

    # Suspended calls

    def complete_call_execution(self, execution, outcome: str, details: Dict[str, Any],
                                now: Optional[datetime] = None) -> NodeOutcome:
        """
        Resume a suspended MAKE_CALL with the call's final outcome.

        Call outcomes (busy, no_answer, failed...) are data, not errors: they
        follow ``outputs[outcome]`` and otherwise ``nextNodeId``.

        Returns:
            The outcome to route with
        """
        now = now or utc_now()
        result = {'waitingForCallCompletion': False, 'outcome': outcome,
                  'success': outcome != 'failed'}
        result.update(details)
        self._finish(execution, ExecutionStatus.COMPLETED, result, now)
        self.execution_repository.commit()
        logger.info("Call execution completed", execution_id=execution.id, outcome=outcome)
        return NodeOutcome.succeeded(outcome, 'CALL_COMPLETED', **details)

    def time_out_call_execution(self, execution, now: Optional[datetime] = None) -> None:
        """Fail a MAKE_CALL that never received its completion callback and route its failure edge"""
        now = now or utc_now()
        minutes = self.settings.call_timeout_minutes
        message = f"Call timed out after {minutes} minutes - no completion callback received"
        self._finish(execution, ExecutionStatus.FAILED, {
            'success': False,
            'waitingForCallCompletion': False,
            'callStatus': 'timeout',
            'outcome': 'failed',
            'error': message,
            'outcomeDetails': message,
        }, now)
        self.execution_repository.commit()
        logger.warning("Call execution timed out", execution_id=execution.id, node_id=execution.node_id)

        journey_contact = self.journey_contact_repository.get_by_id(execution.journey_contact_id)
        node = self.get_node(execution.node_id, execution.journey_id)
        if journey_contact is None or node is None:
            return
        if journey_contact.status != JourneyContactStatus.ACTIVE.value:
            return
        outcome = NodeOutcome.failed('CALL_TIMEOUT', message, callStatus='timeout')
        self.route(node, journey_contact, outcome, execution, now)
