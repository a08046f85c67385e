"""
JourneyPollerService - the periodic loop that drives due journey executions.

One cycle claims due PENDING executions in batches (TIME_DELAY first), runs
each through the execution rules gate, then through the execution service.
Gate reschedules are queued and applied in bulk by ``flush_reschedules``.
"""

import threading
import time
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from logging_config import get_logger, performance_logger
from repositories.journey_contact_repository import JourneyContactRepository
from repositories.journey_node_execution_repository import JourneyNodeExecutionRepository
from services.enums import ExecutionStatus, GateAction, JourneyNodeType
from services.execution_rules_service import ExecutionRulesService, GateDecision
from services.journey_execution_service import JourneyExecutionService
from services.journey_graph import is_valid_node_id, node_day
from services.journey_settings import JourneySettings
from utils.datetime_utils import ensure_utc, to_db_time, utc_now

logger = get_logger(__name__)

TIME_DELAY_TYPES = [JourneyNodeType.TIME_DELAY.value]


class JourneyPollerService:

    def __init__(self, execution_repository: JourneyNodeExecutionRepository,
                 journey_contact_repository: JourneyContactRepository,
                 execution_rules_service: ExecutionRulesService,
                 execution_service: JourneyExecutionService,
                 settings: Optional[JourneySettings] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.execution_repository = execution_repository
        self.journey_contact_repository = journey_contact_repository
        self.execution_rules_service = execution_rules_service
        self.execution_service = execution_service
        self.settings = settings or JourneySettings()
        self._clock = clock
        self._lock = threading.Lock()
        self._reschedule_queue: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._queue_lock = threading.Lock()

    # Poll cycle

    def process_pending_executions(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Run one poll cycle.

        Returns:
            Counters for the cycle; ``skipped_cycle`` is True when another cycle
            was still running
        """
        if not self._lock.acquire(blocking=False):
            logger.warning("Previous journey poll still running, skipping cycle")
            return {'skipped_cycle': True, 'processed': 0, 'failed': 0,
                    'rescheduled': 0, 'skipped': 0}
        try:
            return self._run_cycle(now)
        finally:
            self._lock.release()

    def _run_cycle(self, now: Optional[datetime]) -> Dict[str, Any]:
        started = self._clock()
        now = now or utc_now()
        stats = {'skipped_cycle': False, 'processed': 0, 'failed': 0, 'rescheduled': 0,
                 'skipped': 0, 'budget_exhausted': False}
        seen = set()

        stale = self.execution_repository.count_overdue_pending(
            now - timedelta(hours=self.settings.stale_pending_hours)
        )
        if stale:
            logger.warning("Overdue pending journey executions", count=stale,
                           older_than_hours=self.settings.stale_pending_hours)

        batches = [
            (self.settings.time_delay_batch_size, TIME_DELAY_TYPES, None),
            (self.settings.batch_size, None, TIME_DELAY_TYPES),
        ]
        for limit, include, exclude in batches:
            while True:
                if self._budget_exhausted(started):
                    stats['budget_exhausted'] = True
                    break
                # Rows queued for reschedule stay PENDING until the flush
                batch = self.execution_repository.claim_due(
                    now, limit, include_types=include, exclude_types=exclude, exclude_ids=seen
                )
                if not batch:
                    break
                for execution in batch:
                    if self._budget_exhausted(started):
                        stats['budget_exhausted'] = True
                        break
                    seen.add(execution.id)
                    self._process_one(execution, now, stats)
                if stats['budget_exhausted']:
                    break
            if stats['budget_exhausted']:
                logger.warning("Journey poll time budget exhausted",
                               budget_seconds=self.settings.max_processing_seconds)
                break

        stats['flushed'] = self.flush_reschedules(now)
        stats['duration_seconds'] = round(self._clock() - started, 3)
        performance_logger.log_poll_cycle(stats)
        return stats

    def _budget_exhausted(self, started: float) -> bool:
        return self._clock() - started >= self.settings.max_processing_seconds

    def _process_one(self, execution, now: datetime, stats: Dict[str, Any]) -> None:
        try:
            node = execution.node
            journey_contact = self.journey_contact_repository.get_by_id(execution.journey_contact_id)
            contact = journey_contact.contact if journey_contact else None

            decision = self.execution_rules_service.check_execution(
                execution.tenant_id, execution.journey_id, node.type, contact,
                ensure_utc(execution.scheduled_at), now
            )
            if not decision.should_execute:
                self.apply_gate_decision(execution, node, journey_contact, decision, now, stats)
                return

            execution.status = ExecutionStatus.EXECUTING.value
            execution.executed_at = to_db_time(now)
            self.execution_repository.commit()

            status = self.execution_service.run_execution(execution, now)
            if status == ExecutionStatus.FAILED.value:
                stats['failed'] += 1
            else:
                stats['processed'] += 1
        except Exception as e:
            logger.exception("Error processing journey execution", execution_id=execution.id)
            stats['failed'] += 1
            self._record_failure(execution, e, now)

    def _record_failure(self, execution, error: Exception, now: datetime) -> None:
        self.execution_repository.rollback()
        try:
            result = dict(execution.result or {})
            result.update({'success': False, 'error': str(error)})
            self.execution_repository.update(
                execution,
                status=ExecutionStatus.FAILED.value,
                result=result,
                completed_at=to_db_time(now),
                awaiting_callback=False,
            )
            self.execution_repository.commit()
        except Exception:
            logger.exception("Could not record execution failure", execution_id=execution.id)
            self.execution_repository.rollback()

    # Gate actions

    def apply_gate_decision(self, execution, node, journey_contact, decision: GateDecision,
                            now: datetime, stats: Optional[Dict[str, Any]] = None) -> None:
        """Carry out a refused gate decision (reschedule, skip, pause or default event)"""
        stats = stats if stats is not None else {'rescheduled': 0, 'skipped': 0}
        action = decision.action

        if action == GateAction.RESCHEDULE:
            queued = self.queue_reschedule(execution.tenant_id, execution.journey_id,
                                           execution.journey_contact_id, node_day(node),
                                           decision.new_scheduled_time)
            if not queued:
                # Queue full: move this execution on its own
                self.execution_repository.bulk_reschedule([execution.id], decision.new_scheduled_time)
                self.execution_repository.commit()
            stats['rescheduled'] += 1
            logger.info("Execution rescheduled by rules gate", execution_id=execution.id,
                        new_time=decision.new_scheduled_time.isoformat(), reason=decision.reason)
            return

        if action == GateAction.PAUSE:
            self._mark_skipped(execution, 'PAUSED', decision.reason, now)
            if journey_contact is not None:
                self.execution_service.pause_contact(journey_contact, node.id, now, decision.reason)
            stats['skipped'] += 1
            return

        if action == GateAction.DEFAULT_EVENT:
            self._mark_skipped(execution, 'DEFAULT_EVENT', decision.reason, now,
                               defaultEventNodeId=decision.default_event_node_id)
            self.execution_repository.commit()
            self._route_to_default_event(journey_contact, decision.default_event_node_id, now)
            stats['skipped'] += 1
            return

        self._mark_skipped(execution, 'SKIPPED', decision.reason, now)
        self.execution_repository.commit()
        stats['skipped'] += 1

    def _mark_skipped(self, execution, action: str, reason: Optional[str], now: datetime,
                      **extra) -> None:
        result = dict(execution.result or {})
        result.update({'success': False, 'action': action, 'reason': reason})
        result.update(extra)
        execution.result = result
        execution.status = ExecutionStatus.SKIPPED.value
        execution.completed_at = to_db_time(now)
        logger.info("Execution skipped by rules gate", execution_id=execution.id, action=action,
                    reason=reason)

    def _route_to_default_event(self, journey_contact, node_id: Optional[str], now: datetime) -> None:
        if journey_contact is None or not node_id:
            return
        if not is_valid_node_id(node_id):
            logger.warning("Default event node id is not a node id", node_id=node_id)
            return
        target = self.execution_service.get_node(node_id, journey_contact.journey_id)
        if target is None:
            logger.warning("Default event node is not in this journey", node_id=node_id,
                           journey_id=journey_contact.journey_id)
            return
        journey_contact.current_node_id = target.id
        self.execution_service.scheduler.schedule_node(target, journey_contact, now)
        self.execution_repository.commit()

    # Reschedule queue

    def queue_reschedule(self, tenant_id: str, journey_id: str, journey_contact_id: str,
                         day: int, new_start_time: datetime) -> bool:
        """
        Queue a journey contact's day-N executions to move to ``new_start_time``.

        Returns:
            False when the queue is full and the entry was dropped
        """
        key = f"{tenant_id}:{journey_id}:{journey_contact_id}:{day}"
        with self._queue_lock:
            if key not in self._reschedule_queue and \
                    len(self._reschedule_queue) >= self.settings.reschedule_queue_max:
                logger.warning("Reschedule queue full, dropping entry", key=key,
                               size=len(self._reschedule_queue))
                return False
            self._reschedule_queue[key] = {
                'journey_contact_id': journey_contact_id,
                'day': day,
                'new_start_time': new_start_time,
            }
        return True

    @property
    def queued_reschedules(self) -> int:
        return len(self._reschedule_queue)

    def flush_reschedules(self, now: Optional[datetime] = None) -> int:
        """
        Apply every queued reschedule in bulk.

        Day-1 groups get the contact's spread offset added to the new start time.

        Returns:
            Number of executions moved
        """
        now = now or utc_now()
        with self._queue_lock:
            entries: List[Dict[str, Any]] = list(self._reschedule_queue.values())
            self._reschedule_queue.clear()
        if not entries:
            return 0

        moved = 0
        scheduler = self.execution_service.scheduler
        for entry in entries:
            pending = self.execution_repository.find_by(
                journey_contact_id=entry['journey_contact_id'],
                status=ExecutionStatus.PENDING.value,
            )
            ids = [execution.id for execution in pending if node_day(execution.node) == entry['day']]
            if not ids:
                continue
            new_time = entry['new_start_time']
            if entry['day'] == 1:
                new_time = new_time + timedelta(
                    minutes=scheduler.spread_offset_minutes(entry['journey_contact_id'])
                )
            moved += self.execution_repository.bulk_reschedule(ids, new_time)
        self.execution_repository.commit()
        logger.info("Flushed journey reschedules", groups=len(entries), executions=moved)
        return moved

    # Stuck calls

    def timeout_stuck_call_executions(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Fail suspended MAKE_CALL executions whose callback never arrived"""
        now = now or utc_now()
        cutoff = now - timedelta(minutes=self.settings.call_timeout_minutes)
        stuck = self.execution_repository.find_stuck_calls(cutoff)
        timed_out = failed = 0
        for execution in stuck:
            try:
                self.execution_service.time_out_call_execution(execution, now)
                timed_out += 1
            except Exception:
                logger.exception("Error timing out call execution", execution_id=execution.id)
                self.execution_repository.rollback()
                failed += 1
        if stuck:
            logger.info("Timed out stuck call executions", timed_out=timed_out, failed=failed)
        return {'timed_out': timed_out, 'failed': failed}
