"""
JourneyNodeExecutionRepository - Data access layer for JourneyNodeExecution entities
"""

from typing import List, Optional, Iterable
from datetime import datetime
from sqlalchemy import asc, desc, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from utils.datetime_utils import to_db_time
from repositories.base_repository import BaseRepository
from services.enums import ExecutionStatus, OPEN_EXECUTION_STATUSES
from crm_database import JourneyNodeExecution, JourneyNode, JourneyContact, Contact
import logging

logger = logging.getLogger(__name__)


class JourneyNodeExecutionRepository(BaseRepository[JourneyNodeExecution]):
    """Repository for JourneyNodeExecution data access"""

    def __init__(self, session):
        super().__init__(session, JourneyNodeExecution)

    # Scheduling

    def find_open(self, node_id: str, journey_contact_id: str) -> Optional[JourneyNodeExecution]:
        """The PENDING or EXECUTING execution for (node, journey contact), if any"""
        return self.session.query(JourneyNodeExecution).filter(
            JourneyNodeExecution.node_id == node_id,
            JourneyNodeExecution.journey_contact_id == journey_contact_id,
            JourneyNodeExecution.status.in_(OPEN_EXECUTION_STATUSES)
        ).first()

    def create_pending(self, tenant_id: str, journey_id: str, node_id: str,
                       journey_contact_id: str, scheduled_at: datetime,
                       result: Optional[dict] = None) -> Optional[JourneyNodeExecution]:
        """
        Insert a PENDING execution inside a savepoint.

        Returns:
            The new execution, or None when the open-execution unique index
            rejected it (another open execution for the same node and journey
            contact already exists)
        """
        execution = JourneyNodeExecution(
            tenant_id=tenant_id,
            journey_id=journey_id,
            node_id=node_id,
            journey_contact_id=journey_contact_id,
            status=ExecutionStatus.PENDING.value,
            scheduled_at=to_db_time(scheduled_at),
            result=result,
        )
        try:
            with self.session.begin_nested():
                self.session.add(execution)
        except IntegrityError:
            logger.info(f"Open execution already exists for node {node_id} / {journey_contact_id}")
            return None
        return execution

    def claim_due(self, now: datetime, limit: int,
                  include_types: Optional[Iterable[str]] = None,
                  exclude_types: Optional[Iterable[str]] = None,
                  exclude_ids: Optional[Iterable[str]] = None) -> List[JourneyNodeExecution]:
        """
        Due PENDING executions ordered by ``scheduled_at``.

        Args:
            now: Cut-off; rows scheduled at or before it are due
            limit: Batch size
            include_types: Only these node types
            exclude_types: Skip these node types
            exclude_ids: Executions already handled in this cycle
        """
        try:
            query = self.session.query(JourneyNodeExecution)\
                .join(JourneyNode, JourneyNode.id == JourneyNodeExecution.node_id)\
                .filter(
                    JourneyNodeExecution.status == ExecutionStatus.PENDING.value,
                    JourneyNodeExecution.scheduled_at <= to_db_time(now)
                )
            if include_types:
                query = query.filter(JourneyNode.type.in_(list(include_types)))
            if exclude_types:
                query = query.filter(~JourneyNode.type.in_(list(exclude_types)))
            if exclude_ids:
                query = query.filter(~JourneyNodeExecution.id.in_(list(exclude_ids)))
            return query.order_by(asc(JourneyNodeExecution.scheduled_at)).limit(limit).all()
        except SQLAlchemyError as e:
            logger.error(f"Error claiming due executions: {e}")
            return []

    def count_overdue_pending(self, before: datetime) -> int:
        try:
            return self.session.query(func.count(JourneyNodeExecution.id)).filter(
                JourneyNodeExecution.status == ExecutionStatus.PENDING.value,
                JourneyNodeExecution.scheduled_at < to_db_time(before)
            ).scalar() or 0
        except SQLAlchemyError as e:
            logger.error(f"Error counting overdue executions: {e}")
            return 0

    def bulk_reschedule(self, execution_ids: List[str], scheduled_at: datetime) -> int:
        """
        Move still-PENDING executions to a new time in one statement.

        Returns:
            Number of rows moved
        """
        if not execution_ids:
            return 0
        try:
            count = self.session.query(JourneyNodeExecution).filter(
                JourneyNodeExecution.id.in_(execution_ids),
                JourneyNodeExecution.status == ExecutionStatus.PENDING.value
            ).update({'scheduled_at': to_db_time(scheduled_at)}, synchronize_session=False)
            self.session.flush()
            return count
        except SQLAlchemyError as e:
            logger.error(f"Error rescheduling {len(execution_ids)} executions: {e}")
            self.session.rollback()
            raise

    # History

    def recent_for_node(self, node_id: str, journey_contact_id: str,
                        limit: int = 3) -> List[JourneyNodeExecution]:
        """Most recently executed runs of a node for one journey contact"""
        return self.session.query(JourneyNodeExecution).filter(
            JourneyNodeExecution.node_id == node_id,
            JourneyNodeExecution.journey_contact_id == journey_contact_id,
            JourneyNodeExecution.executed_at.isnot(None)
        ).order_by(desc(JourneyNodeExecution.executed_at)).limit(limit).all()

    def latest_executed_for_contact(self, journey_contact_id: str,
                                    exclude_id: Optional[str] = None) -> Optional[JourneyNodeExecution]:
        query = self.session.query(JourneyNodeExecution).filter(
            JourneyNodeExecution.journey_contact_id == journey_contact_id,
            JourneyNodeExecution.executed_at.isnot(None)
        )
        if exclude_id:
            query = query.filter(JourneyNodeExecution.id != exclude_id)
        return query.order_by(desc(JourneyNodeExecution.executed_at)).first()

    def list_for_contact(self, journey_contact_id: str) -> List[JourneyNodeExecution]:
        return self.session.query(JourneyNodeExecution)\
            .filter(JourneyNodeExecution.journey_contact_id == journey_contact_id)\
            .order_by(asc(JourneyNodeExecution.created_at))\
            .all()

    def cancel_open_for_contact(self, journey_contact_id: str, reason: str) -> int:
        """Mark every PENDING execution of a journey contact SKIPPED"""
        pending = self.find_by(journey_contact_id=journey_contact_id,
                               status=ExecutionStatus.PENDING.value)
        for execution in pending:
            result = dict(execution.result or {})
            result.update({'success': False, 'action': 'CANCELLED', 'reason': reason})
            execution.status = ExecutionStatus.SKIPPED.value
            execution.result = result
        if pending:
            self.session.flush()
        return len(pending)

    # Suspended calls

    def find_awaiting_call_by_correlation(self, correlation_id: str) -> Optional[JourneyNodeExecution]:
        if not correlation_id:
            return None
        return self.session.query(JourneyNodeExecution).filter(
            JourneyNodeExecution.call_correlation_id == correlation_id,
            JourneyNodeExecution.status == ExecutionStatus.EXECUTING.value,
            JourneyNodeExecution.awaiting_callback.is_(True)
        ).first()

    def find_awaiting_call_by_phone(self, phone: str, since: datetime) -> Optional[JourneyNodeExecution]:
        """
        Newest suspended call execution for a contact phone, executed after ``since``.

        Fallback for callbacks whose correlation id changed mid-flight.
        """
        if not phone:
            return None
        return self.session.query(JourneyNodeExecution)\
            .join(JourneyContact, JourneyContact.id == JourneyNodeExecution.journey_contact_id)\
            .join(Contact, Contact.id == JourneyContact.contact_id)\
            .filter(
                Contact.phone == phone,
                JourneyNodeExecution.status == ExecutionStatus.EXECUTING.value,
                JourneyNodeExecution.awaiting_callback.is_(True),
                JourneyNodeExecution.executed_at >= to_db_time(since)
            ).order_by(desc(JourneyNodeExecution.executed_at)).first()

    def find_stuck_calls(self, executed_before: datetime, limit: int = 100) -> List[JourneyNodeExecution]:
        """Suspended call executions with no callback since ``executed_before``"""
        try:
            return self.session.query(JourneyNodeExecution).filter(
                JourneyNodeExecution.status == ExecutionStatus.EXECUTING.value,
                JourneyNodeExecution.awaiting_callback.is_(True),
                JourneyNodeExecution.executed_at < to_db_time(executed_before)
            ).order_by(asc(JourneyNodeExecution.executed_at)).limit(limit).all()
        except SQLAlchemyError as e:
            logger.error(f"Error loading stuck call executions: {e}")
            return []
