"""
ActivityRepository - Data access layer for Activity model
Activities double as the call log and the message log used by journey nodes
"""

from typing import Optional, Dict, Any
from datetime import datetime
from sqlalchemy import desc, func
from sqlalchemy.exc import SQLAlchemyError
from utils.datetime_utils import to_db_time
from repositories.base_repository import BaseRepository
from crm_database import Activity
import logging

logger = logging.getLogger(__name__)

IN_FLIGHT_CALL_STATUSES = ('initiated', 'ringing', 'in_progress')


class ActivityRepository(BaseRepository[Activity]):
    """Repository for Activity data access"""

    def __init__(self, session):
        """Initialize repository with database session"""
        super().__init__(session, Activity)

    def find_by_external_id(self, external_id: str) -> Optional[Activity]:
        """
        Find an activity by provider id (message SID or call unique id).

        Args:
            external_id: Provider identifier

        Returns:
            Activity or None
        """
        if not external_id:
            return None
        return self.find_one_by(external_id=external_id)

    def log_call(self, tenant_id: str, contact_id: Optional[int], to_number: str,
                 from_number: Optional[str], external_id: Optional[str],
                 journey_id: Optional[str] = None, status: str = 'initiated',
                 metadata: Optional[Dict[str, Any]] = None,
                 created_at: Optional[datetime] = None) -> Activity:
        """Record an outbound call attempt"""
        fields = {'created_at': to_db_time(created_at)} if created_at else {}
        return self.create(
            tenant_id=tenant_id,
            contact_id=contact_id,
            activity_type='call',
            direction='outgoing',
            status=status,
            to_number=to_number,
            from_number=from_number,
            external_id=external_id,
            journey_id=journey_id,
            activity_metadata=metadata,
            **fields
        )

    def log_message(self, tenant_id: str, contact_id: Optional[int], to_number: str,
                    from_number: Optional[str], body: str, external_id: Optional[str],
                    journey_id: Optional[str] = None, status: str = 'sent',
                    created_at: Optional[datetime] = None) -> Activity:
        """Record an outbound SMS"""
        fields = {'created_at': to_db_time(created_at)} if created_at else {}
        return self.create(
            tenant_id=tenant_id,
            contact_id=contact_id,
            activity_type='message',
            direction='outgoing',
            status=status,
            to_number=to_number,
            from_number=from_number,
            body=body,
            external_id=external_id,
            journey_id=journey_id,
            **fields
        )

    def find_recent_call_to_number(self, phone: str, since: datetime) -> Optional[Activity]:
        """
        Latest outbound call to a number placed at or after ``since``.

        Args:
            phone: Destination number
            since: Lower bound (aware or naive UTC)
        """
        try:
            return self.session.query(Activity).filter(
                Activity.activity_type == 'call',
                Activity.direction == 'outgoing',
                Activity.to_number == phone,
                Activity.created_at >= to_db_time(since)
            ).order_by(desc(Activity.created_at)).first()
        except SQLAlchemyError as e:
            logger.error(f"Error looking up recent call to {phone}: {e}")
            return None

    def find_in_flight_call(self, phone: str, since: datetime) -> Optional[Activity]:
        """Outbound call to a number that has not reached a final status yet"""
        try:
            return self.session.query(Activity).filter(
                Activity.activity_type == 'call',
                Activity.direction == 'outgoing',
                Activity.to_number == phone,
                Activity.status.in_(IN_FLIGHT_CALL_STATUSES),
                Activity.created_at >= to_db_time(since)
            ).order_by(desc(Activity.created_at)).first()
        except SQLAlchemyError as e:
            logger.error(f"Error looking up in-flight call to {phone}: {e}")
            return None

    def has_inbound_message(self, contact_id: int, since: Optional[datetime] = None,
                            journey_id: Optional[str] = None,
                            campaign_id: Optional[int] = None) -> bool:
        """
        Whether the contact sent us a message, optionally scoped.

        Args:
            contact_id: Contact to check
            since: Only count messages received after this instant
            journey_id: Only count replies attributed to this journey
            campaign_id: Only count replies attributed to this campaign
        """
        try:
            query = self.session.query(Activity.id).filter(
                Activity.contact_id == contact_id,
                Activity.activity_type == 'message',
                Activity.direction == 'incoming'
            )
            if since is not None:
                query = query.filter(Activity.created_at >= to_db_time(since))
            if journey_id:
                query = query.filter(Activity.journey_id == journey_id)
            if campaign_id:
                query = query.filter(Activity.campaign_id == campaign_id)
            return query.first() is not None
        except SQLAlchemyError as e:
            logger.error(f"Error checking inbound messages for contact {contact_id}: {e}")
            return False

    def count_outgoing_from_number_since(self, from_number: str, since: datetime) -> int:
        """Outbound messages sent from a pool number since ``since`` (daily cap check)"""
        try:
            return self.session.query(func.count(Activity.id)).filter(
                Activity.activity_type == 'message',
                Activity.direction == 'outgoing',
                Activity.from_number == from_number,
                Activity.created_at >= to_db_time(since)
            ).scalar() or 0
        except SQLAlchemyError as e:
            logger.error(f"Error counting messages from {from_number}: {e}")
            return 0

    def update_call_status(self, activity: Activity, status: str,
                           duration_seconds: Optional[int] = None) -> Activity:
        updates = {'status': status}
        if duration_seconds is not None:
            updates['duration_seconds'] = duration_seconds
        return self.update(activity, **updates)
