"""
JourneyContactRepository - Data access layer for JourneyContact entities
"""

from typing import List, Optional
from datetime import datetime
from sqlalchemy import desc
from sqlalchemy.exc import SQLAlchemyError
from utils.datetime_utils import to_db_time
from repositories.base_repository import BaseRepository
from crm_database import JourneyContact, Contact
import logging

logger = logging.getLogger(__name__)


class JourneyContactRepository(BaseRepository[JourneyContact]):
    """Repository for JourneyContact data access"""

    def __init__(self, session):
        super().__init__(session, JourneyContact)

    def find_by_journey_and_contact(self, journey_id: str, contact_id: int) -> Optional[JourneyContact]:
        return self.find_one_by(journey_id=journey_id, contact_id=contact_id)

    def find_by_journey(self, journey_id: str, status: Optional[str] = None) -> List[JourneyContact]:
        query = self.session.query(JourneyContact).filter(JourneyContact.journey_id == journey_id)
        if status:
            query = query.filter(JourneyContact.status == status)
        return query.order_by(desc(JourneyContact.enrolled_at)).all()

    def find_active_in_other_journeys(self, tenant_id: str, phone: str, journey_id: str,
                                      since: datetime) -> List[JourneyContact]:
        """
        ACTIVE memberships for contacts with this phone in other journeys, enrolled since ``since``.

        Used by resubmission detection: the same lead arriving again through a
        different journey inside the lookback window.
        """
        if not phone:
            return []
        try:
            return self.session.query(JourneyContact)\
                .join(Contact, Contact.id == JourneyContact.contact_id)\
                .filter(
                    JourneyContact.tenant_id == tenant_id,
                    JourneyContact.journey_id != journey_id,
                    JourneyContact.status == 'ACTIVE',
                    JourneyContact.created_at >= to_db_time(since),
                    Contact.phone == phone
                ).all()
        except SQLAlchemyError as e:
            logger.error(f"Error checking resubmissions for {phone}: {e}")
            return []

    def find_by_journey_and_phones(self, journey_id: str, phones: List[str]) -> List[JourneyContact]:
        """Memberships of this journey whose contact's stored phone is one of ``phones``"""
        phones = [p for p in phones if p]
        if not phones:
            return []
        try:
            return self.session.query(JourneyContact)\
                .join(Contact, Contact.id == JourneyContact.contact_id)\
                .filter(JourneyContact.journey_id == journey_id, Contact.phone.in_(phones))\
                .order_by(desc(JourneyContact.enrolled_at))\
                .all()
        except SQLAlchemyError as e:
            logger.error(f"Error finding journey {journey_id} members by phone: {e}")
            return []
