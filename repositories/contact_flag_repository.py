"""
ContactFlagRepository - Data access layer for ContactFlag entities
Flags carry opt-out and do-not-contact state consulted before outbound actions
"""

from typing import List, Optional, Iterable
from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from utils.datetime_utils import utc_now, to_db_time
from repositories.base_repository import BaseRepository
from crm_database import ContactFlag
import logging

logger = logging.getLogger(__name__)


class ContactFlagRepository(BaseRepository[ContactFlag]):
    """Repository for ContactFlag data access"""

    def __init__(self, session):
        super().__init__(session, ContactFlag)

    def get_active_flags_for_contact(self, contact_id: int,
                                     flag_types: Optional[Iterable[str]] = None,
                                     channel: Optional[str] = None) -> List[ContactFlag]:
        """
        Get non-expired flags for a contact.

        Args:
            contact_id: Contact to check
            flag_types: Restrict to these flag types
            channel: Restrict to flags applying to this channel ('sms', 'call')
        """
        now = to_db_time(utc_now())
        try:
            query = self.session.query(ContactFlag).filter(
                ContactFlag.contact_id == contact_id,
                or_(ContactFlag.expires_at.is_(None), ContactFlag.expires_at > now)
            )
            if flag_types:
                query = query.filter(ContactFlag.flag_type.in_(list(flag_types)))
            if channel:
                query = query.filter(ContactFlag.applies_to.in_([channel, 'both']))
            return query.all()
        except SQLAlchemyError as e:
            logger.error(f"Error loading flags for contact {contact_id}: {e}")
            return []
