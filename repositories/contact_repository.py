"""
ContactRepository - Data access layer for Contact entities
"""

from typing import Optional, Dict, Any
from repositories.base_repository import BaseRepository
from crm_database import Contact
import logging

logger = logging.getLogger(__name__)


class ContactRepository(BaseRepository[Contact]):
    """Repository for Contact data access"""

    def __init__(self, session):
        super().__init__(session, Contact)

    def find_by_phone(self, phone: str, tenant_id: Optional[str] = None) -> Optional[Contact]:
        """
        Find a contact by phone number, optionally scoped to a tenant.

        Args:
            phone: Phone number as stored (E.164)
            tenant_id: Tenant scope, or None for any tenant
        """
        if not phone:
            return None
        filters = {'phone': phone}
        if tenant_id:
            filters['tenant_id'] = tenant_id
        return self.find_one_by(**filters)

    def get_for_tenant(self, contact_id: int, tenant_id: str) -> Optional[Contact]:
        contact = self.get_by_id(contact_id)
        if contact is None:
            return None
        if contact.tenant_id and contact.tenant_id != tenant_id:
            return None
        return contact

    def merge_attributes(self, contact: Contact, attributes: Dict[str, Any]) -> Contact:
        """
        Merge values into the contact's custom attributes bag.

        The JSON column is reassigned so SQLAlchemy sees the change.
        """
        if not attributes:
            return contact
        merged = dict(contact.contact_metadata or {})
        merged.update(attributes)
        return self.update(contact, contact_metadata=merged)

    def set_lead_status(self, contact: Contact, lead_status: str) -> Contact:
        return self.update(contact, lead_status=lead_status)
