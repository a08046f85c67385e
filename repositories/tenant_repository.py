"""
TenantRepository - Data access layer for Tenant entities
"""

from typing import Optional, List
from repositories.base_repository import BaseRepository
from crm_database import Tenant
import logging

logger = logging.getLogger(__name__)


class TenantRepository(BaseRepository[Tenant]):
    """Repository for Tenant data access"""

    def __init__(self, session):
        super().__init__(session, Tenant)

    def get_timezone(self, tenant_id: str) -> Optional[str]:
        tenant = self.get_by_id(tenant_id)
        return tenant.timezone if tenant else None

    def get_lead_statuses(self, tenant_id: str) -> List[str]:
        tenant = self.get_by_id(tenant_id)
        if not tenant or not tenant.lead_statuses:
            return []
        return list(tenant.lead_statuses)
