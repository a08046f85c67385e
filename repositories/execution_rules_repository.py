"""
ExecutionRulesRepository - Data access layer for per-tenant execution rules
"""

from repositories.base_repository import BaseRepository
from crm_database import ExecutionRules
import logging

logger = logging.getLogger(__name__)


class ExecutionRulesRepository(BaseRepository[ExecutionRules]):
    """Repository for ExecutionRules data access"""

    def __init__(self, session):
        super().__init__(session, ExecutionRules)

    def get_for_tenant(self, tenant_id: str):
        return self.find_one_by(tenant_id=tenant_id)

    def get_or_create_defaults(self, tenant_id: str) -> ExecutionRules:
        """
        Return the tenant's rules, creating the default row on first access.

        Defaults: after-hours handling on (reschedule to next available slot,
        business hours 8-21 Monday to Friday) and resubmission handling on
        (skip duplicates seen within 24 hours).
        """
        rules = self.get_for_tenant(tenant_id)
        if rules:
            return rules
        logger.info(f"Creating default execution rules for tenant {tenant_id}")
        return self.create(tenant_id=tenant_id)
