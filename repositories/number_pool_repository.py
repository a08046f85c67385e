"""
NumberPoolRepository - Data access layer for sending-number pools
"""

from typing import Optional
from repositories.base_repository import BaseRepository
from crm_database import NumberPool
import logging

logger = logging.getLogger(__name__)


class NumberPoolRepository(BaseRepository[NumberPool]):
    """Repository for NumberPool data access"""

    def __init__(self, session):
        super().__init__(session, NumberPool)

    def get_for_tenant(self, pool_id: str, tenant_id: str) -> Optional[NumberPool]:
        return self.find_one_by(id=pool_id, tenant_id=tenant_id)
