"""
JourneyRepository - Data access layer for Journey entities
"""

from typing import Optional
from repositories.base_repository import BaseRepository
from crm_database import Journey
import logging

logger = logging.getLogger(__name__)


class JourneyRepository(BaseRepository[Journey]):
    """Repository for Journey data access"""

    def __init__(self, session):
        super().__init__(session, Journey)

    def get_for_tenant(self, journey_id: str, tenant_id: str) -> Optional[Journey]:
        return self.find_one_by(id=journey_id, tenant_id=tenant_id)
