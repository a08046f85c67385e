"""
StoredWebhookRepository - Data access layer for reusable webhook definitions
"""

from typing import Optional
from repositories.base_repository import BaseRepository
from crm_database import StoredWebhook
import logging

logger = logging.getLogger(__name__)


class StoredWebhookRepository(BaseRepository[StoredWebhook]):
    """Repository for StoredWebhook data access"""

    def __init__(self, session):
        super().__init__(session, StoredWebhook)

    def get_for_tenant(self, webhook_id: str, tenant_id: str) -> Optional[StoredWebhook]:
        return self.find_one_by(id=webhook_id, tenant_id=tenant_id)
