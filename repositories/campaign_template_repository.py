"""
CampaignTemplateRepository - Data access layer for stored message templates
"""

from typing import Optional
from repositories.base_repository import BaseRepository
from crm_database import CampaignTemplate
import logging

logger = logging.getLogger(__name__)


class CampaignTemplateRepository(BaseRepository[CampaignTemplate]):
    """Repository for CampaignTemplate data access"""

    def __init__(self, session):
        super().__init__(session, CampaignTemplate)

    def get_active(self, template_id: int, template_kind: Optional[str] = None) -> Optional[CampaignTemplate]:
        template = self.get_by_id(template_id)
        if template is None or not template.is_active:
            return None
        if template_kind and template.template_kind != template_kind:
            return None
        return template
