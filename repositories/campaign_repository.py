"""
CampaignRepository - Data access layer for Campaign entities
"""

from typing import Optional
from repositories.base_repository import BaseRepository
from crm_database import Campaign
import logging

logger = logging.getLogger(__name__)


class CampaignRepository(BaseRepository[Campaign]):
    """Repository for Campaign data access"""

    def __init__(self, session):
        super().__init__(session, Campaign)

    def get_for_tenant(self, campaign_id: int, tenant_id: str) -> Optional[Campaign]:
        """Get a campaign, hiding campaigns that belong to another tenant"""
        campaign = self.get_by_id(campaign_id)
        if campaign is None:
            return None
        if campaign.tenant_id and campaign.tenant_id != tenant_id:
            return None
        return campaign
