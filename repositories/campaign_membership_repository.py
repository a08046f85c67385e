"""
CampaignMembershipRepository - Data access layer for CampaignMembership entities
"""

from typing import Optional, Dict, Any
from repositories.base_repository import BaseRepository
from crm_database import CampaignMembership
import logging

logger = logging.getLogger(__name__)


class CampaignMembershipRepository(BaseRepository[CampaignMembership]):
    """Repository for CampaignMembership data access"""

    def __init__(self, session):
        super().__init__(session, CampaignMembership)

    def find_by_contact_and_campaign(self, contact_id: int, campaign_id: int) -> Optional[CampaignMembership]:
        return self.session.query(CampaignMembership).filter_by(
            contact_id=contact_id, campaign_id=campaign_id
        ).first()

    def add_contact(self, campaign_id: int, contact_id: int,
                    metadata: Optional[Dict[str, Any]] = None) -> CampaignMembership:
        """
        Idempotently add a contact to a campaign.

        An existing membership (including a removed one) is reset to pending
        instead of inserting a second row.
        """
        membership = self.find_by_contact_and_campaign(contact_id, campaign_id)
        if membership:
            if membership.status == 'removed':
                self.update(membership, status='pending')
            return membership
        return self.create(
            campaign_id=campaign_id,
            contact_id=contact_id,
            status='pending',
            membership_metadata=metadata,
        )

    def remove_contact(self, campaign_id: int, contact_id: int) -> bool:
        """
        Idempotently remove a contact from a campaign.

        Returns:
            True if a membership existed
        """
        membership = self.find_by_contact_and_campaign(contact_id, campaign_id)
        if not membership:
            return False
        if membership.status != 'removed':
            self.update(membership, status='removed')
        return True
