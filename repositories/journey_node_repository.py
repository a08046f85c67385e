"""
JourneyNodeRepository - Data access layer for JourneyNode entities
"""

from typing import List, Optional
from sqlalchemy import asc
from repositories.base_repository import BaseRepository
from crm_database import JourneyNode
import logging

logger = logging.getLogger(__name__)


class JourneyNodeRepository(BaseRepository[JourneyNode]):
    """Repository for JourneyNode data access"""

    def __init__(self, session):
        super().__init__(session, JourneyNode)

    def find_by_journey(self, journey_id: str) -> List[JourneyNode]:
        """
        All nodes of a journey in creation order.

        Ties on ``created_at`` are broken by id so entry-node selection is
        deterministic.
        """
        return self.session.query(JourneyNode)\
            .filter(JourneyNode.journey_id == journey_id)\
            .order_by(asc(JourneyNode.created_at), asc(JourneyNode.id))\
            .all()

    def get_in_journey(self, node_id: str, journey_id: str) -> Optional[JourneyNode]:
        """Get a node only if it belongs to the given journey"""
        node = self.get_by_id(node_id)
        if node is None or node.journey_id != journey_id:
            return None
        return node
