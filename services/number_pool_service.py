"""
NumberPoolService - picks the sending number for journey SMS
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from logging_config import get_logger
from repositories.activity_repository import ActivityRepository
from repositories.number_pool_repository import NumberPoolRepository
from utils.datetime_utils import start_of_local_day, utc_now
from utils.hashing_utils import stable_bucket

logger = get_logger(__name__)


class NumberPoolService:
    """Deterministic per-contact selection over the pool numbers still under their daily cap"""

    def __init__(self, number_pool_repository: NumberPoolRepository,
                 activity_repository: ActivityRepository):
        self.number_pool_repository = number_pool_repository
        self.activity_repository = activity_repository

    def available_numbers(self, pool, now: Optional[datetime] = None,
                          timezone: str = 'UTC') -> List[Dict[str, Any]]:
        """Pool entries that have sent fewer messages today than their daily limit"""
        now = now or utc_now()
        day_start = start_of_local_day(now, timezone)
        available = []
        for entry in pool.numbers or []:
            number = entry.get('phoneNumber')
            if not number or entry.get('active') is False:
                continue
            limit = entry.get('dailyLimit') or pool.default_daily_limit
            if limit:
                sent = self.activity_repository.count_outgoing_from_number_since(number, day_start)
                if sent >= limit:
                    logger.debug("Pool number at daily cap", number=number, sent=sent, limit=limit)
                    continue
            available.append(entry)
        return available

    def select_number(self, tenant_id: str, pool_id: str, contact_id,
                      now: Optional[datetime] = None, timezone: str = 'UTC') -> Optional[Dict[str, Any]]:
        """
        Pick a sending number for a contact.

        The same contact maps to the same number while the set of available
        numbers is unchanged.

        Returns:
            The pool entry, or None if the pool is unknown or exhausted
        """
        pool = self.number_pool_repository.get_for_tenant(pool_id, tenant_id)
        if pool is None:
            logger.warning("Number pool not found", pool_id=pool_id, tenant_id=tenant_id)
            return None
        available = self.available_numbers(pool, now, timezone)
        if not available:
            logger.warning("Every number in pool is at its daily cap", pool_id=pool_id)
            return None
        return available[stable_bucket(contact_id, len(available))]
