"""
JourneySchedulerService - decides when a node runs and persists its PENDING execution.

The scheduler never executes anything itself; it reports whether the new
execution is already due so the execution service can run it inline.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional

from logging_config import get_logger
from repositories.activity_repository import ActivityRepository
from repositories.journey_node_execution_repository import JourneyNodeExecutionRepository
from repositories.tenant_repository import TenantRepository
from services.enums import JourneyNodeType, TimeDelayUnit
from services.journey_settings import JourneySettings
from utils.datetime_utils import ensure_utc, local_wall_time_to_utc, parse_hhmm, utc_now, utc_to_local
from utils.hashing_utils import string_hash32

logger = get_logger(__name__)

DELAY_UNITS = {
    TimeDelayUnit.MINUTES.value: 'minutes',
    TimeDelayUnit.HOURS.value: 'hours',
    TimeDelayUnit.DAYS.value: 'days',
}


@dataclass
class ScheduleResult:
    """What ``schedule_node`` did"""
    execution: Optional[object]
    created: bool
    due: bool
    scheduled_at: Optional[datetime] = None


class JourneySchedulerService:

    def __init__(self, execution_repository: JourneyNodeExecutionRepository,
                 tenant_repository: TenantRepository,
                 activity_repository: ActivityRepository,
                 settings: Optional[JourneySettings] = None):
        self.execution_repository = execution_repository
        self.tenant_repository = tenant_repository
        self.activity_repository = activity_repository
        self.settings = settings or JourneySettings()

    # Load spreading

    def spread_offset_minutes(self, journey_contact_id: str) -> int:
        """Stable per-contact offset in ``[0, spread_window_minutes)``"""
        window = self.settings.spread_window_minutes
        if window <= 0:
            return 0
        return abs(string_hash32(journey_contact_id)) % window

    def apply_spread(self, scheduled_at: datetime, journey_contact_id: str, now: datetime,
                     timezone: str = 'UTC') -> datetime:
        """
        Add the contact's spread offset when ``scheduled_at`` falls on a later
        calendar day than ``now`` in the contact's timezone.
        """
        if utc_to_local(scheduled_at, timezone).date() <= utc_to_local(now, timezone).date():
            return scheduled_at
        return scheduled_at + timedelta(minutes=self.spread_offset_minutes(journey_contact_id))

    # Time computation

    def resolve_timezone(self, journey_contact) -> str:
        """Contact timezone, then tenant timezone, then UTC"""
        contact = journey_contact.contact
        if contact is not None and contact.timezone:
            return contact.timezone
        return self.tenant_repository.get_timezone(journey_contact.tenant_id) or 'UTC'

    def compute_delay(self, delay_node, journey_contact, now: datetime,
                      timezone: Optional[str] = None) -> datetime:
        """
        When the node after ``delay_node`` (a TIME_DELAY) becomes due.

        ``delayAtTime`` picks the next occurrence of that wall-clock time in the
        contact's timezone; otherwise ``delayValue`` ``delayUnit`` is added to now.
        Invalid configuration means no delay.
        """
        config = delay_node.config or {}
        timezone = timezone or self.resolve_timezone(journey_contact)

        wall_time = parse_hhmm(config.get('delayAtTime'))
        if wall_time is not None:
            hour, minute = wall_time
            local_now = utc_to_local(now, timezone)
            target = local_wall_time_to_utc(local_now, hour, minute, timezone)
            if target <= now:
                target = local_wall_time_to_utc(local_now + timedelta(days=1), hour, minute, timezone)
            return self.apply_spread(target, journey_contact.id, now, timezone)

        unit = DELAY_UNITS.get(str(config.get('delayUnit') or '').upper())
        try:
            value = float(config.get('delayValue'))
        except (TypeError, ValueError):
            value = None
        if unit is None or value is None or value < 0:
            logger.warning("Invalid TIME_DELAY configuration, not delaying",
                           node_id=delay_node.id, config=config)
            return now

        target = now + timedelta(**{unit: value})
        return self.apply_spread(target, journey_contact.id, now, timezone)

    def apply_call_spacing(self, scheduled_at: datetime, phone: Optional[str], now: datetime) -> datetime:
        """Push a MAKE_CALL back until the cooldown since the last call to ``phone`` has passed"""
        if not phone:
            return scheduled_at
        cooldown = timedelta(minutes=self.settings.call_cooldown_minutes)
        recent = self.activity_repository.find_recent_call_to_number(phone, now - cooldown)
        if recent is None:
            return scheduled_at
        earliest = ensure_utc(recent.created_at) + cooldown
        if earliest > scheduled_at:
            logger.info("Deferring call to respect spacing", phone=phone,
                        scheduled_at=earliest.isoformat())
            return earliest
        return scheduled_at

    def compute_scheduled_at(self, node, journey_contact, now: datetime,
                             previous_node=None) -> datetime:
        """Due time for ``node`` reached from ``previous_node`` (None on enrollment)"""
        scheduled_at = now
        if previous_node is not None and previous_node.type == JourneyNodeType.TIME_DELAY.value:
            scheduled_at = self.compute_delay(previous_node, journey_contact, now)
        if node.type == JourneyNodeType.MAKE_CALL.value:
            contact = journey_contact.contact
            scheduled_at = self.apply_call_spacing(scheduled_at, contact.phone if contact else None, now)
        return scheduled_at

    # Persistence

    def schedule_node(self, node, journey_contact, now: Optional[datetime] = None,
                      previous_node=None, scheduled_at: Optional[datetime] = None) -> ScheduleResult:
        """
        Persist exactly one PENDING execution for (node, journey contact).

        An existing PENDING/EXECUTING execution makes this a no-op. The insert is
        guarded by the open-execution unique index, so concurrent callers still
        end up with a single row.
        """
        now = now or utc_now()
        existing = self.execution_repository.find_open(node.id, journey_contact.id)
        if existing is not None:
            logger.info("Execution already scheduled, skipping", node_id=node.id,
                        journey_contact_id=journey_contact.id, execution_id=existing.id)
            return ScheduleResult(existing, created=False, due=False,
                                  scheduled_at=ensure_utc(existing.scheduled_at))

        if scheduled_at is None:
            scheduled_at = self.compute_scheduled_at(node, journey_contact, now, previous_node)

        execution = self.execution_repository.create_pending(
            tenant_id=journey_contact.tenant_id,
            journey_id=journey_contact.journey_id,
            node_id=node.id,
            journey_contact_id=journey_contact.id,
            scheduled_at=scheduled_at,
        )
        if execution is None:
            existing = self.execution_repository.find_open(node.id, journey_contact.id)
            return ScheduleResult(existing, created=False, due=False)

        logger.info("Scheduled journey node", node_id=node.id, node_type=node.type,
                    journey_contact_id=journey_contact.id, execution_id=execution.id,
                    scheduled_at=scheduled_at.isoformat())
        return ScheduleResult(execution, created=True, due=scheduled_at <= now,
                              scheduled_at=scheduled_at)

    def schedule_day_one_nodes(self, nodes: List, journey_contact, start_time: datetime,
                               now: Optional[datetime] = None) -> List[ScheduleResult]:
        """Schedule every day-1 entry node together at ``start_time`` (spread when a later day)"""
        now = now or utc_now()
        timezone = self.resolve_timezone(journey_contact)
        scheduled_at = self.apply_spread(start_time, journey_contact.id, now, timezone)
        return [
            self.schedule_node(node, journey_contact, now, scheduled_at=scheduled_at)
            for node in nodes
        ]
