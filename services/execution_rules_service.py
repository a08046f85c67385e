"""
ExecutionRulesService - per-tenant business-hours and resubmission gate.

The gate is advisory: ``check_execution`` returns a GateDecision and the
caller (the poller) applies the reschedule / skip / pause / default-event
side effect itself.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from logging_config import get_logger
from repositories.execution_rules_repository import ExecutionRulesRepository
from repositories.journey_contact_repository import JourneyContactRepository
from repositories.tenant_repository import TenantRepository
from services.cache_service import CacheService
from services.enums import (
    AfterHoursAction, GateAction, JourneyNodeType, ResubmissionAction, WEEKDAY_NAMES
)
from utils.datetime_utils import ensure_utc, local_wall_time_to_utc, parse_hhmm, utc_now, utc_to_local

logger = get_logger(__name__)

DEFAULT_BUSINESS_HOURS = {
    'startHour': 8,
    'endHour': 21,
    'daysOfWeek': ['MONDAY', 'TUESDAY', 'WEDNESDAY', 'THURSDAY', 'FRIDAY'],
}

RESCHEDULE_ACTIONS = (
    AfterHoursAction.RESCHEDULE_NEXT_AVAILABLE.value,
    AfterHoursAction.RESCHEDULE_NEXT_BUSINESS_DAY.value,
    AfterHoursAction.RESCHEDULE_SPECIFIC_TIME.value,
)


RULE_FIELDS = (
    'tenant_id',
    'enable_after_hours_handling', 'after_hours_action', 'after_hours_reschedule_time',
    'after_hours_default_event_node_id', 'after_hours_business_hours',
    'enable_resubmission_handling', 'resubmission_detection_window_hours',
    'resubmission_action', 'resubmission_reschedule_delay_hours',
    'resubmission_default_event_node_id',
)


@dataclass(frozen=True)
class RulesSnapshot:
    """Detached copy of an ExecutionRules row, safe to keep in the cache across sessions"""
    tenant_id: str
    enable_after_hours_handling: bool = True
    after_hours_action: str = AfterHoursAction.RESCHEDULE_NEXT_AVAILABLE.value
    after_hours_reschedule_time: Optional[str] = None
    after_hours_default_event_node_id: Optional[str] = None
    after_hours_business_hours: Optional[Dict[str, Any]] = None
    enable_resubmission_handling: bool = True
    resubmission_detection_window_hours: int = 24
    resubmission_action: str = ResubmissionAction.SKIP_DUPLICATE.value
    resubmission_reschedule_delay_hours: int = 24
    resubmission_default_event_node_id: Optional[str] = None

    @classmethod
    def from_model(cls, rules) -> 'RulesSnapshot':
        return cls(**{name: getattr(rules, name) for name in RULE_FIELDS})


@dataclass
class GateDecision:
    """Outcome of the execution rules gate for one execution"""
    should_execute: bool
    action: Optional[GateAction] = None
    reason: Optional[str] = None
    new_scheduled_time: Optional[datetime] = None
    default_event_node_id: Optional[str] = None

    @classmethod
    def proceed(cls) -> 'GateDecision':
        return cls(should_execute=True)


@dataclass
class BusinessHours:
    start_hour: int
    end_hour: int
    days_of_week: List[str]

    @classmethod
    def from_rules(cls, rules) -> 'BusinessHours':
        config = dict(DEFAULT_BUSINESS_HOURS)
        config.update((rules.after_hours_business_hours or {}) if rules is not None else {})
        days = [str(day).upper() for day in config.get('daysOfWeek') or DEFAULT_BUSINESS_HOURS['daysOfWeek']]
        return cls(int(config['startHour']), int(config['endHour']), days)

    def is_business_day(self, local_dt: datetime) -> bool:
        return WEEKDAY_NAMES[local_dt.weekday()] in self.days_of_week

    def is_open(self, local_dt: datetime) -> bool:
        return self.is_business_day(local_dt) and self.start_hour <= local_dt.hour < self.end_hour


class ExecutionRulesService:
    """Loads tenant rules (cached) and evaluates the business-hours / resubmission gate"""

    def __init__(self, execution_rules_repository: ExecutionRulesRepository,
                 tenant_repository: TenantRepository,
                 journey_contact_repository: JourneyContactRepository,
                 cache: Optional[CacheService] = None):
        self.execution_rules_repository = execution_rules_repository
        self.tenant_repository = tenant_repository
        self.journey_contact_repository = journey_contact_repository
        self.cache = cache or CacheService(default_ttl=300, max_size=500, name='execution_rules')

    # Rules

    def get_execution_rules(self, tenant_id: str) -> RulesSnapshot:
        """Tenant rules, created with defaults on first read"""
        return self.cache.get_or_set(
            f"rules:{tenant_id}",
            lambda: self._load_rules(tenant_id),
        )

    def _load_rules(self, tenant_id: str) -> RulesSnapshot:
        rules = self.execution_rules_repository.get_or_create_defaults(tenant_id)
        snapshot = RulesSnapshot.from_model(rules)
        self.execution_rules_repository.commit()
        return snapshot

    def update_execution_rules(self, tenant_id: str, **updates):
        """
        Change a tenant's rules.

        Raises:
            ValueError: For an unknown after-hours or resubmission action,
                or a malformed reschedule time
        """
        action = updates.get('after_hours_action')
        if action is not None and action not in AfterHoursAction.__members__:
            raise ValueError(f"Unknown after-hours action: {action}")
        action = updates.get('resubmission_action')
        if action is not None and action not in ResubmissionAction.__members__:
            raise ValueError(f"Unknown resubmission action: {action}")
        if updates.get('after_hours_reschedule_time') and \
                parse_hhmm(updates['after_hours_reschedule_time']) is None:
            raise ValueError("after_hours_reschedule_time must be HH:mm")

        rules = self.execution_rules_repository.get_or_create_defaults(tenant_id)
        self.execution_rules_repository.update(rules, **updates)
        self.execution_rules_repository.commit()
        self.clear_cache(tenant_id)
        logger.info("Execution rules updated", tenant_id=tenant_id, fields=sorted(updates))
        return rules

    def clear_cache(self, tenant_id: Optional[str] = None) -> None:
        if tenant_id:
            self.cache.delete(f"rules:{tenant_id}")
        else:
            self.cache.clear()

    def resolve_timezone(self, tenant_id: str, rules=None) -> str:
        """Tenant timezone, then the rules' business-hours timezone, then UTC"""
        tenant_tz = self.tenant_repository.get_timezone(tenant_id)
        if tenant_tz:
            return tenant_tz
        hours = (rules.after_hours_business_hours or {}) if rules is not None else {}
        return hours.get('timezone') or 'UTC'

    # Business hours

    def is_after_hours(self, moment: datetime, rules, timezone: str) -> bool:
        local = utc_to_local(moment, timezone)
        return not BusinessHours.from_rules(rules).is_open(local)

    def is_enrollment_after_hours(self, tenant_id: str, now: Optional[datetime] = None) -> Optional[datetime]:
        """
        Start of the next business window when enrolling now is after hours.

        Returns:
            None when after-hours handling is off or the window is open
        """
        now = now or utc_now()
        rules = self.get_execution_rules(tenant_id)
        if not rules.enable_after_hours_handling:
            return None
        timezone = self.resolve_timezone(tenant_id, rules)
        if not self.is_after_hours(now, rules, timezone):
            return None
        return self.calculate_next_available_time(
            now, rules, timezone, AfterHoursAction.RESCHEDULE_NEXT_AVAILABLE.value
        )

    def calculate_next_available_time(self, now: datetime, rules, timezone: str,
                                      action: Optional[str] = None) -> datetime:
        """
        Next instant an execution may run for an after-hours reschedule action.

        NEXT_AVAILABLE opens today if the window hasn't started yet on a business
        day, otherwise on the next business day. NEXT_BUSINESS_DAY always starts
        from tomorrow. SPECIFIC_TIME uses the configured ``HH:mm`` on the next
        business day that hasn't passed it. Non-reschedule actions fall back to
        NEXT_AVAILABLE.
        """
        action = action or rules.after_hours_action
        hours = BusinessHours.from_rules(rules)
        local_now = utc_to_local(now, timezone)

        if action == AfterHoursAction.RESCHEDULE_SPECIFIC_TIME.value:
            wall_time = parse_hhmm(rules.after_hours_reschedule_time)
            if wall_time is not None:
                hour, minute = wall_time
                day = local_now
                if (local_now.hour, local_now.minute) >= (hour, minute):
                    day = day + timedelta(days=1)
                day = self._next_business_day(day, hours, include_today=True)
                return local_wall_time_to_utc(day, hour, minute, timezone)
            logger.warning("Specific reschedule time not configured, using next available slot",
                           tenant_id=rules.tenant_id)
            action = AfterHoursAction.RESCHEDULE_NEXT_AVAILABLE.value

        if action == AfterHoursAction.RESCHEDULE_NEXT_BUSINESS_DAY.value:
            day = self._next_business_day(local_now + timedelta(days=1), hours, include_today=True)
            return local_wall_time_to_utc(day, hours.start_hour, 0, timezone)

        if hours.is_business_day(local_now) and local_now.hour < hours.start_hour:
            return local_wall_time_to_utc(local_now, hours.start_hour, 0, timezone)
        day = self._next_business_day(local_now + timedelta(days=1), hours, include_today=True)
        return local_wall_time_to_utc(day, hours.start_hour, 0, timezone)

    @staticmethod
    def _next_business_day(local_day: datetime, hours: BusinessHours, include_today: bool) -> datetime:
        day = local_day if include_today else local_day + timedelta(days=1)
        for _ in range(7):
            if hours.is_business_day(day):
                return day
            day = day + timedelta(days=1)
        return local_day

    # Gate

    def check_execution(self, tenant_id: str, journey_id: str, node_type: str,
                        contact, scheduled_at: datetime,
                        now: Optional[datetime] = None) -> GateDecision:
        """
        Decide whether a due execution may run now.

        TIME_DELAY executions always proceed. Otherwise the after-hours check
        runs first (against both now and the original scheduled time), then the
        resubmission check.
        """
        if node_type == JourneyNodeType.TIME_DELAY.value:
            return GateDecision.proceed()

        now = now or utc_now()
        scheduled_at = ensure_utc(scheduled_at) if scheduled_at else now
        rules = self.get_execution_rules(tenant_id)
        timezone = self.resolve_timezone(tenant_id, rules)

        if rules.enable_after_hours_handling and (
                self.is_after_hours(now, rules, timezone) or self.is_after_hours(scheduled_at, rules, timezone)):
            decision = self._after_hours_decision(rules, timezone, now)
            logger.info("Execution gated by business hours", tenant_id=tenant_id,
                        journey_id=journey_id, action=decision.action.value)
            return decision

        if rules.enable_resubmission_handling and contact is not None and contact.phone:
            decision = self._resubmission_decision(tenant_id, journey_id, contact, rules,
                                                   scheduled_at, now)
            if decision is not None:
                logger.info("Execution gated as resubmission", tenant_id=tenant_id,
                            journey_id=journey_id, contact_id=contact.id,
                            action=decision.action.value)
                return decision

        return GateDecision.proceed()

    def _after_hours_decision(self, rules, timezone: str, now: datetime) -> GateDecision:
        reason = f"Currently outside business hours ({timezone})"
        action = rules.after_hours_action
        if action in RESCHEDULE_ACTIONS:
            return GateDecision(
                should_execute=False,
                action=GateAction.RESCHEDULE,
                reason=reason,
                new_scheduled_time=self.calculate_next_available_time(now, rules, timezone, action),
            )
        if action == AfterHoursAction.SKIP_NODE.value:
            return GateDecision(False, GateAction.SKIP, reason)
        if action == AfterHoursAction.PAUSE_JOURNEY.value:
            return GateDecision(False, GateAction.PAUSE, reason)
        if action == AfterHoursAction.DEFAULT_EVENT.value:
            return GateDecision(False, GateAction.DEFAULT_EVENT, reason,
                                default_event_node_id=rules.after_hours_default_event_node_id)
        logger.warning("Unknown after-hours action, rescheduling", action=action)
        return GateDecision(False, GateAction.RESCHEDULE, reason,
                            self.calculate_next_available_time(now, rules, timezone))

    def _resubmission_decision(self, tenant_id: str, journey_id: str, contact, rules,
                               scheduled_at: datetime, now: datetime) -> Optional[GateDecision]:
        window_start = now - timedelta(hours=rules.resubmission_detection_window_hours or 24)
        duplicates = self.journey_contact_repository.find_active_in_other_journeys(
            tenant_id, contact.phone, journey_id, window_start
        )
        if not duplicates:
            return None

        reason = (f"Contact is active in {len(duplicates)} other journey(s) enrolled within "
                  f"{rules.resubmission_detection_window_hours} hours")
        action = rules.resubmission_action
        if action == ResubmissionAction.CONTINUE.value:
            return None
        if action == ResubmissionAction.RESCHEDULE_DELAY.value:
            delay = rules.resubmission_reschedule_delay_hours or 24
            return GateDecision(False, GateAction.RESCHEDULE, reason,
                                scheduled_at + timedelta(hours=delay))
        if action == ResubmissionAction.PAUSE_JOURNEY.value:
            return GateDecision(False, GateAction.PAUSE, reason)
        if action == ResubmissionAction.DEFAULT_EVENT.value:
            return GateDecision(False, GateAction.DEFAULT_EVENT, reason,
                                default_event_node_id=rules.resubmission_default_event_node_id)
        return GateDecision(False, GateAction.SKIP, reason)

    def describe_rules(self, tenant_id: str) -> Dict[str, Any]:
        """Rules as a plain dict, for diagnostics"""
        rules = self.get_execution_rules(tenant_id)
        hours = BusinessHours.from_rules(rules)
        return {
            'timezone': self.resolve_timezone(tenant_id, rules),
            'afterHours': {
                'enabled': rules.enable_after_hours_handling,
                'action': rules.after_hours_action,
                'rescheduleTime': rules.after_hours_reschedule_time,
                'businessHours': {
                    'startHour': hours.start_hour,
                    'endHour': hours.end_hour,
                    'daysOfWeek': hours.days_of_week,
                },
            },
            'resubmission': {
                'enabled': rules.enable_resubmission_handling,
                'windowHours': rules.resubmission_detection_window_hours,
                'action': rules.resubmission_action,
                'rescheduleDelayHours': rules.resubmission_reschedule_delay_hours,
            },
        }
