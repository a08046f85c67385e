"""
Service layer enums
These enums are used by services and should match the values stored in the
database columns, so services can work without importing database models
"""

from enum import Enum


class JourneyStatus(str, Enum):
    """Lifecycle of a journey definition"""
    DRAFT = 'DRAFT'
    ACTIVE = 'ACTIVE'
    PAUSED = 'PAUSED'
    ARCHIVED = 'ARCHIVED'


class JourneyContactStatus(str, Enum):
    """Membership state of a contact inside a journey"""
    ACTIVE = 'ACTIVE'
    PAUSED = 'PAUSED'
    COMPLETED = 'COMPLETED'
    REMOVED = 'REMOVED'


class ExecutionStatus(str, Enum):
    """State of one node execution attempt"""
    PENDING = 'PENDING'
    EXECUTING = 'EXECUTING'
    COMPLETED = 'COMPLETED'
    FAILED = 'FAILED'
    SKIPPED = 'SKIPPED'


OPEN_EXECUTION_STATUSES = (ExecutionStatus.PENDING.value, ExecutionStatus.EXECUTING.value)


class JourneyNodeType(str, Enum):
    """The nine node kinds a journey graph can contain"""
    SEND_SMS = 'SEND_SMS'
    ADD_TO_CAMPAIGN = 'ADD_TO_CAMPAIGN'
    REMOVE_FROM_CAMPAIGN = 'REMOVE_FROM_CAMPAIGN'
    EXECUTE_WEBHOOK = 'EXECUTE_WEBHOOK'
    TIME_DELAY = 'TIME_DELAY'
    CONDITION = 'CONDITION'
    WEIGHTED_PATH = 'WEIGHTED_PATH'
    MAKE_CALL = 'MAKE_CALL'
    UPDATE_CONTACT_STATUS = 'UPDATE_CONTACT_STATUS'


class TimeDelayUnit(str, Enum):
    MINUTES = 'MINUTES'
    HOURS = 'HOURS'
    DAYS = 'DAYS'


class EnrollmentSource(str, Enum):
    """Where an enrollment request came from"""
    MANUAL = 'manual'
    WEBHOOK = 'webhook'
    SEGMENT = 'segment'
    CAMPAIGN = 'campaign'
    EVENT_SCHEDULED = 'event_scheduled'
    EVENT_REMINDER = 'event_reminder'


class AfterHoursAction(str, Enum):
    RESCHEDULE_NEXT_AVAILABLE = 'RESCHEDULE_NEXT_AVAILABLE'
    RESCHEDULE_NEXT_BUSINESS_DAY = 'RESCHEDULE_NEXT_BUSINESS_DAY'
    RESCHEDULE_SPECIFIC_TIME = 'RESCHEDULE_SPECIFIC_TIME'
    SKIP_NODE = 'SKIP_NODE'
    PAUSE_JOURNEY = 'PAUSE_JOURNEY'
    DEFAULT_EVENT = 'DEFAULT_EVENT'


class ResubmissionAction(str, Enum):
    SKIP_DUPLICATE = 'SKIP_DUPLICATE'
    RESCHEDULE_DELAY = 'RESCHEDULE_DELAY'
    PAUSE_JOURNEY = 'PAUSE_JOURNEY'
    DEFAULT_EVENT = 'DEFAULT_EVENT'
    CONTINUE = 'CONTINUE'


class GateAction(str, Enum):
    """What a caller must do with an execution the rules gate refused"""
    RESCHEDULE = 'RESCHEDULE'
    SKIP = 'SKIP'
    PAUSE = 'PAUSE'
    DEFAULT_EVENT = 'DEFAULT_EVENT'


class NodeOutcomeName(str, Enum):
    """Journey-level outcomes produced by node execution"""
    SUCCESS = 'success'
    FAILED = 'failed'
    OPTED_OUT = 'opted_out'
    BLOCKED = 'blocked'
    COMPLETED = 'completed'
    EVALUATED = 'evaluated'
    ANSWERED = 'answered'
    TRANSFERRED = 'transferred'
    NO_ANSWER = 'no_answer'
    BUSY = 'busy'


class RemovalConditionType(str, Enum):
    CALL_TRANSFERRED = 'call_transferred'
    CALL_DURATION = 'call_duration'
    WEBHOOK = 'webhook'
    CALL_STATUS = 'call_status'
    CUSTOM = 'custom'


WEEKDAY_NAMES = ['MONDAY', 'TUESDAY', 'WEDNESDAY', 'THURSDAY', 'FRIDAY', 'SATURDAY', 'SUNDAY']
