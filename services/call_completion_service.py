"""
CallCompletionService - resumes suspended MAKE_CALL executions.

Telephony callbacks arrive asynchronously, may be retried and may carry a
different correlation id than the one returned when the call was placed, so
the waiting execution is looked up by correlation id first and by phone
number and recency after that.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from logging_config import get_logger
from repositories.activity_repository import ActivityRepository
from repositories.journey_contact_repository import JourneyContactRepository
from repositories.journey_node_execution_repository import JourneyNodeExecutionRepository
from repositories.journey_repository import JourneyRepository
from services.cache_service import CacheService
from services.common.result import Result
from services.enums import JourneyContactStatus, NodeOutcomeName
from services.journey_execution_service import JourneyExecutionService
from services.journey_settings import JourneySettings
from services.removal_criteria_service import (
    TRANSFERRED_STATUSES, RemovalContext, RemovalCriteriaService
)
from utils.datetime_utils import utc_now

logger = get_logger(__name__)

CALLBACK_MATCH_WINDOW_MINUTES = 5


def map_call_outcome(status: Optional[str], disposition: Optional[str], transferred: bool) -> str:
    """
    Journey outcome for a finished call.

    Busy and no-answer dispositions win; an answered or completed call is
    ``transferred`` when the transfer leg connected, ``answered`` otherwise.
    Anything else is ``failed``.
    """
    status = (status or '').upper()
    disposition = (disposition or '').upper()
    if disposition == 'BUSY':
        return NodeOutcomeName.BUSY.value
    if disposition == 'NO_ANSWER':
        return NodeOutcomeName.NO_ANSWER.value
    if disposition == 'ANSWERED' or status in ('ANSWERED', 'COMPLETED'):
        return NodeOutcomeName.TRANSFERRED.value if transferred else NodeOutcomeName.ANSWERED.value
    return NodeOutcomeName.FAILED.value


class CallCompletionService:

    def __init__(self, activity_repository: ActivityRepository,
                 execution_repository: JourneyNodeExecutionRepository,
                 journey_repository: JourneyRepository,
                 journey_contact_repository: JourneyContactRepository,
                 execution_service: JourneyExecutionService,
                 removal_criteria_service: RemovalCriteriaService,
                 settings: Optional[JourneySettings] = None,
                 call_log_cache: Optional[CacheService] = None):
        self.activity_repository = activity_repository
        self.execution_repository = execution_repository
        self.journey_repository = journey_repository
        self.journey_contact_repository = journey_contact_repository
        self.execution_service = execution_service
        self.removal_criteria_service = removal_criteria_service
        self.settings = settings or JourneySettings()
        self.call_log_cache = call_log_cache or CacheService(
            default_ttl=self.settings.cache_ttl_seconds,
            max_size=self.settings.call_log_cache_size,
            name='call_logs',
        )

    def handle_call_completion(self, correlation_id: str, status: str,
                               disposition: Optional[str] = None,
                               phone_number: Optional[str] = None,
                               transfer_status: Optional[str] = None,
                               duration_seconds: Optional[int] = None,
                               now: Optional[datetime] = None) -> Result[Dict[str, Any]]:
        """
        Apply a call-status callback to the execution waiting on it.

        Args:
            correlation_id: Call id reported by the telephony provider
            status: Raw call status (ANSWERED, COMPLETED, FAILED...)
            disposition: Raw disposition (ANSWERED, BUSY, NO_ANSWER...)
            phone_number: Called number, used when the correlation id does not match
            transfer_status: Transfer leg status when the provider reports it directly
            duration_seconds: Call duration

        Returns:
            Result with the execution id and resolved outcome; failure with code
            EXECUTION_NOT_FOUND when nothing is waiting for this call
        """
        now = now or utc_now()
        since = now - timedelta(minutes=CALLBACK_MATCH_WINDOW_MINUTES)

        call_log = self._find_call_log(correlation_id, phone_number, since)
        execution = self._find_waiting_execution(correlation_id, phone_number, call_log, since)
        if execution is None:
            logger.warning("No waiting execution for call completion", correlation_id=correlation_id,
                           phone_number=phone_number,
                           call_log_id=call_log.id if call_log is not None else None)
            return Result.failure(f"No execution waiting for call {correlation_id}",
                                  code='EXECUTION_NOT_FOUND')

        metadata = (call_log.activity_metadata or {}) if call_log is not None else {}
        transfer_status = transfer_status or metadata.get('transferStatus')
        transferred = transfer_status in TRANSFERRED_STATUSES
        outcome = map_call_outcome(status, disposition, transferred)

        if duration_seconds is None and call_log is not None:
            duration_seconds = call_log.duration_seconds
        if call_log is not None:
            self.activity_repository.update_call_status(call_log, outcome, duration_seconds)

        message = f"Call {outcome}"
        if disposition:
            message += f": {disposition}"
        if transferred:
            message += " (transferred)"
        details = {
            'callStatus': outcome,
            'transferStatus': transfer_status,
            'callDisposition': disposition,
            'callDuration': duration_seconds,
            'message': message,
            'outcomeDetails': message,
        }
        node_outcome = self.execution_service.complete_call_execution(execution, outcome, details, now)

        data = {'executionId': execution.id, 'outcome': outcome, 'removed': False}
        journey_contact = self.journey_contact_repository.get_by_id(execution.journey_contact_id)
        if journey_contact is None or journey_contact.status != JourneyContactStatus.ACTIVE.value:
            logger.info("Call completed for inactive journey contact, not routing",
                        execution_id=execution.id, journey_contact_id=execution.journey_contact_id)
            return Result.success(data)

        journey = self.journey_repository.get_by_id(execution.journey_id)
        context = RemovalContext(call_status=outcome, transfer_status=transfer_status,
                                 call_duration=duration_seconds or 0)
        if self.removal_criteria_service.should_remove(journey, journey_contact.contact, context):
            self.execution_service.remove_contact_membership(
                journey_contact, now, reason='Removal criteria matched after call'
            )
            data['removed'] = True
            return Result.success(data)

        node = self.execution_service.get_node(execution.node_id, execution.journey_id)
        if node is None:
            logger.error("Call node no longer exists", execution_id=execution.id, node_id=execution.node_id)
            self.execution_service.complete_contact(journey_contact, now, reason='Call node deleted')
            return Result.success(data)

        self.execution_service.route(node, journey_contact, node_outcome, execution, now)
        return Result.success(data)

    # Lookups

    def _find_call_log(self, correlation_id: str, phone_number: Optional[str], since: datetime):
        def load():
            activity = self.activity_repository.find_by_external_id(correlation_id)
            if activity is None and phone_number:
                activity = self.activity_repository.find_recent_call_to_number(phone_number, since)
            return activity.id if activity is not None else None

        activity_id = self.call_log_cache.get_or_set(f"callLog:{correlation_id}", load)
        if activity_id is None:
            return None
        # Re-read so a transfer status written after the call ended is seen
        return self.activity_repository.get_by_id(activity_id)

    def _find_waiting_execution(self, correlation_id: str, phone_number: Optional[str],
                                call_log, since: datetime):
        candidates = [correlation_id]
        if call_log is not None:
            candidates.append(call_log.external_id)
            candidates.append((call_log.activity_metadata or {}).get('customCallId'))
        for candidate in candidates:
            if not candidate:
                continue
            execution = self.execution_repository.find_awaiting_call_by_correlation(candidate)
            if execution is not None:
                return execution

        phones = [phone_number]
        if call_log is not None:
            phones.append(call_log.to_number)
        for phone in phones:
            if not phone:
                continue
            execution = self.execution_repository.find_awaiting_call_by_phone(phone, since)
            if execution is not None:
                logger.info("Matched call completion by phone number", correlation_id=correlation_id,
                            execution_id=execution.id)
                return execution
        return None
