"""
Celery tasks that drive the journey engine
The poller, the stuck-call sweep and the reschedule flush run on beat;
call completions are enqueued by the telephony webhook handler
"""

from flask import current_app, has_app_context

from celery_worker import celery
from app import create_app
from logging_config import get_logger
from utils.datetime_utils import utc_now

logger = get_logger(__name__)


def _get_app():
    # Worker tasks already run inside the worker's app context; reuse it so the
    # poller's in-process guard and reschedule queue survive between runs
    if has_app_context():
        return current_app._get_current_object()
    return create_app()


@celery.task
def process_pending_journey_executions():
    """Run one journey poll cycle"""
    app = _get_app()

    with app.app_context():
        try:
            poller = app.services.get('journey_poller')
            stats = poller.process_pending_executions()
            return {
                'success': True,
                'stats': stats,
                'timestamp': utc_now().isoformat()
            }
        except Exception as e:
            logger.exception("Journey poll task failed", error=str(e))
            return {
                'success': False,
                'error': str(e),
                'timestamp': utc_now().isoformat()
            }


@celery.task
def timeout_stuck_call_executions():
    """Fail MAKE_CALL executions whose completion callback never arrived"""
    app = _get_app()

    with app.app_context():
        try:
            poller = app.services.get('journey_poller')
            result = poller.timeout_stuck_call_executions()
            return {
                'success': True,
                'timed_out': result['timed_out'],
                'failed': result['failed'],
                'timestamp': utc_now().isoformat()
            }
        except Exception as e:
            logger.exception("Stuck call sweep failed", error=str(e))
            return {
                'success': False,
                'error': str(e),
                'timestamp': utc_now().isoformat()
            }


@celery.task
def flush_journey_reschedules():
    """Apply queued gate reschedules in bulk"""
    app = _get_app()

    with app.app_context():
        try:
            poller = app.services.get('journey_poller')
            moved = poller.flush_reschedules()
            return {
                'success': True,
                'moved': moved,
                'timestamp': utc_now().isoformat()
            }
        except Exception as e:
            logger.exception("Reschedule flush failed", error=str(e))
            return {
                'success': False,
                'error': str(e),
                'timestamp': utc_now().isoformat()
            }


@celery.task(bind=True, max_retries=3)
def handle_call_completion(self, correlation_id, status, disposition=None, phone_number=None,
                           transfer_status=None, duration_seconds=None):
    """
    Resume the journey waiting on a finished call

    Args:
        correlation_id: Provider call id
        status: Raw call status
        disposition: Raw call disposition
        phone_number: Called number, used when the correlation id does not match
    """
    app = _get_app()

    with app.app_context():
        try:
            service = app.services.get('call_completion')
            result = service.handle_call_completion(
                correlation_id, status,
                disposition=disposition,
                phone_number=phone_number,
                transfer_status=transfer_status,
                duration_seconds=duration_seconds,
            )
        except Exception as e:
            logger.exception("Call completion task failed", correlation_id=correlation_id)
            raise self.retry(exc=e, countdown=30 * (2 ** self.request.retries))

        return {
            'success': result.is_success,
            'data': result.data,
            'error': result.error,
            'timestamp': utc_now().isoformat()
        }
