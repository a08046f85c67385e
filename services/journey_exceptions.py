"""
Exceptions raised by the journey engine.

Only configuration and routing errors are meant to escape node execution;
everything else is recorded on the execution result as a failure outcome.
"""


class JourneyError(Exception):
    """Base class for journey engine errors"""
    pass


class JourneyConfigurationError(JourneyError):
    """A node or journey is misconfigured; the contact must be paused"""
    pass


class JourneyRoutingError(JourneyConfigurationError):
    """An edge points at a malformed or unknown node id"""

    def __init__(self, message: str, target_node_id=None):
        super().__init__(message)
        self.target_node_id = target_node_id


class LoopDetectedError(JourneyError):
    """The same node fired repeatedly for one contact inside the loop window"""
    pass


class DuplicateEnrollmentError(JourneyError):
    """The contact already has an ACTIVE membership in the journey"""
    pass


class CallSpacingError(JourneyError):
    """A call to the same number happened too recently or is still in flight"""

    def __init__(self, message: str, retry_after_seconds: int = 0):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class WebhookExecutionError(JourneyError):
    """A webhook could not be delivered after all retries"""

    def __init__(self, message: str, status_code=None, attempts: int = 0):
        super().__init__(message)
        self.status_code = status_code
        self.attempts = attempts


class JourneyNotFoundError(JourneyError):
    pass


class ContactNotFoundError(JourneyError):
    pass


class JourneyNotEnrollableError(JourneyError):
    """The journey is paused, archived or has no nodes"""
    pass
