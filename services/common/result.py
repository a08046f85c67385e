"""
Result Pattern Implementation
Provides a standardized way for services to return results with success/failure status,
plus the outcome value returned by journey node execution
"""

from typing import TypeVar, Generic, Optional, Any, Dict
from dataclasses import dataclass, field
from enum import Enum

T = TypeVar('T')


@dataclass
class Result(Generic[T]):
    """
    A generic Result class for service method returns.

    Encapsulates either a successful result with data or a failure with error information.

    Examples:
        result = Result.success(journey_contact)
        if result.is_success:
            print(result.data)

        result = Result.failure("Journey not found", code="JOURNEY_NOT_FOUND")
        if result.is_failure:
            print(result.error)
    """

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None

    @classmethod
    def success(cls, data: T, metadata: Optional[Dict[str, Any]] = None) -> 'Result[T]':
        """
        Create a successful result.

        Args:
            data: The successful result data
            metadata: Optional metadata about the operation
        """
        return cls(success=True, data=data, metadata=metadata)

    @classmethod
    def failure(cls,
                error: str,
                code: Optional[str] = None,
                metadata: Optional[Dict[str, Any]] = None) -> 'Result[T]':
        """
        Create a failure result.

        Args:
            error: Error message describing the failure
            code: Optional error code for programmatic handling
            metadata: Optional metadata about the failure
        """
        return cls(success=False, data=None, error=error, error_code=code, metadata=metadata)

    @property
    def is_success(self) -> bool:
        return self.success

    @property
    def is_failure(self) -> bool:
        return not self.success

    @property
    def code(self) -> Optional[str]:
        """Alias for error_code"""
        return self.error_code

    def unwrap(self) -> T:
        """
        Get the data from a successful result.

        Raises:
            ValueError: If called on a failure result
        """
        if self.is_failure:
            raise ValueError(f"Cannot unwrap a failure result: {self.error}")
        return self.data

    def unwrap_or(self, default: T) -> T:
        return self.data if self.is_success else default

    def __bool__(self) -> bool:
        return self.is_success

    def __repr__(self) -> str:
        if self.is_success:
            return f"Result.success(data={self.data!r})"
        return f"Result.failure(error={self.error!r}, code={self.error_code!r})"


class OutcomeKind(Enum):
    """How the engine should continue after a node ran"""
    SUCCESS = "success"
    FAILURE = "failure"     # recoverable, routed like any other outcome
    SUSPENDED = "suspended"  # waiting on an external callback (MAKE_CALL)


@dataclass
class NodeOutcome:
    """
    Value returned by the node executor for one node.

    ``outcome`` is the journey-level outcome name (``success``, ``failed``,
    ``opted_out``, ``answered``...). ``next_node_id`` is only set by branching
    nodes, which pick their own edge. ``details`` is merged into the execution's
    result bag.
    """

    kind: OutcomeKind
    outcome: str
    action: str
    details: Dict[str, Any] = field(default_factory=dict)
    next_node_id: Optional[str] = None

    @classmethod
    def succeeded(cls, outcome: str, action: str, **details) -> 'NodeOutcome':
        return cls(kind=OutcomeKind.SUCCESS, outcome=outcome, action=action, details=details)

    @classmethod
    def failed(cls, action: str, error: str, outcome: str = 'failed', **details) -> 'NodeOutcome':
        details['error'] = error
        return cls(kind=OutcomeKind.FAILURE, outcome=outcome, action=action, details=details)

    @classmethod
    def suspended(cls, action: str, **details) -> 'NodeOutcome':
        return cls(kind=OutcomeKind.SUSPENDED, outcome='pending', action=action, details=details)

    @property
    def is_suspended(self) -> bool:
        return self.kind == OutcomeKind.SUSPENDED

    @property
    def is_failure(self) -> bool:
        return self.kind == OutcomeKind.FAILURE

    def to_result(self) -> Dict[str, Any]:
        """Serialise into the execution result bag"""
        result = dict(self.details)
        result.update({
            'success': self.kind != OutcomeKind.FAILURE,
            'outcome': self.outcome,
            'action': self.action,
        })
        if self.next_node_id is not None:
            result['nextNodeId'] = self.next_node_id
        return result
