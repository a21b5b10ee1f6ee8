"""
Load balancer error hierarchy.

Errors are classified by:
- Category: What kind of error (network, protocol, capacity, configuration)
- Severity: How serious (transient, degraded, fatal)

Health and provisioning errors are absorbed into state transitions and
events. Only forwarding errors reach clients, after the single permitted
retry.
"""

from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any


class ErrorSeverity(Enum):
    """How serious is this error?"""

    TRANSIENT = auto()
    """Network blip, a later attempt is likely to succeed."""

    DEGRADED = auto()
    """Partial failure, the balancer continues with reduced capacity."""

    FATAL = auto()
    """Cannot continue without operator action."""


class ErrorCategory(Enum):
    """What kind of error is this?"""

    NETWORK = auto()
    """Timeouts, refused or reset connections, unreachable backends."""

    PROTOCOL = auto()
    """Malformed HTTP messages."""

    CAPACITY = auto()
    """No routable backend, or replacement capacity not arriving."""

    CONFIGURATION = auto()
    """Invalid operator configuration."""


@dataclass
class BalancerError(Exception):
    """
    Base exception for load balancer errors.

    All errors carry:
    - message: Human-readable description
    - category: What kind of error
    - severity: How serious
    - context: Additional debugging info
    - cause: Original exception if wrapping
    """

    message: str
    category: ErrorCategory
    severity: ErrorSeverity
    context: dict[str, Any] = field(default_factory=dict)
    cause: BaseException | None = None

    def __str__(self) -> str:
        ctx = f" {self.context}" if self.context else ""
        cause = ""
        if self.cause:
            cause_str = str(self.cause)
            cause_type = type(self.cause).__name__
            if cause_str:
                cause = f" (caused by {cause_type}: {cause_str})"
            else:
                cause = f" (caused by {cause_type})"
        return f"[{self.category.name}/{self.severity.name}] {self.message}{ctx}{cause}"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"category={self.category}, "
            f"severity={self.severity}, "
            f"context={self.context})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "category": self.category.name,
            "severity": self.severity.name,
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
        }


class ProbeFailure(BalancerError):
    """A health probe did not succeed. Feeds hysteresis only."""

    def __init__(
        self,
        backend_id: str,
        reason: str,
        cause: BaseException | None = None,
    ):
        super().__init__(
            message=f"Probe of {backend_id} failed: {reason}",
            category=ErrorCategory.NETWORK,
            severity=ErrorSeverity.TRANSIENT,
            context={"backend_id": backend_id},
            cause=cause,
        )
        self.backend_id = backend_id
        self.reason = reason


class NoAvailableBackend(BalancerError):
    """No Healthy backend can take the request."""

    def __init__(self, session_key: str | None = None):
        super().__init__(
            message="No healthy backend available",
            category=ErrorCategory.CAPACITY,
            severity=ErrorSeverity.DEGRADED,
            context={"session_key": session_key} if session_key else {},
        )
        self.session_key = session_key


class ForwardingFailure(BalancerError):
    """The request could not be delivered to, or answered by, a backend."""

    def __init__(
        self,
        backend_id: str,
        address: tuple[str, int],
        reason: str,
        cause: BaseException | None = None,
    ):
        super().__init__(
            message=f"Forwarding to {backend_id} at {address[0]}:{address[1]} failed: {reason}",
            category=ErrorCategory.NETWORK,
            severity=ErrorSeverity.TRANSIENT,
            context={"backend_id": backend_id, "address": address},
            cause=cause,
        )
        self.backend_id = backend_id
        self.address = address


class DeadlineExceeded(BalancerError):
    """The overall request deadline expired before a backend answered."""

    def __init__(
        self,
        budget: float,
        backend_id: str | None = None,
    ):
        super().__init__(
            message=f"Request deadline of {budget:.2f}s exceeded",
            category=ErrorCategory.NETWORK,
            severity=ErrorSeverity.DEGRADED,
            context={"backend_id": backend_id} if backend_id else {},
        )
        self.budget = budget
        self.backend_id = backend_id


class MalformedRequest(BalancerError):
    """The client sent something that is not a valid HTTP/1.x request."""

    def __init__(self, reason: str, cause: BaseException | None = None):
        super().__init__(
            message=f"Malformed request: {reason}",
            category=ErrorCategory.PROTOCOL,
            severity=ErrorSeverity.TRANSIENT,
            cause=cause,
        )


class ProvisioningTimeout(BalancerError):
    """A replacement did not produce a Healthy backend within the grace period."""

    def __init__(self, attempt: int, waited: float):
        super().__init__(
            message=f"Replacement attempt {attempt} produced no healthy backend after {waited:.1f}s",
            category=ErrorCategory.CAPACITY,
            severity=ErrorSeverity.DEGRADED,
            context={"attempt": attempt, "waited": waited},
        )
        self.attempt = attempt
        self.waited = waited


class ProvisioningError(BalancerError):
    """The provisioner rejected or failed a replacement request."""

    def __init__(self, reason: str, cause: BaseException | None = None, **context: Any):
        super().__init__(
            message=f"Provisioning failed: {reason}",
            category=ErrorCategory.CAPACITY,
            severity=ErrorSeverity.DEGRADED,
            context=context,
            cause=cause,
        )
