from .balancer_errors import (
    BalancerError as BalancerError,
    DeadlineExceeded as DeadlineExceeded,
    ErrorCategory as ErrorCategory,
    ErrorSeverity as ErrorSeverity,
    ForwardingFailure as ForwardingFailure,
    MalformedRequest as MalformedRequest,
    NoAvailableBackend as NoAvailableBackend,
    ProbeFailure as ProbeFailure,
    ProvisioningError as ProvisioningError,
    ProvisioningTimeout as ProvisioningTimeout,
)
