from .models import Entry, LogLevel


class ServerInfo(Entry, kw_only=True):
    node_host: str
    node_port: int
    node_id: str
    level: LogLevel = LogLevel.INFO


class ServerWarning(Entry, kw_only=True):
    node_host: str
    node_port: int
    node_id: str
    level: LogLevel = LogLevel.WARN


class ServerError(Entry, kw_only=True):
    node_host: str
    node_port: int
    node_id: str
    level: LogLevel = LogLevel.ERROR


class BackendHealthTransition(Entry, kw_only=True):
    backend_id: str
    address: str
    previous: str
    current: str
    consecutive_failures: int
    consecutive_successes: int
    level: LogLevel = LogLevel.INFO


class ProbeDebug(Entry, kw_only=True):
    backend_id: str
    result: str
    latency_ms: float
    level: LogLevel = LogLevel.DEBUG


class RoutingFailure(Entry, kw_only=True):
    session_key: str
    method: str
    target: str
    reason: str
    level: LogLevel = LogLevel.WARN


class ForwardingFailed(Entry, kw_only=True):
    backend_id: str
    address: str
    method: str
    target: str
    attempt: int
    will_retry: bool
    error: str
    level: LogLevel = LogLevel.WARN


class ReconcileAction(Entry, kw_only=True):
    previous_state: str
    current_state: str
    healthy: int
    min_healthy: int
    desired_capacity: int
    action: str
    level: LogLevel = LogLevel.INFO


class ProvisioningEscalation(Entry, kw_only=True):
    attempt: int
    waited_seconds: float
    reason: str
    level: LogLevel = LogLevel.ERROR


class DrainInfo(Entry, kw_only=True):
    backend_id: str
    in_flight: int
    forced: bool = False
    level: LogLevel = LogLevel.INFO


class ReplacementRequested(Entry, kw_only=True):
    request_id: str
    reason: str
    level: LogLevel = LogLevel.WARN


class ProvisioningFailed(Entry, kw_only=True):
    attempt: int
    reason: str
    error: str
    level: LogLevel = LogLevel.ERROR
