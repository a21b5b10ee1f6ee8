from __future__ import annotations

from dataclasses import dataclass, field

from .env import Env
from .time_parser import TimeParser


@dataclass(slots=True, frozen=True)
class BackendSpec:
    """A statically configured upstream, parsed from ``[id=]host:port``."""

    backend_id: str
    host: str
    port: int

    @classmethod
    def parse(cls, value: str) -> BackendSpec:
        value = value.strip()
        backend_id: str | None = None

        if "=" in value:
            backend_id, value = (part.strip() for part in value.split("=", 1))

        host, separator, port = value.rpartition(":")
        if not separator or not host or not port.isdigit():
            raise ValueError(f"Invalid backend {value!r}, expected host:port")

        host = host.strip("[]")

        return cls(
            backend_id=backend_id or f"{host}:{port}",
            host=host,
            port=int(port),
        )


@dataclass(slots=True, frozen=True)
class BalancerConfig:
    """
    Operator configuration, read once at startup and immutable for the
    lifetime of the process.
    """

    listen_host: str = "0.0.0.0"
    listen_port: int = 8080
    backends: tuple[BackendSpec, ...] = field(default_factory=tuple)

    min_healthy: int = 1
    desired_capacity: int = 2
    grace_period: float = 300.0
    reconcile_interval: float = 5.0
    reap_after: float = 600.0
    replacement_command: str | None = None
    replacement_timeout: float = 300.0

    probe_interval: float = 10.0
    probe_timeout: float = 5.0
    failure_threshold: int = 3
    success_threshold: int = 2
    health_check_path: str = "/"

    request_timeout: float = 60.0
    connect_timeout: float = 5.0
    drain_timeout: float = 30.0
    virtual_nodes: int = 160
    session_key: str = "ip_hash"
    max_concurrency: int = 1024
    status_path: str = "/__ringwarden/status"

    log_level: str = "info"
    logs_directory: str | None = None
    events_logfile: str = "events.json"

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")

        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")

        if self.probe_timeout <= 0:
            raise ValueError("probe_timeout must be > 0")

        if self.probe_interval <= 0:
            raise ValueError("probe_interval must be > 0")

        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")

        if self.connect_timeout <= 0:
            raise ValueError("connect_timeout must be > 0")

        if self.grace_period <= 0:
            raise ValueError("grace_period must be > 0")

        if self.reconcile_interval <= 0:
            raise ValueError("reconcile_interval must be > 0")

        if self.replacement_timeout <= 0:
            raise ValueError("replacement_timeout must be > 0")

        if self.drain_timeout < 0:
            raise ValueError("drain_timeout must be >= 0")

        if self.min_healthy < 0:
            raise ValueError("min_healthy must be >= 0")

        if self.desired_capacity < self.min_healthy:
            raise ValueError("desired_capacity must be >= min_healthy")

        if self.virtual_nodes < 1:
            raise ValueError("virtual_nodes must be >= 1")

        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")

        if not self.health_check_path.startswith("/"):
            raise ValueError("health_check_path must start with '/'")

        if not self.events_logfile.endswith(".json"):
            raise ValueError("events_logfile must be a .json file")

    @classmethod
    def from_env(cls, env: Env) -> BalancerConfig:
        backends = tuple(
            BackendSpec.parse(item)
            for item in env.RINGWARDEN_BACKENDS.split(",")
            if item.strip()
        )

        return cls(
            listen_host=env.RINGWARDEN_LISTEN_HOST,
            listen_port=env.RINGWARDEN_LISTEN_PORT,
            backends=backends,
            min_healthy=env.RINGWARDEN_MIN_HEALTHY,
            desired_capacity=env.RINGWARDEN_DESIRED_CAPACITY,
            grace_period=TimeParser(env.RINGWARDEN_GRACE_PERIOD).time,
            reconcile_interval=TimeParser(env.RINGWARDEN_RECONCILE_INTERVAL).time,
            reap_after=TimeParser(env.RINGWARDEN_REAP_AFTER).time,
            replacement_command=env.RINGWARDEN_REPLACEMENT_COMMAND,
            replacement_timeout=TimeParser(env.RINGWARDEN_REPLACEMENT_TIMEOUT).time,
            probe_interval=TimeParser(env.RINGWARDEN_PROBE_INTERVAL).time,
            probe_timeout=TimeParser(env.RINGWARDEN_PROBE_TIMEOUT).time,
            failure_threshold=env.RINGWARDEN_FAILURE_THRESHOLD,
            success_threshold=env.RINGWARDEN_SUCCESS_THRESHOLD,
            health_check_path=env.RINGWARDEN_HEALTH_CHECK_PATH,
            request_timeout=TimeParser(env.RINGWARDEN_REQUEST_TIMEOUT).time,
            connect_timeout=TimeParser(env.RINGWARDEN_CONNECT_TIMEOUT).time,
            drain_timeout=TimeParser(env.RINGWARDEN_DRAIN_TIMEOUT).time,
            virtual_nodes=env.RINGWARDEN_VIRTUAL_NODES,
            session_key=env.RINGWARDEN_SESSION_KEY,
            max_concurrency=env.RINGWARDEN_MAX_CONCURRENCY,
            status_path=env.RINGWARDEN_STATUS_PATH,
            log_level=env.RINGWARDEN_LOG_LEVEL,
            logs_directory=env.RINGWARDEN_LOGS_DIRECTORY,
            events_logfile=env.RINGWARDEN_EVENTS_LOGFILE,
        )
