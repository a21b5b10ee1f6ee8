from __future__ import annotations

from typing import Callable, Dict, Literal, Union

from pydantic import BaseModel, StrictInt, StrictStr

PrimaryType = Union[str, int, float, bytes, bool]


class Env(BaseModel):
    RINGWARDEN_LISTEN_HOST: StrictStr = "0.0.0.0"
    RINGWARDEN_LISTEN_PORT: StrictInt = 8080
    RINGWARDEN_BACKENDS: StrictStr = ""

    # Capacity
    RINGWARDEN_MIN_HEALTHY: StrictInt = 1
    RINGWARDEN_DESIRED_CAPACITY: StrictInt = 2
    RINGWARDEN_GRACE_PERIOD: StrictStr = "5m"
    RINGWARDEN_RECONCILE_INTERVAL: StrictStr = "5s"
    RINGWARDEN_REAP_AFTER: StrictStr = "10m"
    RINGWARDEN_REPLACEMENT_COMMAND: StrictStr | None = None
    RINGWARDEN_REPLACEMENT_TIMEOUT: StrictStr = "5m"

    # Health checks
    RINGWARDEN_PROBE_INTERVAL: StrictStr = "10s"
    RINGWARDEN_PROBE_TIMEOUT: StrictStr = "5s"
    RINGWARDEN_FAILURE_THRESHOLD: StrictInt = 3
    RINGWARDEN_SUCCESS_THRESHOLD: StrictInt = 2
    RINGWARDEN_HEALTH_CHECK_PATH: StrictStr = "/"

    # Routing and forwarding
    RINGWARDEN_REQUEST_TIMEOUT: StrictStr = "60s"
    RINGWARDEN_CONNECT_TIMEOUT: StrictStr = "5s"
    RINGWARDEN_DRAIN_TIMEOUT: StrictStr = "30s"
    RINGWARDEN_VIRTUAL_NODES: StrictInt = 160
    RINGWARDEN_SESSION_KEY: StrictStr = "ip_hash"
    RINGWARDEN_MAX_CONCURRENCY: StrictInt = 1024
    RINGWARDEN_STATUS_PATH: StrictStr = "/__ringwarden/status"

    # Logging
    RINGWARDEN_LOG_LEVEL: Literal[
        "trace", "debug", "info", "warn", "error", "critical", "fatal"
    ] = "info"
    RINGWARDEN_LOGS_DIRECTORY: StrictStr | None = None
    RINGWARDEN_EVENTS_LOGFILE: StrictStr = "events.json"

    @classmethod
    def types_map(cls) -> Dict[str, Callable[[str], PrimaryType]]:
        return {
            "RINGWARDEN_LISTEN_HOST": str,
            "RINGWARDEN_LISTEN_PORT": int,
            "RINGWARDEN_BACKENDS": str,
            "RINGWARDEN_MIN_HEALTHY": int,
            "RINGWARDEN_DESIRED_CAPACITY": int,
            "RINGWARDEN_GRACE_PERIOD": str,
            "RINGWARDEN_RECONCILE_INTERVAL": str,
            "RINGWARDEN_REAP_AFTER": str,
            "RINGWARDEN_REPLACEMENT_COMMAND": str,
            "RINGWARDEN_REPLACEMENT_TIMEOUT": str,
            "RINGWARDEN_PROBE_INTERVAL": str,
            "RINGWARDEN_PROBE_TIMEOUT": str,
            "RINGWARDEN_FAILURE_THRESHOLD": int,
            "RINGWARDEN_SUCCESS_THRESHOLD": int,
            "RINGWARDEN_HEALTH_CHECK_PATH": str,
            "RINGWARDEN_REQUEST_TIMEOUT": str,
            "RINGWARDEN_CONNECT_TIMEOUT": str,
            "RINGWARDEN_DRAIN_TIMEOUT": str,
            "RINGWARDEN_VIRTUAL_NODES": int,
            "RINGWARDEN_SESSION_KEY": str,
            "RINGWARDEN_MAX_CONCURRENCY": int,
            "RINGWARDEN_STATUS_PATH": str,
            "RINGWARDEN_LOG_LEVEL": str,
            "RINGWARDEN_LOGS_DIRECTORY": str,
            "RINGWARDEN_EVENTS_LOGFILE": str,
        }
