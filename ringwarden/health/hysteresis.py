from dataclasses import replace

from ringwarden.models import Backend, BackendHealth


def evaluate_probe(
    backend: Backend,
    succeeded: bool,
    failure_threshold: int,
    success_threshold: int,
    checked_at: float,
) -> Backend:
    """
    Fold one probe result into a backend's counters and health.

    A Healthy backend becomes Unhealthy on exactly its Nth consecutive
    failure, and an Unhealthy backend becomes Healthy on exactly its Mth
    consecutive success. Draining backends keep counting but never leave
    Draining through probing.
    """
    if succeeded:
        successes = backend.consecutive_successes + 1
        failures = 0

    else:
        successes = 0
        failures = backend.consecutive_failures + 1

    health = backend.health
    changed_at = backend.health_changed_at

    if (
        health == BackendHealth.HEALTHY
        and failures >= failure_threshold
    ):
        health = BackendHealth.UNHEALTHY
        changed_at = checked_at

    elif (
        health == BackendHealth.UNHEALTHY
        and successes >= success_threshold
    ):
        health = BackendHealth.HEALTHY
        changed_at = checked_at

    return replace(
        backend,
        health=health,
        consecutive_failures=failures,
        consecutive_successes=successes,
        last_checked_at=checked_at,
        health_changed_at=changed_at,
    )
