from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

READY_CONDITION_TYPE = "aquariumReady"
REASON_HEALTHY = "AquariumIsHealthy"
REASON_UNHEALTHY = "AquariumIsUnHealthy"
MESSAGE_HEALTHY = "All requested tanks are ready"
MESSAGE_UNHEALTHY = "Ready tanks do not match the requested count"


class Health(StrEnum):
    """Aquarium health.  ``Unknown`` until the first pass has compared replicas."""

    HEALTHY = "Healthy"
    UNHEALTHY = "Unhealthy"
    UNKNOWN = "Unknown"


def utc_now_rfc3339() -> str:
    """Return the current UTC time as a compact RFC 3339 string (e.g. ``2024-01-15T08:30:00Z``)."""
    return datetime.now(UTC).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def observed_ready_replicas(deployment: Any) -> int:
    """Return ``status.readyReplicas`` of a Deployment, treating absence as zero."""
    status = getattr(deployment, "status", None)
    ready = getattr(status, "ready_replicas", None)
    return int(ready or 0)


def current_health(status: dict[str, Any]) -> Health:
    """Return the health recorded on an Aquarium status, ``Unknown`` if none was written yet."""
    try:
        return Health(status.get("health"))
    except ValueError:
        return Health.UNKNOWN


def classify_health(requested: int, ready: int) -> Health:
    """Classify health by strict equality of ready and requested replicas.

    More ready replicas than requested is still ``Unhealthy``; the child is
    expected to match the parent exactly.
    """
    if ready == requested:
        return Health.HEALTHY
    return Health.UNHEALTHY


def readiness_condition(health: Health, observed_generation: int) -> dict[str, Any]:
    healthy = health is Health.HEALTHY
    return {
        "type": READY_CONDITION_TYPE,
        "status": "True" if healthy else "False",
        "observedGeneration": observed_generation,
        "reason": REASON_HEALTHY if healthy else REASON_UNHEALTHY,
        "message": MESSAGE_HEALTHY if healthy else MESSAGE_UNHEALTHY,
    }


def set_status_condition(
    conditions: list[dict[str, Any]],
    new_condition: dict[str, Any],
    now_fn: Callable[[], str] = utc_now_rfc3339,
) -> bool:
    """Upsert *new_condition* into *conditions* by ``type``, in place.

    ``lastTransitionTime`` only moves when ``status`` changes; ``reason``,
    ``message`` and ``observedGeneration`` are always refreshed.  Returns
    True if anything in the list changed.
    """
    existing = next(
        (condition for condition in conditions if condition.get("type") == new_condition["type"]),
        None,
    )
    if existing is None:
        added = dict(new_condition)
        added.setdefault("lastTransitionTime", now_fn())
        conditions.append(added)
        return True

    changed = False
    if existing.get("status") != new_condition["status"]:
        existing["status"] = new_condition["status"]
        existing["lastTransitionTime"] = new_condition.get("lastTransitionTime") or now_fn()
        changed = True

    for key in ("reason", "message", "observedGeneration"):
        if existing.get(key) != new_condition.get(key):
            existing[key] = new_condition.get(key)
            changed = True
    return changed


def build_status(
    current_status: dict[str, Any],
    requested: int,
    deployment: Any,
    generation: int,
    now_fn: Callable[[], str] = utc_now_rfc3339,
) -> dict[str, Any]:
    """Compute the Aquarium status for one reconciliation pass.

    Existing conditions of other types are kept.  *deployment* may be None
    when the child has not been created yet, which reads as zero ready
    replicas.
    """
    ready = observed_ready_replicas(deployment)
    health = classify_health(requested=requested, ready=ready)

    conditions = [dict(condition) for condition in current_status.get("conditions") or []]
    set_status_condition(conditions, readiness_condition(health, generation), now_fn=now_fn)

    return {
        "ready_replica_count": ready,
        "health": str(health),
        "conditions": conditions,
    }
