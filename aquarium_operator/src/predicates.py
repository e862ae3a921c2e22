from __future__ import annotations

from typing import Any

from aquarium_operator.src.resources import AQUARIUM, APP_LABEL_KEY, APP_LABEL_VALUE


def _field(obj: Any, dict_key: str, attr: str) -> Any:
    """Read a field from either a plain dict or a ``kubernetes`` model object."""
    if isinstance(obj, dict):
        return obj.get(dict_key)
    return getattr(obj, attr, None)


def object_labels(obj: Any) -> dict[str, str]:
    metadata = _field(obj, "metadata", "metadata")
    labels = _field(metadata, "labels", "labels") if metadata is not None else None
    return labels if isinstance(labels, dict) else {}


def object_generation(obj: Any) -> int | None:
    metadata = _field(obj, "metadata", "metadata")
    if metadata is None:
        return None
    generation = _field(metadata, "generation", "generation")
    return int(generation) if generation is not None else None


def object_resource_version(obj: Any) -> str | None:
    metadata = _field(obj, "metadata", "metadata")
    if metadata is None:
        return None
    return _field(metadata, "resourceVersion", "resource_version")


def is_owned_by_aquarium(obj: Any) -> bool:
    """Return True if *obj* carries the ``app=Aquarium`` label.

    Deployments and Namespaces without it belong to someone else and their
    churn must not trigger reconciliation.
    """
    return object_labels(obj).get(APP_LABEL_KEY) == APP_LABEL_VALUE


def generation_changed(previous_generation: int | None, obj: Any) -> bool:
    """Admit an update only when ``metadata.generation`` moved.

    Status writes do not bump the generation, so the controller's own status
    updates are not fed back into the queue.
    """
    current = object_generation(obj)
    if previous_generation is None or current is None:
        return True
    return current != previous_generation


def controller_owner_uid(obj: Any) -> str | None:
    """Return the uid of the controlling Aquarium owner reference, if any."""
    metadata = _field(obj, "metadata", "metadata")
    if metadata is None:
        return None
    references = _field(metadata, "ownerReferences", "owner_references") or []
    for reference in references:
        if not _field(reference, "controller", "controller"):
            continue
        if _field(reference, "kind", "kind") != AQUARIUM.kind:
            continue
        api_version = _field(reference, "apiVersion", "api_version") or ""
        if api_version.split("/", 1)[0] != AQUARIUM.group:
            continue
        return _field(reference, "uid", "uid")
    return None
