from __future__ import annotations

import copy
from typing import Any

from aquarium_operator.src.resources import (
    APP_LABEL_KEY,
    APP_LABEL_VALUE,
    AQUARIUM,
    DEPLOYMENT,
    LOCATED_AT_LABEL_KEY,
    NAMESPACE,
    Aquarium,
    ResourceType,
)

CONTAINER_NAME = "aquarium"
PLACEHOLDER_COMMAND = ("sleep", "10000")


def owner_reference(aquarium: Aquarium) -> dict[str, Any]:
    """Return the controlling owner reference that links a child to *aquarium*.

    ``blockOwnerDeletion`` keeps the parent around until the garbage
    collector has removed the child during a foreground delete.
    """
    return {
        "apiVersion": AQUARIUM.api_version,
        "kind": AQUARIUM.kind,
        "name": aquarium.name,
        "uid": aquarium.uid,
        "controller": True,
        "blockOwnerDeletion": True,
    }


def _child_metadata(
    resource: ResourceType, aquarium: Aquarium, name: str, labels: dict[str, str]
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": name}
    if resource.namespaced:
        metadata["namespace"] = aquarium.spec.placement_namespace
    metadata["labels"] = labels
    metadata["ownerReferences"] = [owner_reference(aquarium)]
    return metadata


def build_namespace(aquarium: Aquarium) -> dict[str, Any]:
    return {
        "apiVersion": NAMESPACE.api_version,
        "kind": NAMESPACE.kind,
        "metadata": _child_metadata(
            NAMESPACE,
            aquarium,
            name=aquarium.spec.placement_namespace,
            labels={APP_LABEL_KEY: APP_LABEL_VALUE},
        ),
    }


def build_deployment(aquarium: Aquarium) -> dict[str, Any]:
    """Build the desired Deployment manifest for *aquarium*.

    Only the parent's identity and spec are read, so two calls with the same
    Aquarium always produce equal manifests and repeated applies converge
    instead of drifting.
    """
    selector_labels = {APP_LABEL_KEY: APP_LABEL_VALUE}
    return {
        "apiVersion": DEPLOYMENT.api_version,
        "kind": DEPLOYMENT.kind,
        "metadata": _child_metadata(
            DEPLOYMENT,
            aquarium,
            name=aquarium.name,
            labels={
                APP_LABEL_KEY: APP_LABEL_VALUE,
                LOCATED_AT_LABEL_KEY: aquarium.spec.placement_namespace,
            },
        ),
        "spec": {
            "replicas": aquarium.spec.replica_count,
            "selector": {"matchLabels": dict(selector_labels)},
            "template": {
                "metadata": {"labels": dict(selector_labels)},
                "spec": {
                    "containers": [
                        {
                            "name": CONTAINER_NAME,
                            "image": aquarium.spec.image,
                            "command": list(PLACEHOLDER_COMMAND),
                        }
                    ]
                },
            },
        },
    }


def strip_status(manifest: dict[str, Any]) -> dict[str, Any]:
    """Return a deep copy of *manifest* without its ``status`` stanza.

    Server-side apply validation rejects ``status`` on the main resource
    endpoint; status has its own subresource.
    """
    stripped = copy.deepcopy(manifest)
    stripped.pop("status", None)
    return stripped
