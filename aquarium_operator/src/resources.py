from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

APP_LABEL_KEY = "app"
APP_LABEL_VALUE = "Aquarium"
LOCATED_AT_LABEL_KEY = "located-at"

DEFAULT_FIELD_OWNER = "aquarium-operator"
DEFAULT_PLACEMENT_NAMESPACE = "pier39"


@dataclass(frozen=True)
class ResourceType:
    """Static description of a Kubernetes type the controller reads or writes."""

    group: str
    version: str
    kind: str
    plural: str
    namespaced: bool = True

    @property
    def api_version(self) -> str:
        if not self.group:
            return self.version
        return f"{self.group}/{self.version}"


AQUARIUM = ResourceType(group="fun.tydanny.com", version="v1alpha1", kind="Aquarium", plural="aquaria")
DEPLOYMENT = ResourceType(group="apps", version="v1", kind="Deployment", plural="deployments")
NAMESPACE = ResourceType(group="", version="v1", kind="Namespace", plural="namespaces", namespaced=False)

RESOURCE_TYPES: dict[str, ResourceType] = {
    resource.kind: resource for resource in (AQUARIUM, DEPLOYMENT, NAMESPACE)
}


@dataclass(frozen=True)
class AquariumSpec:
    replica_count: int
    placement_namespace: str
    image: str


@dataclass(frozen=True)
class Aquarium:
    """Parsed view of an ``Aquarium`` custom object.

    ``raw`` keeps the object exactly as returned by the API server so the
    status write can send it back with its ``resourceVersion`` intact.
    ``status`` is carried for the status writer only; nothing that computes
    desired state reads it.
    """

    namespace: str
    name: str
    uid: str
    generation: int
    spec: AquariumSpec
    status: dict[str, Any] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_object(cls, obj: dict[str, Any]) -> Aquarium:
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        status = obj.get("status") or {}

        placement_namespace = spec.get("placement_namespace") or DEFAULT_PLACEMENT_NAMESPACE
        return cls(
            namespace=metadata.get("namespace", ""),
            name=metadata.get("name", ""),
            uid=metadata.get("uid", ""),
            generation=int(metadata.get("generation") or 0),
            spec=AquariumSpec(
                replica_count=int(spec.get("replica_count") or 0),
                placement_namespace=str(placement_namespace),
                image=str(spec.get("image") or ""),
            ),
            status=dict(status) if isinstance(status, dict) else {},
            raw=obj,
        )
