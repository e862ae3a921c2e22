from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, CustomObjectsApi
from kubernetes.config.config_exception import ConfigException

from aquarium_operator.src.builder import strip_status

LOGGER = logging.getLogger(__name__)

APPLY_PATCH_CONTENT_TYPE = "application/apply-patch+yaml"


@dataclass(frozen=True)
class KubeClients:
    core: CoreV1Api
    apps: AppsV1Api
    custom: CustomObjectsApi


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> KubeClients:
    """Return the API clients the controller needs using the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        custom=client.CustomObjectsApi(),
    )


def is_not_found(exc: ApiException) -> bool:
    return exc.status == 404


def is_conflict(exc: ApiException) -> bool:
    return exc.status == 409


def create_namespace_if_missing(
    core_api: CoreV1Api,
    manifest: dict[str, Any],
    request_timeout: float | None = None,
) -> bool:
    """Create a Namespace, treating ``409 AlreadyExists`` as success.

    Returns True when the namespace was created by this call.  The namespace
    is never patched afterwards.
    """
    try:
        core_api.create_namespace(body=manifest, _request_timeout=request_timeout)
    except ApiException as exc:
        if is_conflict(exc):
            return False
        raise
    LOGGER.info("Created namespace %s", manifest["metadata"]["name"])
    return True


def apply_deployment(
    apps_api: AppsV1Api,
    manifest: dict[str, Any],
    field_owner: str,
    request_timeout: float | None = None,
) -> Any:
    """Server-side apply a Deployment manifest owned by *field_owner*.

    ``force=True`` takes ownership of fields another manager set.  The
    ``status`` stanza is removed first because the apply endpoint rejects it.
    """
    body = strip_status(manifest)
    metadata = body["metadata"]
    return apps_api.patch_namespaced_deployment(
        name=metadata["name"],
        namespace=metadata["namespace"],
        body=body,
        field_manager=field_owner,
        force=True,
        _content_type=APPLY_PATCH_CONTENT_TYPE,
        _request_timeout=request_timeout,
    )
