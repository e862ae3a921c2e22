from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, NamedTuple

from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, CustomObjectsApi

from aquarium_operator.src.builder import build_deployment, build_namespace
from aquarium_operator.src.kube import apply_deployment, create_namespace_if_missing, is_not_found
from aquarium_operator.src.metrics import METRICS
from aquarium_operator.src.resources import AQUARIUM, DEFAULT_FIELD_OWNER, Aquarium
from aquarium_operator.src.status import build_status, current_health, utc_now_rfc3339


class ObjectKey(NamedTuple):
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a successful pass.

    ``requeue_after`` asks the caller to run the key again after that many
    seconds; ``None`` leaves the next pass to watch events and resync.
    """

    requeue_after: float | None = None


class ReconcileAborted(RuntimeError):
    """Raised between remote calls when the controller is shutting down."""


class AquariumReconciler:
    """Drives one Aquarium toward its declared state.

    Each call to :meth:`reconcile` is a full, idempotent pass:

    1. Read the Aquarium.  Gone means deleted; ownership garbage collection
       removes the children, so the pass ends successfully.
    2. Read the Deployment in the placement namespace.  Absent is normal on
       the first pass.
    3. Classify health and write status.  A failed status write is logged
       and the pass carries on to the apply.
    4. Create the placement namespace if it does not exist.
    5. Server-side apply the desired Deployment.

    Status is written before the apply, so it always describes the child as
    it was observed, not as it was just requested.  Any other API error
    propagates and the caller retries the whole pass with backoff.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        apps_api: AppsV1Api,
        core_api: CoreV1Api,
        field_owner: str = DEFAULT_FIELD_OWNER,
        request_timeout: float | None = None,
        should_stop: Callable[[], bool] | None = None,
        logger: logging.Logger | None = None,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.custom_api = custom_api
        self.apps_api = apps_api
        self.core_api = core_api
        self.field_owner = field_owner
        self.request_timeout = request_timeout
        self.should_stop = should_stop or (lambda: False)
        self.logger = logger or logging.getLogger(__name__)
        self.now_fn = now_fn

    def _check_stop(self, key: ObjectKey) -> None:
        if self.should_stop():
            raise ReconcileAborted(f"reconcile of {key} aborted by shutdown")

    def _fetch_aquarium(self, key: ObjectKey) -> Aquarium | None:
        try:
            obj = self.custom_api.get_namespaced_custom_object(
                group=AQUARIUM.group,
                version=AQUARIUM.version,
                namespace=key.namespace,
                plural=AQUARIUM.plural,
                name=key.name,
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise
        return Aquarium.from_object(obj)

    def _fetch_deployment(self, aquarium: Aquarium) -> Any | None:
        try:
            return self.apps_api.read_namespaced_deployment(
                name=aquarium.name,
                namespace=aquarium.spec.placement_namespace,
                _request_timeout=self.request_timeout,
            )
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise

    def _update_status(self, key: ObjectKey, aquarium: Aquarium, deployment: Any | None) -> None:
        status = build_status(
            current_status=aquarium.status,
            requested=aquarium.spec.replica_count,
            deployment=deployment,
            generation=aquarium.generation,
            now_fn=self.now_fn,
        )
        body = dict(aquarium.raw)
        body["status"] = status
        try:
            self.custom_api.replace_namespaced_custom_object_status(
                group=AQUARIUM.group,
                version=AQUARIUM.version,
                namespace=key.namespace,
                plural=AQUARIUM.plural,
                name=key.name,
                body=body,
                _request_timeout=self.request_timeout,
            )
        except Exception:
            METRICS.status_update_failures_total.inc()
            self.logger.exception(
                "Failed to update status for Aquarium %s",
                key,
                extra={"aquarium": str(key)},
            )
            return

        previous_health = current_health(aquarium.status)
        if previous_health != status["health"]:
            self.logger.info(
                "Aquarium %s health changed from %s to %s (%d/%d replicas ready)",
                key,
                previous_health,
                status["health"],
                status["ready_replica_count"],
                aquarium.spec.replica_count,
                extra={"aquarium": str(key)},
            )
        else:
            self.logger.debug(
                "Aquarium %s is %s (%d/%d replicas ready)",
                key,
                status["health"],
                status["ready_replica_count"],
                aquarium.spec.replica_count,
                extra={"aquarium": str(key)},
            )

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        aquarium = self._fetch_aquarium(key)
        if aquarium is None:
            self.logger.info(
                "Aquarium %s not found; nothing to reconcile",
                key,
                extra={"aquarium": str(key)},
            )
            return ReconcileResult()

        self._check_stop(key)
        deployment = self._fetch_deployment(aquarium)

        self._check_stop(key)
        self._update_status(key, aquarium, deployment)

        self._check_stop(key)
        create_namespace_if_missing(
            core_api=self.core_api,
            manifest=build_namespace(aquarium),
            request_timeout=self.request_timeout,
        )

        self._check_stop(key)
        apply_deployment(
            apps_api=self.apps_api,
            manifest=build_deployment(aquarium),
            field_owner=self.field_owner,
            request_timeout=self.request_timeout,
        )
        self.logger.debug(
            "Applied Deployment %s/%s with %d replicas",
            aquarium.spec.placement_namespace,
            aquarium.name,
            aquarium.spec.replica_count,
            extra={"aquarium": str(key)},
        )
        return ReconcileResult()
