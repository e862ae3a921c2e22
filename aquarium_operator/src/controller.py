from __future__ import annotations

import functools
import logging
import os
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, CustomObjectsApi

from aquarium_operator.src.kube import KubeClients
from aquarium_operator.src.metrics import METRICS
from aquarium_operator.src.predicates import (
    controller_owner_uid,
    generation_changed,
    is_owned_by_aquarium,
    object_generation,
    object_resource_version,
)
from aquarium_operator.src.reconciler import (
    AquariumReconciler,
    ObjectKey,
    ReconcileAborted,
)
from aquarium_operator.src.resources import (
    APP_LABEL_KEY,
    APP_LABEL_VALUE,
    AQUARIUM,
    DEFAULT_FIELD_OWNER,
    DEPLOYMENT,
    NAMESPACE,
    RESOURCE_TYPES,
)
from aquarium_operator.src.workqueue import WorkQueue

WATCH_TIMEOUT_SECONDS = 60
RELEVANT_EVENT_TYPES = frozenset({"ADDED", "MODIFIED", "DELETED"})


@dataclass(frozen=True)
class WatchSpec:
    """One list-then-watch registration.

    ``list_fn`` is called with ``label_selector`` (when set) for the initial
    list and handed to :class:`kubernetes.watch.Watch` for the stream.
    ``on_list`` receives the items of every full list; ``on_event`` receives
    each streamed event.
    """

    kind: str
    list_fn: Callable[..., Any]
    on_list: Callable[[list[Any]], None]
    on_event: Callable[[str, Any], bool]
    label_selector: str | None = None


def _list_items(listing: Any) -> list[Any]:
    if isinstance(listing, dict):
        return list(listing.get("items") or [])
    return list(getattr(listing, "items", None) or [])


def _list_resource_version(listing: Any) -> str | None:
    if isinstance(listing, dict):
        return (listing.get("metadata") or {}).get("resourceVersion")
    return getattr(getattr(listing, "metadata", None), "resource_version", None)


class AquariumController:
    """Routes Aquarium, Deployment and Namespace changes to the reconciler.

    Three watch threads feed :class:`ObjectKey` values into a
    :class:`WorkQueue`; a bounded pool of worker threads drains it.  The
    queue guarantees that a given Aquarium is reconciled by at most one
    worker at a time and that changes arriving mid-pass trigger one more
    pass.  Different Aquaria reconcile concurrently.

    Event routing:
        Aquarium
            ADDED and DELETED always enqueue.  MODIFIED enqueues only when
            ``metadata.generation`` changed, which drops the controller's
            own status writes.
        Deployment / Namespace
            Only objects labelled ``app=Aquarium`` are considered.  They map
            back to their Aquarium through the controlling owner reference
            uid, looked up in an index maintained from Aquarium events.

    Every known Aquarium is also re-enqueued every ``resync_seconds``.
    Failed passes are retried with per-key exponential backoff.
    """

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        apps_api: AppsV1Api,
        core_api: CoreV1Api,
        namespace: str | None = None,
        workers: int = 2,
        resync_seconds: int = 300,
        field_owner: str = DEFAULT_FIELD_OWNER,
        request_timeout: float | None = None,
        reconciler: Any = None,
        queue: WorkQueue | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if workers < 1:
            raise ValueError("workers must be >= 1")
        self.custom_api = custom_api
        self.apps_api = apps_api
        self.core_api = core_api
        self.namespace = namespace or None
        self.workers = workers
        self.resync_seconds = resync_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.queue = queue if queue is not None else WorkQueue()

        self._external_stop = threading.Event()
        self.reconciler = reconciler if reconciler is not None else AquariumReconciler(
            custom_api=custom_api,
            apps_api=apps_api,
            core_api=core_api,
            field_owner=field_owner,
            request_timeout=request_timeout,
            should_stop=self._external_stop.is_set,
        )

        self.ready = threading.Event()
        self._index_lock = threading.Lock()
        self._keys_by_uid: dict[str, ObjectKey] = {}
        self._generations: dict[ObjectKey, int] = {}
        self._active_watchers: dict[str, watch.Watch] = {}
        self._watcher_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def _aquarium_list_fn(self) -> Callable[..., Any]:
        if self.namespace:
            return functools.partial(
                self.custom_api.list_namespaced_custom_object,
                AQUARIUM.group,
                AQUARIUM.version,
                self.namespace,
                AQUARIUM.plural,
            )
        return functools.partial(
            self.custom_api.list_cluster_custom_object,
            AQUARIUM.group,
            AQUARIUM.version,
            AQUARIUM.plural,
        )

    def watch_specs(self) -> list[WatchSpec]:
        """Describe what is watched: Aquaria on generation change, owned children by label."""
        owned_selector = f"{APP_LABEL_KEY}={APP_LABEL_VALUE}"
        child_list_fns: dict[str, Callable[..., Any]] = {
            DEPLOYMENT.kind: self.apps_api.list_deployment_for_all_namespaces,
            NAMESPACE.kind: self.core_api.list_namespace,
        }
        specs = [
            WatchSpec(
                kind=AQUARIUM.kind,
                list_fn=self._aquarium_list_fn(),
                on_list=self._sync_aquaria_from_list,
                on_event=self.handle_aquarium_event,
            )
        ]
        for resource in RESOURCE_TYPES.values():
            if resource is AQUARIUM:
                continue
            specs.append(
                WatchSpec(
                    kind=resource.kind,
                    list_fn=child_list_fns[resource.kind],
                    on_list=functools.partial(self._sync_children_from_list, resource.kind),
                    on_event=functools.partial(self.handle_child_event, resource.kind),
                    label_selector=owned_selector,
                )
            )
        return specs

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    def known_keys(self) -> list[ObjectKey]:
        with self._index_lock:
            return sorted(set(self._keys_by_uid.values()) | set(self._generations))

    def _index_aquarium_locked(self, key: ObjectKey, obj: dict[str, Any]) -> None:
        metadata = obj.get("metadata") or {}
        uid = metadata.get("uid")
        if uid:
            self._keys_by_uid[uid] = key
        generation = object_generation(obj)
        if generation is not None:
            self._generations[key] = generation

    def _forget_aquarium_locked(self, key: ObjectKey, uid: str | None) -> None:
        self._generations.pop(key, None)
        if uid:
            self._keys_by_uid.pop(uid, None)
        for indexed_uid, indexed_key in list(self._keys_by_uid.items()):
            if indexed_key == key:
                del self._keys_by_uid[indexed_uid]

    def handle_aquarium_event(self, event_type: str, obj: Any) -> bool:
        """Index an Aquarium event and enqueue its key if it passes the filters.

        Returns True when the key was enqueued.
        """
        if event_type not in RELEVANT_EVENT_TYPES or not isinstance(obj, dict):
            return False

        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        namespace = metadata.get("namespace")
        if not name or not namespace:
            self.logger.warning("Skipping Aquarium event without name or namespace")
            return False

        key = ObjectKey(namespace=namespace, name=name)
        with self._index_lock:
            if event_type == "DELETED":
                self._forget_aquarium_locked(key, metadata.get("uid"))
                admit = True
            else:
                previous_generation = self._generations.get(key)
                admit = event_type == "ADDED" or generation_changed(previous_generation, obj)
                self._index_aquarium_locked(key, obj)

        if not admit:
            METRICS.events_filtered_total.labels(kind=AQUARIUM.kind).inc()
            self.logger.debug("Ignoring Aquarium %s update without generation change", key)
            return False

        self.queue.add(key)
        return True

    def handle_child_event(self, kind: str, event_type: str, obj: Any) -> bool:
        """Route a Deployment or Namespace event to its owning Aquarium.

        Objects without the ``app=Aquarium`` label, or whose controlling
        owner is not a known Aquarium, are dropped.
        """
        if event_type not in RELEVANT_EVENT_TYPES:
            return False
        if not is_owned_by_aquarium(obj):
            METRICS.events_filtered_total.labels(kind=kind).inc()
            return False

        owner_uid = controller_owner_uid(obj)
        with self._index_lock:
            key = self._keys_by_uid.get(owner_uid) if owner_uid else None
        if key is None:
            METRICS.events_filtered_total.labels(kind=kind).inc()
            self.logger.debug("Ignoring %s event with no known Aquarium owner", kind)
            return False

        self.queue.add(key)
        return True

    def _sync_aquaria_from_list(self, items: list[Any]) -> None:
        """Rebuild the Aquarium index from a full list and enqueue every Aquarium.

        Called at startup and after a ``410 Gone`` re-list, which may have
        missed deletions; entries not in the list are dropped.
        """
        keys: list[ObjectKey] = []
        with self._index_lock:
            self._keys_by_uid.clear()
            self._generations.clear()
            for obj in items:
                if not isinstance(obj, dict):
                    continue
                metadata = obj.get("metadata") or {}
                name = metadata.get("name")
                namespace = metadata.get("namespace")
                if not name or not namespace:
                    continue
                key = ObjectKey(namespace=namespace, name=name)
                self._index_aquarium_locked(key, obj)
                keys.append(key)

        for key in keys:
            self.queue.add(key)
        self.logger.info("Indexed %d Aquarium object(s)", len(keys))

    def _sync_children_from_list(self, kind: str, items: list[Any]) -> None:
        for obj in items:
            self.handle_child_event(kind, "ADDED", obj)

    def resync(self) -> int:
        """Enqueue every known Aquarium and return how many were enqueued."""
        keys = self.known_keys()
        for key in keys:
            self.queue.add(key)
        return len(keys)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def process_next_item(self, timeout: float | None = None) -> bool:
        """Run one reconciliation pass for the next queued key.

        Returns False when no key was available (timeout or shutdown).
        """
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False

        started = time.monotonic()
        try:
            result = self.reconciler.reconcile(key)
        except ReconcileAborted:
            METRICS.reconcile_total.labels(result="aborted").inc()
            self.logger.info("Reconcile of %s aborted by shutdown", key, extra={"aquarium": str(key)})
        except Exception:
            METRICS.reconcile_total.labels(result="error").inc()
            METRICS.reconcile_errors_total.inc()
            delay = self.queue.add_rate_limited(key)
            self.logger.exception(
                "Reconcile of %s failed (attempt %d); retrying in %.1fs",
                key,
                self.queue.num_requeues(key),
                delay,
                extra={"aquarium": str(key)},
            )
        else:
            METRICS.reconcile_total.labels(result="success").inc()
            self.queue.forget(key)
            if result.requeue_after is not None:
                self.queue.add_after(key, result.requeue_after)
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
            self.queue.done(key)
        return True

    def _run_worker(self) -> None:
        while not self.queue.shutting_down:
            try:
                self.process_next_item(timeout=1.0)
            except Exception:
                self.logger.exception("Unexpected error in reconcile worker")

    def _run_resync(self, stop: threading.Event) -> None:
        while not self._should_stop(stop):
            if stop.wait(timeout=self.resync_seconds) or self._external_stop.is_set():
                return
            count = self.resync()
            self.logger.debug(
                "Periodic resync enqueued %d Aquarium object(s); %d key(s) waiting",
                count,
                len(self.queue),
            )

    # ------------------------------------------------------------------
    # Watches
    # ------------------------------------------------------------------

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt any open watch stream."""
        self._external_stop.set()
        self.queue.shutdown()
        with self._watcher_lock:
            active = list(self._active_watchers.values())
        for active_watcher in active:
            active_watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set()

    def _list_kwargs(self, spec: WatchSpec) -> dict[str, Any]:
        if spec.label_selector:
            return {"label_selector": spec.label_selector}
        return {}

    def _access_denied(self, spec: WatchSpec, exc: ApiException, phase: str) -> None:
        self.logger.error(
            "Kubernetes API access denied during %s %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            spec.kind,
            phase,
            exc.status,
        )
        METRICS.watch_errors_total.labels(kind=spec.kind).inc()
        self.ready.clear()
        self.request_stop()

    def _initial_list(self, spec: WatchSpec, stop: threading.Event) -> str | None:
        """List *spec* with jittered exponential backoff until it succeeds.

        Returns the list's ``resourceVersion``, or None if stopping.
        """
        backoff_seconds = 1
        while not self._should_stop(stop):
            try:
                listing = spec.list_fn(
                    _request_timeout=WATCH_TIMEOUT_SECONDS, **self._list_kwargs(spec)
                )
                spec.on_list(_list_items(listing))
                return _list_resource_version(listing) or ""
            except ApiException as exc:
                if exc.status in {401, 403}:
                    self._access_denied(spec, exc, "initial list")
                    return None
                self.logger.exception("Initial %s list failed", spec.kind)
                METRICS.watch_errors_total.labels(kind=spec.kind).inc()
            except Exception:
                self.logger.exception("Unexpected error during initial %s list", spec.kind)
                METRICS.watch_errors_total.labels(kind=spec.kind).inc()

            jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
            stop.wait(timeout=jittered)
            backoff_seconds = min(backoff_seconds * 2, 30)
        return None

    def _run_watch(
        self,
        spec: WatchSpec,
        stop: threading.Event,
        synced: threading.Event | None = None,
    ) -> None:
        """List-then-watch one resource type until shutdown.

        Resumes from the last seen ``resourceVersion``, re-lists on
        ``410 Gone``, backs off with jitter (capped at 30 s) on transient
        errors and stops the whole controller on ``401`` / ``403``.
        """
        resource_version = self._initial_list(spec, stop)
        if resource_version is None:
            return
        if synced is not None:
            synced.set()
        self.logger.info("Watching %s from resourceVersion %s", spec.kind, resource_version)

        backoff_seconds = 1
        stream_count = 0
        while not self._should_stop(stop):
            watcher = watch.Watch()
            with self._watcher_lock:
                self._active_watchers[spec.kind] = watcher
            try:
                if stream_count > 0:
                    METRICS.watch_reconnects_total.labels(kind=spec.kind).inc()
                stream_count += 1
                stream = watcher.stream(
                    spec.list_fn,
                    resource_version=resource_version or None,
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    **self._list_kwargs(spec),
                )
                for event in stream:
                    if self._should_stop(stop):
                        break
                    obj = event.get("object")
                    if obj is None:
                        continue
                    latest = object_resource_version(obj)
                    if latest:
                        resource_version = latest
                    spec.on_event(str(event.get("type", "")), obj)

                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning("%s watch resource version expired, re-listing", spec.kind)
                    resource_version = self._initial_list(spec, stop)
                    if resource_version is None:
                        return
                    continue

                if exc.status in {401, 403}:
                    self._access_denied(spec, exc, "watch")
                    return

                self.logger.exception("Kubernetes API watch error for %s", spec.kind)
                METRICS.watch_errors_total.labels(kind=spec.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error for %s", spec.kind)
                METRICS.watch_errors_total.labels(kind=spec.kind).inc()
                jittered = backoff_seconds * (0.5 + random.random())  # noqa: S311
                stop.wait(timeout=jittered)
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    if self._active_watchers.get(spec.kind) is watcher:
                        del self._active_watchers[spec.kind]

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        """Start watches, workers and resync, then block until shutdown.

        1. The Aquarium watch lists and indexes every Aquarium, enqueues them
           all, and sets :attr:`ready`.
        2. Only then are the Deployment and Namespace watches started, so
           child events always find their owner in the index.
        3. ``workers`` threads reconcile queued keys concurrently; a given
           key is never processed by two workers at once.
        4. On shutdown the queue stops handing out keys, watch streams are
           interrupted and in-flight passes abort at their next remote call.
        """
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()

        aquarium_spec, *child_specs = self.watch_specs()
        threads: list[threading.Thread] = []

        def _start(target: Callable[..., None], *args: Any, name: str) -> None:
            thread = threading.Thread(target=target, args=args, name=name, daemon=True)
            thread.start()
            threads.append(thread)

        _start(self._run_watch, aquarium_spec, stop, self.ready, name="watch-aquarium")
        for index in range(self.workers):
            _start(self._run_worker, name=f"reconcile-worker-{index}")

        while not self._should_stop(stop) and not self.ready.is_set():
            stop.wait(timeout=0.5)

        if not self._should_stop(stop):
            for spec in child_specs:
                _start(self._run_watch, spec, stop, name=f"watch-{spec.kind.lower()}")
            if self.resync_seconds > 0:
                _start(self._run_resync, stop, name="resync")

        while not self._should_stop(stop):
            stop.wait(timeout=1.0)

        self.request_stop()
        for thread in threads:
            thread.join(timeout=WATCH_TIMEOUT_SECONDS)
            if thread.is_alive():
                self.logger.warning("Thread %s did not stop in time", thread.name)

        self.ready.clear()
        self.logger.info("Controller stopped")


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int:
    raw = os.getenv(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def build_controller_from_env(clients: KubeClients) -> AquariumController:
    """Construct an :class:`AquariumController` from environment variables.

    Environment variables (with defaults):
        ``WATCH_NAMESPACE``           : only watch Aquaria in this namespace (all).
        ``MAX_CONCURRENT_RECONCILES`` : reconcile worker threads (``2``).
        ``RESYNC_SECONDS``            : periodic full resync, ``0`` disables (``300``).
        ``REQUEST_TIMEOUT_SECONDS``   : timeout for each API call (``30``).
        ``FIELD_OWNER``               : server-side apply field manager (``aquarium-operator``).
    """
    namespace = os.getenv("WATCH_NAMESPACE", "").strip() or None

    field_owner = os.getenv("FIELD_OWNER", DEFAULT_FIELD_OWNER).strip()
    if not field_owner:
        raise ValueError("FIELD_OWNER must be a non-empty string")

    workers = env_int("MAX_CONCURRENT_RECONCILES", 2, minimum=1, maximum=64)
    resync_seconds = env_int("RESYNC_SECONDS", 300, minimum=0)
    request_timeout = env_int("REQUEST_TIMEOUT_SECONDS", 30, minimum=1)

    return AquariumController(
        custom_api=clients.custom,
        apps_api=clients.apps,
        core_api=clients.core,
        namespace=namespace,
        workers=workers,
        resync_seconds=resync_seconds,
        field_owner=field_owner,
        request_timeout=request_timeout,
    )
