from __future__ import annotations

import logging
import threading
import time
from types import SimpleNamespace
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import ApiException

from aquarium_operator.src.controller import (
    AquariumController,
    WatchSpec,
    build_controller_from_env,
    env_int,
)
from aquarium_operator.src.kube import KubeClients
from aquarium_operator.src.reconciler import (
    AquariumReconciler,
    ObjectKey,
    ReconcileAborted,
    ReconcileResult,
)
from aquarium_operator.src.workqueue import WorkQueue

KEY = ObjectKey(namespace="aquarium", name="test-aquarium")


class RecordingReconciler:
    def __init__(self, outcomes: list[Any] | None = None) -> None:
        self.outcomes = list(outcomes or [])
        self.keys: list[ObjectKey] = []

    def reconcile(self, key: ObjectKey) -> ReconcileResult:
        self.keys.append(key)
        outcome = self.outcomes.pop(0) if self.outcomes else ReconcileResult()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class RecordingEvent(threading.Event):
    """Event whose ``wait`` records timeouts instead of sleeping."""

    def __init__(self) -> None:
        super().__init__()
        self.waits: list[float] = []

    def wait(self, timeout: float | None = None) -> bool:
        if timeout is not None:
            self.waits.append(timeout)
        return self.is_set()


def make_aquarium(
    name: str = "test-aquarium",
    namespace: str = "aquarium",
    uid: str = "uid-1",
    generation: int = 1,
    resource_version: str = "10",
) -> dict[str, Any]:
    return {
        "apiVersion": "fun.tydanny.com/v1alpha1",
        "kind": "Aquarium",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": uid,
            "generation": generation,
            "resourceVersion": resource_version,
        },
        "spec": {"replica_count": 2, "placement_namespace": "atlanta", "image": "x"},
    }


def make_child(
    labels: dict[str, str] | None,
    owner_uid: str | None = "uid-1",
    resource_version: str = "20",
) -> SimpleNamespace:
    references = []
    if owner_uid is not None:
        references.append(
            SimpleNamespace(
                api_version="fun.tydanny.com/v1alpha1",
                kind="Aquarium",
                name="test-aquarium",
                uid=owner_uid,
                controller=True,
            )
        )
    return SimpleNamespace(
        metadata=SimpleNamespace(
            name="test-aquarium",
            namespace="atlanta",
            labels=labels,
            owner_references=references,
            resource_version=resource_version,
        )
    )


class FakeCustomApi:
    def __init__(self, listings: list[Any] | None = None) -> None:
        self.listings = list(listings or [{"metadata": {"resourceVersion": "100"}, "items": []}])
        self.list_calls: list[dict[str, Any]] = []

    def _next_listing(self, **kwargs: Any) -> Any:
        self.list_calls.append(kwargs)
        listing = self.listings[0] if len(self.listings) == 1 else self.listings.pop(0)
        if isinstance(listing, Exception):
            raise listing
        return listing

    def list_cluster_custom_object(
        self, group: str, version: str, plural: str, **kwargs: Any
    ) -> Any:
        return self._next_listing(group=group, version=version, plural=plural, **kwargs)

    def list_namespaced_custom_object(
        self, group: str, version: str, namespace: str, plural: str, **kwargs: Any
    ) -> Any:
        return self._next_listing(group=group, version=version, namespace=namespace, **kwargs)


def _empty_typed_list(**kwargs: Any) -> SimpleNamespace:
    return SimpleNamespace(metadata=SimpleNamespace(resource_version="1"), items=[])


def _make_controller(
    custom_api: Any = None,
    reconciler: Any = None,
    namespace: str | None = None,
    workers: int = 1,
    resync_seconds: int = 0,
    queue: WorkQueue | None = None,
) -> AquariumController:
    return AquariumController(
        custom_api=custom_api or FakeCustomApi(),
        apps_api=SimpleNamespace(list_deployment_for_all_namespaces=_empty_typed_list),  # type: ignore[arg-type]
        core_api=SimpleNamespace(list_namespace=_empty_typed_list),  # type: ignore[arg-type]
        namespace=namespace,
        workers=workers,
        resync_seconds=resync_seconds,
        reconciler=reconciler or RecordingReconciler(),
        queue=queue,
    )


def _drain(controller: AquariumController) -> list[ObjectKey]:
    keys = []
    while True:
        key = controller.queue.get(timeout=0)
        if key is None:
            return keys
        keys.append(key)
        controller.queue.done(key)


# ---------------------------------------------------------------------------
# Aquarium events
# ---------------------------------------------------------------------------


def test_aquarium_added_event_is_enqueued() -> None:
    controller = _make_controller()

    assert controller.handle_aquarium_event("ADDED", make_aquarium()) is True
    assert _drain(controller) == [KEY]


def test_aquarium_status_only_update_is_filtered() -> None:
    controller = _make_controller()
    controller.handle_aquarium_event("ADDED", make_aquarium(generation=1))
    _drain(controller)

    admitted = controller.handle_aquarium_event(
        "MODIFIED", make_aquarium(generation=1, resource_version="11")
    )

    assert admitted is False
    assert _drain(controller) == []


def test_aquarium_spec_update_is_enqueued() -> None:
    controller = _make_controller()
    controller.handle_aquarium_event("ADDED", make_aquarium(generation=1))
    _drain(controller)

    admitted = controller.handle_aquarium_event("MODIFIED", make_aquarium(generation=2))

    assert admitted is True
    assert _drain(controller) == [KEY]


def test_aquarium_deleted_event_enqueues_and_drops_index() -> None:
    controller = _make_controller()
    controller.handle_aquarium_event("ADDED", make_aquarium())
    _drain(controller)

    assert controller.handle_aquarium_event("DELETED", make_aquarium()) is True
    assert _drain(controller) == [KEY]
    assert controller.known_keys() == []
    assert controller.handle_child_event("Deployment", "MODIFIED", make_child({"app": "Aquarium"})) is False


@pytest.mark.parametrize("event_type", ["BOOKMARK", "ERROR", ""])
def test_aquarium_irrelevant_event_types_are_ignored(event_type: str) -> None:
    controller = _make_controller()

    assert controller.handle_aquarium_event(event_type, make_aquarium()) is False
    assert _drain(controller) == []


def test_aquarium_event_without_identity_is_ignored() -> None:
    controller = _make_controller()

    assert controller.handle_aquarium_event("ADDED", {"metadata": {"name": "x"}}) is False


def test_burst_of_events_for_one_key_coalesces() -> None:
    controller = _make_controller()

    for generation in range(1, 6):
        controller.handle_aquarium_event("MODIFIED", make_aquarium(generation=generation))

    assert _drain(controller) == [KEY]


# ---------------------------------------------------------------------------
# Child events
# ---------------------------------------------------------------------------


def test_owned_child_event_routes_to_parent() -> None:
    controller = _make_controller()
    controller.handle_aquarium_event("ADDED", make_aquarium())
    _drain(controller)

    admitted = controller.handle_child_event(
        "Deployment", "MODIFIED", make_child({"app": "Aquarium", "located-at": "atlanta"})
    )

    assert admitted is True
    assert _drain(controller) == [KEY]


def test_child_without_identifying_label_does_not_trigger_reconcile() -> None:
    controller = _make_controller()
    controller.handle_aquarium_event("ADDED", make_aquarium())
    _drain(controller)

    admitted = controller.handle_child_event(
        "Deployment", "MODIFIED", make_child({"team": "fish", "tier": "backend"})
    )

    assert admitted is False
    assert _drain(controller) == []


def test_child_with_unknown_owner_is_ignored() -> None:
    controller = _make_controller()
    controller.handle_aquarium_event("ADDED", make_aquarium(uid="uid-1"))
    _drain(controller)

    assert controller.handle_child_event("Namespace", "MODIFIED", make_child({"app": "Aquarium"}, owner_uid="uid-2")) is False
    assert controller.handle_child_event("Namespace", "MODIFIED", make_child({"app": "Aquarium"}, owner_uid=None)) is False
    assert _drain(controller) == []


def test_deleted_child_triggers_reconcile_of_owner() -> None:
    controller = _make_controller()
    controller.handle_aquarium_event("ADDED", make_aquarium())
    _drain(controller)

    assert controller.handle_child_event("Deployment", "DELETED", make_child({"app": "Aquarium"})) is True
    assert _drain(controller) == [KEY]


# ---------------------------------------------------------------------------
# Listing and resync
# ---------------------------------------------------------------------------


def test_sync_from_list_rebuilds_index_and_enqueues_everything() -> None:
    controller = _make_controller()
    controller.handle_aquarium_event("ADDED", make_aquarium(name="gone", uid="uid-gone"))
    _drain(controller)

    controller._sync_aquaria_from_list(
        [make_aquarium(name="a", uid="uid-a"), make_aquarium(name="b", uid="uid-b"), {"metadata": {}}]
    )

    assert _drain(controller) == [ObjectKey("aquarium", "a"), ObjectKey("aquarium", "b")]
    assert controller.known_keys() == [ObjectKey("aquarium", "a"), ObjectKey("aquarium", "b")]


def test_resync_enqueues_every_known_aquarium() -> None:
    controller = _make_controller()
    controller.handle_aquarium_event("ADDED", make_aquarium(name="a", uid="uid-a"))
    controller.handle_aquarium_event("ADDED", make_aquarium(name="b", uid="uid-b"))
    _drain(controller)

    assert controller.resync() == 2
    assert sorted(_drain(controller)) == [ObjectKey("aquarium", "a"), ObjectKey("aquarium", "b")]


def test_watch_specs_register_aquaria_and_labelled_children() -> None:
    controller = _make_controller()

    specs = {spec.kind: spec for spec in controller.watch_specs()}

    assert set(specs) == {"Aquarium", "Deployment", "Namespace"}
    assert specs["Aquarium"].label_selector is None
    assert specs["Deployment"].label_selector == "app=Aquarium"
    assert specs["Namespace"].label_selector == "app=Aquarium"


def test_namespaced_watch_lists_only_that_namespace() -> None:
    custom_api = FakeCustomApi()
    controller = _make_controller(custom_api=custom_api, namespace="aquarium")

    aquarium_spec = controller.watch_specs()[0]
    aquarium_spec.list_fn(_request_timeout=1)

    assert custom_api.list_calls[0]["namespace"] == "aquarium"


# ---------------------------------------------------------------------------
# Workers
# ---------------------------------------------------------------------------


def test_process_next_item_reconciles_and_forgets_on_success() -> None:
    reconciler = RecordingReconciler()
    controller = _make_controller(reconciler=reconciler)
    controller.queue.add_rate_limited(KEY)
    controller.queue.add(KEY)

    assert controller.process_next_item(timeout=0) is True

    assert reconciler.keys == [KEY]
    assert controller.queue.num_requeues(KEY) == 0


def test_process_next_item_requeues_with_backoff_on_error() -> None:
    reconciler = RecordingReconciler(outcomes=[ApiException(status=500, reason="boom")])
    queue = MagicMock(wraps=WorkQueue())
    controller = _make_controller(reconciler=reconciler, queue=queue)
    controller.queue.add(KEY)

    controller.process_next_item(timeout=0)

    queue.add_rate_limited.assert_called_once_with(KEY)
    queue.done.assert_called_once_with(KEY)
    queue.forget.assert_not_called()


def test_failed_pass_logs_attempt_number(caplog: pytest.LogCaptureFixture) -> None:
    reconciler = RecordingReconciler(outcomes=[ApiException(status=500, reason="boom")])
    controller = _make_controller(reconciler=reconciler)
    controller.queue.add(KEY)

    with caplog.at_level(logging.ERROR, logger="aquarium_operator.src.controller"):
        controller.process_next_item(timeout=0)

    assert "Reconcile of aquarium/test-aquarium failed (attempt 1); retrying in 1.0s" in caplog.text
    assert caplog.records[-1].aquarium == "aquarium/test-aquarium"


def test_periodic_resync_enqueues_known_aquaria(caplog: pytest.LogCaptureFixture) -> None:
    class StopOnSecondWait(RecordingEvent):
        def wait(self, timeout: float | None = None) -> bool:
            super().wait(timeout)
            if len(self.waits) > 1:
                self.set()
            return self.is_set()

    controller = _make_controller(resync_seconds=5)
    controller.handle_aquarium_event("ADDED", make_aquarium())
    _drain(controller)
    stop = StopOnSecondWait()

    with caplog.at_level(logging.DEBUG, logger="aquarium_operator.src.controller"):
        controller._run_resync(stop)

    assert stop.waits == [5, 5]
    assert "enqueued 1 Aquarium object(s); 1 key(s) waiting" in caplog.text
    assert _drain(controller) == [KEY]


def test_process_next_item_honours_requeue_after() -> None:
    reconciler = RecordingReconciler(outcomes=[ReconcileResult(requeue_after=15.0)])
    queue = MagicMock(wraps=WorkQueue())
    controller = _make_controller(reconciler=reconciler, queue=queue)
    controller.queue.add(KEY)

    controller.process_next_item(timeout=0)

    queue.add_after.assert_called_once_with(KEY, 15.0)


def test_process_next_item_does_not_requeue_aborted_pass() -> None:
    reconciler = RecordingReconciler(outcomes=[ReconcileAborted("stop")])
    queue = MagicMock(wraps=WorkQueue())
    controller = _make_controller(reconciler=reconciler, queue=queue)
    controller.queue.add(KEY)

    controller.process_next_item(timeout=0)

    queue.add_rate_limited.assert_not_called()
    queue.done.assert_called_once_with(KEY)


def test_process_next_item_returns_false_when_idle() -> None:
    controller = _make_controller()

    assert controller.process_next_item(timeout=0) is False


def test_default_reconciler_observes_controller_stop() -> None:
    controller = AquariumController(
        custom_api=FakeCustomApi(),  # type: ignore[arg-type]
        apps_api=SimpleNamespace(),  # type: ignore[arg-type]
        core_api=SimpleNamespace(),  # type: ignore[arg-type]
    )

    assert isinstance(controller.reconciler, AquariumReconciler)
    assert controller.reconciler.should_stop() is False
    controller.request_stop()
    assert controller.reconciler.should_stop() is True


def test_rejects_zero_workers() -> None:
    with pytest.raises(ValueError, match="workers"):
        _make_controller(workers=0)


# ---------------------------------------------------------------------------
# Watch loop
# ---------------------------------------------------------------------------


def _aquarium_spec(controller: AquariumController) -> WatchSpec:
    return controller.watch_specs()[0]


def test_watch_indexes_initial_list_and_routes_stream_events() -> None:
    custom_api = FakeCustomApi(
        [{"metadata": {"resourceVersion": "100"}, "items": [make_aquarium()]}]
    )
    controller = _make_controller(custom_api=custom_api)
    stop = RecordingEvent()
    synced = threading.Event()
    seen_versions: list[Any] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        seen_versions.append(kwargs.get("resource_version"))
        if len(seen_versions) == 1:
            return iter([{"type": "MODIFIED", "object": make_aquarium(generation=2, resource_version="150")}])
        stop.set()
        return iter([])

    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = patched_stream

    with patch("aquarium_operator.src.controller.watch.Watch", return_value=mock_watcher):
        controller._run_watch(_aquarium_spec(controller), stop, synced)

    assert synced.is_set()
    assert seen_versions == ["100", "150"]
    assert _drain(controller) == [KEY]
    assert mock_watcher.stop.call_count >= 1


def test_watch_relists_on_410() -> None:
    custom_api = FakeCustomApi(
        [
            {"metadata": {"resourceVersion": "100"}, "items": [make_aquarium()]},
            {"metadata": {"resourceVersion": "200"}, "items": [make_aquarium()]},
        ]
    )
    controller = _make_controller(custom_api=custom_api)
    stop = RecordingEvent()
    seen_versions: list[Any] = []

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        seen_versions.append(kwargs.get("resource_version"))
        if len(seen_versions) == 1:
            raise ApiException(status=410, reason="Gone")
        stop.set()
        return iter([])

    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = patched_stream

    with patch("aquarium_operator.src.controller.watch.Watch", return_value=mock_watcher):
        controller._run_watch(_aquarium_spec(controller), stop)

    assert seen_versions == ["100", "200"]
    assert len(custom_api.list_calls) == 2


def test_watch_retries_initial_list_with_backoff() -> None:
    custom_api = FakeCustomApi(
        [
            ApiException(status=500, reason="temporary"),
            {"metadata": {"resourceVersion": "100"}, "items": []},
        ]
    )
    controller = _make_controller(custom_api=custom_api)
    stop = RecordingEvent()

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        stop.set()
        return iter([])

    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("aquarium_operator.src.controller.watch.Watch", return_value=mock_watcher),
        patch("aquarium_operator.src.controller.random.random", return_value=0.5),
    ):
        controller._run_watch(_aquarium_spec(controller), stop)

    assert len(custom_api.list_calls) == 2
    assert stop.waits == [pytest.approx(1.0)]
    assert mock_watcher.stream.call_count == 1


def test_watch_applies_exponential_backoff_on_api_error() -> None:
    controller = _make_controller()
    stop = RecordingEvent()
    calls = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal calls
        calls += 1
        if calls <= 3:
            raise ApiException(status=500, reason="Internal Server Error")
        stop.set()
        return iter([])

    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("aquarium_operator.src.controller.watch.Watch", return_value=mock_watcher),
        patch("aquarium_operator.src.controller.random.random", return_value=0.5),
    ):
        controller._run_watch(_aquarium_spec(controller), stop)

    assert stop.waits == [pytest.approx(1.0), pytest.approx(2.0), pytest.approx(4.0)]


def test_watch_backs_off_on_unexpected_exception() -> None:
    controller = _make_controller()
    stop = RecordingEvent()
    calls = 0

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("connection reset")
        stop.set()
        return iter([])

    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = patched_stream

    with (
        patch("aquarium_operator.src.controller.watch.Watch", return_value=mock_watcher),
        patch("aquarium_operator.src.controller.random.random", return_value=0.5),
    ):
        controller._run_watch(_aquarium_spec(controller), stop)

    assert stop.waits == [pytest.approx(1.0)]


def test_rbac_denied_on_initial_list_stops_controller() -> None:
    custom_api = FakeCustomApi([ApiException(status=403, reason="Forbidden")])
    controller = _make_controller(custom_api=custom_api)
    watch_factory = MagicMock()

    with patch("aquarium_operator.src.controller.watch.Watch", watch_factory):
        controller._run_watch(_aquarium_spec(controller), RecordingEvent())

    watch_factory.assert_not_called()
    assert not controller.ready.is_set()
    assert controller.queue.shutting_down


def test_rbac_denied_on_watch_stops_without_backoff() -> None:
    controller = _make_controller()
    stop = RecordingEvent()
    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = ApiException(status=401, reason="Unauthorized")

    with patch("aquarium_operator.src.controller.watch.Watch", return_value=mock_watcher):
        controller._run_watch(_aquarium_spec(controller), stop, controller.ready)

    assert stop.waits == []
    assert not controller.ready.is_set()


def test_request_stop_interrupts_active_watchers() -> None:
    controller = _make_controller()
    watcher = MagicMock()
    controller._active_watchers["Aquarium"] = watcher

    controller.request_stop()

    watcher.stop.assert_called_once()
    assert controller.queue.shutting_down


def test_run_forever_reconciles_listed_aquaria_until_shutdown() -> None:
    shutdown_event = threading.Event()

    class StoppingReconciler(RecordingReconciler):
        def reconcile(self, key: ObjectKey) -> ReconcileResult:
            result = super().reconcile(key)
            shutdown_event.set()
            return result

    reconciler = StoppingReconciler()
    custom_api = FakeCustomApi(
        [{"metadata": {"resourceVersion": "100"}, "items": [make_aquarium()]}]
    )
    controller = _make_controller(custom_api=custom_api, reconciler=reconciler, workers=2)

    def patched_stream(*args: Any, **kwargs: Any) -> Any:
        time.sleep(0.01)
        return iter([])

    mock_watcher = MagicMock()
    mock_watcher.stream.side_effect = patched_stream

    with patch("aquarium_operator.src.controller.watch.Watch", return_value=mock_watcher):
        controller.run_forever(shutdown_event=shutdown_event)

    assert reconciler.keys == [KEY]
    assert not controller.ready.is_set()
    assert controller.queue.shutting_down


# ---------------------------------------------------------------------------
# env_int() / build_controller_from_env()
# ---------------------------------------------------------------------------


def test_env_int_returns_default_when_not_set(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("TEST_ENV_INT", raising=False)
    assert env_int("TEST_ENV_INT", 7) == 7


def test_env_int_raises_on_non_numeric(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_ENV_INT", "abc")
    with pytest.raises(ValueError, match="TEST_ENV_INT must be an integer"):
        env_int("TEST_ENV_INT", 7)


def test_env_int_enforces_bounds(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_ENV_INT", "0")
    with pytest.raises(ValueError, match=">= 1"):
        env_int("TEST_ENV_INT", 7, minimum=1)
    monkeypatch.setenv("TEST_ENV_INT", "100")
    with pytest.raises(ValueError, match="<= 64"):
        env_int("TEST_ENV_INT", 7, maximum=64)


def _clients() -> KubeClients:
    return KubeClients(core=SimpleNamespace(), apps=SimpleNamespace(), custom=SimpleNamespace())  # type: ignore[arg-type]


def test_build_controller_from_env_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "WATCH_NAMESPACE",
        "MAX_CONCURRENT_RECONCILES",
        "RESYNC_SECONDS",
        "REQUEST_TIMEOUT_SECONDS",
        "FIELD_OWNER",
    ):
        monkeypatch.delenv(name, raising=False)

    controller = build_controller_from_env(_clients())

    assert controller.namespace is None
    assert controller.workers == 2
    assert controller.resync_seconds == 300
    assert controller.reconciler.field_owner == "aquarium-operator"
    assert controller.reconciler.request_timeout == 30


def test_build_controller_from_env_custom_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("WATCH_NAMESPACE", "reef")
    monkeypatch.setenv("MAX_CONCURRENT_RECONCILES", "4")
    monkeypatch.setenv("RESYNC_SECONDS", "0")
    monkeypatch.setenv("REQUEST_TIMEOUT_SECONDS", "5")
    monkeypatch.setenv("FIELD_OWNER", "reef-operator")

    controller = build_controller_from_env(_clients())

    assert controller.namespace == "reef"
    assert controller.workers == 4
    assert controller.resync_seconds == 0
    assert controller.reconciler.field_owner == "reef-operator"
    assert controller.reconciler.request_timeout == 5


def test_build_controller_from_env_rejects_blank_field_owner(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FIELD_OWNER", "  ")

    with pytest.raises(ValueError, match="FIELD_OWNER"):
        build_controller_from_env(_clients())


def test_build_controller_from_env_rejects_invalid_worker_count(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MAX_CONCURRENT_RECONCILES", "0")

    with pytest.raises(ValueError, match="MAX_CONCURRENT_RECONCILES"):
        build_controller_from_env(_clients())
