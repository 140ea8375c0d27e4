from __future__ import annotations

import threading
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException

from stablesync.src.model import ChangeKind, ObjectKind, Pod, Rollout
from stablesync.src.store import (
    ClusterStore,
    ConflictError,
    NotFoundError,
    TransientStoreError,
    matches_selector,
    translate_api_exception,
)

ROLLOUT_LABEL = "ian.delahorne.com/argo-canary"


def _pod(name: str, namespace: str = "ns", **labels: str) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, namespace=namespace, labels=labels, resource_version="1")
    )


def _store(namespace: str | None = None) -> tuple[ClusterStore, MagicMock, MagicMock]:
    core_api = MagicMock()
    custom_api = MagicMock()
    store = ClusterStore(
        core_api=core_api,
        custom_api=custom_api,
        rollout_label_key=ROLLOUT_LABEL,
        namespace=namespace,
        resync_seconds=0,
    )
    return store, core_api, custom_api


@pytest.mark.parametrize(
    ("status", "expected"),
    [(404, NotFoundError), (409, ConflictError), (500, TransientStoreError), (429, TransientStoreError)],
)
def test_translate_api_exception(status: int, expected: type[Exception]) -> None:
    error = translate_api_exception(ApiException(status=status, reason="x"))

    assert isinstance(error, expected)


def test_matches_selector() -> None:
    assert matches_selector({"a": "1", "b": "2"}, {"a": "1"})
    assert matches_selector({"a": "1"}, {})
    assert not matches_selector({"a": "1"}, {"a": "2"})
    assert not matches_selector({}, {"a": "1"})


def test_cluster_wide_watches_use_all_namespace_list_calls() -> None:
    store, core_api, custom_api = _store()

    assert store.pods.list_fn is core_api.list_pod_for_all_namespaces
    assert store.pods.list_kwargs == {"label_selector": ROLLOUT_LABEL}
    assert store.rollouts.list_fn is custom_api.list_cluster_custom_object
    assert store.rollouts.list_kwargs == {
        "group": "argoproj.io",
        "version": "v1alpha1",
        "plural": "rollouts",
    }


def test_namespaced_watches_pass_namespace() -> None:
    store, core_api, custom_api = _store(namespace="team-a")

    assert store.pods.list_fn is core_api.list_namespaced_pod
    assert store.pods.list_kwargs == {"namespace": "team-a", "label_selector": ROLLOUT_LABEL}
    assert store.rollouts.list_fn is custom_api.list_namespaced_custom_object
    assert store.rollouts.list_kwargs["namespace"] == "team-a"


def test_reads_come_from_the_caches() -> None:
    store, _, _ = _store()
    store.pods.replace(
        SimpleNamespace(
            items=[
                _pod("p1", **{ROLLOUT_LABEL: "r1"}),
                _pod("p2", **{ROLLOUT_LABEL: "r2"}),
                _pod("p3", namespace="other", **{ROLLOUT_LABEL: "r1"}),
            ],
            metadata=None,
        ),
        initial=True,
    )
    store.rollouts.replace(
        {"items": [{"metadata": {"name": "r1", "namespace": "ns"}, "status": {"stableRS": "v2"}}]},
        initial=True,
    )

    assert store.get_pod("ns", "p1").labels == {ROLLOUT_LABEL: "r1"}
    assert store.get_rollout("ns", "r1") == Rollout(namespace="ns", name="r1", stable_rs="v2")
    assert [pod.name for pod in store.list_pods("ns", {ROLLOUT_LABEL: "r1"})] == ["p1"]
    with pytest.raises(NotFoundError):
        store.get_pod("ns", "missing")
    with pytest.raises(NotFoundError):
        store.get_rollout("ns", "r2")


def test_patch_pod_label_translates_api_errors() -> None:
    store, core_api, _ = _store()
    core_api.patch_namespaced_pod.side_effect = ApiException(status=409, reason="Conflict")

    with pytest.raises(ConflictError):
        store.patch_pod_label("ns", "p1", "rollouts-pod-template-hash", "v2")


def test_patch_pod_label_calls_core_api() -> None:
    store, core_api, _ = _store()

    store.patch_pod_label("ns", "p1", "rollouts-pod-template-hash", "v2")

    kwargs = core_api.patch_namespaced_pod.call_args.kwargs
    assert kwargs["name"] == "p1"
    assert kwargs["namespace"] == "ns"
    assert kwargs["body"] == {"metadata": {"labels": {"rollouts-pod-template-hash": "v2"}}}


def test_subscribe_streams_cache_events_until_stopped() -> None:
    store, _, _ = _store()
    store.pods.replace(SimpleNamespace(items=[_pod("p1")], metadata=None), initial=True)
    stream = store.subscribe()

    store.stop()
    events = list(stream)

    assert [(e.kind, e.change, e.key) for e in events] == [
        (ObjectKind.POD, ChangeKind.ADDED, "ns/p1")
    ]
    assert isinstance(events[0].obj, Pod)


def test_subscribe_is_single_use() -> None:
    store, _, _ = _store()
    store.subscribe()

    with pytest.raises(RuntimeError):
        store.subscribe()


def test_wait_for_sync() -> None:
    store, _, _ = _store()

    assert store.wait_for_sync(timeout=0.05, poll_seconds=0.01) is False
    assert store.wait_for_sync(should_stop=lambda: True) is False

    store.pods.synced.set()
    store.rollouts.synced.set()
    assert store.synced is True
    assert store.wait_for_sync(timeout=0.05) is True


def test_wait_for_sync_returns_once_caches_sync_in_background() -> None:
    store, _, _ = _store()

    def _sync_later() -> None:
        store.pods.synced.set()
        store.rollouts.synced.set()

    timer = threading.Timer(0.05, _sync_later)
    timer.start()

    assert store.wait_for_sync(timeout=2, poll_seconds=0.01) is True
    timer.join()
