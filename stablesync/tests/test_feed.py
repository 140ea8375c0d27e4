from __future__ import annotations

import logging
from unittest.mock import MagicMock

import pytest

from stablesync.src.feed import ChangeFeedAdapter
from stablesync.src.model import ChangeEvent, ChangeKind, ObjectKind, Pod, Rollout


def _event(kind: ObjectKind, change: ChangeKind, name: str = "x") -> ChangeEvent:
    obj: Pod | Rollout
    if kind is ObjectKind.POD:
        obj = Pod(namespace="ns", name=name)
    else:
        obj = Rollout(namespace="ns", name=name, stable_rs="v3")
    return ChangeEvent(kind=kind, change=change, namespace="ns", name=name, obj=obj)


def _adapter(events: list[ChangeEvent]) -> tuple[ChangeFeedAdapter, MagicMock, MagicMock]:
    pod_queue = MagicMock()
    rollout_queue = MagicMock()
    adapter = ChangeFeedAdapter(events=events, pod_queue=pod_queue, rollout_queue=rollout_queue)
    return adapter, pod_queue, rollout_queue


@pytest.mark.parametrize("change", [ChangeKind.ADDED, ChangeKind.UPDATED])
def test_pod_changes_go_to_pod_queue(change: ChangeKind) -> None:
    adapter, pod_queue, rollout_queue = _adapter([_event(ObjectKind.POD, change, "p1")])

    adapter.run()

    pod_queue.add_rate_limited.assert_called_once_with("ns/p1")
    rollout_queue.add_rate_limited.assert_not_called()


@pytest.mark.parametrize("change", [ChangeKind.ADDED, ChangeKind.UPDATED])
def test_rollout_changes_go_to_rollout_queue(change: ChangeKind) -> None:
    adapter, pod_queue, rollout_queue = _adapter([_event(ObjectKind.ROLLOUT, change, "r1")])

    adapter.run()

    rollout_queue.add_rate_limited.assert_called_once_with("ns/r1")
    pod_queue.add_rate_limited.assert_not_called()


def test_deletions_are_logged_only(caplog: pytest.LogCaptureFixture) -> None:
    adapter, pod_queue, rollout_queue = _adapter(
        [
            _event(ObjectKind.POD, ChangeKind.DELETED, "p1"),
            _event(ObjectKind.ROLLOUT, ChangeKind.DELETED, "r1"),
        ]
    )

    with caplog.at_level(logging.INFO):
        adapter.run()

    pod_queue.add_rate_limited.assert_not_called()
    rollout_queue.add_rate_limited.assert_not_called()
    assert "Pod deleted: ns/p1" in caplog.text
    assert "Rollout deleted: ns/r1 (stableRS v3)" in caplog.text


def test_never_uses_immediate_add() -> None:
    adapter, pod_queue, rollout_queue = _adapter(
        [
            _event(ObjectKind.POD, ChangeKind.ADDED, "p1"),
            _event(ObjectKind.ROLLOUT, ChangeKind.ADDED, "r1"),
        ]
    )

    adapter.run()

    pod_queue.add.assert_not_called()
    rollout_queue.add.assert_not_called()


def test_queue_failure_does_not_stop_the_feed() -> None:
    adapter, pod_queue, _ = _adapter(
        [
            _event(ObjectKind.POD, ChangeKind.ADDED, "p1"),
            _event(ObjectKind.POD, ChangeKind.ADDED, "p2"),
        ]
    )
    pod_queue.add_rate_limited.side_effect = [RuntimeError("boom"), None]

    adapter.run()

    assert pod_queue.add_rate_limited.call_count == 2
