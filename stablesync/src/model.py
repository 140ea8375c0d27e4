from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ObjectKind(str, Enum):
    POD = "pod"
    ROLLOUT = "rollout"


class ChangeKind(str, Enum):
    ADDED = "added"
    UPDATED = "updated"
    DELETED = "deleted"


def object_key(namespace: str, name: str) -> str:
    """Return the ``namespace/name`` work queue key for an object."""
    return f"{namespace}/{name}"


def split_key(key: str) -> tuple[str, str]:
    """Split a ``namespace/name`` key, raising ``ValueError`` if it is malformed."""
    parts = key.split("/")
    if len(parts) != 2 or not parts[0] or not parts[1]:
        raise ValueError(f"unexpected key format: {key!r}")
    return parts[0], parts[1]


@dataclass(frozen=True)
class Pod:
    """Canonical pod record: identity plus the labels the reconcilers read."""

    namespace: str
    name: str
    labels: Mapping[str, str] = field(default_factory=dict)
    resource_version: str | None = None

    @property
    def key(self) -> str:
        return object_key(self.namespace, self.name)


@dataclass(frozen=True)
class Rollout:
    """Canonical rollout record.  ``stable_rs`` is ``""`` until the rollout reports one."""

    namespace: str
    name: str
    stable_rs: str = ""
    resource_version: str | None = None

    @property
    def key(self) -> str:
        return object_key(self.namespace, self.name)


@dataclass(frozen=True)
class ChangeEvent:
    kind: ObjectKind
    change: ChangeKind
    namespace: str
    name: str
    obj: Pod | Rollout | None = None

    @property
    def key(self) -> str:
        return object_key(self.namespace, self.name)


def _field(obj: Any, attr: str, key: str) -> Any:
    """Read a field from either a typed client model (*attr*) or a dict document (*key*)."""
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, attr, None)


def _normalize_labels(raw_labels: Any) -> dict[str, str]:
    if not isinstance(raw_labels, Mapping):
        return {}
    return {
        k: ("" if v is None else str(v))
        for k, v in raw_labels.items()
        if isinstance(k, str)
    }


def _identity(obj: Any, kind: str) -> tuple[Any, str, str]:
    metadata = _field(obj, "metadata", "metadata")
    namespace = _field(metadata, "namespace", "namespace")
    name = _field(metadata, "name", "name")
    if not namespace or not name:
        raise ValueError(f"{kind} object is missing metadata.namespace or metadata.name")
    return metadata, str(namespace), str(name)


def pod_from_object(obj: Any) -> Pod:
    """Convert a ``V1Pod`` or an unstructured pod document into a :class:`Pod`."""
    if isinstance(obj, Pod):
        return obj
    metadata, namespace, name = _identity(obj, "pod")
    resource_version = _field(metadata, "resource_version", "resourceVersion")
    return Pod(
        namespace=namespace,
        name=name,
        labels=_normalize_labels(_field(metadata, "labels", "labels")),
        resource_version=resource_version,
    )


def rollout_from_object(obj: Any) -> Rollout:
    """Convert a typed or unstructured Argo ``Rollout`` into a :class:`Rollout`.

    The custom-objects API and watch streams hand back plain dicts using the
    camelCase wire names (``status.stableRS``); typed models use snake_case
    attributes (``status.stable_rs``).  Both are accepted.
    """
    if isinstance(obj, Rollout):
        return obj
    metadata, namespace, name = _identity(obj, "rollout")
    status = _field(obj, "status", "status")
    stable_rs = _field(status, "stable_rs", "stableRS")
    resource_version = _field(metadata, "resource_version", "resourceVersion")
    return Rollout(
        namespace=namespace,
        name=name,
        stable_rs="" if stable_rs is None else str(stable_rs),
        resource_version=resource_version,
    )
