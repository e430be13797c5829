"""In-memory cluster state shared by the operator's hooks and controllers."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, NamedTuple

log = logging.getLogger(__name__)

MANAGED_CONFIG_NAMESPACE = "openshift-config-managed"
CSI_DRIVER_NAMESPACE = "openshift-cluster-csi-drivers"


class NotFoundError(LookupError):
    """Raised when a named object is not present in a store."""

    def __init__(self, kind: str, name: str, namespace: str = "") -> None:
        self.kind = kind
        self.name = name
        self.namespace = namespace
        where = f"{namespace}/{name}" if namespace else name
        super().__init__(f'{kind} "{where}" not found')


def _object_key(obj: dict[str, Any]) -> tuple[str, str]:
    meta = obj.get("metadata") or {}
    return meta.get("namespace", "") or "", meta.get("name", "") or ""


class ObjectStore:
    """A thread-safe cache of Kubernetes objects keyed by namespace and name."""

    def __init__(self, kind: str = "objects") -> None:
        self.kind = kind
        self._items: dict[tuple[str, str], dict[str, Any]] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def __contains__(self, key: object) -> bool:
        if isinstance(key, str):
            key = ("", key)
        with self._lock:
            return key in self._items

    def add(self, obj: dict[str, Any]) -> None:
        """Store an object, replacing any object with the same key."""
        with self._lock:
            self._items[_object_key(obj)] = obj

    def get(self, name: str, namespace: str = "") -> dict[str, Any]:
        """Return the named object or raise NotFoundError."""
        with self._lock:
            try:
                return self._items[(namespace, name)]
            except KeyError:
                raise NotFoundError(self.kind, name, namespace) from None

    def list(self, namespace: str | None = None) -> list[dict[str, Any]]:
        """Return all objects, or only those in the given namespace."""
        with self._lock:
            return [
                obj
                for (ns, _), obj in self._items.items()
                if namespace is None or ns == namespace
            ]

    def update(self, obj: dict[str, Any]) -> dict[str, Any]:
        """Replace an existing object; raise NotFoundError if it is absent."""
        key = _object_key(obj)
        with self._lock:
            if key not in self._items:
                raise NotFoundError(self.kind, key[1], key[0])
            self._items[key] = obj
            return obj

    def delete(self, name: str, namespace: str = "") -> None:
        """Remove the named object or raise NotFoundError."""
        with self._lock:
            try:
                del self._items[(namespace, name)]
            except KeyError:
                raise NotFoundError(self.kind, name, namespace) from None


class _StoreMap(dict):
    """Resource name to store mapping that creates stores on first use."""

    def __missing__(self, resource: str) -> ObjectStore:
        store = ObjectStore(resource)
        self[resource] = store
        return store


@dataclass(frozen=True)
class Event:
    type: str
    reason: str
    message: str


class EventRecorder:
    """Records operator events in memory and logs them."""

    def __init__(self, component: str = "", involved_object: dict[str, Any] | None = None) -> None:
        self.component = component
        self.involved_object = dict(involved_object or {})
        self.events: list[Event] = []
        self._lock = threading.Lock()

    def _record(self, event_type: str, reason: str, message: str) -> None:
        with self._lock:
            self.events.append(Event(event_type, reason, message))

    def event(self, reason: str, message: str) -> None:
        log.info("event %s: %s", reason, message)
        self._record("Normal", reason, message)

    def warning(self, reason: str, message: str) -> None:
        log.warning("event %s: %s", reason, message)
        self._record("Warning", reason, message)


class OperatorState(NamedTuple):
    spec: dict[str, Any]
    status: dict[str, Any]


@dataclass
class Clients:
    """Cluster state for a CSI driver operator, for both control plane and guest."""

    control_plane_namespace: str
    guest_namespace: str = ""
    operator_spec: dict[str, Any] = field(default_factory=dict)
    operator_status: dict[str, Any] = field(default_factory=dict)
    event_recorder: EventRecorder = field(default_factory=EventRecorder)
    control_plane_kube: dict[str, ObjectStore] = field(default_factory=_StoreMap)
    kube: dict[str, ObjectStore] = field(default_factory=_StoreMap)
    infrastructures: ObjectStore = field(default_factory=lambda: ObjectStore("infrastructures"))
    cluster_csi_drivers: ObjectStore = field(
        default_factory=lambda: ObjectStore("clustercsidrivers")
    )

    def operator_state(self) -> OperatorState:
        """Return the ClusterCSIDriver operator spec and status."""
        return OperatorState(self.operator_spec, self.operator_status)

    def control_plane_config_maps(self) -> ObjectStore:
        """ConfigMaps of the control plane cluster."""
        return self.control_plane_kube["configmaps"]

    def guest_config_maps(self) -> ObjectStore:
        """ConfigMaps of the guest (or standalone) cluster."""
        return self.kube["configmaps"]


def fake_operator_cr() -> dict[str, Any]:
    """Return a managed ClusterCSIDriver with default log levels."""
    return {
        "metadata": {},
        "spec": {
            "managementState": "Managed",
            "logLevel": "Normal",
            "operatorLogLevel": "Normal",
            "storageClassState": "Managed",
            "driverConfig": {},
        },
        "status": {},
    }


def new_fake_clients(controller_namespace: str, cr: dict[str, Any]) -> Clients:
    """Create empty clients whose operator state is backed by the given CR."""
    fake_object_ref = {
        "kind": "Pod",
        "namespace": CSI_DRIVER_NAMESPACE,
        "name": "fake",
        "apiVersion": "v1",
    }
    return Clients(
        control_plane_namespace=controller_namespace,
        operator_spec=cr.setdefault("spec", {}),
        operator_status=cr.setdefault("status", {}),
        event_recorder=EventRecorder("fake", fake_object_ref),
    )