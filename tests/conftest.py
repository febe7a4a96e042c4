"""Pytest configuration and fixtures."""

import copy
import random
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

from config import ControllerConfig
from errors import ConflictError, NotFoundError
from events import EventRecorder
from models import (
    CLUSTER_API_VERSION,
    CLUSTER_NAME_LABEL,
    CONTROL_PLANE_FINALIZER,
    MACHINE_CONTROL_PLANE_LABEL,
    ClusterContext,
    Condition,
    ControlPlaneRecord,
    MachineRecord,
    ObjectReference,
    OwnerReference,
)

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)

TEMPLATE_REF = ObjectReference(
    api_version="infrastructure.cluster.x-k8s.io/v1beta1",
    kind="JujuMachineTemplate",
    name="cp-template",
    namespace="default",
)


class FakeStore:
    """
    In-memory record store with the DatabaseManager interface.

    Writes follow the same rules as the PostgreSQL store: resource versions
    are checked and bumped, and records under deletion are removed once
    their finalizers are gone. ``fail_next`` injects an error into the next
    call of a method.
    """

    def __init__(self):
        self.clusters: Dict[Tuple[str, str], ClusterContext] = {}
        self.control_planes: Dict[Tuple[str, str], ControlPlaneRecord] = {}
        self.machines: Dict[Tuple[str, str], MachineRecord] = {}
        self.external: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.events: List[Dict[str, Any]] = []
        self.calls: List[Tuple[str, str]] = []
        self.fail_next: Dict[str, Exception] = {}
        self._ticks = 0
        self._uids = 0

    # ----- helpers -----

    def _tick(self) -> datetime:
        self._ticks += 1
        return BASE_TIME + timedelta(seconds=self._ticks)

    def _uid(self) -> str:
        self._uids += 1
        return f"uid-{self._uids}"

    def _maybe_fail(self, method: str) -> None:
        error = self.fail_next.pop(method, None)
        if error is not None:
            raise error

    def add_cluster(self, name: str = "test-cluster", namespace: str = "default", **kwargs):
        defaults = dict(
            uid=self._uid(),
            infrastructure_ready=True,
            control_plane_endpoint_host="10.0.0.1",
            control_plane_endpoint_port=6443,
        )
        defaults.update(kwargs)
        cluster = ClusterContext(namespace=namespace, name=name, **defaults)
        self.clusters[(namespace, name)] = cluster
        return cluster

    def add_control_plane(
        self,
        name: str = "test-cp",
        namespace: str = "default",
        cluster_name: Optional[str] = "test-cluster",
        replicas: int = 3,
        finalizer: bool = True,
        **kwargs,
    ) -> ControlPlaneRecord:
        owner_refs = []
        if cluster_name is not None:
            owner_refs.append(
                OwnerReference(
                    api_version=CLUSTER_API_VERSION, kind="Cluster", name=cluster_name
                )
            )
        record = ControlPlaneRecord(
            namespace=namespace,
            name=name,
            uid=self._uid(),
            replicas=replicas,
            machine_template=copy.deepcopy(TEMPLATE_REF),
            bootstrap_config_spec={"controller": "ctrl"},
            owner_references=owner_refs,
            finalizers=[CONTROL_PLANE_FINALIZER] if finalizer else [],
            creation_timestamp=self._tick(),
            resource_version=1,
        )
        for attr, value in kwargs.items():
            setattr(record, attr, value)
        self.control_planes[(namespace, name)] = record
        return copy.deepcopy(record)

    def add_machine(
        self,
        name: str,
        cluster_name: str = "test-cluster",
        namespace: str = "default",
        **kwargs,
    ) -> MachineRecord:
        machine = MachineRecord(
            namespace=namespace,
            name=name,
            cluster_name=cluster_name,
            uid=self._uid(),
            labels={CLUSTER_NAME_LABEL: cluster_name, MACHINE_CONTROL_PLANE_LABEL: ""},
            creation_timestamp=self._tick(),
            resource_version=1,
        )
        for attr, value in kwargs.items():
            setattr(machine, attr, value)
        self.machines[(namespace, name)] = machine
        return copy.deepcopy(machine)

    def add_template(self, ref: ObjectReference = TEMPLATE_REF, **spec) -> Dict[str, Any]:
        obj = {
            "api_version": ref.api_version,
            "kind": ref.kind,
            "namespace": ref.namespace or "default",
            "name": ref.name,
            "uid": self._uid(),
            "labels": {},
            "annotations": {},
            "owner_references": [],
            "spec": {
                "template": {
                    "metadata": {"labels": {"role": "control-plane"}},
                    "spec": spec or {"constraints": {"cores": 2}},
                }
            },
            "resource_version": 1,
        }
        self.external[(obj["namespace"], obj["kind"], obj["name"])] = obj
        return obj

    def stored(self, namespace: str = "default", name: str = "test-cp"):
        return self.control_planes.get((namespace, name))

    def live_machines(self) -> List[MachineRecord]:
        return [m for m in self.machines.values() if m.deletion_timestamp is None]

    def mutation_count(self, method: str) -> int:
        return sum(1 for called, _ in self.calls if called == method)

    # ----- DatabaseManager interface -----

    async def get_cluster(self, namespace, name):
        self._maybe_fail("get_cluster")
        cluster = self.clusters.get((namespace, name))
        return copy.deepcopy(cluster)

    async def get_control_plane(self, namespace, name):
        self._maybe_fail("get_control_plane")
        return copy.deepcopy(self.control_planes.get((namespace, name)))

    async def list_machines(self, namespace, selector):
        self._maybe_fail("list_machines")
        found = [
            m
            for (ns, _), m in self.machines.items()
            if ns == namespace
            and all(m.labels.get(k) == v for k, v in selector.items())
        ]
        return [copy.deepcopy(m) for m in found]

    async def create_machine(self, machine):
        self._maybe_fail("create_machine")
        key = (machine.namespace, machine.name)
        if key in self.machines:
            raise ConflictError(f"Machine {machine.name} already exists")
        stored = copy.deepcopy(machine)
        stored.uid = stored.uid or self._uid()
        stored.creation_timestamp = self._tick()
        stored.resource_version = 1
        self.machines[key] = stored
        self.calls.append(("create_machine", machine.name))
        return copy.deepcopy(stored)

    async def delete_machine(self, machine):
        self._maybe_fail("delete_machine")
        key = (machine.namespace, machine.name)
        stored = self.machines.get(key)
        if stored is None:
            raise NotFoundError(f"Machine {machine.name} not found")
        self.calls.append(("delete_machine", machine.name))
        if stored.deletion_timestamp is None:
            stored.deletion_timestamp = self._tick()
        stored.resource_version += 1
        if not stored.finalizers:
            del self.machines[key]

    async def get_machine(self, namespace, name):
        self._maybe_fail("get_machine")
        return copy.deepcopy(self.machines.get((namespace, name)))

    async def update_machine_status(self, machine):
        self._maybe_fail("update_machine_status")
        key = (machine.namespace, machine.name)
        stored = self.machines.get(key)
        if stored is None:
            raise NotFoundError(f"Machine {machine.name} not found")
        if stored.resource_version != machine.resource_version:
            raise ConflictError(
                f"Machine {machine.name} was modified",
                expected_version=machine.resource_version,
            )
        self.calls.append(("update_machine_status", machine.name))
        stored.ready = machine.ready
        stored.conditions = copy.deepcopy(machine.conditions)
        stored.finalizers = list(machine.finalizers)
        stored.resource_version += 1
        machine.resource_version = stored.resource_version
        if stored.deletion_timestamp is not None and not stored.finalizers:
            del self.machines[key]
        return machine

    async def update_control_plane(self, record):
        self._maybe_fail("update_control_plane")
        key = (record.namespace, record.name)
        stored = self.control_planes.get(key)
        if stored is None:
            raise NotFoundError(f"{record.name} not found")
        if stored.resource_version != record.resource_version:
            raise ConflictError(
                f"{record.name} was modified", expected_version=record.resource_version
            )
        self.calls.append(("update_control_plane", record.name))
        updated = copy.deepcopy(record)
        updated.deletion_timestamp = stored.deletion_timestamp
        updated.resource_version = stored.resource_version + 1
        record.resource_version = updated.resource_version
        if updated.deletion_timestamp is not None and not updated.finalizers:
            del self.control_planes[key]
        else:
            self.control_planes[key] = updated
        return record

    async def update_control_plane_status(self, record):
        self._maybe_fail("update_control_plane_status")
        key = (record.namespace, record.name)
        stored = self.control_planes.get(key)
        if stored is None:
            raise NotFoundError(f"{record.name} not found")
        if stored.resource_version != record.resource_version:
            raise ConflictError(
                f"{record.name} was modified", expected_version=record.resource_version
            )
        self.calls.append(("update_control_plane_status", record.name))
        stored.conditions = copy.deepcopy(record.conditions)
        stored.status_replicas = record.status_replicas
        stored.ready_replicas = record.ready_replicas
        stored.unavailable_replicas = record.unavailable_replicas
        stored.resource_version += 1
        record.resource_version = stored.resource_version
        return record

    async def get_external_object(self, ref, namespace):
        self._maybe_fail("get_external_object")
        obj = self.external.get((ref.namespace or namespace, ref.kind, ref.name))
        return copy.deepcopy(obj)

    async def create_external_object(self, obj):
        self._maybe_fail("create_external_object")
        key = (obj["namespace"], obj["kind"], obj["name"])
        if key in self.external:
            raise ConflictError(f"{obj['kind']} {obj['name']} already exists")
        stored = copy.deepcopy(obj)
        stored.setdefault("labels", {})
        stored.setdefault("annotations", {})
        stored.setdefault("owner_references", [])
        stored["uid"] = stored.get("uid") or self._uid()
        stored["resource_version"] = 1
        self.external[key] = stored
        self.calls.append(("create_external_object", obj["name"]))
        return copy.deepcopy(stored)

    async def update_external_object(self, obj):
        self._maybe_fail("update_external_object")
        key = (obj["namespace"], obj["kind"], obj["name"])
        stored = self.external.get(key)
        if stored is None:
            raise NotFoundError(f"{obj['kind']} {obj['name']} not found")
        if stored["resource_version"] != obj["resource_version"]:
            raise ConflictError(f"{obj['kind']} {obj['name']} was modified")
        self.calls.append(("update_external_object", obj["name"]))
        updated = copy.deepcopy(obj)
        updated["resource_version"] = stored["resource_version"] + 1
        self.external[key] = updated
        return copy.deepcopy(updated)

    async def record_event(self, **kwargs):
        self.events.append(kwargs)


@pytest.fixture
def store():
    """In-memory store seeded with a ready cluster and its template."""
    fake = FakeStore()
    fake.add_cluster()
    fake.add_template()
    return fake


@pytest.fixture
def controller_config():
    return ControllerConfig(failure_domain_seed=42)


@pytest.fixture
def recorder(store):
    return EventRecorder(store)


@pytest.fixture
def rng():
    return random.Random(42)


@pytest.fixture
def mock_pool():
    """Create a mock asyncpg pool."""
    pool = AsyncMock()
    pool.acquire = MagicMock()
    return pool


@pytest.fixture
def mock_connection():
    """Create a mock asyncpg connection with a working transaction()."""
    conn = AsyncMock()

    @asynccontextmanager
    async def transaction():
        yield

    conn.transaction = MagicMock(side_effect=transaction)
    return conn


def ready_condition(status: str, reason: str = "", severity: str = "") -> Condition:
    return Condition(type="Ready", status=status, reason=reason, severity=severity)
