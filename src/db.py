"""
Database Manager - PostgreSQL record store.

Stores clusters, control planes, machines, external objects and events.
Every record carries a resource_version; writes name the version they were
computed from and are rejected with a ConflictError when it has moved on.
"""

import json
import logging
import uuid
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any, AsyncIterator, Dict, List, Optional

import asyncpg

from errors import ConflictError, NotFoundError, TransientStoreError
from migrate import run_migrations
from models import (
    CLUSTER_API_VERSION,
    ClusterContext,
    Condition,
    ControlPlaneRecord,
    MachineRecord,
    ObjectReference,
    OwnerReference,
    ReconcileKey,
)

logger = logging.getLogger(__name__)


def _load(value: Any, default: Any) -> Any:
    """Decode a JSONB column; asyncpg hands them back as text."""
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


def _dump_ref(ref: Optional[ObjectReference]) -> Optional[str]:
    return json.dumps(asdict(ref)) if ref is not None else None


def _dump_owner_refs(refs: List[OwnerReference]) -> str:
    return json.dumps([asdict(ref) for ref in refs])


def _dump_conditions(conditions: List[Condition]) -> str:
    return json.dumps([condition.to_dict() for condition in conditions])


class DatabaseManager:
    """Manages PostgreSQL database operations for the controller."""

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        min_pool_size: int = 5,
        max_pool_size: int = 20,
    ):
        self.host = host
        self.port = port
        self.database = database
        self.user = user
        self.password = password
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: Optional[asyncpg.Pool] = None

    async def connect(self):
        """Establish connection pool to PostgreSQL."""
        self.pool = await asyncpg.create_pool(
            host=self.host,
            port=self.port,
            database=self.database,
            user=self.user,
            password=self.password,
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            command_timeout=60,
        )
        logger.info(
            f"Connected to PostgreSQL (pool: {self.min_pool_size}-{self.max_pool_size})"
        )

    async def close(self):
        """Close the connection pool."""
        if self.pool:
            await self.pool.close()
            logger.info("Closed PostgreSQL connection")

    def _ensure_connected(self) -> None:
        """Ensure the database connection pool is established."""
        if self.pool is None:
            raise RuntimeError(
                "Database not connected. Call connect() before performing operations."
            )

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        """Acquire a connection, surfacing connectivity failures as transient."""
        self._ensure_connected()
        try:
            async with self.pool.acquire() as conn:
                yield conn
        except (
            asyncpg.PostgresConnectionError,
            asyncpg.InterfaceError,
            OSError,
        ) as e:
            raise TransientStoreError(f"Record store unavailable: {e}") from e

    async def initialize_schema(self) -> None:
        """Apply database migrations to bring schema up to date."""
        self._ensure_connected()
        await run_migrations(self.pool)
        logger.info("Database schema initialized")

    # ==================== Cluster Methods ====================

    async def get_cluster(self, namespace: str, name: str) -> Optional[ClusterContext]:
        """Get the cluster context, or None if the cluster does not exist."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM clusters WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not row:
                return None
            return self._parse_cluster_row(row)

    async def apply_cluster(
        self,
        namespace: str,
        name: str,
        infrastructure_ready: bool = False,
        failure_domains: Optional[List[str]] = None,
        control_plane_endpoint_host: str = "",
        control_plane_endpoint_port: int = 0,
        paused: bool = False,
    ) -> ClusterContext:
        """Create a cluster or update its observed state."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO clusters (
                    namespace, name, uid, infrastructure_ready, failure_domains,
                    control_plane_endpoint_host, control_plane_endpoint_port, paused
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (namespace, name) DO UPDATE
                SET infrastructure_ready = EXCLUDED.infrastructure_ready,
                    failure_domains = EXCLUDED.failure_domains,
                    control_plane_endpoint_host = EXCLUDED.control_plane_endpoint_host,
                    control_plane_endpoint_port = EXCLUDED.control_plane_endpoint_port,
                    paused = EXCLUDED.paused,
                    resource_version = clusters.resource_version + 1,
                    updated_at = NOW()
                RETURNING *
                """,
                namespace,
                name,
                str(uuid.uuid4()),
                infrastructure_ready,
                json.dumps(failure_domains or []),
                control_plane_endpoint_host,
                control_plane_endpoint_port,
                paused,
            )
            logger.info(f"Applied cluster {namespace}/{name}")
            return self._parse_cluster_row(row)

    # ==================== Control Plane Methods ====================

    async def get_control_plane(
        self, namespace: str, name: str
    ) -> Optional[ControlPlaneRecord]:
        """Get a control plane record, or None if it does not exist."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM control_planes WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not row:
                return None
            return self._parse_control_plane_row(row)

    async def list_control_planes(
        self, namespace: Optional[str] = None, limit: int = 100
    ) -> List[ControlPlaneRecord]:
        """List control plane records, optionally within one namespace."""
        async with self._connection() as conn:
            query = "SELECT * FROM control_planes"
            params: List[Any] = []
            if namespace:
                params.append(namespace)
                query += f" WHERE namespace = ${len(params)}"
            params.append(limit)
            query += f" ORDER BY namespace, name LIMIT ${len(params)}"

            rows = await conn.fetch(query, *params)
            return [self._parse_control_plane_row(row) for row in rows]

    async def apply_control_plane(
        self,
        namespace: str,
        name: str,
        cluster_name: str,
        replicas: int,
        machine_template: ObjectReference,
        bootstrap_config_spec: Optional[Dict[str, Any]] = None,
    ) -> ControlPlaneRecord:
        """
        Create a control plane or update its desired state.

        A new record is owned by its cluster when the cluster already
        exists; otherwise the owner reference is left for a later apply.
        """
        if replicas < 0:
            raise ValueError("replicas must be >= 0")

        async with self._connection() as conn:
            cluster = await conn.fetchrow(
                "SELECT name, uid FROM clusters WHERE namespace = $1 AND name = $2",
                namespace,
                cluster_name,
            )
            owner_refs: List[OwnerReference] = []
            if cluster:
                owner_refs.append(
                    OwnerReference(
                        api_version=CLUSTER_API_VERSION,
                        kind="Cluster",
                        name=cluster["name"],
                        uid=cluster["uid"],
                    )
                )

            row = await conn.fetchrow(
                """
                INSERT INTO control_planes (
                    namespace, name, uid, replicas, machine_template,
                    bootstrap_config_spec, owner_references
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (namespace, name) DO UPDATE
                SET replicas = EXCLUDED.replicas,
                    machine_template = EXCLUDED.machine_template,
                    bootstrap_config_spec = EXCLUDED.bootstrap_config_spec,
                    owner_references = CASE
                        WHEN control_planes.owner_references = '[]'::jsonb
                        THEN EXCLUDED.owner_references
                        ELSE control_planes.owner_references
                    END,
                    resource_version = control_planes.resource_version + 1
                WHERE control_planes.deletion_timestamp IS NULL
                RETURNING *
                """,
                namespace,
                name,
                str(uuid.uuid4()),
                replicas,
                _dump_ref(machine_template),
                json.dumps(bootstrap_config_spec or {}),
                _dump_owner_refs(owner_refs),
            )
            if not row:
                raise ConflictError(
                    f"Control plane {namespace}/{name} is being deleted"
                )
            logger.info(f"Applied control plane {namespace}/{name} ({replicas} replicas)")
            return self._parse_control_plane_row(row)

    async def update_control_plane(
        self, record: ControlPlaneRecord
    ) -> ControlPlaneRecord:
        """
        Persist the record's desired state and metadata.

        The write only applies if the stored resource_version still equals
        ``record.resource_version``. A record under deletion whose last
        finalizer was just removed is deleted in the same transaction.

        Raises:
            ConflictError: If the stored version has moved on.
            NotFoundError: If the record no longer exists.
        """
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE control_planes
                    SET replicas = $3,
                        machine_template = $4,
                        bootstrap_config_spec = $5,
                        owner_references = $6,
                        finalizers = $7,
                        annotations = $8,
                        conditions = $9,
                        resource_version = resource_version + 1
                    WHERE namespace = $1 AND name = $2 AND resource_version = $10
                    RETURNING resource_version, finalizers, deletion_timestamp
                    """,
                    record.namespace,
                    record.name,
                    record.replicas,
                    _dump_ref(record.machine_template),
                    json.dumps(record.bootstrap_config_spec),
                    _dump_owner_refs(record.owner_references),
                    json.dumps(record.finalizers),
                    json.dumps(record.annotations),
                    _dump_conditions(record.conditions),
                    record.resource_version,
                )
                if not row:
                    await self._raise_missing_or_conflict(conn, "control_planes", record)

                record.resource_version = row["resource_version"]
                if row["deletion_timestamp"] is not None and not _load(
                    row["finalizers"], []
                ):
                    await conn.execute(
                        "DELETE FROM control_planes WHERE namespace = $1 AND name = $2",
                        record.namespace,
                        record.name,
                    )
                    logger.info(
                        f"Removed control plane {record.namespace}/{record.name}: "
                        f"no finalizers remain"
                    )
        return record

    async def update_control_plane_status(
        self, record: ControlPlaneRecord
    ) -> ControlPlaneRecord:
        """
        Persist only the status of the record (conditions and counters).

        Raises:
            ConflictError: If the stored version has moved on.
            NotFoundError: If the record no longer exists.
        """
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE control_planes
                SET conditions = $3,
                    status_replicas = $4,
                    ready_replicas = $5,
                    unavailable_replicas = $6,
                    resource_version = resource_version + 1
                WHERE namespace = $1 AND name = $2 AND resource_version = $7
                RETURNING resource_version
                """,
                record.namespace,
                record.name,
                _dump_conditions(record.conditions),
                record.status_replicas,
                record.ready_replicas,
                record.unavailable_replicas,
                record.resource_version,
            )
            if not row:
                await self._raise_missing_or_conflict(conn, "control_planes", record)
            record.resource_version = row["resource_version"]
        return record

    async def update_control_plane_replicas(
        self, key: ReconcileKey, replicas: int
    ) -> None:
        """Set the desired replica count (used by ``cpctl scale``)."""
        if replicas < 0:
            raise ValueError("replicas must be >= 0")
        async with self._connection() as conn:
            result = await conn.fetchval(
                """
                UPDATE control_planes
                SET replicas = $3, resource_version = resource_version + 1
                WHERE namespace = $1 AND name = $2
                RETURNING id
                """,
                key.namespace,
                key.name,
                replicas,
            )
            if result is None:
                raise NotFoundError(f"Control plane {key} not found")
            logger.info(f"Scaled control plane {key} to {replicas} replicas")

    async def request_control_plane_deletion(self, key: ReconcileKey) -> bool:
        """
        Mark a control plane for deletion.

        Records without finalizers are removed immediately.

        Returns:
            True if the record was removed outright, False if deletion is
            now waiting on finalizers.
        """
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE control_planes
                    SET deletion_timestamp = COALESCE(deletion_timestamp, NOW()),
                        resource_version = resource_version + 1
                    WHERE namespace = $1 AND name = $2
                    RETURNING finalizers
                    """,
                    key.namespace,
                    key.name,
                )
                if not row:
                    raise NotFoundError(f"Control plane {key} not found")
                if _load(row["finalizers"], []):
                    logger.info(f"Marked control plane {key} for deletion")
                    return False
                await conn.execute(
                    "DELETE FROM control_planes WHERE namespace = $1 AND name = $2",
                    key.namespace,
                    key.name,
                )
                logger.info(f"Deleted control plane {key}")
                return True

    # ==================== Machine Methods ====================

    async def list_machines(
        self, namespace: str, selector: Dict[str, str]
    ) -> List[MachineRecord]:
        """
        List machines in a namespace matching every label in the selector.

        Machines are returned in creation order.
        """
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM machines
                WHERE namespace = $1 AND labels @> $2::jsonb
                ORDER BY id
                """,
                namespace,
                json.dumps(selector),
            )
            return [self._parse_machine_row(row) for row in rows]

    async def create_machine(self, machine: MachineRecord) -> MachineRecord:
        """
        Create a machine record in a single insert.

        Raises:
            ConflictError: If a machine with the same name already exists.
        """
        machine.uid = machine.uid or str(uuid.uuid4())
        async with self._connection() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO machines (
                        namespace, name, uid, cluster_name, labels,
                        owner_references, infrastructure_ref, bootstrap_ref,
                        failure_domain, finalizers
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                    RETURNING *
                    """,
                    machine.namespace,
                    machine.name,
                    machine.uid,
                    machine.cluster_name,
                    json.dumps(machine.labels),
                    _dump_owner_refs(machine.owner_references),
                    _dump_ref(machine.infrastructure_ref),
                    _dump_ref(machine.bootstrap_ref),
                    machine.failure_domain,
                    json.dumps(machine.finalizers),
                )
            except asyncpg.UniqueViolationError as e:
                raise ConflictError(
                    f"Machine {machine.namespace}/{machine.name} already exists"
                ) from e

            logger.info(f"Created machine {machine.namespace}/{machine.name}")
            return self._parse_machine_row(row)

    async def delete_machine(self, machine: MachineRecord) -> None:
        """
        Request deletion of a machine.

        Sets the deletion timestamp; machines with no finalizers of their
        own are removed straight away.

        Raises:
            NotFoundError: If the machine no longer exists.
        """
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE machines
                    SET deletion_timestamp = COALESCE(deletion_timestamp, NOW()),
                        resource_version = resource_version + 1
                    WHERE namespace = $1 AND name = $2
                      AND ($3 = '' OR uid = $3)
                    RETURNING finalizers
                    """,
                    machine.namespace,
                    machine.name,
                    machine.uid or "",
                )
                if not row:
                    raise NotFoundError(
                        f"Machine {machine.namespace}/{machine.name} not found"
                    )
                if not _load(row["finalizers"], []):
                    await conn.execute(
                        "DELETE FROM machines WHERE namespace = $1 AND name = $2",
                        machine.namespace,
                        machine.name,
                    )
        logger.info(f"Requested deletion of machine {machine.namespace}/{machine.name}")

    async def get_machine(self, namespace: str, name: str) -> Optional[MachineRecord]:
        """Get a machine record, or None if it does not exist."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM machines WHERE namespace = $1 AND name = $2",
                namespace,
                name,
            )
            if not row:
                return None
            return self._parse_machine_row(row)

    async def update_machine_status(self, machine: MachineRecord) -> MachineRecord:
        """
        Persist readiness, conditions and finalizers of a machine.

        This is how infrastructure providers report a machine as ready or
        release it. A machine under deletion whose last finalizer was just
        removed is deleted in the same transaction.

        Raises:
            ConflictError: If the stored version has moved on.
            NotFoundError: If the machine no longer exists.
        """
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE machines
                    SET ready = $3,
                        conditions = $4,
                        finalizers = $5,
                        resource_version = resource_version + 1
                    WHERE namespace = $1 AND name = $2 AND resource_version = $6
                    RETURNING resource_version, finalizers, deletion_timestamp
                    """,
                    machine.namespace,
                    machine.name,
                    machine.ready,
                    _dump_conditions(machine.conditions),
                    json.dumps(machine.finalizers),
                    machine.resource_version,
                )
                if not row:
                    await self._raise_missing_or_conflict(conn, "machines", machine)

                machine.resource_version = row["resource_version"]
                if row["deletion_timestamp"] is not None and not _load(
                    row["finalizers"], []
                ):
                    await conn.execute(
                        "DELETE FROM machines WHERE namespace = $1 AND name = $2",
                        machine.namespace,
                        machine.name,
                    )
                    logger.info(
                        f"Removed machine {machine.namespace}/{machine.name}: "
                        f"no finalizers remain"
                    )
        return machine

    # ==================== External Object Methods ====================

    async def get_external_object(
        self, ref: ObjectReference, namespace: str
    ) -> Optional[Dict[str, Any]]:
        """Get a template or other external object by reference."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM external_objects
                WHERE namespace = $1 AND kind = $2 AND name = $3
                """,
                ref.namespace or namespace,
                ref.kind,
                ref.name,
            )
            if not row:
                return None
            return self._parse_external_row(row)

    async def create_external_object(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """
        Create an external object.

        Raises:
            ConflictError: If an object of that kind and name already exists.
        """
        async with self._connection() as conn:
            try:
                row = await conn.fetchrow(
                    """
                    INSERT INTO external_objects (
                        api_version, kind, namespace, name, uid,
                        labels, annotations, owner_references, spec
                    )
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                    RETURNING *
                    """,
                    obj["api_version"],
                    obj["kind"],
                    obj["namespace"],
                    obj["name"],
                    obj.get("uid") or str(uuid.uuid4()),
                    json.dumps(obj.get("labels", {})),
                    json.dumps(obj.get("annotations", {})),
                    json.dumps(obj.get("owner_references", [])),
                    json.dumps(obj.get("spec", {})),
                )
            except asyncpg.UniqueViolationError as e:
                raise ConflictError(
                    f"{obj['kind']} {obj['namespace']}/{obj['name']} already exists"
                ) from e
            return self._parse_external_row(row)

    async def update_external_object(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """
        Update labels, annotations, owner references and spec of an object.

        Raises:
            ConflictError: If the stored version has moved on.
            NotFoundError: If the object no longer exists.
        """
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                UPDATE external_objects
                SET labels = $4,
                    annotations = $5,
                    owner_references = $6,
                    spec = $7,
                    resource_version = resource_version + 1
                WHERE namespace = $1 AND kind = $2 AND name = $3
                  AND resource_version = $8
                RETURNING *
                """,
                obj["namespace"],
                obj["kind"],
                obj["name"],
                json.dumps(obj.get("labels", {})),
                json.dumps(obj.get("annotations", {})),
                json.dumps(obj.get("owner_references", [])),
                json.dumps(obj.get("spec", {})),
                obj["resource_version"],
            )
            if not row:
                exists = await conn.fetchval(
                    """
                    SELECT resource_version FROM external_objects
                    WHERE namespace = $1 AND kind = $2 AND name = $3
                    """,
                    obj["namespace"],
                    obj["kind"],
                    obj["name"],
                )
                label = f"{obj['kind']} {obj['namespace']}/{obj['name']}"
                if exists is None:
                    raise NotFoundError(f"{label} not found")
                raise ConflictError(
                    f"{label} was modified (expected version "
                    f"{obj['resource_version']}, found {exists})",
                    expected_version=obj["resource_version"],
                )
            return self._parse_external_row(row)

    async def apply_external_object(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Create an external object or replace its spec (used by ``cpctl apply``)."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO external_objects (
                    api_version, kind, namespace, name, uid, labels, annotations, spec
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                ON CONFLICT (namespace, kind, name) DO UPDATE
                SET labels = EXCLUDED.labels,
                    annotations = EXCLUDED.annotations,
                    spec = EXCLUDED.spec,
                    resource_version = external_objects.resource_version + 1
                RETURNING *
                """,
                obj["api_version"],
                obj["kind"],
                obj["namespace"],
                obj["name"],
                str(uuid.uuid4()),
                json.dumps(obj.get("labels", {})),
                json.dumps(obj.get("annotations", {})),
                json.dumps(obj.get("spec", {})),
            )
            logger.info(f"Applied {obj['kind']} {obj['namespace']}/{obj['name']}")
            return self._parse_external_row(row)

    # ==================== Reconcile Queue Methods ====================

    async def get_keys_needing_reconciliation(
        self, limit: int = 10
    ) -> List[ReconcileKey]:
        """
        Get control planes whose next reconciliation is due.

        Records never seen by the scheduler come first.
        """
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT cp.namespace, cp.name
                FROM control_planes cp
                LEFT JOIN reconcile_queue q
                  ON q.namespace = cp.namespace AND q.name = cp.name
                WHERE q.next_reconcile_time IS NULL
                   OR q.next_reconcile_time <= NOW()
                ORDER BY q.next_reconcile_time ASC NULLS FIRST
                LIMIT $1
                """,
                limit,
            )
            return [ReconcileKey(row["namespace"], row["name"]) for row in rows]

    async def schedule_reconciliation(
        self, key: ReconcileKey, delay_seconds: float = 0
    ) -> None:
        """
        Schedule the next reconciliation of a key and clear its failure count.

        Nothing is scheduled for a control plane that no longer exists.
        """
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO reconcile_queue (
                    namespace, name, next_reconcile_time, last_reconcile_time
                )
                SELECT namespace, name, NOW() + INTERVAL '1 second' * $3, NOW()
                FROM control_planes
                WHERE namespace = $1 AND name = $2
                ON CONFLICT (namespace, name) DO UPDATE
                SET next_reconcile_time = EXCLUDED.next_reconcile_time,
                    last_reconcile_time = NOW(),
                    retry_count = 0,
                    last_error = NULL
                """,
                key.namespace,
                key.name,
                float(delay_seconds),
            )

    async def record_reconcile_failure(
        self,
        key: ReconcileKey,
        error: str,
        base_delay: int = 60,
        max_delay: int = 3600,
        jitter_factor: float = 0.1,
    ) -> None:
        """
        Requeue a failed key with exponential backoff and jitter.

        Args:
            key: The control plane that failed to reconcile.
            error: Error message kept for ``cpctl describe``.
            base_delay: Base delay in seconds (default 60)
            max_delay: Maximum delay in seconds (default 3600 = 1 hour)
            jitter_factor: Jitter factor ±X (default 0.1 = ±10%)
        """
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO reconcile_queue (namespace, name, retry_count, last_error)
                SELECT namespace, name, 0, $3
                FROM control_planes
                WHERE namespace = $1 AND name = $2
                ON CONFLICT (namespace, name) DO UPDATE
                SET retry_count = reconcile_queue.retry_count + 1,
                    last_error = EXCLUDED.last_error,
                    last_reconcile_time = NOW(),
                    next_reconcile_time = NOW() + (
                        INTERVAL '1 second' * LEAST(
                            $4 * POWER(2, LEAST(reconcile_queue.retry_count, 10)),
                            $5
                        ) * (1 + (random() * 2 - 1) * $6)
                    )
                """,
                key.namespace,
                key.name,
                error,
                base_delay,
                max_delay,
                jitter_factor,
            )

    async def get_queue_entry(self, key: ReconcileKey) -> Optional[Dict[str, Any]]:
        """Get scheduler bookkeeping for a key."""
        async with self._connection() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM reconcile_queue WHERE namespace = $1 AND name = $2",
                key.namespace,
                key.name,
            )
            return dict(row) if row else None

    # ==================== Event Methods ====================

    async def record_event(
        self,
        namespace: str,
        involved_kind: str,
        involved_name: str,
        event_type: str,
        reason: str,
        message: str = "",
    ) -> None:
        """Persist an event about a record."""
        async with self._connection() as conn:
            await conn.execute(
                """
                INSERT INTO events (
                    namespace, involved_kind, involved_name, event_type, reason, message
                )
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                namespace,
                involved_kind,
                involved_name,
                event_type,
                reason,
                message,
            )

    async def list_events(
        self, namespace: str, involved_kind: str, involved_name: str, limit: int = 20
    ) -> List[Dict[str, Any]]:
        """List the most recent events about a record."""
        async with self._connection() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM events
                WHERE namespace = $1 AND involved_kind = $2 AND involved_name = $3
                ORDER BY created_at DESC, id DESC
                LIMIT $4
                """,
                namespace,
                involved_kind,
                involved_name,
                limit,
            )
            return [dict(row) for row in rows]

    # ==================== Row Parsing ====================

    async def _raise_missing_or_conflict(
        self, conn: Any, table: str, record: Any
    ) -> None:
        current = await conn.fetchval(
            f"SELECT resource_version FROM {table} WHERE namespace = $1 AND name = $2",
            record.namespace,
            record.name,
        )
        if current is None:
            raise NotFoundError(f"{record.namespace}/{record.name} not found")
        raise ConflictError(
            f"{record.namespace}/{record.name} was modified "
            f"(expected version {record.resource_version}, found {current})",
            expected_version=record.resource_version,
        )

    def _parse_cluster_row(self, row: asyncpg.Record) -> ClusterContext:
        return ClusterContext(
            namespace=row["namespace"],
            name=row["name"],
            uid=row["uid"],
            infrastructure_ready=row["infrastructure_ready"],
            failure_domains=list(_load(row["failure_domains"], [])),
            control_plane_endpoint_host=row["control_plane_endpoint_host"],
            control_plane_endpoint_port=row["control_plane_endpoint_port"],
            paused=row["paused"],
        )

    def _parse_control_plane_row(self, row: asyncpg.Record) -> ControlPlaneRecord:
        """
        Parse a control plane row, converting JSON fields into records.

        Args:
            row: An asyncpg.Record from a query on control_planes

        Returns:
            A ControlPlaneRecord carrying the row's resource_version
        """
        return ControlPlaneRecord(
            id=row["id"],
            namespace=row["namespace"],
            name=row["name"],
            uid=row["uid"],
            replicas=row["replicas"],
            machine_template=ObjectReference.from_dict(
                _load(row["machine_template"], None)
            ),
            bootstrap_config_spec=_load(row["bootstrap_config_spec"], {}),
            owner_references=[
                OwnerReference.from_dict(ref)
                for ref in _load(row["owner_references"], [])
            ],
            finalizers=list(_load(row["finalizers"], [])),
            annotations=_load(row["annotations"], {}),
            conditions=[Condition.from_dict(c) for c in _load(row["conditions"], [])],
            status_replicas=row["status_replicas"],
            ready_replicas=row["ready_replicas"],
            unavailable_replicas=row["unavailable_replicas"],
            creation_timestamp=row["creation_timestamp"],
            deletion_timestamp=row["deletion_timestamp"],
            resource_version=row["resource_version"],
        )

    def _parse_machine_row(self, row: asyncpg.Record) -> MachineRecord:
        return MachineRecord(
            id=row["id"],
            namespace=row["namespace"],
            name=row["name"],
            uid=row["uid"],
            cluster_name=row["cluster_name"],
            labels=_load(row["labels"], {}),
            owner_references=[
                OwnerReference.from_dict(ref)
                for ref in _load(row["owner_references"], [])
            ],
            infrastructure_ref=ObjectReference.from_dict(
                _load(row["infrastructure_ref"], None)
            ),
            bootstrap_ref=ObjectReference.from_dict(_load(row["bootstrap_ref"], None)),
            failure_domain=row["failure_domain"],
            ready=row["ready"],
            conditions=[Condition.from_dict(c) for c in _load(row["conditions"], [])],
            finalizers=list(_load(row["finalizers"], [])),
            creation_timestamp=row["creation_timestamp"],
            deletion_timestamp=row["deletion_timestamp"],
            resource_version=row["resource_version"],
        )

    def _parse_external_row(self, row: asyncpg.Record) -> Dict[str, Any]:
        result = dict(row)
        result["labels"] = _load(result.get("labels"), {})
        result["annotations"] = _load(result.get("annotations"), {})
        result["owner_references"] = _load(result.get("owner_references"), [])
        result["spec"] = _load(result.get("spec"), {})
        return result
