"""
Operator Controller - reconciliation engine and scheduling loop.

ControlPlaneReconciler.reconcile() is level-triggered: it reads everything
fresh, dispatches to exactly one phase, takes at most one mutating action
and returns a requeue directive. Controller is the hosting loop that
decides when to call it, similar to a Kubernetes work queue.
"""

import asyncio
import logging
import random
import time
from typing import Any, Optional, Tuple

import conditions
from config import ControllerConfig
from deletion import DeletionStateMachine
from errors import StoreError
from events import FINALIZER_ADDED, EventRecorder
from external import ExternalResourceProvisioner
from machines import MachinePoolManager, update_status_counts
from models import (
    CONTROL_PLANE_FINALIZER,
    CONTROL_PLANE_KIND,
    ControlPlaneRecord,
    ReconcileKey,
    ReconcileResult,
    RequeueDirective,
)

logger = logging.getLogger(__name__)


class ControlPlaneReconciler:
    """
    Reconciles a control plane record against its machines.

    Holds no per-key state; everything is read from the store on each call,
    so distinct keys can be reconciled concurrently.
    """

    def __init__(
        self,
        db: Any,
        config: Optional[ControllerConfig] = None,
        recorder: Optional[EventRecorder] = None,
        rng: Optional[random.Random] = None,
    ):
        self.db = db
        self.config = config or ControllerConfig()
        self.recorder = recorder
        self.rng = rng or random.Random(self.config.failure_domain_seed)

        self.provisioner = ExternalResourceProvisioner(
            db,
            rng=self.rng,
            bootstrap_config_kind=self.config.bootstrap_config_kind,
            bootstrap_config_api_version=self.config.bootstrap_config_api_version,
        )
        self.pool = MachinePoolManager(
            db,
            self.provisioner,
            recorder=recorder,
            rng=self.rng,
            drain_requeue_delay=self.config.drain_requeue_delay,
        )
        self.deletion = DeletionStateMachine(
            db,
            self.pool,
            recorder=recorder,
            drain_requeue_delay=self.config.drain_requeue_delay,
        )

    async def reconcile(self, key: ReconcileKey) -> ReconcileResult:
        """
        Reconcile one control plane.

        Store errors propagate so the scheduler can back off. Conditions
        changed along the way are written back with one status update at
        the end, on success and on failure alike.
        """
        record = await self.db.get_control_plane(key.namespace, key.name)
        if record is None:
            logger.info(f"Control plane {key} not found, nothing to do")
            return ReconcileResult()

        observed = self._status_of(record)
        try:
            result = await self._reconcile(record)
        except Exception:
            await self._patch_status(record, observed, failing=True)
            raise

        await self._patch_status(record, observed)
        logger.info(f"Reconciled {key}: {result.directive.value}")
        return result

    async def _reconcile(self, record: ControlPlaneRecord) -> ReconcileResult:
        owner_name = record.owner_key
        if owner_name is None:
            logger.info("Waiting for cluster owner to be non-nil")
            return ReconcileResult(requeue=True)

        cluster = await self.db.get_cluster(record.namespace, owner_name)
        if cluster is None:
            logger.info(f"Waiting for cluster owner {owner_name} to be found")
            return ReconcileResult(requeue_after=self.config.owner_requeue_delay)

        if cluster.paused or record.paused:
            logger.info("Reconciliation is paused for this object")
            return ReconcileResult(requeue=True)

        if not cluster.infrastructure_ready:
            logger.info(f"Cluster {cluster.name} is not ready yet, requeueing")
            return ReconcileResult(requeue=True)

        if record.deletion_requested:
            logger.info(f"Deleting control plane {record.namespace}/{record.name}")
            return await self.deletion.reconcile_delete(record, cluster)

        if not record.finalizer_present:
            record.finalizers.append(CONTROL_PLANE_FINALIZER)
            await self.db.update_control_plane(record)
            logger.info("Added finalizer")
            if self.recorder:
                await self.recorder.normal(
                    record, CONTROL_PLANE_KIND, FINALIZER_ADDED, "Added finalizer"
                )
            return ReconcileResult()

        if record.machine_template is not None:
            logger.info("Updating owner references on infra templates")
            await self.provisioner.reconcile_external_reference(
                record.machine_template, cluster
            )

        if not cluster.control_plane_endpoint_valid:
            logger.info("Cluster does not yet have a ControlPlaneEndpoint defined")
            return ReconcileResult()

        machines = await self.pool.list_owned_machines(cluster)
        conditions.set_aggregate(record, conditions.MACHINES_READY_CONDITION, machines)
        update_status_counts(record, machines)

        result = await self.pool.converge(record, cluster, machines)
        conditions.summarize(
            record,
            conditions.READY_CONDITION,
            [
                conditions.MACHINES_CREATED_CONDITION,
                conditions.RESIZED_CONDITION,
                conditions.MACHINES_READY_CONDITION,
            ],
        )
        return result

    def _status_of(self, record: ControlPlaneRecord) -> Tuple:
        return (
            conditions.snapshot(record),
            record.status_replicas,
            record.ready_replicas,
            record.unavailable_replicas,
        )

    async def _patch_status(
        self, record: ControlPlaneRecord, observed: Tuple, failing: bool = False
    ) -> None:
        """
        Write back changed status.

        When ``failing`` the call is already propagating an error; a store
        error here is logged so the original error reaches the scheduler.
        """
        if record.deletion_requested and not record.finalizers:
            return
        if self._status_of(record) == observed:
            return
        try:
            await self.db.update_control_plane_status(record)
        except StoreError as e:
            if not failing:
                raise
            logger.error(
                f"Failed to update status of {record.namespace}/{record.name}: {e}"
            )


class Controller:
    """
    Main controller that implements the scheduling loop.

    Polls the store for control planes that are due, reconciles them with
    bounded concurrency, and turns each returned directive into the next
    scheduled time. Errors are requeued with exponential backoff.
    """

    def __init__(
        self,
        db_manager: Any,
        reconciler: Optional[ControlPlaneReconciler] = None,
        config: Optional[ControllerConfig] = None,
    ):
        self.db = db_manager
        self.config = config or ControllerConfig()
        self.reconciler = reconciler or ControlPlaneReconciler(
            db_manager, self.config, recorder=EventRecorder(db_manager)
        )
        self.max_concurrent_reconciles = self.config.max_concurrent_reconciles
        self.semaphore = asyncio.Semaphore(self.max_concurrent_reconciles)
        self.running = False

        # Keys currently being reconciled; a key is never run twice at once
        self._in_flight: set = set()

    async def start(self):
        """Start the controller reconciliation loop."""
        logger.info("Starting control plane controller")
        self.running = True
        await self._reconciliation_loop()

    async def stop(self):
        """Stop the controller gracefully."""
        logger.info("Stopping control plane controller")
        self.running = False

    async def _reconciliation_loop(self):
        """Poll for due keys and reconcile them."""
        while self.running:
            try:
                keys = await self.db.get_keys_needing_reconciliation(
                    limit=self.max_concurrent_reconciles * 2
                )
                keys = [key for key in keys if key not in self._in_flight]

                if keys:
                    logger.info(f"Found {len(keys)} control planes needing reconciliation")
                    await asyncio.gather(
                        *(self._process(key) for key in keys), return_exceptions=True
                    )

                await asyncio.sleep(self.config.poll_interval)

            except Exception as e:
                logger.error(f"Error in reconciliation loop: {e}", exc_info=True)
                await asyncio.sleep(10)  # Brief pause on error

    async def _process(self, key: ReconcileKey) -> Optional[ReconcileResult]:
        """Reconcile one key and schedule its next run."""
        if key in self._in_flight:
            return None

        self._in_flight.add(key)
        try:
            async with self.semaphore:
                start_time = time.monotonic()
                try:
                    result = await self.reconciler.reconcile(key)
                except Exception as e:
                    logger.error(f"Error reconciling {key}: {e}", exc_info=True)
                    await self.db.record_reconcile_failure(
                        key,
                        str(e),
                        base_delay=self.config.backoff_base_delay,
                        max_delay=self.config.backoff_max_delay,
                        jitter_factor=self.config.backoff_jitter_factor,
                    )
                    return None

                await self.db.schedule_reconciliation(key, self._next_delay(result))
                logger.debug(
                    f"Reconciled {key} in {time.monotonic() - start_time:.2f}s"
                )
                return result
        finally:
            self._in_flight.discard(key)

    def _next_delay(self, result: ReconcileResult) -> float:
        directive = result.directive
        if directive == RequeueDirective.REQUEUE_AFTER:
            return float(result.requeue_after)
        if directive == RequeueDirective.REQUEUE_IMMEDIATE:
            return 0.0
        # Nothing to do now; come back later to catch drift
        return float(self.config.reconcile_interval)

    async def trigger_reconciliation(self, key: ReconcileKey):
        """Manually trigger reconciliation for a specific control plane."""
        logger.info(f"Manually triggering reconciliation for {key}")
        await self.db.schedule_reconciliation(key, 0)
