"""
Deletion State Machine - finalizer-gated teardown of a control plane.

Active -> Draining -> Terminable -> Terminated. The phase is recomputed
from a fresh machine listing on every call, so the machine needs no
stored state of its own.
"""

import logging
from enum import Enum
from typing import Any, Sequence

import conditions
from errors import NotFoundError
from events import FINALIZER_REMOVED, MACHINE_DELETE_FAILED, MACHINE_DELETED
from machines import MachinePoolManager
from models import (
    CONTROL_PLANE_FINALIZER,
    CONTROL_PLANE_KIND,
    ClusterContext,
    ControlPlaneRecord,
    MachineRecord,
    ReconcileResult,
)

logger = logging.getLogger(__name__)


class DeletionPhase(Enum):
    """Teardown phase of a control plane."""

    ACTIVE = "Active"
    DRAINING = "Draining"
    TERMINABLE = "Terminable"
    TERMINATED = "Terminated"


def deletion_phase(
    record: ControlPlaneRecord, machines: Sequence[MachineRecord]
) -> DeletionPhase:
    if not record.deletion_requested:
        return DeletionPhase.ACTIVE
    if machines:
        return DeletionPhase.DRAINING
    if record.finalizer_present:
        return DeletionPhase.TERMINABLE
    return DeletionPhase.TERMINATED


class DeletionStateMachine:
    """Drains owned machines, then releases the control plane finalizer."""

    def __init__(
        self,
        db: Any,
        pool: MachinePoolManager,
        recorder: Any = None,
        drain_requeue_delay: int = 30,
    ):
        self.db = db
        self.pool = pool
        self.recorder = recorder
        self.drain_requeue_delay = drain_requeue_delay

    async def reconcile_delete(
        self, record: ControlPlaneRecord, cluster: ClusterContext
    ) -> ReconcileResult:
        """
        Advance the teardown by one call.

        The finalizer is only removed once the listing comes back empty.
        Machines already marked for deletion are skipped, so replaying the
        call issues no duplicate deletes.
        """
        machines = await self.pool.list_owned_machines(cluster)
        phase = deletion_phase(record, machines)
        logger.info(f"Control plane {record.name} deletion phase: {phase.value}")

        if phase == DeletionPhase.TERMINABLE:
            logger.info("Removing finalizer and stopping reconciliation")
            record.finalizers = [
                f for f in record.finalizers if f != CONTROL_PLANE_FINALIZER
            ]
            await self.db.update_control_plane(record)
            if self.recorder:
                await self.recorder.normal(
                    record,
                    CONTROL_PLANE_KIND,
                    FINALIZER_REMOVED,
                    "All machines deleted, released finalizer",
                )
            return ReconcileResult()

        if phase == DeletionPhase.TERMINATED:
            logger.info(f"No machines exist for {record.name}")
            return ReconcileResult()

        for machine in machines:
            if machine.deleting:
                continue
            try:
                await self.db.delete_machine(machine)
            except NotFoundError:
                logger.info(f"Machine {machine.name} already gone")
                continue
            except Exception as e:
                if self.recorder:
                    await self.recorder.warning(
                        record,
                        CONTROL_PLANE_KIND,
                        MACHINE_DELETE_FAILED,
                        f"Failed to delete machine {machine.name}: {e}",
                    )
                raise
            if self.recorder:
                await self.recorder.normal(
                    record,
                    CONTROL_PLANE_KIND,
                    MACHINE_DELETED,
                    f"Deleted machine {machine.name}",
                )

        conditions.mark_false(
            record,
            conditions.RESIZED_CONDITION,
            conditions.DELETING_REASON,
            conditions.SEVERITY_INFO,
        )
        return ReconcileResult(requeue_after=self.drain_requeue_delay)
