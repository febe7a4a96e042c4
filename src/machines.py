"""
Machine Pool Manager - converges the machine count on the desired replicas.

Each call takes at most one step: create one machine or delete one
machine. Observations may be stale, so taking a single step and asking to
be requeued is what keeps the pool from overshooting.
"""

import logging
import random
from typing import Any, Dict, List, Optional, Sequence

import conditions
from errors import InvariantViolation, NotFoundError, ProvisioningError
from events import (
    MACHINE_CREATE_FAILED,
    MACHINE_CREATED,
    MACHINE_DELETE_FAILED,
    MACHINE_DELETED,
)
from external import ExternalResourceProvisioner, generate_name
from models import (
    CLUSTER_NAME_LABEL,
    CONTROL_PLANE_API_VERSION,
    CONTROL_PLANE_KIND,
    MACHINE_CONTROL_PLANE_LABEL,
    ClusterContext,
    ControlPlaneRecord,
    MachineRecord,
    OwnerReference,
    ReconcileResult,
)

logger = logging.getLogger(__name__)


def control_plane_selector(cluster_name: str) -> Dict[str, str]:
    """Label selector matching the control plane machines of a cluster."""
    return {
        CLUSTER_NAME_LABEL: cluster_name,
        MACHINE_CONTROL_PLANE_LABEL: "",
    }


def select_machine_for_scale_down(
    machines: Sequence[MachineRecord],
) -> Optional[MachineRecord]:
    """
    Pick the oldest machine that is not already being deleted.

    Machines with equal creation timestamps keep list order: the first one
    encountered wins. The store returns machines in creation order, but
    that ordering is not guaranteed across stores.
    """
    victim: Optional[MachineRecord] = None
    for machine in machines:
        if machine.deleting:
            logger.info(f"Machine {machine.name} is in process of deletion")
            continue
        if victim is None or machine.creation_timestamp < victim.creation_timestamp:
            victim = machine
    return victim


def update_status_counts(
    record: ControlPlaneRecord, machines: Sequence[MachineRecord]
) -> None:
    """Refresh the replica counters on the record from a machine snapshot."""
    ready = sum(1 for machine in machines if machine.ready)
    record.status_replicas = len(machines)
    record.ready_replicas = ready
    record.unavailable_replicas = len(machines) - ready


class MachinePoolManager:
    """Computes and applies the next step towards the desired machine count."""

    def __init__(
        self,
        db: Any,
        provisioner: ExternalResourceProvisioner,
        recorder: Any = None,
        rng: Optional[random.Random] = None,
        drain_requeue_delay: int = 30,
    ):
        self.db = db
        self.provisioner = provisioner
        self.recorder = recorder
        self.rng = rng or random.Random()
        self.drain_requeue_delay = drain_requeue_delay

    async def list_owned_machines(
        self, cluster: ClusterContext
    ) -> List[MachineRecord]:
        """Query the control plane machines of a cluster, fresh from the store."""
        return await self.db.list_machines(
            cluster.namespace, control_plane_selector(cluster.name)
        )

    async def converge(
        self,
        record: ControlPlaneRecord,
        cluster: ClusterContext,
        machines: Sequence[MachineRecord],
    ) -> ReconcileResult:
        """
        Take one step towards ``record.replicas`` machines.

        Args:
            record: The control plane; its conditions are updated in place.
            cluster: The owning cluster.
            machines: Machines observed for this control plane.

        Returns:
            The requeue directive for the scheduler.
        """
        num_machines = len(machines)
        desired = record.replicas

        if num_machines < desired and num_machines == 0:
            logger.info(f"Initializing control plane {record.namespace}/{record.name}")
            return await self.boot_control_plane(record, cluster)

        if num_machines < desired:
            conditions.mark_false(
                record,
                conditions.RESIZED_CONDITION,
                conditions.SCALING_UP_REASON,
                conditions.SEVERITY_WARNING,
                f"Scaling up control plane to {desired} replicas "
                f"(actual {num_machines})",
            )
            logger.info(f"Scaling up control plane {record.name}")
            return await self.boot_control_plane(record, cluster)

        if num_machines > desired:
            conditions.mark_false(
                record,
                conditions.RESIZED_CONDITION,
                conditions.SCALING_DOWN_REASON,
                conditions.SEVERITY_WARNING,
                f"Scaling down control plane to {desired} replicas "
                f"(actual {num_machines})",
            )
            logger.info(f"Scaling down control plane {record.name}")
            return await self.scale_down(record, machines)

        if conditions.has(record, conditions.MACHINES_READY_CONDITION):
            conditions.mark_true(record, conditions.RESIZED_CONDITION)
        conditions.mark_true(record, conditions.MACHINES_CREATED_CONDITION)
        return ReconcileResult()

    def choose_failure_domain(self, cluster: ClusterContext) -> Optional[str]:
        """
        Pick a failure domain uniformly at random.

        This spreads machines only statistically; it does not balance them.
        """
        if not cluster.failure_domains:
            return None
        return self.rng.choice(sorted(cluster.failure_domains))

    async def boot_control_plane(
        self, record: ControlPlaneRecord, cluster: ClusterContext
    ) -> ReconcileResult:
        """
        Create one machine with its infrastructure and bootstrap objects.

        Raises:
            ProvisioningError: If a template clone or the machine insert
                fails. The reason is also set on MachinesCreated.
        """
        # The clone will later be claimed by the Machine as its controller,
        # so the control plane owns it without the controller flag.
        infra_owner = OwnerReference(
            api_version=CONTROL_PLANE_API_VERSION,
            kind=CONTROL_PLANE_KIND,
            name=record.name,
            uid=record.uid,
        )

        try:
            infra_ref = await self.provisioner.clone_template(
                record.machine_template, record.namespace, infra_owner, cluster.name
            )
        except Exception as e:
            await self._creation_failed(
                record, conditions.INFRASTRUCTURE_TEMPLATE_CLONING_FAILED_REASON, e
            )

        try:
            bootstrap_ref = await self.provisioner.create_bootstrap_config(
                record.bootstrap_config_spec, record
            )
        except Exception as e:
            await self._creation_failed(
                record, conditions.BOOTSTRAP_TEMPLATE_CLONING_FAILED_REASON, e
            )

        machine = MachineRecord(
            namespace=record.namespace,
            name=generate_name(f"{record.name}-", self.rng),
            cluster_name=cluster.name,
            labels=control_plane_selector(cluster.name),
            owner_references=[record.owner_reference(controller=True)],
            infrastructure_ref=infra_ref,
            bootstrap_ref=bootstrap_ref,
            failure_domain=self.choose_failure_domain(cluster),
        )

        try:
            created = await self.db.create_machine(machine)
        except Exception as e:
            await self._creation_failed(
                record, conditions.MACHINE_CREATION_FAILED_REASON, e
            )

        if self.recorder:
            await self.recorder.normal(
                record,
                CONTROL_PLANE_KIND,
                MACHINE_CREATED,
                f"Created machine {created.name}"
                + (f" in {created.failure_domain}" if created.failure_domain else ""),
            )
        return ReconcileResult(requeue=True)

    async def _creation_failed(
        self, record: ControlPlaneRecord, reason: str, error: Exception
    ) -> None:
        conditions.mark_false(
            record,
            conditions.MACHINES_CREATED_CONDITION,
            reason,
            conditions.SEVERITY_ERROR,
            str(error),
        )
        if self.recorder:
            await self.recorder.warning(
                record, CONTROL_PLANE_KIND, MACHINE_CREATE_FAILED, f"{reason}: {error}"
            )
        raise ProvisioningError(reason, str(error)) from error

    async def scale_down(
        self, record: ControlPlaneRecord, machines: Sequence[MachineRecord]
    ) -> ReconcileResult:
        """
        Request deletion of the oldest machine.

        Machines already being deleted still count towards the observed
        total until they are gone. While the machines that are not being
        deleted number ``record.replicas`` or fewer, nothing more is deleted
        and the call waits for the drain.

        Raises:
            InvariantViolation: If called with no machines at all.
        """
        if not machines:
            raise InvariantViolation(
                f"No machines to scale down for control plane {record.name}"
            )
        logger.info(f"Found {len(machines)} control plane machines")

        pending = sum(1 for machine in machines if machine.deleting)
        if len(machines) - pending <= record.replicas:
            logger.info(
                f"{pending} machine(s) of {record.name} are already being deleted, "
                f"waiting for them to drain"
            )
            return ReconcileResult(requeue_after=self.drain_requeue_delay)

        victim = select_machine_for_scale_down(machines)
        logger.info(f"Deleting machine {victim.name}")
        try:
            await self.db.delete_machine(victim)
        except NotFoundError:
            logger.info(f"Machine {victim.name} already deleted")
            return ReconcileResult(requeue=True)
        except Exception as e:
            if self.recorder:
                await self.recorder.warning(
                    record,
                    CONTROL_PLANE_KIND,
                    MACHINE_DELETE_FAILED,
                    f"Failed to delete machine {victim.name}: {e}",
                )
            raise

        if self.recorder:
            await self.recorder.normal(
                record, CONTROL_PLANE_KIND, MACHINE_DELETED, f"Deleted machine {victim.name}"
            )
        return ReconcileResult(requeue=True)
