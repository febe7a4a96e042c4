"""Unit tests for controller.py - Reconciliation engine and scheduler."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

import conditions
from config import ControllerConfig
from controller import Controller, ControlPlaneReconciler
from errors import ConflictError, NotFoundError, ProvisioningError, TransientStoreError
from models import (
    CLUSTER_API_VERSION,
    CONTROL_PLANE_FINALIZER,
    PAUSED_ANNOTATION,
    ReconcileKey,
    ReconcileResult,
    RequeueDirective,
)

KEY = ReconcileKey("default", "test-cp")
DELETED_AT = datetime(2024, 1, 2, tzinfo=timezone.utc)


@pytest.fixture
def reconciler(store, controller_config, recorder, rng):
    return ControlPlaneReconciler(store, controller_config, recorder=recorder, rng=rng)


@pytest.mark.asyncio
class TestReconcileDispatch:
    """Tests for the order of checks before any machine work."""

    async def test_missing_record(self, store, reconciler):
        result = await reconciler.reconcile(KEY)

        assert result.directive == RequeueDirective.NONE
        assert store.calls == []

    async def test_no_cluster_owner(self, store, reconciler):
        store.add_control_plane(cluster_name=None)

        result = await reconciler.reconcile(KEY)

        assert result.directive == RequeueDirective.REQUEUE_IMMEDIATE
        assert store.calls == []

    async def test_cluster_not_found(self, store, reconciler):
        store.add_control_plane(cluster_name="missing-cluster")

        result = await reconciler.reconcile(KEY)

        assert result.directive == RequeueDirective.REQUEUE_AFTER
        assert result.requeue_after == 20
        assert store.calls == []

    async def test_paused_cluster(self, store, reconciler):
        store.clusters[("default", "test-cluster")].paused = True
        store.add_control_plane()

        result = await reconciler.reconcile(KEY)

        assert result.directive == RequeueDirective.REQUEUE_IMMEDIATE
        assert store.calls == []

    async def test_paused_annotation(self, store, reconciler):
        store.add_control_plane(annotations={PAUSED_ANNOTATION: "true"})

        result = await reconciler.reconcile(KEY)

        assert result.directive == RequeueDirective.REQUEUE_IMMEDIATE
        assert store.calls == []

    async def test_infrastructure_not_ready(self, store, reconciler):
        """Scenario E: nothing is mutated until the infrastructure is ready."""
        store.clusters[("default", "test-cluster")].infrastructure_ready = False
        store.add_control_plane(replicas=3)

        result = await reconciler.reconcile(KEY)

        assert result.directive == RequeueDirective.REQUEUE_IMMEDIATE
        assert store.calls == []
        assert store.machines == {}

    async def test_installs_finalizer_first(self, store, reconciler):
        store.add_control_plane(replicas=3, finalizer=False)

        result = await reconciler.reconcile(KEY)

        assert result.directive == RequeueDirective.NONE
        assert store.calls == [("update_control_plane", "test-cp")]
        assert store.stored().finalizers == [CONTROL_PLANE_FINALIZER]
        assert store.events[-1]["reason"] == "FinalizerAdded"

    async def test_endpoint_not_ready(self, store, reconciler):
        store.clusters[("default", "test-cluster")].control_plane_endpoint_host = ""
        store.add_control_plane(replicas=3)

        result = await reconciler.reconcile(KEY)

        assert result.directive == RequeueDirective.NONE
        assert store.machines == {}

    async def test_adopts_machine_template(self, store, reconciler):
        store.add_control_plane(replicas=0)

        await reconciler.reconcile(KEY)
        await reconciler.reconcile(KEY)

        template = store.external[("default", "JujuMachineTemplate", "cp-template")]
        owners = template["owner_references"]
        assert len(owners) == 1
        assert owners[0]["kind"] == "Cluster"
        assert owners[0]["api_version"] == CLUSTER_API_VERSION
        assert store.mutation_count("update_external_object") == 1


@pytest.mark.asyncio
class TestReconcileScenarios:
    """End-to-end reconcile calls against the in-memory store."""

    async def test_bootstrap_creates_one_machine(self, store, reconciler):
        """Scenario A."""
        store.add_control_plane(replicas=3)

        result = await reconciler.reconcile(KEY)

        assert result.directive == RequeueDirective.REQUEUE_IMMEDIATE
        assert store.mutation_count("create_machine") == 1

    async def test_scale_down_deletes_oldest(self, store, reconciler):
        """Scenario B."""
        store.add_control_plane(replicas=3)
        for i in range(5):
            store.add_machine(f"m{i}", ready=True)

        result = await reconciler.reconcile(KEY)

        assert result.directive == RequeueDirective.REQUEUE_IMMEDIATE
        assert [c for c in store.calls if c[0] == "delete_machine"] == [
            ("delete_machine", "m0")
        ]
        stored = store.stored()
        assert stored.status_replicas == 5
        assert conditions.get(stored, conditions.RESIZED_CONDITION).reason == "ScalingDown"
        assert conditions.get(stored, conditions.READY_CONDITION).status == "False"

    async def test_deletion_drains_machines(self, store, reconciler):
        """Scenario C."""
        store.add_control_plane(replicas=2, deletion_timestamp=DELETED_AT)
        store.add_machine("m1", finalizers=["machine"])
        store.add_machine("m2", finalizers=["machine"])

        result = await reconciler.reconcile(KEY)

        assert result.directive == RequeueDirective.REQUEUE_AFTER
        assert result.requeue_after == 30
        assert store.mutation_count("delete_machine") == 2
        stored = store.stored()
        assert CONTROL_PLANE_FINALIZER in stored.finalizers
        assert conditions.get(stored, conditions.RESIZED_CONDITION).reason == "Deleting"

    async def test_deletion_releases_finalizer(self, store, reconciler):
        """Scenario D."""
        store.add_control_plane(replicas=2, deletion_timestamp=DELETED_AT)

        result = await reconciler.reconcile(KEY)

        assert result.directive == RequeueDirective.NONE
        assert store.stored() is None
        assert store.mutation_count("update_control_plane_status") == 0

    async def test_deletion_does_not_need_finalizer_install(self, store, reconciler):
        store.add_control_plane(
            replicas=1, deletion_timestamp=DELETED_AT, finalizers=["other.io/keep"]
        )

        result = await reconciler.reconcile(KEY)

        assert result.directive == RequeueDirective.NONE
        assert store.mutation_count("update_control_plane") == 0

    async def test_steady_state_is_a_no_op(self, store, reconciler):
        store.add_control_plane(replicas=2)
        store.add_machine("m1", ready=True)
        store.add_machine("m2", ready=True)

        first = await reconciler.reconcile(KEY)
        calls_after_first = list(store.calls)
        second = await reconciler.reconcile(KEY)

        assert first.directive == RequeueDirective.NONE
        assert second.directive == RequeueDirective.NONE
        assert calls_after_first == [
            ("update_external_object", "cp-template"),
            ("update_control_plane_status", "test-cp"),
        ]
        assert store.calls == calls_after_first
        stored = store.stored()
        assert conditions.is_true(stored, conditions.READY_CONDITION)
        assert conditions.is_true(stored, conditions.MACHINES_READY_CONDITION)
        assert stored.ready_replicas == 2

    async def test_full_convergence(self, store, reconciler):
        store.add_control_plane(replicas=3)

        directives = []
        for _ in range(10):
            result = await reconciler.reconcile(KEY)
            directives.append(result.directive)
            if result.directive == RequeueDirective.NONE:
                break

        assert len(store.live_machines()) == 3
        assert store.mutation_count("create_machine") == 3
        assert directives[-1] == RequeueDirective.NONE

    async def test_scale_down_with_slow_deletes_never_overshoots(self, store, reconciler):
        store.add_control_plane(replicas=3)
        for i in range(5):
            store.add_machine(f"m{i}", ready=True, finalizers=["machine"])

        results = []
        for _ in range(6):
            results.append(await reconciler.reconcile(KEY))
            assert len(store.live_machines()) >= 3

        assert len(store.live_machines()) == 3
        assert store.mutation_count("delete_machine") == 2
        assert store.mutation_count("create_machine") == 0
        assert results[-1].directive == RequeueDirective.REQUEUE_AFTER
        assert results[-1].requeue_after == 30


@pytest.mark.asyncio
class TestStatusWrite:
    """Tests for writing conditions back at the end of a call."""

    async def test_provisioning_failure_is_recorded(self, store, reconciler):
        store.add_control_plane(replicas=1)
        store.fail_next["create_external_object"] = TransientStoreError("down")

        with pytest.raises(ProvisioningError):
            await reconciler.reconcile(KEY)

        created = conditions.get(store.stored(), conditions.MACHINES_CREATED_CONDITION)
        assert created.status == "False"
        assert created.reason == conditions.INFRASTRUCTURE_TEMPLATE_CLONING_FAILED_REASON

    async def test_original_error_wins_over_status_conflict(self, store, reconciler):
        store.add_control_plane(replicas=1)
        store.fail_next["create_machine"] = TransientStoreError("down")
        store.fail_next["update_control_plane_status"] = ConflictError("stale")

        with pytest.raises(ProvisioningError) as exc_info:
            await reconciler.reconcile(KEY)

        assert isinstance(exc_info.value.__cause__, TransientStoreError)

    async def test_status_conflict_propagates_on_success_path(self, store, reconciler):
        store.add_control_plane(replicas=1)
        store.add_machine("m1", ready=True)
        store.fail_next["update_control_plane_status"] = ConflictError("stale")

        with pytest.raises(ConflictError):
            await reconciler.reconcile(KEY)

    async def test_missing_template_propagates(self, store, reconciler):
        store.external.clear()
        store.add_control_plane(replicas=1)

        with pytest.raises(NotFoundError):
            await reconciler.reconcile(KEY)

        assert store.machines == {}

    async def test_store_errors_propagate(self, store, reconciler):
        store.add_control_plane(replicas=1)
        store.fail_next["list_machines"] = TransientStoreError("down")

        with pytest.raises(TransientStoreError):
            await reconciler.reconcile(KEY)


class TestControllerInit:
    """Tests for Controller construction."""

    def test_defaults(self):
        db = AsyncMock()
        controller = Controller(db)

        assert controller.max_concurrent_reconciles == 5
        assert controller.running is False
        assert isinstance(controller.reconciler, ControlPlaneReconciler)
        assert controller.reconciler.recorder is not None


@pytest.mark.asyncio
class TestController:
    """Tests for the scheduling loop."""

    @pytest.fixture
    def mock_db(self):
        db = AsyncMock()
        db.get_keys_needing_reconciliation = AsyncMock(return_value=[])
        db.schedule_reconciliation = AsyncMock()
        db.record_reconcile_failure = AsyncMock()
        return db

    @pytest.fixture
    def mock_reconciler(self):
        reconciler = MagicMock()
        reconciler.reconcile = AsyncMock(return_value=ReconcileResult())
        return reconciler

    @pytest.fixture
    def controller(self, mock_db, mock_reconciler):
        config = ControllerConfig(
            reconcile_interval=60,
            poll_interval=0,
            backoff_base_delay=5,
            backoff_max_delay=300,
            backoff_jitter_factor=0.1,
        )
        return Controller(mock_db, reconciler=mock_reconciler, config=config)

    async def test_none_schedules_resync(self, controller, mock_db):
        await controller._process(KEY)

        mock_db.schedule_reconciliation.assert_called_once_with(KEY, 60.0)

    async def test_requeue_immediate(self, controller, mock_db, mock_reconciler):
        mock_reconciler.reconcile.return_value = ReconcileResult(requeue=True)

        await controller._process(KEY)

        mock_db.schedule_reconciliation.assert_called_once_with(KEY, 0.0)

    async def test_requeue_after(self, controller, mock_db, mock_reconciler):
        mock_reconciler.reconcile.return_value = ReconcileResult(requeue_after=30)

        await controller._process(KEY)

        mock_db.schedule_reconciliation.assert_called_once_with(KEY, 30.0)

    async def test_error_backs_off(self, controller, mock_db, mock_reconciler):
        mock_reconciler.reconcile.side_effect = ConflictError("stale")

        result = await controller._process(KEY)

        assert result is None
        mock_db.schedule_reconciliation.assert_not_called()
        mock_db.record_reconcile_failure.assert_called_once_with(
            KEY, "stale", base_delay=5, max_delay=300, jitter_factor=0.1
        )
        assert KEY not in controller._in_flight

    async def test_in_flight_key_is_skipped(self, controller, mock_reconciler):
        controller._in_flight.add(KEY)

        result = await controller._process(KEY)

        assert result is None
        mock_reconciler.reconcile.assert_not_called()

    async def test_same_key_never_runs_concurrently(self, controller, mock_reconciler):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(key):
            started.set()
            await release.wait()
            return ReconcileResult()

        mock_reconciler.reconcile.side_effect = slow

        first = asyncio.create_task(controller._process(KEY))
        await started.wait()
        second = await controller._process(KEY)
        release.set()
        await first

        assert second is None
        assert mock_reconciler.reconcile.call_count == 1

    async def test_loop_processes_due_keys(self, controller, mock_db, mock_reconciler):
        other = ReconcileKey("default", "other")

        async def keys_once(limit):
            controller.running = False
            return [KEY, other]

        mock_db.get_keys_needing_reconciliation.side_effect = keys_once

        await controller.start()

        assert mock_reconciler.reconcile.call_count == 2
        assert mock_db.schedule_reconciliation.call_count == 2

    async def test_stop(self, controller):
        controller.running = True
        await controller.stop()
        assert controller.running is False

    async def test_trigger_reconciliation(self, controller, mock_db):
        await controller.trigger_reconciliation(KEY)

        mock_db.schedule_reconciliation.assert_called_once_with(KEY, 0)
