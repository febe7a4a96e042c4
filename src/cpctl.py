#!/usr/bin/env python3
"""
CLI tool for the control plane operator.
Provides a kubectl-like interface for clusters, control planes and machines.
"""

import asyncio
import json
import random
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List

import click
import yaml
from tabulate import tabulate

import conditions
from config import get_config
from controller import ControlPlaneReconciler
from db import DatabaseManager
from errors import NotFoundError, StoreError
from events import EventRecorder
from machines import control_plane_selector
from models import (
    CLUSTER_NAME_LABEL,
    CONTROL_PLANE_KIND,
    ControlPlaneRecord,
    ObjectReference,
    ReconcileKey,
)
from validation import validate_manifest


def make_db() -> DatabaseManager:
    """Build a database manager from the environment configuration."""
    db_config = get_config().database
    return DatabaseManager(
        host=db_config.host,
        port=db_config.port,
        database=db_config.database,
        user=db_config.user,
        password=db_config.password,
        min_pool_size=1,
        max_pool_size=2,
    )


def _run(action: Callable[[Any], Awaitable[Any]]) -> Any:
    """Run ``action(db)`` against a freshly connected store."""

    async def runner():
        db = make_db()
        await db.connect()
        try:
            return await action(db)
        finally:
            await db.close()

    try:
        return asyncio.run(runner())
    except StoreError as e:
        click.echo(f"Error: {e}", err=True)
        raise click.exceptions.Exit(1)


def _jsonable(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def record_to_dict(record: ControlPlaneRecord) -> Dict[str, Any]:
    data = asdict(record)
    data["conditions"] = [c.to_dict() for c in record.conditions]
    return _jsonable(data)


def _echo_structured(data: Any, output: str) -> None:
    if output == "yaml":
        click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))
    else:
        click.echo(json.dumps(data, indent=2, default=str))


def _age(timestamp: Any) -> str:
    if not isinstance(timestamp, datetime):
        return "-"
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    seconds = int((datetime.now(timezone.utc) - timestamp).total_seconds())
    if seconds < 120:
        return f"{seconds}s"
    if seconds < 7200:
        return f"{seconds // 60}m"
    if seconds < 172800:
        return f"{seconds // 3600}h"
    return f"{seconds // 86400}d"


def load_manifests(filename: str) -> List[Any]:
    """Read every document from a YAML or JSON file."""
    with open(filename, "r") as f:
        if filename.endswith(".json"):
            data = json.load(f)
            return data if isinstance(data, list) else [data]
        return [doc for doc in yaml.safe_load_all(f) if doc is not None]


async def apply_manifest(db: Any, doc: Dict[str, Any], default_namespace: str) -> str:
    """Write one validated manifest to the store and describe what was done."""
    metadata = doc["metadata"]
    namespace = metadata.get("namespace", default_namespace)
    name = metadata["name"]
    kind = doc["kind"]
    spec = doc.get("spec", {})

    if kind == "Cluster":
        endpoint = spec.get("controlPlaneEndpoint", {})
        await db.apply_cluster(
            namespace,
            name,
            infrastructure_ready=spec.get("infrastructureReady", False),
            failure_domains=spec.get("failureDomains", []),
            control_plane_endpoint_host=endpoint.get("host", ""),
            control_plane_endpoint_port=endpoint.get("port", 0),
            paused=spec.get("paused", False),
        )
    elif kind == CONTROL_PLANE_KIND:
        infra_ref = spec["machineTemplate"]["infrastructureRef"]
        await db.apply_control_plane(
            namespace,
            name,
            cluster_name=metadata["labels"][CLUSTER_NAME_LABEL],
            replicas=spec.get("replicas", 1),
            machine_template=ObjectReference(
                api_version=infra_ref["apiVersion"],
                kind=infra_ref["kind"],
                name=infra_ref["name"],
                namespace=infra_ref.get("namespace", ""),
            ),
            bootstrap_config_spec=spec.get("controlPlaneConfig", {}),
        )
    else:
        await db.apply_external_object(
            {
                "api_version": doc["apiVersion"],
                "kind": kind,
                "namespace": namespace,
                "name": name,
                "labels": metadata.get("labels", {}),
                "annotations": metadata.get("annotations", {}),
                "spec": spec,
            }
        )
    return f"{kind.lower()}/{name} configured"


@click.group()
def cli():
    """Control plane operator CLI - kubectl-like interface for control planes"""
    pass


@cli.command()
@click.argument("filename", type=click.Path(exists=True))
@click.option("--namespace", "-n", default="default", help="Default namespace")
def apply(filename, namespace):
    """Apply clusters, control planes and templates from a YAML/JSON file"""
    documents = load_manifests(filename)

    failed = False
    for index, doc in enumerate(documents):
        valid, error = validate_manifest(doc)
        if not valid:
            click.echo(f"Error: document {index}: {error}", err=True)
            failed = True
    if failed:
        raise click.exceptions.Exit(1)

    async def action(db):
        return [await apply_manifest(db, doc, namespace) for doc in documents]

    for line in _run(action):
        click.echo(line)


@cli.command()
@click.option("--namespace", "-n", default=None, help="Only this namespace")
@click.option(
    "--output", "-o", type=click.Choice(["table", "json", "yaml"]), default="table"
)
def get(namespace, output):
    """List control planes"""
    records = _run(lambda db: db.list_control_planes(namespace=namespace))

    if output != "table":
        _echo_structured([record_to_dict(r) for r in records], output)
        return

    if not records:
        click.echo("No control planes found")
        return

    headers = ["Namespace", "Name", "Desired", "Replicas", "Ready", "Unavailable", "Ready Condition", "Age"]
    rows = []
    for record in records:
        ready = conditions.get(record, conditions.READY_CONDITION)
        status = ready.status if ready else "Unknown"
        if record.deletion_requested:
            status = "Deleting"
        rows.append(
            [
                record.namespace,
                record.name,
                record.replicas,
                record.status_replicas,
                record.ready_replicas,
                record.unavailable_replicas,
                status,
                _age(record.creation_timestamp),
            ]
        )
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--output", "-o", type=click.Choice(["json", "yaml"]), default="yaml")
def describe(name, namespace, output):
    """Describe a control plane with its conditions and queue state"""
    key = ReconcileKey(namespace, name)

    async def action(db):
        record = await db.get_control_plane(namespace, name)
        if record is None:
            return None
        data = record_to_dict(record)
        queue = await db.get_queue_entry(key)
        data["reconcile"] = _jsonable(queue) if queue else None
        return data

    data = _run(action)
    if data is None:
        click.echo(f"Error: control plane {key} not found", err=True)
        raise click.exceptions.Exit(1)
    _echo_structured(data, output)


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
def machines(name, namespace):
    """List the machines of a control plane"""

    async def action(db):
        record = await db.get_control_plane(namespace, name)
        if record is None or record.owner_key is None:
            return None
        return await db.list_machines(namespace, control_plane_selector(record.owner_key))

    result = _run(action)
    if result is None:
        click.echo(f"Error: control plane {namespace}/{name} not found or not owned", err=True)
        raise click.exceptions.Exit(1)

    headers = ["Name", "Failure Domain", "Ready", "Deleting", "Age"]
    rows = [
        [
            m.name,
            m.failure_domain or "-",
            "✓" if m.ready else "✗",
            "yes" if m.deleting else "",
            _age(m.creation_timestamp),
        ]
        for m in result
    ]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


@cli.command("machine-status")
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--ready/--not-ready", default=None, help="Report the machine (not) ready")
@click.option("--reason", default="NotReady", help="Reason when marking not ready")
@click.option("--message", default="", help="Message when marking not ready")
@click.option(
    "--remove-finalizer", "remove_finalizers", multiple=True, help="Finalizer to release"
)
def machine_status(name, namespace, ready, reason, message, remove_finalizers):
    """Report the status of a machine, as an infrastructure provider would"""
    if ready is None and not remove_finalizers:
        click.echo("Error: nothing to update", err=True)
        raise click.exceptions.Exit(1)

    async def action(db):
        machine = await db.get_machine(namespace, name)
        if machine is None:
            raise NotFoundError(f"Machine {namespace}/{name} not found")
        if ready is True:
            machine.ready = True
            conditions.mark_true(machine, conditions.READY_CONDITION)
        elif ready is False:
            machine.ready = False
            conditions.mark_false(
                machine,
                conditions.READY_CONDITION,
                reason,
                conditions.SEVERITY_WARNING,
                message,
            )
        machine.finalizers = [f for f in machine.finalizers if f not in remove_finalizers]
        return await db.update_machine_status(machine)

    machine = _run(action)
    if machine.deleting and not machine.finalizers:
        click.echo(f"machine/{name} removed")
    else:
        click.echo(f"machine/{name} updated")


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--replicas", "-r", type=click.IntRange(min=0), required=True)
def scale(name, namespace, replicas):
    """Set the desired number of control plane machines"""
    key = ReconcileKey(namespace, name)
    _run(lambda db: db.update_control_plane_replicas(key, replicas))
    click.echo(f"{CONTROL_PLANE_KIND.lower()}/{name} scaled to {replicas}")


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.confirmation_option(prompt="Are you sure you want to delete this control plane?")
def delete(name, namespace):
    """Delete a control plane (drains its machines first)"""
    key = ReconcileKey(namespace, name)
    removed = _run(lambda db: db.request_control_plane_deletion(key))
    if removed:
        click.echo(f"{CONTROL_PLANE_KIND.lower()}/{name} deleted")
    else:
        click.echo(f"{CONTROL_PLANE_KIND.lower()}/{name} marked for deletion")


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--now", is_flag=True, help="Run one reconcile here instead of queueing")
def reconcile(name, namespace, now):
    """Trigger reconciliation of a control plane"""
    key = ReconcileKey(namespace, name)

    if not now:
        _run(lambda db: db.schedule_reconciliation(key, 0))
        click.echo("Reconciliation triggered successfully")
        return

    controller_config = get_config().controller

    async def action(db):
        reconciler = ControlPlaneReconciler(
            db,
            controller_config,
            recorder=EventRecorder(db, component="cpctl"),
            rng=random.Random(controller_config.failure_domain_seed),
        )
        return await reconciler.reconcile(key)

    result = _run(action)
    message = f"Result: {result.directive.value}"
    if result.requeue_after:
        message += f" ({result.requeue_after}s)"
    click.echo(message)


@cli.command()
@click.argument("name")
@click.option("--namespace", "-n", default="default")
@click.option("--limit", "-l", default=20, help="Number of events to show")
def events(name, namespace, limit):
    """Show recent events for a control plane"""
    result = _run(
        lambda db: db.list_events(namespace, CONTROL_PLANE_KIND, name, limit=limit)
    )

    if not result:
        click.echo("No events found")
        return

    headers = ["Type", "Reason", "Age", "Message"]
    rows = [
        [e["event_type"], e["reason"], _age(e["created_at"]), e["message"]]
        for e in result
    ]
    click.echo(tabulate(rows, headers=headers, tablefmt="grid"))


if __name__ == "__main__":
    cli()
