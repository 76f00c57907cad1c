"""Command line interface for idpflow workflows."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

import typer
import yaml

from idpflow.config import load_config
from idpflow.contracts import Workflow, WorkflowStatus
from idpflow.errors import IdpFlowError
from idpflow.service import WorkflowService

T = TypeVar("T")

app = typer.Typer(help="CLI for IDP provisioning workflows")

# Command groups
cluster_app = typer.Typer(help="Provision and delete AKS clusters")
namespace_app = typer.Typer(help="Provision, update and delete namespaces")
workflow_app = typer.Typer(help="Inspect and control workflows")

app.add_typer(cluster_app, name="cluster")
app.add_typer(namespace_app, name="namespace")
app.add_typer(workflow_app, name="workflow")


@app.callback()
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None, "--config", "-c", help="Path to config file (default: IDPFLOW_CONFIG or config.yaml)"
    ),
) -> None:
    """idpflow CLI entry point."""
    ctx.obj = {"config": config}


def build_service(config_path: Optional[str] = None) -> WorkflowService:
    config = load_config(config_path)
    logging.basicConfig(level=config.log_level.upper())
    return WorkflowService.from_config(config)


def _run(ctx: typer.Context, action: Callable[[WorkflowService], Awaitable[T]]) -> T:
    """Run ``action`` against a fresh service, turning idpflow errors into exit code 1."""
    config_path = (ctx.obj or {}).get("config")

    async def runner() -> T:
        service = build_service(config_path)
        try:
            return await action(service)
        finally:
            await service.close()

    try:
        return asyncio.run(runner())
    except IdpFlowError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _echo_workflow(workflow: Workflow) -> None:
    typer.echo(f"Workflow {workflow.id}: {workflow.status.value}")
    typer.echo(f"  {workflow.name} ({workflow.engine} engine)")
    if workflow.remote_ref:
        typer.echo(f"  Remote workflow: {workflow.remote_ref}")
    if workflow.retry_count:
        typer.echo(f"  Retries: {workflow.retry_count}")
    if workflow.error:
        typer.secho(f"  Error: {workflow.error}", fg=typer.colors.RED)
    if workflow.abort_reason:
        typer.echo(f"  Abort reason: {workflow.abort_reason}")


async def _start_and_wait(
    service: WorkflowService,
    start: Callable[[Dict[str, Any]], Awaitable[Workflow]],
    params: Dict[str, Any],
) -> Workflow:
    workflow = await start(params)
    workflow = await service.wait_for(workflow.id)
    _echo_workflow(workflow)
    for entry in await service.get_logs(workflow.id):
        typer.echo(f"  [{entry.level.value}] {entry.message}")
    return workflow


def _finish(workflow: Workflow) -> None:
    if workflow.status == WorkflowStatus.FAILED:
        raise typer.Exit(code=1)


def _resource_limits(
    cpu_request: Optional[str],
    cpu_limit: Optional[str],
    memory_request: Optional[str],
    memory_limit: Optional[str],
) -> Optional[Dict[str, Dict[str, str]]]:
    if not any((cpu_request, cpu_limit, memory_request, memory_limit)):
        return None
    return {
        "cpu": {"request": cpu_request or "100m", "limit": cpu_limit or "1000m"},
        "memory": {"request": memory_request or "128Mi", "limit": memory_limit or "1Gi"},
    }


def _parse_annotations(values: List[str]) -> Dict[str, str]:
    annotations: Dict[str, str] = {}
    for value in values:
        key, sep, val = value.partition("=")
        if not sep or not key:
            typer.secho(f"Invalid annotation {value!r}, expected key=value", fg=typer.colors.RED)
            raise typer.Exit(code=1)
        annotations[key] = val
    return annotations


# ----------------------------------------------------------------------
# Clusters
@cluster_app.command("create")
def cluster_create(
    ctx: typer.Context,
    name: str,
    location: str = typer.Option("eastus", help="Azure region"),
    node_pool_type: str = typer.Option("standard", help="Node pool profile, see 'idpflow node-pools'"),
    dry_run: bool = typer.Option(True, help="Log manifests instead of applying them"),
    enable_nap: bool = typer.Option(True, help="Enable node auto-provisioning"),
    kubernetes_version: Optional[str] = typer.Option(None, help="Kubernetes version"),
    max_nodes: Optional[int] = typer.Option(None, help="Maximum user pool size"),
    enable_spot: bool = typer.Option(False, help="Use spot instances for the user pool"),
) -> None:
    """
    Provision an AKS cluster.

    Example:
        idpflow cluster create demo --location eastus --node-pool-type standard
        idpflow cluster create demo --no-dry-run --max-nodes 20
    """
    advanced: Dict[str, Any] = {"enable_spot": enable_spot}
    if kubernetes_version:
        advanced["kubernetes_version"] = kubernetes_version
    if max_nodes is not None:
        advanced["max_nodes"] = max_nodes
    params = {
        "cluster_name": name,
        "location": location,
        "node_pool_type": node_pool_type,
        "dry_run": dry_run,
        "enable_nap": enable_nap,
        "advanced_config": advanced,
    }
    workflow = _run(
        ctx, lambda service: _start_and_wait(service, service.start_cluster_provisioning, params)
    )
    _finish(workflow)


@cluster_app.command("delete")
def cluster_delete(
    ctx: typer.Context,
    name: str,
    force: bool = typer.Option(False, help="Delete without graceful drain"),
    dry_run: bool = typer.Option(True, help="Log deletions instead of performing them"),
) -> None:
    """Delete an AKS cluster and its resource group."""
    params = {"cluster_name": name, "force": force, "dry_run": dry_run}
    workflow = _run(
        ctx, lambda service: _start_and_wait(service, service.start_cluster_deletion, params)
    )
    _finish(workflow)


@cluster_app.command("list")
def cluster_list(ctx: typer.Context) -> None:
    """
    List clusters with the status of their latest workflow.

    Example:
        idpflow cluster list
        # Output: demo    eastus    standard    ready    3f2b...
    """
    clusters = _run(ctx, lambda service: service.list_clusters())
    if not clusters:
        typer.echo("No clusters found")
        return
    for record in clusters:
        typer.echo(
            f"{record.name}\t{record.location}\t{record.node_pool_type}\t"
            f"{record.status.value}\t{record.last_workflow_id}"
        )


@cluster_app.command("show")
def cluster_show(ctx: typer.Context, name: str) -> None:
    """Show a cluster, its latest workflow and its Azure resources."""
    details = _run(ctx, lambda service: service.get_cluster(name))
    cluster = details.cluster
    mode = " (dry run)" if cluster.dry_run else ""
    typer.echo(f"Cluster {cluster.name}: {cluster.status.value}{mode}")
    typer.echo(f"  {cluster.location}, {cluster.node_pool_type} node pools, {cluster.engine} engine")
    typer.echo(f"  Created: {cluster.created_at.isoformat()}")
    _echo_workflow(details.workflow)
    for resource in details.resources:
        line = f"- {resource.kind} {resource.name}: {resource.state}"
        if resource.message:
            line += f" ({resource.message})"
        typer.echo(line)


# ----------------------------------------------------------------------
# Namespaces
@namespace_app.command("create")
def namespace_create(
    ctx: typer.Context,
    name: str,
    description: str = typer.Option("", help="Stored as a namespace annotation"),
    cpu_request: Optional[str] = typer.Option(None, help="Default container CPU request"),
    cpu_limit: Optional[str] = typer.Option(None, help="Default container CPU limit"),
    memory_request: Optional[str] = typer.Option(None, help="Default container memory request"),
    memory_limit: Optional[str] = typer.Option(None, help="Default container memory limit"),
    network_isolated: bool = typer.Option(True, help="Restrict traffic to the namespace"),
    dry_run: bool = typer.Option(False, help="Log manifests instead of applying them"),
) -> None:
    """
    Provision a namespace with resource limits and network isolation.

    Example:
        idpflow namespace create team-a --description "Team A services"
        idpflow namespace create batch --cpu-limit 2 --no-network-isolated
    """
    params: Dict[str, Any] = {
        "namespace_name": name,
        "description": description,
        "network_isolated": network_isolated,
        "dry_run": dry_run,
    }
    limits = _resource_limits(cpu_request, cpu_limit, memory_request, memory_limit)
    if limits:
        params["resource_limits"] = limits
    workflow = _run(
        ctx, lambda service: _start_and_wait(service, service.start_namespace_provisioning, params)
    )
    _finish(workflow)


@namespace_app.command("update")
def namespace_update(
    ctx: typer.Context,
    name: str,
    annotation: List[str] = typer.Option([], "--annotation", "-a", help="key=value, repeatable"),
    cpu_request: Optional[str] = typer.Option(None),
    cpu_limit: Optional[str] = typer.Option(None),
    memory_request: Optional[str] = typer.Option(None),
    memory_limit: Optional[str] = typer.Option(None),
    dry_run: bool = typer.Option(False, help="Log patches instead of applying them"),
) -> None:
    """Update resource limits or annotations of a namespace."""
    params: Dict[str, Any] = {
        "namespace_name": name,
        "annotations": _parse_annotations(annotation),
        "dry_run": dry_run,
    }
    limits = _resource_limits(cpu_request, cpu_limit, memory_request, memory_limit)
    if limits:
        params["resource_limits"] = limits
    workflow = _run(
        ctx, lambda service: _start_and_wait(service, service.start_namespace_update, params)
    )
    _finish(workflow)


@namespace_app.command("delete")
def namespace_delete(
    ctx: typer.Context,
    name: str,
    force: bool = typer.Option(False),
    dry_run: bool = typer.Option(False, help="Log deletions instead of performing them"),
) -> None:
    """Delete a namespace and the objects idpflow created in it."""
    params = {"namespace_name": name, "force": force, "dry_run": dry_run}
    workflow = _run(
        ctx, lambda service: _start_and_wait(service, service.start_namespace_deletion, params)
    )
    _finish(workflow)


@namespace_app.command("list")
def namespace_list(ctx: typer.Context) -> None:
    """List the namespaces idpflow manages on the cluster."""
    namespaces = _run(ctx, lambda service: service.list_namespaces())
    if not namespaces:
        typer.echo("No namespaces found")
        return
    for record in namespaces:
        typer.echo(f"{record.name}\t{record.phase or '-'}\t{record.description}")


@namespace_app.command("status")
def namespace_status(ctx: typer.Context, name: str) -> None:
    """Check that a namespace and its limit range and network policy are in place."""
    status = _run(ctx, lambda service: service.get_namespace_status(name))
    color = typer.colors.GREEN if status.health == "Healthy" else typer.colors.YELLOW
    typer.secho(f"Namespace {status.name}: {status.health}", fg=color)
    typer.echo(f"  Phase: {status.phase or 'not on cluster'}")
    typer.echo(f"  LimitRange: {status.limit_range}")
    typer.echo(f"  NetworkPolicy: {status.network_policy}")


@namespace_app.command("manifests")
def namespace_manifests(ctx: typer.Context, name: str) -> None:
    """Print the manifests idpflow applies for a namespace as YAML."""
    manifests = _run(ctx, lambda service: service.preview_namespace_manifests(name))
    documents = [manifest for manifest in manifests.values() if manifest is not None]
    typer.echo(yaml.safe_dump_all(documents, sort_keys=False), nl=False)


# ----------------------------------------------------------------------
# Workflows
@workflow_app.command("list")
def workflow_list(
    ctx: typer.Context,
    status: Optional[WorkflowStatus] = typer.Option(None, help="Only show this status"),
    limit: Optional[int] = typer.Option(None),
) -> None:
    """
    List workflows with their current status.

    Example:
        idpflow workflow list --status running
        # Output: 3f2b...    cluster-provisioning-demo    running
    """
    workflows = _run(ctx, lambda service: service.list_workflows(status=status, limit=limit))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.name}\t{wf.status.value}")


@workflow_app.command("show")
def workflow_show(ctx: typer.Context, workflow_id: str) -> None:
    """Show a workflow and the status of each of its steps."""
    details = _run(ctx, lambda service: service.get_details(workflow_id))
    _echo_workflow(details.workflow)
    for step in details.steps:
        suffix = " (skipped)" if step.skipped else ""
        timing = (
            f" ({step.start_time} -> {step.end_time})"
            if step.start_time or step.end_time
            else ""
        )
        typer.echo(f"- {step.name}: {step.status.value}{suffix}{timing}")
        if step.error:
            typer.echo(f"    {step.error}")


@workflow_app.command("logs")
def workflow_logs(ctx: typer.Context, workflow_id: str) -> None:
    """Print the progress log of a workflow."""
    entries = _run(ctx, lambda service: service.get_logs(workflow_id))
    if not entries:
        typer.echo("No log entries")
        return
    for entry in entries:
        typer.echo(f"{entry.timestamp.isoformat()} [{entry.level.value.upper()}] {entry.message}")


@workflow_app.command("abort")
def workflow_abort(
    ctx: typer.Context,
    workflow_id: str,
    reason: str = typer.Option("Aborted by user", help="Recorded on the workflow"),
) -> None:
    """Abort a running workflow."""
    workflow = _run(ctx, lambda service: service.abort_workflow(workflow_id, reason))
    _echo_workflow(workflow)


@workflow_app.command("retry")
def workflow_retry(ctx: typer.Context, workflow_id: str) -> None:
    """Retry a failed workflow under the same id."""

    async def retry(service: WorkflowService) -> Workflow:
        workflow = await service.retry_workflow(workflow_id)
        return await service.wait_for(workflow.id)

    workflow = _run(ctx, retry)
    _echo_workflow(workflow)
    _finish(workflow)


@workflow_app.command("sync")
def workflow_sync(
    ctx: typer.Context,
    watch: bool = typer.Option(False, help="Keep polling until interrupted"),
) -> None:
    """Reconcile workflows delegated to Argo with their remote state."""

    async def sync(service: WorkflowService) -> None:
        if watch and service.mirror is not None:
            await service.mirror.run()
            return
        report = await service.sync_remote()
        typer.echo(
            f"Checked {report.checked} workflows, {len(report.changed)} changed, "
            f"{len(report.errors)} errors"
        )
        for workflow_id, error in report.errors.items():
            typer.secho(f"  {workflow_id}: {error}", fg=typer.colors.RED)

    _run(ctx, sync)


@app.command("node-pools")
def node_pools(
    ctx: typer.Context,
    details: bool = typer.Option(False, "--details", help="Show use cases and trade-offs"),
) -> None:
    """List the node pool profiles clusters can be created with."""

    async def load(service: WorkflowService) -> Any:
        return service.node_pool_configurations(), service.node_pool_recommendations()

    pools, recommendations = _run(ctx, load)
    if not details:
        for name, pool in pools.items():
            typer.echo(f"{name}\t{pool.primary_vm_size}/{pool.secondary_vm_size}\t{pool.description}")
        return
    for rec in recommendations:
        typer.echo(f"{rec.display_name} ({rec.node_pool_type}, {rec.cost_tier} cost)")
        typer.echo(f"  {rec.use_case}")
        for pro in rec.pros:
            typer.echo(f"  + {pro}")
        for con in rec.cons:
            typer.echo(f"  - {con}")


@app.command("locations")
def locations(ctx: typer.Context) -> None:
    """List the Azure regions clusters can be created in."""

    async def load(service: WorkflowService) -> Any:
        return service.available_locations()

    for location in _run(ctx, load):
        marker = " (recommended)" if location.recommended else ""
        typer.echo(f"{location.name}\t{location.display_name}{marker}\t{location.description}")


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
