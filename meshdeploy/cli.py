"""
meshdeploy CLI - Command line interface for blue/green cutovers.
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from rich.progress import Progress, SpinnerColumn, TextColumn

from .aws import AwsClients
from .config import Config, get_config, set_config
from .deployment import (
    DeployOptions,
    DeploymentState,
    GarbageCollector,
    LockManager,
    Orchestrator,
    PipelineReporter,
    PollPolicy,
    TrafficSwitch,
)
from .errors import ConfigurationError
from .spec import DeploymentSpec, EnvironmentTable

console = Console()


def setup_logging(verbose: bool = False):
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler()]
    )
    # botocore is chatty at DEBUG
    logging.getLogger("botocore").setLevel(logging.WARNING)


def run_async(coro):
    """Run an async function."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        return loop.run_until_complete(coro)


def make_clients(config: Config) -> AwsClients:
    return AwsClients.create(region=config.region, profile=config.profile)


def _load_spec(config: Config, environment: Optional[str], spec_file: Optional[str]) -> DeploymentSpec:
    if spec_file:
        return DeploymentSpec.from_file(Path(spec_file))
    if not environment:
        raise click.UsageError("Give an ENVIRONMENT name or --spec-file")
    return EnvironmentTable.load(config.environments_path).get(environment)


def _fail(error: Exception, verbose: bool) -> None:
    if isinstance(error, click.ClickException):
        raise error
    console.print(f"\n[bold red]✗ {type(error).__name__}:[/bold red] {error}")
    if verbose:
        console.print_exception()
    sys.exit(1)


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.option('--data-dir', type=click.Path(), help='Data directory')
@click.pass_context
def main(ctx, verbose, data_dir):
    """🚦 meshdeploy - blue/green cutover for App Mesh gRPC services"""
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    setup_logging(verbose)

    if data_dir:
        set_config(Config.load(Path(data_dir)))
    ctx.obj['config'] = get_config()


@main.command()
@click.argument('environment', required=False)
@click.option('--spec-file', '-f', type=click.Path(exists=True), help='Inline spec (YAML or JSON)')
@click.option('--job-id', help='CodePipeline job to report the outcome to')
@click.option('--lock/--no-lock', 'use_lock', default=None, help='Hold the deployment lock')
@click.option('--publish/--no-publish', 'publish', default=None, help='Publish the node to SSM')
@click.option('--discover-network', is_flag=True, help='Take subnets from the running service')
@click.option('--release-on-failure', is_flag=True, help='Release the lock if the run fails')
@click.option('--timeout', type=float, help='Health gate deadline in seconds')
@click.pass_context
def deploy(ctx, environment, spec_file, job_id, use_lock, publish, discover_network,
           release_on_failure, timeout):
    """Cut ENVIRONMENT over to a freshly provisioned generation."""
    config: Config = ctx.obj['config']
    verbose = ctx.obj['verbose']

    try:
        spec = _load_spec(config, environment, spec_file)
    except ConfigurationError as e:
        _fail(e, verbose)

    options = DeployOptions.from_config(config)
    if use_lock is not None:
        options.use_lock = use_lock
    if publish is not None:
        options.publish_parameter = publish
    if discover_network:
        options.discover_network = True
    if release_on_failure:
        options.release_lock_on_failure = True

    policy = PollPolicy.from_config(config.poll)
    if timeout is not None:
        policy.timeout = timeout

    clients = make_clients(config)
    reporter = PipelineReporter(clients.codepipeline, job_id) if job_id else None
    orchestrator = Orchestrator(
        spec, clients, config=config, options=options, policy=policy, reporter=reporter
    )

    console.print(f"\n[bold blue]🚦 Deploying {spec.service_name}[/bold blue] "
                  f"[dim]({spec.lock_key})[/dim]\n")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        disable=verbose,
    ) as progress:
        task = progress.add_task("Starting...", total=None)

        def on_state(state: DeploymentState):
            progress.update(task, description=state.value.replace("_", " ").capitalize())

        orchestrator.on_state = on_state
        try:
            result = run_async(orchestrator.run())
        except Exception as e:
            progress.stop()
            _fail(e, verbose)

    console.print(f"[bold green]✓ Traffic switched to {result.node_name}[/bold green]\n")

    table = Table(show_header=False, box=None)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Mesh node", f"[cyan]{result.node_name}[/cyan]")
    table.add_row("Task definition", result.task_definition_arn or "-")
    table.add_row("Task set", result.task_set_arn or "-")
    if result.cleanup:
        table.add_row("Removed nodes", ", ".join(result.cleanup.deleted_nodes) or "-")
    console.print(table)


@main.command('envs')
@click.pass_context
def list_envs(ctx):
    """List known environments."""
    config: Config = ctx.obj['config']
    try:
        envs = EnvironmentTable.load(config.environments_path)
    except ConfigurationError as e:
        _fail(e, ctx.obj['verbose'])

    if not len(envs):
        console.print(f"[yellow]No environments defined in {config.environments_path}[/yellow]")
        return

    table = Table()
    table.add_column("Environment", style="cyan")
    table.add_column("Mesh")
    table.add_column("Cluster")
    table.add_column("Service")
    table.add_column("Task family")
    table.add_column("Subnets", justify="right")

    for name in envs.names():
        spec = envs.get(name)
        table.add_row(
            name,
            spec.mesh_name,
            spec.cluster_name,
            spec.compute_service_name,
            spec.task_definition_family,
            str(len(spec.private_subnets)),
        )

    console.print(table)


@main.command()
@click.argument('environment', required=False)
@click.option('--spec-file', '-f', type=click.Path(exists=True), help='Inline spec (YAML or JSON)')
@click.pass_context
def route(ctx, environment, spec_file):
    """Show where the route of ENVIRONMENT sends traffic."""
    config: Config = ctx.obj['config']
    try:
        spec = _load_spec(config, environment, spec_file)
        targets = run_async(TrafficSwitch(make_clients(config), spec).current_targets())
    except Exception as e:
        _fail(e, ctx.obj['verbose'])

    if not targets:
        console.print("[yellow]Route has no weighted targets.[/yellow]")
        return

    table = Table(title=f"{spec.virtual_router_name}/{spec.route_name}")
    table.add_column("Virtual node", style="cyan")
    table.add_column("Weight", justify="right")
    for target in targets:
        table.add_row(target.get("virtualNode", "?"), str(target.get("weight", 0)))
    console.print(table)


@main.command()
@click.argument('environment', required=False)
@click.option('--spec-file', '-f', type=click.Path(exists=True), help='Inline spec (YAML or JSON)')
@click.option('--dry-run', is_flag=True, help='Only show what would be removed')
@click.pass_context
def gc(ctx, environment, spec_file, dry_run):
    """Remove mesh nodes and task sets the route no longer uses."""
    config: Config = ctx.obj['config']
    try:
        spec = _load_spec(config, environment, spec_file)
        collector = GarbageCollector(make_clients(config), spec)
        if dry_run:
            plan = run_async(collector.plan())
            deleted_nodes, failures = [], []
        else:
            report = run_async(collector.collect())
            plan, deleted_nodes, failures = report.plan, report.deleted_nodes, report.failures
    except Exception as e:
        _fail(e, ctx.obj['verbose'])

    if plan.skipped:
        console.print("[yellow]Route has no live targets; nothing collected.[/yellow]")
        return

    console.print(f"\n[bold]Used:[/bold] {', '.join(plan.used_nodes) or '-'}")
    console.print(f"[bold]Unused:[/bold] {', '.join(plan.unused_nodes) or '-'}")
    console.print(f"[bold]Task sets:[/bold] {len(plan.task_sets)}")
    if dry_run:
        console.print("\n[dim]Dry run, nothing removed.[/dim]")
    else:
        console.print(f"\n[green]Removed {len(deleted_nodes)} node(s)[/green]")
        for failure in failures:
            console.print(f"  [red]✗ {failure}[/red]")


@main.group()
def lock():
    """Inspect and clear deployment locks."""
    pass


@lock.command('status')
@click.argument('key')
@click.pass_context
def lock_status(ctx, key):
    """Show the lock record for KEY."""
    config: Config = ctx.obj['config']
    locks = LockManager(make_clients(config).dynamodb, config.lock_table)
    try:
        record = run_async(locks.status(key))
    except Exception as e:
        _fail(e, ctx.obj['verbose'])
    if not record:
        console.print(f"[green]{key} is unlocked[/green]")
        return
    console.print(f"[yellow]{key} is locked[/yellow]: {record.get('comment', '')}")


@lock.command('release')
@click.argument('key')
@click.option('--yes', is_flag=True, help='Do not ask for confirmation')
@click.pass_context
def lock_release(ctx, key, yes):
    """Force-release the lock for KEY."""
    config: Config = ctx.obj['config']
    if not yes and not click.confirm(f"Release lock '{key}'? Only do this if no run is active."):
        return
    locks = LockManager(make_clients(config).dynamodb, config.lock_table)
    try:
        run_async(locks.release(key))
    except Exception as e:
        _fail(e, ctx.obj['verbose'])
    console.print(f"[green]✓ Released {key}[/green]")


if __name__ == "__main__":
    main()
