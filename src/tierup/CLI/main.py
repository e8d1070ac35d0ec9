# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Command Line Interface for tierup.
"""
import itertools
import logging
import threading

import click

from ..DRIVERS.docker_driver import DockerDriver
from ..DRIVERS.memory_driver import MemoryDriver
from ..DRIVERS.process_driver import ProcessDriver
from ..DRIVERS.runtime_driver import RuntimeDriver
from ..errors import SpecError, TierupError
from ..MANAGERS.deployment_orchestrator import DeploymentOrchestrator
from ..MODELS.orchestration_config import DriverKind, FailurePolicy, OrchestrationConfig
from ..MODELS.topology import Topology
from ..PARSERS.topology_loader import TopologyLoader
from ..REPORTING.status_reporter import StatusEvent, StatusReporter, render_outcome_table
from ..STATE.state_store import JsonStateStore

EXIT_CONVERGED = 0
EXIT_FAILED = 1
EXIT_SPEC_ERROR = 2


def build_driver(kind: DriverKind, base_dir: str = ".") -> RuntimeDriver:
    if kind == DriverKind.PROCESS:
        return ProcessDriver(base_dir=base_dir)
    if kind == DriverKind.MEMORY:
        return MemoryDriver()
    return DockerDriver()


def build_orchestrator(config: OrchestrationConfig) -> DeploymentOrchestrator:
    return DeploymentOrchestrator(
        driver=build_driver(config.driver),
        store=JsonStateStore(config.state_path),
        config=config.reconciler,
        refresh=config.refresh,
    )


def format_event(event: StatusEvent) -> str:
    service = event.service or "-"
    text = f"{service:15} | {event.kind.value}"
    if event.message:
        text += f": {event.message}"
    return text


def load_topology(ctx: click.Context, spec_path: str) -> Topology:
    try:
        return TopologyLoader().load_file(spec_path)
    except SpecError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_SPEC_ERROR)


def driver_options(command):
    command = click.option('--state', 'state_path', default=None, help='State file path')(command)
    command = click.option('--driver', type=click.Choice([k.value for k in DriverKind]),
                           default=None, help='Runtime driver')(command)
    command = click.option('--spec', '-f', 'spec_path', default=None, help='Topology file path')(command)
    return command


def resolve_config(ctx: click.Context, spec_path, driver, state_path, **reconciler) -> OrchestrationConfig:
    config: OrchestrationConfig = ctx.obj['config']
    update = {}
    if spec_path:
        update['spec_path'] = spec_path
    if driver:
        update['driver'] = DriverKind(driver)
    if state_path:
        update['state_path'] = state_path
    overrides = {k: v for k, v in reconciler.items() if v is not None}
    if overrides:
        update['reconciler'] = config.reconciler.model_copy(update=overrides)
    return config.model_copy(update=update)


@click.group()
@click.option('--env-file', default=None, help='Read TIERUP_* settings from this .env file')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def cli(ctx, env_file, verbose):
    """
    tierup - declarative deployment orchestrator.

    Brings the services declared in a topology file to their desired running state.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(name)s %(levelname)s %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj['config'] = OrchestrationConfig.from_env(env_file)


@cli.command()
@driver_options
@click.option('--dry-run', is_flag=True, help='Show what would change without touching the runtime')
@click.option('--abort-on-failure', is_flag=True, help='Stop after the first batch with a failed service')
@click.option('--max-attempts', type=click.IntRange(min=1), default=None, help='Attempts per runtime call')
@click.option('--no-refresh', is_flag=True, help='Skip inspecting recorded services for drift')
@click.pass_context
def apply(ctx, spec_path, driver, state_path, dry_run, abort_on_failure, max_attempts, no_refresh):
    """Apply the topology and converge all services."""
    config = resolve_config(
        ctx, spec_path, driver, state_path,
        max_attempts=max_attempts,
        failure_policy=FailurePolicy.ABORT if abort_on_failure else None,
    )
    if no_refresh:
        config = config.model_copy(update={'refresh': False})

    topology = load_topology(ctx, config.spec_path)
    orchestrator = build_orchestrator(config)
    reporter = StatusReporter()
    result = {}

    def run():
        try:
            result['record'] = orchestrator.apply(topology, reporter=reporter, dry_run=dry_run)
        except Exception as e:
            result['error'] = e

    worker = threading.Thread(target=run, name="tierup-apply", daemon=True)
    worker.start()
    printed = 0
    try:
        for event in reporter:
            click.echo(format_event(event))
            printed += 1
    except KeyboardInterrupt:
        click.echo("\nCancelling after the current batch...")
        orchestrator.cancel()
        # a new iteration replays from the first event
        for event in itertools.islice(reporter, printed, None):
            click.echo(format_event(event))
    worker.join()

    error = result.get('error')
    if isinstance(error, SpecError):
        click.echo(f"Error: {error}", err=True)
        ctx.exit(EXIT_SPEC_ERROR)
    if isinstance(error, TierupError):
        click.echo(f"Error: {error}", err=True)
        ctx.exit(EXIT_FAILED)
    if error is not None:
        raise error

    record = result['record']
    click.echo("")
    click.echo(render_outcome_table(record))
    if dry_run or record.converged:
        ctx.exit(EXIT_CONVERGED)
    ctx.exit(EXIT_FAILED)


@cli.command()
@driver_options
@click.pass_context
def plan(ctx, spec_path, driver, state_path):
    """Show the batches services would be started in."""
    config = resolve_config(ctx, spec_path, driver, state_path)
    topology = load_topology(ctx, config.spec_path)
    try:
        execution_plan = build_orchestrator(config).plan(topology)
    except SpecError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_SPEC_ERROR)

    click.echo(f"Topology: {config.spec_path}")
    click.echo(f"Services: {len(topology)}")
    click.echo(f"Batches: {len(execution_plan)}")
    for index, batch in enumerate(execution_plan.batches):
        click.echo(f"  Batch {index}: {', '.join(batch)}")


@cli.command()
@driver_options
@click.pass_context
def ps(ctx, spec_path, driver, state_path):
    """List service status"""
    config = resolve_config(ctx, spec_path, driver, state_path)
    try:
        status = build_orchestrator(config).status()
    except TierupError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_FAILED)

    if not status:
        click.echo(f"No services recorded in {config.state_path}.")
        return
    click.echo(f"{'SERVICE':15} {'STATUS':10} {'HEALTH':10} HANDLE")
    click.echo("-" * 50)
    for name in sorted(status):
        state = status[name]
        label = "running" if state.running else "stopped"
        click.echo(f"{name:15} {label:10} {state.health.value:10} {state.handle or ''}")


@cli.command()
@driver_options
@click.pass_context
def down(ctx, spec_path, driver, state_path):
    """Stop all recorded services."""
    config = resolve_config(ctx, spec_path, driver, state_path)
    reporter = StatusReporter()
    reporter.subscribe(lambda event: click.echo(format_event(event)))
    try:
        record = build_orchestrator(config).down(reporter)
    except TierupError as e:
        click.echo(f"Error: {e}", err=True)
        ctx.exit(EXIT_FAILED)

    if record.outcomes:
        click.echo(render_outcome_table(record))
        ctx.exit(EXIT_FAILED)
    click.echo("Services stopped.")


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
