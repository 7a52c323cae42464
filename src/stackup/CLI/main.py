"""
Command Line Interface for stackup.
"""
import os
import time

import click
import yaml
from pydantic import ValidationError

from ..errors import DescriptorError, StackupError
from ..MANAGERS.image_manager import PullPolicy
from ..MANAGERS.restart_monitor import RestartMonitor
from ..MANAGERS.service_orchestrator import ServiceOrchestrator
from ..PARSERS.compose_parser import ComposeParser
from ..RUNNERS.dependency_resolver import DependencyResolver
from ..RUNTIMES.base import ContainerRuntime
from ..RUNTIMES.docker_runtime import DockerRuntime
from ..RUNTIMES.memory_runtime import InMemoryRuntime
from ..RUNTIMES.process_runtime import ProcessRuntime
from ..settings import Settings
from ..UTILS.logging_setup import setup_cli_logging


DEFAULT_FILES = ("docker-compose.yaml", "docker-compose.yml", "compose.yaml", "compose.yml")
RUNTIMES = ("docker", "process", "memory")


def _fail(error):
    click.echo(f"Error: {error}", err=True)
    click.get_current_context().exit(1)


def _descriptor_path(ctx) -> str:
    path = ctx.obj['file']
    if path:
        return path
    for candidate in DEFAULT_FILES:
        if os.path.exists(candidate):
            return candidate
    raise DescriptorError(f"No descriptor found; tried {', '.join(DEFAULT_FILES)}")


def _load_config(ctx):
    if 'config' not in ctx.obj:
        parser = ComposeParser(project_name=ctx.obj['project_name'])
        ctx.obj['config'] = parser.parse(_descriptor_path(ctx))
    return ctx.obj['config']


def _make_runtime(ctx) -> ContainerRuntime:
    settings: Settings = ctx.obj['settings']
    name = ctx.obj['runtime']
    if name == "docker":
        return DockerRuntime()
    if name == "process":
        base_dir = os.path.dirname(os.path.abspath(_descriptor_path(ctx)))
        return ProcessRuntime(base_dir=base_dir, state_dir=settings.state_dir)
    if name == "memory":
        return InMemoryRuntime()
    raise click.UsageError(f"Unknown runtime '{name}'; choose one of {', '.join(RUNTIMES)}")


@click.group()
@click.option('--file', '-f', default=None, help='Descriptor path (default: docker-compose.yaml)')
@click.option('--project-name', '-p', default=None, help='Project name (default: descriptor name or directory)')
@click.option('--runtime', type=click.Choice(RUNTIMES), default=None, help='Container runtime to drive')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False),
              default=None, help='Logging verbosity')
@click.pass_context
def cli(ctx, file, project_name, runtime, log_level):
    """
    stackup - declarative multi-service deployments.

    Reads a compose-style descriptor and brings its networks, volumes and
    services up in dependency order.
    """
    ctx.ensure_object(dict)
    env_dir = os.path.dirname(os.path.abspath(file)) if file else os.getcwd()
    try:
        settings = Settings.load(env_file=os.path.join(env_dir, ".env"))
    except ValidationError as e:
        raise click.UsageError(f"Invalid STACKUP_* setting: {e}")
    setup_cli_logging(log_level or settings.log_level)

    ctx.obj['file'] = file
    ctx.obj['settings'] = settings
    ctx.obj['project_name'] = project_name or settings.project_name
    ctx.obj['runtime'] = runtime or settings.runtime


@cli.command()
@click.option('--detach', '-d', is_flag=True, help='Run in background')
@click.option('--no-parallel', is_flag=True, help='Start services one at a time')
@click.option('--pull', type=click.Choice([p.value for p in PullPolicy]), default=None,
              help='When to pull pre-built images')
@click.option('--max-restarts', type=click.IntRange(min=1), default=None,
              help='Restart ceiling for services without max_attempts')
@click.option('--timeout', type=click.FloatRange(min=0, min_open=True), default=None,
              help='Seconds a service may take to reach running')
@click.pass_context
def up(ctx, detach, no_parallel, pull, max_restarts, timeout):
    """Start services defined in the descriptor."""
    settings: Settings = ctx.obj['settings']
    try:
        config = _load_config(ctx)
        runtime = _make_runtime(ctx)
    except StackupError as e:
        _fail(e)
        return

    if detach and not runtime.supports_detach():
        runtime.close()
        raise click.UsageError(f"The {runtime.name} runtime cannot run services detached")

    orchestrator = ServiceOrchestrator(
        config,
        runtime,
        pull_policy=PullPolicy(pull) if pull else settings.pull_policy,
        max_restarts=max_restarts or settings.max_restarts,
        start_timeout=timeout or settings.start_timeout,
        poll_interval=settings.poll_interval,
        parallel=settings.parallel and not no_parallel,
        max_workers=settings.max_workers,
    )

    try:
        result = orchestrator.up(detach=detach)
    except StackupError as e:
        runtime.close()
        _fail(e)
        return

    if not result.ok:
        for name, cause in result.skipped.items():
            click.echo(f"Skipped {name}: dependency {cause} failed", err=True)
        # Started services stay up for inspection; `down` removes them
        runtime.close()
        _fail(result.first_error)
        return

    click.echo(f"Started {len(result.started)} services: {', '.join(result.order)}")
    if detach:
        runtime.close()
        return

    monitor = RestartMonitor(
        orchestrator,
        interval=max(settings.poll_interval, 0.5),
        on_failure=lambda name: click.echo(f"Service {name} failed and will not be restarted", err=True),
    )
    monitor.start()
    click.echo("Running... Press Ctrl+C to stop.")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        click.echo("\nStopping services...")
    finally:
        monitor.stop()
        orchestrator.down()
        runtime.close()


@cli.command()
@click.option('--volumes', '-v', is_flag=True, help='Also remove named volumes')
@click.pass_context
def down(ctx, volumes):
    """Stop and remove services, then their networks."""
    try:
        config = _load_config(ctx)
        runtime = _make_runtime(ctx)
    except StackupError as e:
        _fail(e)
        return
    try:
        stopped = ServiceOrchestrator(config, runtime).down(remove_volumes=volumes)
    except StackupError as e:
        _fail(e)
        return
    finally:
        runtime.close()
    click.echo(f"Stopped {len(stopped)} services.")


@cli.command()
@click.pass_context
def ps(ctx):
    """List service status."""
    try:
        config = _load_config(ctx)
        runtime = _make_runtime(ctx)
    except StackupError as e:
        _fail(e)
        return
    try:
        instances = ServiceOrchestrator(config, runtime).ps()
    except StackupError as e:
        _fail(e)
        return
    finally:
        runtime.close()

    click.echo(f"{'SERVICE':20} {'CONTAINER':14} {'STATE':12} {'RESTARTS':8}")
    click.echo("-" * 57)
    for instance in instances:
        click.echo(
            f"{instance.service_name:20} {instance.short_id:14} "
            f"{instance.state.value:12} {instance.restart_count:<8}"
        )


@cli.command()
@click.pass_context
def config(ctx):
    """Validate the descriptor and print it normalized, with the start order."""
    try:
        cfg = _load_config(ctx)
        order = DependencyResolver().resolve_order(cfg)
    except StackupError as e:
        _fail(e)
        return

    data = cfg.model_dump(mode="json", exclude_none=True)
    document = {
        'name': data['project_name'],
        'services': {name: _without_name(svc) for name, svc in data['services'].items()},
        'networks': {name: _without_name(net) for name, net in data['networks'].items()},
        'volumes': {name: _without_name(vol) for name, vol in data['volumes'].items()},
    }
    click.echo(yaml.safe_dump(document, sort_keys=False), nl=False)
    click.echo(f"# start order: {', '.join(order)}")


def _without_name(entry):
    return {key: value for key, value in entry.items() if key != 'name'}


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
