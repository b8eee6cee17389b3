"""
Command-line interface for the Indexer Toolkit
"""

import asyncio
import json
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from indexer_toolkit import __version__
from indexer_toolkit.core.config import Settings, configure_logging, get_settings
from indexer_toolkit.core.exceptions import RecoveryExhausted, StructuralError, ToolkitError
from indexer_toolkit.runtime import create_runtime
from indexer_toolkit.stack.catalog import write_default_stack
from indexer_toolkit.stack.loader import StackLoader
from indexer_toolkit.stack.models import RunResult, ServiceState
from indexer_toolkit.stack.sequencer import ServiceSequencer, dependency_waves
from indexer_toolkit.templating import ConfigTemplater, DockerHostResolver, StaticHostResolver

console = Console()

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_STRUCTURAL = 2
EXIT_EXHAUSTED = 3

_STATE_STYLE = {
    ServiceState.HEALTHY: "green",
    ServiceState.FAILED: "red",
    ServiceState.STARTING: "yellow",
    ServiceState.PENDING: "dim",
}

config_dir_option = click.option(
    "--config-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Directory containing stack.yaml",
)
workdir_option = click.option(
    "--workdir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Working directory for artifacts and local state (default: from settings)",
)


def _settings(**overrides) -> Settings:
    updates = {key: value for key, value in overrides.items() if value is not None}
    return get_settings().model_copy(update=updates)


def _templater(settings: Settings) -> ConfigTemplater:
    if settings.host_address:
        return ConfigTemplater(StaticHostResolver(settings.host_address))
    return ConfigTemplater(DockerHostResolver(fallback=settings.host_address_fallback))


def _sequencer(settings: Settings) -> ServiceSequencer:
    return ServiceSequencer(create_runtime(settings), _templater(settings), settings=settings)


def _print_error(error: ToolkitError) -> None:
    console.print(f"\n[bold red][ERROR][/bold red] {error.message}")
    if error.recovery_hint:
        console.print(f"[yellow]Recovery:[/yellow] {error.recovery_hint}")
    console.print()


def _print_result(result: RunResult) -> None:
    table = Table(title="Services", show_header=True, header_style="bold cyan")
    table.add_column("#", style="dim")
    table.add_column("Service", style="cyan")
    table.add_column("State", style="white")
    table.add_column("Ready after", style="white", justify="right")
    table.add_column("Error", style="dim")

    names = result.start_order + [n for n in result.per_service_status if n not in result.start_order]
    for position, name in enumerate(names, 1):
        status = result.per_service_status.get(name)
        if status is None:
            continue
        style = _STATE_STYLE.get(status.state, "white")
        elapsed = f"{status.elapsed_seconds:.1f}s" if status.elapsed_seconds is not None else "-"
        table.add_row(
            str(position) if name in result.start_order else "-",
            name,
            f"[{style}]{status.state.value}[/{style}]",
            elapsed,
            status.error or "",
        )

    console.print(table)
    console.print(f"Attempts: [bold]{result.attempts}[/bold]")
    for attempt in result.history:
        if attempt.destroyed_state:
            console.print(f"  attempt {attempt.index}: reset {', '.join(attempt.destroyed_state)}")


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Logging level (default: from settings)")
def main(log_level: str | None) -> None:
    """Indexer Toolkit - bring up a local blockchain indexing stack"""
    configure_logging(log_level or get_settings().log_level)


@main.command()
@config_dir_option
@click.option("--max-attempts", type=click.IntRange(min=1), default=None, help="Attempt cap (default: from settings)")
@click.option("--timeout", type=click.FloatRange(min=0, min_open=True), default=None, help="Per-service readiness timeout in seconds")
@workdir_option
@click.option("--host-address", default=None, help="Host address rendered into configs (skips detection)")
@click.option("--json", "as_json", is_flag=True, help="Print the run result as JSON")
def up(
    config_dir: Path,
    max_attempts: int | None,
    timeout: float | None,
    workdir: Path | None,
    host_address: str | None,
    as_json: bool,
) -> None:
    """Render configuration, start every service and validate the stack"""
    settings = _settings(working_dir=workdir, host_address=host_address)

    if not as_json:
        console.print(
            Panel.fit(
                "[bold cyan]Indexer Toolkit[/bold cyan]\n"
                f"Config: {config_dir}  Workdir: {settings.working_dir}",
                border_style="cyan",
            )
        )

    try:
        definition = StackLoader.load_from_dir(config_dir)
        sequencer = _sequencer(settings)
        result = asyncio.run(sequencer.run(definition, max_attempts=max_attempts, per_service_timeout=timeout))
    except StructuralError as e:
        _print_error(e)
        sys.exit(EXIT_STRUCTURAL)
    except ToolkitError as e:
        _print_error(e)
        sys.exit(EXIT_ERROR)

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _print_result(result)

    if result.success:
        if not as_json:
            console.print(f"\n[bold green][OK] Stack '{definition.name}' is up[/bold green]\n")
        sys.exit(EXIT_OK)

    if result.error is not None and not as_json:
        _print_error(result.error)
    if isinstance(result.error, RecoveryExhausted):
        sys.exit(EXIT_EXHAUSTED)
    sys.exit(EXIT_ERROR)


@main.command()
@config_dir_option
@click.option(
    "--out",
    type=click.Path(file_okay=False, path_type=Path),
    required=True,
    help="Directory that receives the rendered artifacts",
)
@click.option("--host-address", default=None, help="Host address rendered into configs (skips detection)")
def render(config_dir: Path, out: Path, host_address: str | None) -> None:
    """Render configuration artifacts without starting anything"""
    settings = _settings(host_address=host_address)
    try:
        definition = StackLoader.load_from_dir(config_dir)
        artifacts = _templater(settings).render_all(definition, out)
    except StructuralError as e:
        _print_error(e)
        sys.exit(EXIT_STRUCTURAL)

    for target, path in sorted(artifacts.files.items()):
        console.print(f"[green][OK][/green] {target} -> {path}")
    if artifacts.unused_variables:
        console.print(f"[yellow][WARN][/yellow] Unused variable(s): {', '.join(artifacts.unused_variables)}")
    console.print(f"\nHost address: [cyan]{artifacts.host_address}[/cyan]\n")


@main.command()
@config_dir_option
def plan(config_dir: Path) -> None:
    """Show the dependency waves the stack starts in"""
    try:
        definition = StackLoader.load_from_dir(config_dir)
        waves = dependency_waves(definition.services)
    except StructuralError as e:
        _print_error(e)
        sys.exit(EXIT_STRUCTURAL)

    table = Table(title=f"Start plan: {definition.name}", show_header=True, header_style="bold cyan")
    table.add_column("Wave", style="dim")
    table.add_column("Services", style="cyan")
    table.add_column("Depends on", style="white")
    for index, wave in enumerate(waves, 1):
        for name in wave:
            deps = sorted(definition.get_service(name).depends_on)
            table.add_row(str(index), name, ", ".join(deps) or "-")
    console.print(table)


@main.command()
@config_dir_option
@workdir_option
@click.option("--volumes", is_flag=True, help="Also destroy every service's persisted state")
def down(config_dir: Path, workdir: Path | None, volumes: bool) -> None:
    """Stop every service of the stack"""
    settings = _settings(working_dir=workdir)
    try:
        definition = StackLoader.load_from_dir(config_dir)
        stopped = asyncio.run(_sequencer(settings).down(definition, destroy_state=volumes))
    except StructuralError as e:
        _print_error(e)
        sys.exit(EXIT_STRUCTURAL)
    except ToolkitError as e:
        _print_error(e)
        sys.exit(EXIT_ERROR)

    for name in stopped:
        console.print(f"[green][OK][/green] stopped {name}")
    if volumes:
        console.print("[yellow]Persisted state destroyed[/yellow]")


@main.command()
@click.argument("directory", type=click.Path(file_okay=False, path_type=Path))
@click.option("--stack-name", default=None, help="Stack name (default: from settings)")
@click.option("--force", is_flag=True, help="Overwrite an existing stack.yaml")
def init(directory: Path, stack_name: str | None, force: bool) -> None:
    """Write the default indexing stack into DIRECTORY"""
    try:
        stack_file = write_default_stack(directory, stack_name or get_settings().stack_name, overwrite=force)
    except StructuralError as e:
        _print_error(e)
        sys.exit(EXIT_STRUCTURAL)

    console.print(f"[green][OK][/green] Stack written: [green]{stack_file}[/green]")
    console.print("\nNext steps:")
    console.print(f"  1. Review: [cyan]{stack_file}[/cyan]")
    console.print(f"  2. Run: [cyan]indexer-toolkit up --config-dir {directory}[/cyan]\n")


if __name__ == "__main__":
    main()
