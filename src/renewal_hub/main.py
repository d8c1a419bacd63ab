"""CLI entrypoint for renewal-hub."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from renewal_hub import __version__
from renewal_hub.allocation.models import DistributionMode
from renewal_hub.controllers import (
    DbCommand,
    DetectorRunCommand,
    DistributeCommand,
    InspectTaskCommand,
    ListTasksCommand,
    RenewalHubCliController,
    ServeCommand,
    SystemCommand,
)
from renewal_hub.errors import RenewalHubError
from renewal_hub.tasks.models import TaskKind, TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RenewalHubCliController()

CommandT = TypeVar("CommandT")

db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="renewal-hub")
def renewal_hub() -> None:
    """Credential renewal scheduler and worker gateway."""


@renewal_hub.command("serve")
@db_path_option
@click.option("--host", default=None, help="Bind address (RENEWAL_HUB_HOST).")
@click.option("--port", type=click.IntRange(min=1, max=65535), default=None, help="Bind port.")
@click.option(
    "--detector/--no-detector",
    default=None,
    help="Run the renewal detector thread next to the API.",
)
def serve(db_path: Path | None, host: str | None, port: int | None, detector: bool | None) -> None:
    """Serve the worker gateway and operator API."""

    try:
        CONTROLLER.serve(ServeCommand(db_path=db_path, host=host, port=port, detector=detector))
    except ValueError as error:
        raise click.ClickException(str(error)) from error


@renewal_hub.group()
def detector() -> None:
    """Renewal detector commands."""


@detector.command("tick")
@db_path_option
def detector_tick(db_path: Path | None) -> None:
    """Run one detection pass."""

    _run(CONTROLLER.detector_tick, DbCommand(db_path=db_path))


@detector.command("run")
@db_path_option
@click.option(
    "--interval",
    "interval_seconds",
    type=click.FloatRange(min=0.1),
    default=None,
    help="Seconds between ticks (defaults to RENEWAL_HUB_DETECTOR_TICK_SECONDS).",
)
def detector_run(db_path: Path | None, interval_seconds: float | None) -> None:
    """Run the detector loop until interrupted."""

    _run(
        CONTROLLER.detector_run,
        DetectorRunCommand(db_path=db_path, interval_seconds=interval_seconds),
    )


@renewal_hub.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("list")
@db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus]),
    default=None,
    help="Filter by task status.",
)
@click.option(
    "--kind",
    type=click.Choice([kind.value for kind in TaskKind]),
    default=None,
    help="Filter by task kind.",
)
@click.option("--limit", type=click.IntRange(min=1, max=500), default=50, show_default=True)
def tasks_list(db_path: Path | None, status: str | None, kind: str | None, limit: int) -> None:
    """List recent tasks."""

    _run(
        CONTROLLER.list_tasks,
        ListTasksCommand(db_path=db_path, status=status, kind=kind, limit=limit),
    )


@tasks.command("inspect")
@db_path_option
@click.argument("task_id")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show one task with its event trail."""

    _run(CONTROLLER.inspect_task, InspectTaskCommand(db_path=db_path, task_id=task_id))


@tasks.command("reap")
@db_path_option
def tasks_reap(db_path: Path | None) -> None:
    """Return abandoned leases to the pending pool."""

    _run(CONTROLLER.reap_tasks, DbCommand(db_path=db_path))


@renewal_hub.group()
def systems() -> None:
    """System registry commands."""


@systems.command("list")
@db_path_option
def systems_list(db_path: Path | None) -> None:
    """List systems with their renewal state."""

    _run(CONTROLLER.list_systems, DbCommand(db_path=db_path))


@systems.command("renew")
@db_path_option
@click.argument("system_id", type=int)
def systems_renew(db_path: Path | None, system_id: int) -> None:
    """Request a renewal for one system now."""

    _run(CONTROLLER.renew_system, SystemCommand(db_path=db_path, system_id=system_id))


@renewal_hub.command("distribute")
@db_path_option
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in DistributionMode]),
    required=True,
    help="one-per-point or fixed-capacity.",
)
@click.option(
    "--points-per-system",
    type=click.IntRange(min=1),
    default=None,
    help="Per-system cap for fixed-capacity mode.",
)
@click.option(
    "--reserved-system-id",
    "reserved_system_ids",
    type=int,
    multiple=True,
    help="Reserved system id to distribute onto. Can be repeated.",
)
def distribute(
    db_path: Path | None,
    mode: str,
    points_per_system: int | None,
    reserved_system_ids: tuple[int, ...],
) -> None:
    """Rebind every active point onto systems."""

    _run(
        CONTROLLER.distribute,
        DistributeCommand(
            db_path=db_path,
            mode=mode,
            points_per_system=points_per_system,
            reserved_system_ids=reserved_system_ids,
        ),
    )


@renewal_hub.command("sync")
@db_path_option
def sync(db_path: Path | None) -> None:
    """Push every system and point binding to the external directory."""

    _run(CONTROLLER.sync, DbCommand(db_path=db_path))


@renewal_hub.group()
def config() -> None:
    """Configuration commands."""


@config.command("show")
@db_path_option
def config_show(db_path: Path | None) -> None:
    """Show automation config and scheduler settings."""

    _run(CONTROLLER.show_config, DbCommand(db_path=db_path))


def _run(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except RenewalHubError as error:
        raise click.ClickException(error.message) from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    renewal_hub()
