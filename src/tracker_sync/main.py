"""CLI entrypoint for tracker-sync."""

import logging
from pathlib import Path

import rich_click as click

from tracker_sync import __version__
from tracker_sync.config import Settings
from tracker_sync.controllers import (
    CommandResult,
    DriftCommand,
    LinkCommand,
    MapCommand,
    ResolveCommand,
    StatesCommand,
    TrackerSyncCliController,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = TrackerSyncCliController()

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="tracker-sync")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def tracker_sync(verbose: bool) -> None:
    """Sync task store statuses with an external issue tracker."""

    level_name = Settings.from_env().log_level
    level = logging.DEBUG if verbose else getattr(logging, level_name, logging.WARNING)
    logging.basicConfig(level=level, format=LOG_FORMAT)


@tracker_sync.command("states")
@click.option("--include-archived", is_flag=True, help="Also list archived states.")
def states(include_archived: bool) -> None:
    """List workflow states of the configured team."""

    _finish(CONTROLLER.states(StatesCommand(include_archived=include_archived)))


@tracker_sync.command("resolve")
@click.argument("status")
@click.option("--no-cache", is_flag=True, help="Refetch workflow states before resolving.")
@click.option("--no-fuzzy", is_flag=True, help="Disable fuzzy name matching.")
def resolve(status: str, no_cache: bool, no_fuzzy: bool) -> None:
    """Resolve one task status (for example `in-progress`) to a workflow state id."""

    _finish(
        CONTROLLER.resolve(
            ResolveCommand(
                status=status,
                use_cache=not no_cache,
                allow_fuzzy_fallback=not no_fuzzy,
            ),
        ),
    )


@tracker_sync.command("map")
@click.option("--save", is_flag=True, help="Persist the resolved mapping to the config file.")
def map_statuses(save: bool) -> None:
    """Resolve every task status and print the complete mapping."""

    _finish(CONTROLLER.map(MapCommand(save=save)))


@tracker_sync.command("validate")
def validate() -> None:
    """Check the stored mapping is well formed and its ids still exist."""

    _finish(CONTROLLER.validate())


@tracker_sync.command("drift")
@click.option("--apply", "apply_updates", is_flag=True, help="Store names of renamed states.")
def drift(apply_updates: bool) -> None:
    """Compare the stored mapping with current workflow states."""

    _finish(CONTROLLER.drift(DriftCommand(apply=apply_updates)))


@tracker_sync.command("link")
@click.argument("task_id")
@click.option("--external-id", required=True, help="External issue id.")
@click.option("--url", required=True, help="External issue URL.")
@click.option("--identifier", default=None, help="Human-readable issue key, for example ENG-42.")
@click.option(
    "--tasks-path",
    type=click.Path(path_type=Path),
    default=None,
    help="Task store path. Defaults to TRACKER_SYNC_TASKS_PATH.",
)
def link(
    task_id: str,
    external_id: str,
    url: str,
    identifier: str | None,
    tasks_path: Path | None,
) -> None:
    """Record an external issue reference on a task."""

    _finish(
        CONTROLLER.link(
            LinkCommand(
                task_id=task_id,
                external_id=external_id,
                url=url,
                identifier=identifier,
                tasks_path=tasks_path,
            ),
        ),
    )


def _finish(result: CommandResult) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Command failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    tracker_sync()
