"""Typer CLI wiring for the board reconciliation engine."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

import typer

from boardsync import __version__
from boardsync.engine import ReconciliationPass, prepare_pass
from boardsync.errors import CollectionError, ConfigurationError, SnapshotError
from boardsync.logging import configure_logging
from boardsync.platform.base import BoardPlatform
from boardsync.rules.store import SECTION_ORDER

app = typer.Typer(help="Rule-driven reconciliation for a GitHub Projects board")

DEFAULT_RULES_PATH = Path("config/rules.yml")
EXIT_FATAL = 2


def _version_callback(value: bool) -> None:
    """Print the board-sync version when requested."""

    if value:
        typer.echo(f"board-sync {__version__}")
        raise typer.Exit()


@app.callback()
def _main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the board-sync version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str = typer.Option(
        "",
        "--log-level",
        help="Set the log level (e.g. info, warning, debug). Overrides BOARDSYNC_LOG_LEVEL.",
    ),
) -> None:
    """Global callback to wire shared options like --version."""

    configure_logging(log_level or None)

    return None


def _rules_option() -> Path:
    return typer.Option(
        DEFAULT_RULES_PATH,
        "--rules",
        "-c",
        envvar="BOARDSYNC_RULES",
        dir_okay=False,
        help="Rule document to apply.",
    )


def build_platform(environment: Mapping[str, str]) -> BoardPlatform:
    """Create the live GitHub platform from the environment."""

    token = environment.get("GITHUB_TOKEN")
    if not token:
        raise ConfigurationError("GITHUB_TOKEN is not set")
    return BoardPlatform.create_platform("github", token=token)


def _fail(message: str) -> None:
    typer.secho(message, fg=typer.colors.RED, err=True)
    raise typer.Exit(code=EXIT_FATAL)


@app.command()
def run(
    rules: Path = _rules_option(),
    dry_run: bool = typer.Option(
        False, "--dry-run", help="Evaluate and plan without writing to the board."
    ),
    top: int = typer.Option(5, "--top", min=0, help="Items listed per outcome category."),
) -> None:
    """Run one reconciliation pass against the board."""

    environment = dict(os.environ)
    try:
        platform = build_platform(environment)
    except ConfigurationError as exc:
        _fail(f"Configuration error: {exc}")

    try:
        result = ReconciliationPass(platform, environment).run(rules, dry_run=dry_run, top=top)
    except ConfigurationError as exc:
        _fail(f"Configuration error: {exc}")
    except SnapshotError as exc:
        _fail(f"Board snapshot failed: {exc}")
    except CollectionError as exc:
        _fail(f"Activity collection failed: {exc}")
    finally:
        platform.close()

    typer.echo(result.summary())
    if dry_run:
        for mutation in result.plan:
            typer.echo(f"[dry-run] {mutation.describe()}")
    raise typer.Exit(code=result.exit_code)


@app.command()
def check(rules: Path = _rules_option()) -> None:
    """Validate the rule document and resolve the monitored scope."""

    environment = dict(os.environ)
    try:
        rule_set, scope = prepare_pass(rules, environment)
    except ConfigurationError as exc:
        _fail(f"Configuration error: {exc}")

    typer.echo(f"Rule document {rules} is valid for board {rule_set.board_id}")
    typer.echo(f"Monitored users: {', '.join(scope.monitored_users)}")
    typer.echo(f"Monitored repositories: {', '.join(sorted(scope.monitored_repos))}")
    counts = rule_set.counts()
    for section in SECTION_ORDER:
        typer.echo(f"  {section}: {counts[section]} rules")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
