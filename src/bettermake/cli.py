# cli.py
from __future__ import annotations

import sys
from pathlib import Path

import click

from bettermake.config import parse_overrides
from bettermake.errors import ConfigParseError, WorkflowError
from bettermake.runner import (
    DEFAULT_WORKFLOW,
    Mode,
    build_config,
    build_registry,
    load_workflow,
    plan,
    run_target,
    working_directory,
)
from bettermake.ui.console import Console, set_console, get_console


def find_workflow_files(directory: Path = Path(".")) -> list[Path]:
    """
    Find all workflow files in a directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []

    default_workflow = directory / DEFAULT_WORKFLOW
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    for path in directory.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None, directory: str | None = None) -> Path:
    """
    Discover workflow file from argument or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()

    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  bettermake run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files(Path(directory or "."))

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                f"  {DEFAULT_WORKFLOW}",
                "  *_workflow.py",
            ],
            suggestion=f"Create a workflow file:\n  {DEFAULT_WORKFLOW}\n\nOr specify a workflow explicitly:\n  bettermake run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion=f"Specify a workflow explicitly:\n  bettermake run --workflow {DEFAULT_WORKFLOW}",
        )
        sys.exit(1)

    return workflow_files[0]


def _resource_limits(bindings: tuple) -> dict:
    limits = parse_overrides(bindings)
    for name, value in limits.items():
        if not isinstance(value, int) or isinstance(value, bool):
            raise ConfigParseError(source="--resources", message=f"{name} must be an integer, got {value!r}")
    return limits


def _fail(ctx, title: str, e: Exception) -> None:
    console = get_console()
    console.print_error(title, str(e))
    if ctx.obj.get("debug", False):
        import traceback
        traceback.print_exc()
    sys.exit(1)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.pass_context
def cli(ctx, debug):
    """bettermake: rebuild files from declarative rules, only when they are out of date."""
    console = Console(debug=debug)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.argument("targets", nargs=-1)
@click.option(
    "--workflow", "-s",
    default=None,
    help=f"Workflow file path (defaults to {DEFAULT_WORKFLOW} if present)",
)
@click.option("--cores", "-c", default=1, type=int, envvar="BETTERMAKE_CORES", show_default=True,
              help="Maximum number of cores used by concurrently running rules")
@click.option("--dry-run", "-n", is_flag=True, default=False, help="Show what would run without running it")
@click.option("--force", "-F", is_flag=True, default=False, help="Rerun every instance needed for the targets")
@click.option("--config", "overrides", multiple=True, metavar="KEY=VALUE",
              help="Override a config value (repeatable; values are parsed as YAML)")
@click.option("--configfile", "configfiles", multiple=True, type=click.Path(dir_okay=False),
              help="Extra config file(s), applied after the workflow's CONFIGFILE")
@click.option("--resources", multiple=True, metavar="NAME=INT",
              help="Global resource limit, e.g. --resources mem_mb=8000")
@click.option("--directory", "-d", default=None, type=click.Path(file_okay=False, exists=True),
              help="Working directory for paths in the workflow")
@click.option("--fail-fast/--no-fail-fast", default=False, show_default=True,
              help="Stop starting new rules after the first failure")
@click.option("--quiet", "-q", is_flag=True, default=False, help="Only print errors and the final results")
@click.pass_context
def run(ctx, targets, workflow, cores, dry_run, force, overrides, configfiles, resources, directory, fail_fast, quiet):
    """Bring TARGETS (paths or rule names) up to date."""
    console = get_console()
    if quiet:
        console = Console(debug=console.debug, quiet=True)
        set_console(console)

    if dry_run and force:
        console.print_error("Invalid options", "--dry-run and --force cannot be combined.")
        sys.exit(2)
    mode = Mode.DRY_RUN if dry_run else Mode.FORCE if force else Mode.NORMAL

    workflow_path = discover_workflow(workflow, directory)

    try:
        report = run_target(
            list(targets),
            mode=mode,
            cores=cores,
            overrides=list(overrides),
            workflow=workflow_path,
            configfiles=[str(Path(f).resolve()) for f in configfiles],
            directory=directory,
            resources=_resource_limits(resources),
            fail_fast=fail_fast,
            console=console,
        )
    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except WorkflowError as e:
        _fail(ctx, type(e).__name__, e)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)

    console.print_results(report)
    sys.exit(report.exit_code)


@cli.command("list")
@click.option("--workflow", "-s", default=None, help="Workflow file path")
@click.option("--config", "overrides", multiple=True, metavar="KEY=VALUE", help="Override a config value")
@click.pass_context
def list_rules(ctx, workflow, overrides):
    """List the rules of a workflow in registration order."""
    workflow_path = discover_workflow(workflow)
    try:
        module = load_workflow(workflow_path)
        config = build_config(module.configfiles, list(overrides))
        registry = build_registry(module.instantiate(config))
    except WorkflowError as e:
        _fail(ctx, type(e).__name__, e)

    for rule in registry:
        kind = "checkpoint" if rule.checkpoint else "rule"
        outputs = ", ".join(rule.output_templates) or "-"
        click.echo(f"{rule.name} [{kind}] -> {outputs}")


@cli.command()
@click.argument("targets", nargs=-1)
@click.option("--workflow", "-s", default=None, help="Workflow file path")
@click.option("--config", "overrides", multiple=True, metavar="KEY=VALUE", help="Override a config value")
@click.option("--directory", "-d", default=None, type=click.Path(file_okay=False, exists=True),
              help="Working directory for paths in the workflow")
@click.pass_context
def dag(ctx, targets, workflow, overrides, directory):
    """Print the resolved DAG for TARGETS in graphviz dot format."""
    workflow_path = discover_workflow(workflow, directory).resolve()
    try:
        with working_directory(directory):
            module = load_workflow(workflow_path)
            config = build_config(module.configfiles, list(overrides))
            graph, _ = plan(module.instantiate(config), list(targets))
    except WorkflowError as e:
        _fail(ctx, type(e).__name__, e)

    click.echo(graph.to_dot())


if __name__ == "__main__":
    cli()
