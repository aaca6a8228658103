"""
Runtime isolation — CLI entrypoint.

Usage:
    runtime-isolation --help
    runtime-isolation snapshot --runtime runtime.yml
    runtime-isolation plan --runtime runtime.yml --profile baseline.yml
    runtime-isolation restore --runtime runtime.yml --profile overlay.yml --overlay
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from runtime_isolation import __version__
from runtime_isolation.core.observability.logging_config import setup_logging

_existing_file = click.Path(exists=True, dir_okay=False, path_type=Path)


@click.group()
@click.version_option(version=__version__, prog_name="runtime-isolation")
@click.option("--verbose", "-v", is_flag=True, help="Log every corrective operation.")
@click.option("--quiet", "-q", is_flag=True, help="Only log errors.")
@click.option("--debug", is_flag=True, help="Enable debug logging (very verbose).")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to isolation.yml (default: auto-detect).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    debug: bool,
    config_path: Path | None,
) -> None:
    """Snapshot and restore the units of a modular runtime."""
    ctx.ensure_object(dict)
    ctx.obj["quiet"] = quiet
    ctx.obj["config_path"] = config_path

    if debug:
        level = "DEBUG"
    elif verbose:
        level = "INFO"
    elif quiet:
        level = "ERROR"
    else:
        level = None    # RTI_LOG_LEVEL, then WARNING

    setup_logging(level=level, quiet_third_party=not debug)


@cli.command()
@click.option("--runtime", "runtime_path", type=_existing_file, required=True,
              help="Runtime fixture (YAML).")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def snapshot(ctx: click.Context, runtime_path: Path, as_json: bool) -> None:
    """Print the profile captured from a runtime."""
    from runtime_isolation.core.use_cases.restore import capture_snapshot

    result = capture_snapshot(runtime_path, ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if result.error:
            sys.exit(1)
        return

    profile = result.profile
    if profile is None:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)
    click.secho(f"\n📸 Snapshot of {runtime_path.name}", fg="cyan", bold=True)
    click.secho(f"   Repositories: {len(profile.repositories)}", bold=True)
    for uri in sorted(profile.repositories):
        click.echo(f"     • {uri}")
    click.secho(f"   Features: {len(profile.features)}", bold=True)
    for feature in profile.features:
        required = " (required)" if feature.required else ""
        click.echo(f"     • {feature.id}  {feature.state.value}{required}")
    click.secho(f"   Bundles: {len(profile.bundles)}", bold=True)
    for bundle in profile.ordered_bundles():
        fragment = " (fragment)" if bundle.fragment else ""
        click.echo(f"     • [{bundle.id}] {bundle.full_name}  {bundle.state.value}{fragment}")
    click.echo()


@cli.command()
@click.option("--runtime", "runtime_path", type=_existing_file, required=True,
              help="Runtime fixture (YAML).")
@click.option("--profile", "profile_path", type=_existing_file, required=True,
              help="Profile to restore (YAML).")
@click.option("--overlay", is_flag=True, default=None,
              help="Only touch units named in the profile.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def plan(
    ctx: click.Context,
    runtime_path: Path,
    profile_path: Path,
    overlay: bool | None,
    as_json: bool,
) -> None:
    """Show the tasks a restore would start with, without running them."""
    from runtime_isolation.core.use_cases.restore import plan_restore

    result = plan_restore(runtime_path, profile_path, overlay or None, ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if result.error:
            sys.exit(1)
        return

    if result.error:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)

    mode = "overlay" if result.overlay else "full restore"
    if not result.tasks:
        click.secho(f"✅ Runtime already matches the profile ({mode})", fg="green")
        return
    click.secho(f"\n📋 {len(result.tasks)} task(s) queued ({mode})", fg="cyan", bold=True)
    for task in result.tasks:
        click.echo(f"     • {task}")
    click.echo()


@cli.command()
@click.option("--runtime", "runtime_path", type=_existing_file, required=True,
              help="Runtime fixture (YAML).")
@click.option("--profile", "profile_path", type=_existing_file, required=True,
              help="Profile to restore (YAML).")
@click.option("--overlay", is_flag=True, default=None,
              help="Only touch units named in the profile.")
@click.option("--json-output", "--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def restore(
    ctx: click.Context,
    runtime_path: Path,
    profile_path: Path,
    overlay: bool | None,
    as_json: bool,
) -> None:
    """Restore a profile onto a runtime fixture."""
    from runtime_isolation.core.use_cases.restore import run_restore

    result = run_restore(runtime_path, profile_path, overlay or None, ctx.obj.get("config_path"))

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
        if result.error:
            sys.exit(1)
        return

    quiet = ctx.obj.get("quiet", False)
    if not quiet and result.calls:
        click.secho(f"\n🔧 {len(result.calls)} runtime call(s)", fg="cyan", bold=True)
        for call in result.calls:
            click.echo(f"     • {call}")
        click.echo()

    restored = result.result
    if restored is None:
        click.secho(f"❌ {result.error}", fg="red")
        sys.exit(1)
    click.secho(
        f"✅ Restored in {restored.attempts} attempt(s), "
        f"{restored.tasks_executed} task(s), "
        f"{restored.suppressed_errors} suppressed error(s)",
        fg="green",
    )


if __name__ == "__main__":
    cli()
