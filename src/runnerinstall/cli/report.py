"""runnerinstall CLI - Diagnostics, metrics and error-code reference."""

import json
from typing import Optional

import click

from runnerinstall.command import CommandRunner
from runnerinstall.contracts.errors import code_table
from runnerinstall.diagnostics import DiagnosticsCollector
from runnerinstall.errors import InstallerError
from runnerinstall.metrics import load_artifact
from runnerinstall.probe import probe_for_platform

from ._common import config_option, load_cli_config, render_snapshot


@click.command("diagnose")
@config_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def diagnose(config_path: Optional[str], as_json: bool):
    """Collect and print a diagnostics snapshot of this machine."""
    config = load_cli_config(config_path)
    runner = CommandRunner()
    try:
        probe = probe_for_platform(runner=runner)
    except InstallerError as e:
        click.echo(f"Warning: {e}", err=True)
        probe = None

    snapshot = DiagnosticsCollector.from_config(config, probe=probe, runner=runner).collect()
    if as_json:
        click.echo(snapshot.model_dump_json(indent=2))
    else:
        click.echo(render_snapshot(snapshot))


@click.command("metrics")
@config_option
@click.option("--metrics-file", type=click.Path(dir_okay=False), help="Metrics artifact to read")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def metrics(config_path: Optional[str], metrics_file: Optional[str], as_json: bool):
    """Show metrics accumulated across installation runs."""
    config = load_cli_config(config_path, metrics_file=metrics_file)
    path = config.get_metrics_path()
    try:
        data = load_artifact(path)
    except OSError as e:
        raise click.ClickException(f"Cannot read metrics artifact {path}: {e}")

    if as_json:
        click.echo(json.dumps(data, indent=2))
        return

    total = data["successCount"] + data["failureCount"]
    click.echo(f"Metrics: {path}")
    click.echo(f"  Runs:       {total} ({data['successCount']} succeeded, {data['failureCount']} failed)")
    click.echo(f"  Total wait: {data['totalWaitMs'] / 1000:.0f}s")
    if data["retryCounts"]:
        click.echo("  Retries per run:")
        for retries, runs in sorted(data["retryCounts"].items(), key=lambda kv: int(kv[0])):
            click.echo(f"    {retries:>3}: {runs} run(s)")
    if data["failuresByCode"]:
        click.echo("  Failures by code:")
        for code, count in sorted(data["failuresByCode"].items(), key=lambda kv: -kv[1]):
            click.echo(f"    {code}: {count}")
    last = data.get("lastRun")
    if last:
        click.echo(
            f"  Last run:   {last.get('state')} at {last.get('finishedAt')}"
            + (f" ({last['errorCode']})" if last.get("errorCode") else "")
        )


@click.command("codes")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def codes(as_json: bool):
    """Print the error-code table with exit statuses."""
    table = code_table()
    if as_json:
        click.echo(json.dumps(table, indent=2))
        return

    click.echo(f"{'CODE':<28} {'NUMERIC':>7} {'EXIT':>4}  KIND")
    for row in table:
        click.echo(f"{row['code']:<28} {row['numeric']:>7} {row['exit_status']:>4}  {row['kind']}")
