"""runnerinstall CLI - Full installation run."""

import json
from typing import Optional

import click

from runnerinstall.errors import InstallerError
from runnerinstall.logger import configure_logging
from runnerinstall.orchestrator import InstallationOrchestrator

from ._common import (
    config_option,
    install_signal_handlers,
    load_cli_config,
    render_error_report,
    render_installer_error,
)


@click.command("run")
@click.option("--repository", "-r", help="Target repository as owner/repo")
@click.option("--pat", envvar="GITHUB_PAT", help="GitHub personal access token (repo admin scope)")
@click.option("--registration-token", envvar="RUNNER_REGISTRATION_TOKEN", help="Pre-issued runner registration token")
@click.option("--runner-name", help="Runner name (defaults to the hostname)")
@click.option("--labels", help="Comma-separated runner labels")
@click.option("--runner-dir", type=click.Path(file_okay=False), help="Runner installation directory")
@click.option("--runner-user", help="User the runner service runs as")
@click.option("--runner-version", help="Runner version, or 'latest'")
@config_option
@click.option("--readiness-timeout", type=float, help="Seconds to wait for system readiness")
@click.option("--contention-timeout", type=float, help="Seconds to wait for package managers")
@click.option("--poll-interval", type=float, help="Seconds between contention polls (5-60)")
@click.option("--max-retries", type=int, help="Maximum attempts per step (1-10)")
@click.option("--base-delay", type=float, help="Backoff delay before the first retry")
@click.option("--max-delay", type=float, help="Backoff ceiling")
@click.option("--event-log", type=click.Path(dir_okay=False), help="Structured event log (JSON lines)")
@click.option("--metrics-file", type=click.Path(dir_okay=False), help="Cross-run metrics artifact")
@click.option("--skip-registration-check", is_flag=True, help="Verify registration from the local .runner file only")
@click.option("--log-level", type=click.Choice(["debug", "info", "warning", "error"]), help="Console log level")
@click.option("--log-format", type=click.Choice(["text", "json"]), help="Console log format")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON on stdout")
@click.pass_context
def run(
    ctx: click.Context,
    repository: Optional[str],
    pat: Optional[str],
    registration_token: Optional[str],
    runner_name: Optional[str],
    labels: Optional[str],
    runner_dir: Optional[str],
    runner_user: Optional[str],
    runner_version: Optional[str],
    config_path: Optional[str],
    readiness_timeout: Optional[float],
    contention_timeout: Optional[float],
    poll_interval: Optional[float],
    max_retries: Optional[int],
    base_delay: Optional[float],
    max_delay: Optional[float],
    event_log: Optional[str],
    metrics_file: Optional[str],
    skip_registration_check: bool,
    log_level: Optional[str],
    log_format: Optional[str],
    as_json: bool,
):
    """Install and register a runner on this machine.

    Exits 0 on success. On failure an error report goes to stderr and the
    exit status identifies the error code (see `runnerinstall codes`).
    """
    config = load_cli_config(
        config_path,
        repository=repository,
        runner_name=runner_name,
        runner_labels=labels,
        runner_dir=runner_dir,
        runner_user=runner_user,
        runner_version=runner_version,
        readiness_timeout=readiness_timeout,
        contention_timeout=contention_timeout,
        poll_interval=poll_interval,
        max_retries=max_retries,
        base_delay_seconds=base_delay,
        max_delay_seconds=max_delay,
        event_log_file=event_log,
        metrics_file=metrics_file,
        log_level=log_level,
        log_format=log_format,
    )
    configure_logging(config.log_level, config.log_format)

    if not config.repository:
        raise click.UsageError("--repository is required (or set it in the config file)")
    if not pat and not registration_token:
        raise click.UsageError("Provide --pat or --registration-token")

    try:
        orchestrator = InstallationOrchestrator.from_config(
            config,
            pat=pat,
            registration_token=registration_token,
            skip_registration_check=skip_registration_check,
        )
    except InstallerError as e:
        click.echo(render_installer_error(e), err=True)
        ctx.exit(e.code.exit_status)
    except (ValueError, OSError) as e:
        raise click.ClickException(str(e))

    restore_signals = install_signal_handlers(orchestrator.cancel_token)
    try:
        result = orchestrator.run()
    finally:
        restore_signals()
        if orchestrator.metrics is not None:
            orchestrator.metrics.shutdown()

    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2, default=str))

    if result.succeeded:
        click.echo(click.style(
            f"✓ Runner {result.identity} installed and online "
            f"({result.duration_ms / 1000:.0f}s, {result.context.total_retries} retries)",
            fg="green",
        ), err=as_json)
        ctx.exit(0)

    click.echo(render_error_report(
        result.error,
        run_id=result.context.run_id,
        event_log=str(config.get_event_log_path()),
    ), err=True)
    ctx.exit(result.exit_status)
