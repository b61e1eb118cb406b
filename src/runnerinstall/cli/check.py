"""runnerinstall CLI - Standalone readiness and contention checks."""

from typing import Optional

import click

from runnerinstall.command import CommandRunner
from runnerinstall.contention import PackageContentionMonitor
from runnerinstall.contracts.errors import ErrorCode
from runnerinstall.errors import InstallerError
from runnerinstall.logger import configure_logging
from runnerinstall.orchestrator import readiness_error_code
from runnerinstall.probe import probe_for_platform
from runnerinstall.readiness import LocalHostChecks, ReadinessOutcome, ReadinessValidator
from runnerinstall.runtime import CancellationToken

from ._common import config_option, install_signal_handlers, load_cli_config, render_installer_error


def _mark(ok: bool) -> str:
    return click.style("✓", fg="green") if ok else click.style("✗", fg="red")


@click.group()
def check():
    """Run one installer component on its own."""
    pass


@check.command("readiness")
@config_option
@click.option("--timeout", type=float, help="Seconds to wait (0 polls once)")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def check_readiness(ctx: click.Context, config_path: Optional[str], timeout: Optional[float], verbose: bool):
    """Wait until the system is ready for installation."""
    config = load_cli_config(config_path)
    configure_logging("debug" if verbose else config.log_level, config.log_format)

    token = CancellationToken()
    validator = ReadinessValidator(
        LocalHostChecks(
            runner=CommandRunner(),
            disk_path=config.disk_path,
            endpoints=config.network_endpoints,
            network_timeout=config.network_timeout,
        ),
        min_disk_mb=config.min_disk_mb,
        min_memory_mb=config.min_memory_mb,
        poll_interval=config.readiness_poll_interval,
        cancel_token=token,
    )
    restore = install_signal_handlers(token)
    try:
        result = validator.wait_until_ready(config.readiness_timeout if timeout is None else timeout)
    finally:
        restore()

    state = result.state
    if state is not None:
        click.echo(f"{_mark(state.init_complete)} Cloud-init complete")
        click.echo(f"{_mark(state.disk_ok)} Disk free: {state.disk_free_mb} MB (minimum {config.min_disk_mb} MB)")
        click.echo(f"{_mark(state.memory_ok)} Memory available: {state.mem_free_mb} MB (minimum {config.min_memory_mb} MB)")
        click.echo(f"{_mark(state.network_reachable)} Network reachable")
        for name, message in state.check_errors.items():
            click.echo(f"  {name} check error: {message}")

    if result.ready:
        click.echo(f"System ready ({result.polls} poll(s), {result.waited_ms / 1000:.0f}s)")
        ctx.exit(0)

    if result.outcome == ReadinessOutcome.CANCELLED:
        code = ErrorCode.INSTALLATION_CANCELLED
    elif result.outcome == ReadinessOutcome.ERROR:
        code = result.error_code or ErrorCode.SYSTEM_NOT_READY
        click.echo(f"Readiness check error: {result.error}", err=True)
    else:
        code = readiness_error_code(state)
    click.echo(f"System not ready: {code.value} ({code.numeric_code})", err=True)
    ctx.exit(code.exit_status)


@check.command("contention")
@config_option
@click.option("--timeout", type=float, help="Seconds to wait (0 polls once)")
@click.option("--poll-interval", type=float, help="Seconds between polls")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def check_contention(
    ctx: click.Context,
    config_path: Optional[str],
    timeout: Optional[float],
    poll_interval: Optional[float],
    verbose: bool,
):
    """Wait until no process holds the package manager."""
    config = load_cli_config(config_path)
    configure_logging("debug" if verbose else config.log_level, config.log_format)

    try:
        probe = probe_for_platform(runner=CommandRunner())
    except InstallerError as e:
        click.echo(render_installer_error(e), err=True)
        ctx.exit(e.code.exit_status)

    token = CancellationToken()
    monitor = PackageContentionMonitor(probe, cancel_token=token)
    restore = install_signal_handlers(token)
    try:
        result = monitor.wait_for_clear(
            config.contention_timeout if timeout is None else timeout,
            config.poll_interval if poll_interval is None else poll_interval,
        )
    finally:
        restore()

    if result.clear:
        click.echo(f"{_mark(True)} Package managers available ({probe.family})")
        ctx.exit(0)

    for holder in result.lock_holders:
        click.echo(f"  {holder}")
    code = ErrorCode.PACKAGE_MANAGER_BUSY if not token.cancelled else ErrorCode.INSTALLATION_CANCELLED
    click.echo(f"{_mark(False)} Package managers busy: {code.value} ({code.numeric_code})", err=True)
    ctx.exit(code.exit_status)
