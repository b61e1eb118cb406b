"""Shared CLI helpers: config loading, signal wiring and report rendering."""

from __future__ import annotations

import signal
import threading
from typing import Any, Callable, Dict, List, Optional

import click
import yaml

from runnerinstall.config import InstallerConfig, load_config
from runnerinstall.errors import InstallerError
from runnerinstall.models import UNAVAILABLE, DiagnosticsSnapshot
from runnerinstall.runtime import CancellationToken

config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False),
    envvar="RUNNERINSTALL_CONFIG",
    help="YAML configuration file",
)


def load_cli_config(config_path: Optional[str], **overrides) -> InstallerConfig:
    """Load configuration, turning validation problems into usage errors."""
    try:
        return load_config(config_path, **overrides)
    except (ValueError, OSError, yaml.YAMLError) as e:
        raise click.ClickException(f"Invalid configuration: {e}")


def install_signal_handlers(token: CancellationToken) -> Callable[[], None]:
    """
    Route SIGINT and SIGTERM to the cancellation token.

    Returns a callable that restores the previous handlers. Outside the
    main thread signals cannot be installed and nothing changes.
    """
    if threading.current_thread() is not threading.main_thread():
        return lambda: None

    def handler(signum, _frame):
        name = signal.Signals(signum).name
        click.echo(f"Received {name}, cancelling at the next safe point...", err=True)
        token.cancel(f"received {name}")

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, handler)

    def restore() -> None:
        for sig, old in previous.items():
            signal.signal(sig, old)

    return restore


def render_snapshot(snapshot: DiagnosticsSnapshot, indent: str = "") -> str:
    """Human-readable diagnostics summary."""
    lines: List[str] = [f"{indent}Collected at: {snapshot.collected_at.isoformat()}"]
    for name, data in snapshot.sections.items():
        if data == UNAVAILABLE:
            lines.append(f"{indent}{name}: unavailable ({snapshot.errors.get(name, 'unknown error')})")
            continue
        lines.append(f"{indent}{name}:")
        lines.extend(_render_section(name, data, indent + "  "))
    return "\n".join(lines)


def _render_section(name: str, data: Any, indent: str) -> List[str]:
    if name == "logs" and isinstance(data, dict):
        lines = []
        for path, tail in data.items():
            lines.append(f"{indent}{path}:")
            if isinstance(tail, list):
                lines.extend(f"{indent}  | {line}" for line in tail)
            else:
                lines.append(f"{indent}  {tail}")
        return lines or [f"{indent}(no log files found)"]
    if isinstance(data, dict):
        return [f"{indent}{key}: {value}" for key, value in data.items()]
    return [f"{indent}{data}"]


def render_error_report(error, run_id: str = "", event_log: Optional[str] = None) -> str:
    """Failure report for stderr: code, message, hints and diagnostics summary."""
    lines = [
        click.style(f"Installation FAILED: {error.code.value} ({error.numeric_code})", fg="red", bold=True),
        f"  {error.message}",
    ]
    if error.remediation_hints:
        lines.append("")
        lines.append("Remediation:")
        lines.extend(f"  - {hint}" for hint in error.remediation_hints)
    snapshot = error.diagnostics_snapshot
    if snapshot is not None:
        lines.append("")
        lines.append("Diagnostics:")
        unavailable = snapshot.unavailable_sections()
        if unavailable:
            lines.append(f"  unavailable sections: {', '.join(unavailable)}")
        for name in ("resources", "processes", "services", "network"):
            data = snapshot.sections.get(name)
            if isinstance(data, dict):
                lines.append(f"  {name}: {_one_line(data)}")
    footer = []
    if run_id:
        footer.append(f"Run: {run_id}")
    if event_log:
        footer.append(f"Event log: {event_log}")
    if footer:
        lines.append("")
        lines.append("  ".join(footer))
    return "\n".join(lines)


def render_installer_error(error: InstallerError) -> str:
    """Report for failures raised before a run starts (e.g. unsupported OS)."""
    lines = [
        click.style(f"Installation FAILED: {error.code.value} ({error.code.numeric_code})", fg="red", bold=True),
        f"  {error.message}",
        "",
        "Remediation:",
    ]
    lines.extend(f"  - {hint}" for hint in error.code.remediation_hints)
    return "\n".join(lines)


def _one_line(data: Dict[str, Any]) -> str:
    return ", ".join(f"{key}={value}" for key, value in data.items())
