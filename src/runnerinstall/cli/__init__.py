"""
runnerinstall CLI - Resilient CI runner installation.

Commands:
    runnerinstall run       Install and register a runner on this machine
    runnerinstall check     Run the readiness or contention check on its own
    runnerinstall diagnose  Collect a diagnostics snapshot
    runnerinstall metrics   Show metrics accumulated across runs
    runnerinstall codes     Print the error-code table
"""

import click

from .check import check
from .report import codes, diagnose, metrics
from .run import run


@click.group()
@click.version_option(package_name="runnerinstall")
def main():
    """runnerinstall - Install CI runners onto freshly provisioned machines."""
    pass


# Register standalone commands
main.add_command(run)
main.add_command(diagnose)
main.add_command(metrics)
main.add_command(codes)

# Register command groups
main.add_command(check)


if __name__ == "__main__":
    main()
