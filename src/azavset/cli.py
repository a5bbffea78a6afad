"""Command line interface for azavset.

Commands:
- join-availability-set: Move one or more VMs into an availability set
- leave-availability-set: Move a VM out of its availability set
- config show / config set: Inspect and edit ~/.azavset/config.toml

Both move commands are dry runs unless --confirm is given: the template is
exported, edited, validated and written to disk, but nothing is stopped,
deleted or deployed.
"""

import logging
import sys

import click
from rich.console import Console
from rich.table import Table

from azavset import __version__
from azavset.availability_set_mover import AvailabilitySetMover
from azavset.azure_provider import AzureCliProvider
from azavset.click_group import AzavsetGroup
from azavset.config_manager import ConfigManager
from azavset.exceptions import AvailabilitySetMoveError, DeploymentError
from azavset.models import MoveResult

logger = logging.getLogger(__name__)

console = Console()

EXIT_ERROR = 1
EXIT_PARTIAL_FAILURE = 2

OS_TYPE_CHOICE = click.Choice(["windows", "linux"], case_sensitive=False)


def _build_mover(config_path: str | None, dry_run: bool) -> AvailabilitySetMover:
    config = ConfigManager.load_config(config_path)
    provider = AzureCliProvider(timeouts=config.timeouts, max_attempts=config.az_max_attempts)
    return AvailabilitySetMover(provider, config.mover_settings(dry_run=dry_run))


def _resolve_resource_group(resource_group: str | None, config_path: str | None) -> str:
    rg = ConfigManager.get_resource_group(resource_group, config_path)
    if not rg:
        click.echo(
            "Error: No resource group specified. Use --resource-group or set "
            "default_resource_group with 'azavset config set'.",
            err=True,
        )
        sys.exit(EXIT_ERROR)
    return rg


def _print_result(result: MoveResult) -> None:
    click.echo(f"Original template: {result.original_template_path}")
    click.echo(f"New template:      {result.new_template_path}")

    for warning in result.warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")

    if result.dry_run:
        click.echo(
            f"\nDry run complete for {', '.join(result.vm_names)}. "
            "Nothing was stopped, deleted or deployed."
        )
        click.echo("Review the new template and re-run with --confirm to apply.")
        return

    table = Table(title=f"{result.operation.capitalize()} - {result.resource_group}")
    table.add_column("Step")
    table.add_column("Target")
    table.add_column("Status")
    table.add_column("Message")
    for step in result.steps:
        status = "[green]OK[/green]" if step.success else "[red]FAILED[/red]"
        table.add_row(step.step, step.target, status, step.message)
    console.print(table)

    if result.partial_failure:
        click.echo(
            f"\nWarning: {len(result.failed_steps)} step(s) failed. The deployment was "
            f"submitted but resource group '{result.resource_group}' may be partially "
            "torn down; check the failed steps above.",
            err=True,
        )
    else:
        click.echo(f"\nSuccess! Deployment '{result.deployment_name}' completed.")


def _run_move(action, config_path: str | None, confirm: bool) -> None:
    """Run a join/leave callable with shared error reporting and exit codes."""
    try:
        mover = _build_mover(config_path, dry_run=not confirm)
        result = action(mover)
    except DeploymentError as e:
        click.echo(f"Error: {e}", err=True)
        if e.completed_steps:
            click.echo("Steps completed before the failure:", err=True)
            for step in e.completed_steps:
                click.echo(f"  {step}", err=True)
        if e.template_path:
            click.echo(f"Edited template kept at: {e.template_path}", err=True)
        sys.exit(EXIT_ERROR)
    except AvailabilitySetMoveError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)

    _print_result(result)
    if result.partial_failure:
        sys.exit(EXIT_PARTIAL_FAILURE)


@click.group(cls=AzavsetGroup, context_settings={"help_option_names": ["--help", "-h"]})
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.version_option(version=__version__)
def main(verbose: bool) -> None:
    """azavset - move Azure VMs into or out of an availability set.

    Azure cannot change a VM's availability set in place. azavset exports
    the resource group template, rewrites the VM to attach its existing
    disks, deletes the VM and redeploys it.

    \b
    COMMANDS:
        join-availability-set    Move VMs into an availability set
        leave-availability-set   Move a VM out of its availability set
        config show              Show effective configuration
        config set KEY VALUE     Set a configuration value

    \b
    CONFIGURATION:
        Config file: ~/.azavset/config.toml
        Environment overrides: AZAVSET_<KEY>, e.g. AZAVSET_SIZE_CHECK=uniform
    """
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format="%(message)s")


@main.command(name="join-availability-set")
@click.option("--resource-group", "--rg", help="Resource group", type=str)
@click.option(
    "--vm", "vm_names", multiple=True, required=True, help="VM to move (repeatable, same size)"
)
@click.option("--os-type", type=OS_TYPE_CHOICE, required=True, help="Guest OS type")
@click.option(
    "--availability-set", "availability_set", required=True, help="Target availability set"
)
@click.option("--confirm", is_flag=True, help="Stop, delete and redeploy (default: dry run)")
@click.option("--config", help="Config file path", type=click.Path())
def join_availability_set(
    resource_group: str | None,
    vm_names: tuple[str, ...],
    os_type: str,
    availability_set: str,
    confirm: bool,
    config: str | None,
):
    """Move VMs into an existing availability set.

    The availability set must already exist in the same resource group.
    VMs with managed disks need an Aligned set, unmanaged disks a Classic one.

    \b
    Examples:
        azavset join-availability-set --rg rg1 --vm vm1 --vm vm2 \\
            --os-type windows --availability-set avset1
        azavset join-availability-set --rg rg1 --vm vm1 --os-type linux \\
            --availability-set avset1 --confirm
    """
    try:
        rg = _resolve_resource_group(resource_group, config)
    except AvailabilitySetMoveError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)

    _run_move(
        lambda mover: mover.join(rg, list(vm_names), os_type.lower(), availability_set),
        config,
        confirm,
    )


@main.command(name="leave-availability-set")
@click.option("--resource-group", "--rg", help="Resource group", type=str)
@click.option("--vm", "vm_name", required=True, help="VM to move out of its availability set")
@click.option("--os-type", type=OS_TYPE_CHOICE, required=True, help="Guest OS type")
@click.option("--confirm", is_flag=True, help="Stop, delete and redeploy (default: dry run)")
@click.option("--config", help="Config file path", type=click.Path())
def leave_availability_set(
    resource_group: str | None, vm_name: str, os_type: str, confirm: bool, config: str | None
):
    """Move a VM out of its availability set.

    VMs with more than one NIC are not supported. If the NIC is in a load
    balancer backend pool or NAT rule those associations are dropped and
    must be re-created manually afterwards.

    \b
    Examples:
        azavset leave-availability-set --rg rg1 --vm vm1 --os-type windows
        azavset leave-availability-set --rg rg1 --vm vm1 --os-type linux --confirm
    """
    try:
        rg = _resolve_resource_group(resource_group, config)
    except AvailabilitySetMoveError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)

    _run_move(lambda mover: mover.leave(rg, vm_name, os_type.lower()), config, confirm)


@main.group(name="config")
def config_group():
    """Inspect and edit azavset configuration."""


@config_group.command(name="show")
@click.option("--config", help="Config file path", type=click.Path())
def config_show(config: str | None):
    """Show effective configuration (file + environment)."""
    try:
        effective = ConfigManager.load_config(config)
    except AvailabilitySetMoveError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)

    for key, value in effective.to_dict().items():
        if isinstance(value, dict):
            for sub_key, sub_value in value.items():
                click.echo(f"{key}.{sub_key} = {sub_value}")
        else:
            click.echo(f"{key} = {value}")


@config_group.command(name="set")
@click.argument("key")
@click.argument("value")
@click.option("--config", help="Config file path", type=click.Path())
def config_set(key: str, value: str, config: str | None):
    """Set a configuration value.

    \b
    Examples:
        azavset config set default_resource_group rg1
        azavset config set size_check uniform
        azavset config set timeouts.deploy 1800
    """
    try:
        ConfigManager.set_value(key, value, config)
    except AvailabilitySetMoveError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ERROR)

    click.echo(f"Set {key} = {value}")


if __name__ == "__main__":
    main()
