"""Custom Click group with automatic help display on errors.

This module provides a custom Click Group class that shows the error and
the contextual help text whenever a command is mistyped or an option is
missing, instead of Click's terse one-line usage message.
"""

import sys
from typing import Any

import click

USAGE_ERRORS = (
    click.exceptions.UsageError,
    click.exceptions.BadParameter,
    click.exceptions.MissingParameter,
)


class AzavsetGroup(click.Group):
    """Custom Click group that auto-displays help on usage errors."""

    def main(self, *args: Any, **kwargs: Any) -> Any:
        """Override main to show help for errors raised while parsing the group."""
        try:
            return super().main(*args, **kwargs)
        except USAGE_ERRORS as e:
            click.echo(f"Error: {e.format_message()}", err=True)

            ctx = e.ctx if hasattr(e, "ctx") and e.ctx else None
            if ctx:
                click.echo("")
                click.echo(ctx.get_help())
                # ctx.exit() keeps Click's testing mode working
                ctx.exit(e.exit_code if hasattr(e, "exit_code") else 1)
                return None
            sys.exit(e.exit_code if hasattr(e, "exit_code") else 1)
            return None

    def invoke(self, ctx: click.Context) -> Any:
        """Show the most specific help text for errors raised by subcommands."""
        try:
            return super().invoke(ctx)
        except USAGE_ERRORS as e:
            click.echo(f"Error: {e.format_message()}", err=True)

            error_ctx = e.ctx if hasattr(e, "ctx") and e.ctx else ctx
            click.echo("")
            click.echo(error_ctx.get_help())
            error_ctx.exit(e.exit_code if hasattr(e, "exit_code") else 1)
            return None

    def resolve_command(
        self, ctx: click.Context, args: list[str]
    ) -> tuple[str | None, click.Command | None, list[str]]:
        """Show help when a command is not found."""
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError as e:
            # Parameter errors are reported by invoke() with the subcommand's help
            if isinstance(e, click.exceptions.MissingParameter | click.exceptions.BadParameter):
                raise
            click.echo(f"Error: {e.format_message()}", err=True)
            click.echo("")
            click.echo(ctx.get_help())
            ctx.exit(1)
            return None, None, []


# Subgroups created with @main.group() also use AzavsetGroup
AzavsetGroup.group_class = AzavsetGroup
