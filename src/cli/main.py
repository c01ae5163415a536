"""
Main CLI group for the subscription manager.

Integrates all commands into a single CLI application.
"""

import click

from src.config import Config, load_config_from_env_file
from src.structured_logging import configure_logging
from .commands.admin import init, worker
from .commands.jobs import jobs
from .commands.scan import scan, scan_runs
from .commands.subscription import list_subscriptions, unsubscribe


@click.group()
@click.version_option(version='0.1.0', prog_name='Subscription Manager')
@click.pass_context
def cli(ctx):
    """
    Subscription Manager - detect mailing-list subscriptions and unsubscribe.

    Scans and unsubscribes run as background jobs; start ``worker`` to
    process them.
    """
    ctx.ensure_object(dict)


cli.add_command(init, name='init')
cli.add_command(worker, name='worker')
cli.add_command(scan, name='scan')
cli.add_command(scan_runs, name='scan-runs')
cli.add_command(list_subscriptions, name='list-subscriptions')
cli.add_command(unsubscribe, name='unsubscribe')
cli.add_command(jobs, name='jobs')


def main():
    """Process entry point: load .env, configure logging, run the CLI."""
    load_config_from_env_file()
    configure_logging(level=Config.log_level(), format=Config.log_format())
    cli(obj={})


if __name__ == '__main__':
    main()
