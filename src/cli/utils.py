"""
Common utilities for CLI commands.

Shared helper functions used across multiple command modules.
"""

import click

from src.cli_session import SessionManager
from src.config import Config, CredentialStore
from src.email_processor.mailbox import GmailClientFactory
from src.jobs import JobQueue


def get_session_manager(ctx: click.Context) -> SessionManager:
    """Session manager stored on the context, created from Config on first use."""
    obj = ctx.ensure_object(dict)
    if 'session_manager' not in obj:
        obj['session_manager'] = SessionManager.from_url(Config.get_database_path())
    return obj['session_manager']


def get_job_queue(ctx: click.Context) -> JobQueue:
    obj = ctx.ensure_object(dict)
    if 'job_queue' not in obj:
        obj['job_queue'] = JobQueue(get_session_manager(ctx))
    return obj['job_queue']


def get_mailbox_factory(ctx: click.Context):
    """Callable mapping a user id to its mailbox client."""
    obj = ctx.ensure_object(dict)
    if 'mailbox_factory' not in obj:
        obj['mailbox_factory'] = GmailClientFactory(
            CredentialStore(Config.get_credential_store_path()),
            client_id=Config.google_client_id(),
            client_secret=Config.google_client_secret(),
        )
    return obj['mailbox_factory']


def parse_subscription_ids(id_string: str) -> list:
    """
    Parse subscription IDs from various formats.

    Supports:
        - Single ID: "5"
        - Comma-separated: "1,2,3"
        - Ranges: "1-5"
        - Mixed: "1,3-5,7"

    Returns:
        List of integer IDs

    Raises:
        click.BadParameter: on anything that is not an id or range
    """
    ids = []
    for part in id_string.split(','):
        part = part.strip()
        if not part:
            continue
        try:
            if '-' in part:
                start, end = part.split('-')
                ids.extend(range(int(start), int(end) + 1))
            else:
                ids.append(int(part))
        except ValueError:
            raise click.BadParameter(f"Invalid subscription id or range: {part}")

    return ids
