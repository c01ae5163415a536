"""
Admin commands: database initialization and the worker process.
"""

import signal
import threading

import click

from src.jobs import WorkerRuntime
from ..utils import get_mailbox_factory, get_session_manager


@click.command('init')
@click.pass_context
def init(ctx):
    """
    Initialize the database.

    Creates the database schema and required tables.

    Example:
        python main.py init
    """
    try:
        db_manager = get_session_manager(ctx).db_manager
        db_manager.initialize_database()
        click.secho("✓ Database initialized successfully", fg='green')
        click.echo(f"Database location: {db_manager.database_url}")
    except Exception as e:
        click.secho(f"✗ Error initializing database: {e}", fg='red')
        raise click.Abort()


@click.command('worker')
@click.pass_context
def worker(ctx):
    """
    Run the scan and unsubscribe workers until interrupted.

    Example:
        python main.py worker
    """
    session_manager = get_session_manager(ctx)
    session_manager.db_manager.initialize_database()
    runtime = WorkerRuntime.build(session_manager, get_mailbox_factory(ctx))

    shutdown = threading.Event()

    def _request_shutdown(signum, frame):
        shutdown.set()

    signal.signal(signal.SIGTERM, _request_shutdown)
    signal.signal(signal.SIGINT, _request_shutdown)

    runtime.start()
    click.secho("✓ Workers started (Ctrl+C to stop)", fg='green')
    try:
        while not shutdown.is_set():
            shutdown.wait(1.0)
    finally:
        click.echo("Stopping workers...")
        runtime.stop()
        session_manager.db_manager.dispose()
