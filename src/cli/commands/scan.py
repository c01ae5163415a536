"""
Scan commands: queue a mailbox scan and inspect past scan runs.
"""

import click

from src.database import SubscriptionStore
from ..utils import get_job_queue, get_session_manager


@click.command('scan')
@click.option('--user', 'user_id', required=True, help='User id whose mailbox to scan')
@click.pass_context
def scan(ctx, user_id):
    """
    Queue a scan of the user's recent mail.

    A running worker picks the job up; follow it with ``scan-runs``.

    Example:
        python main.py scan --user alice
    """
    try:
        job_id = get_job_queue(ctx).enqueue_scan(user_id)
    except Exception as e:
        click.secho(f"✗ Could not queue scan: {e}", fg='red')
        raise click.Abort()

    click.secho(f"✓ Scan queued: {job_id}", fg='green')


@click.command('scan-runs')
@click.option('--user', 'user_id', required=True, help='User id')
@click.option('--limit', type=int, default=20, show_default=True, help='Number of runs to show')
@click.pass_context
def scan_runs(ctx, user_id, limit):
    """
    Show recent scan runs for a user.

    Example:
        python main.py scan-runs --user alice
    """
    with get_session_manager(ctx).get_session() as session:
        runs = SubscriptionStore(session).list_scan_runs(user_id, limit=limit)

        if not runs:
            click.echo(f"\nNo scan runs for {user_id}")
            return

        click.echo(f"\nScan runs for {user_id}: {len(runs)}")
        click.echo("=" * 80)
        for run in runs:
            finished = run.finished_at.isoformat() if run.finished_at else '-'
            click.echo(f"  #{run.id} {run.status:<10} scanned={run.messages_scanned:<5} "
                       f"started={run.created_at.isoformat()} finished={finished}")
            if run.error:
                click.secho(f"      error: {run.error}", fg='red')
        click.echo("=" * 80)
