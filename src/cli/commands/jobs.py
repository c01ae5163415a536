"""
Job inspection command.
"""

import click

from src.database.models import JOB_QUEUED, JOB_IN_FLIGHT, JOB_COMPLETED, JOB_FAILED
from src.jobs import SCAN_QUEUE, UNSUBSCRIBE_QUEUE
from ..utils import get_job_queue


@click.command('jobs')
@click.option('--queue', 'queue_name', type=click.Choice([SCAN_QUEUE, UNSUBSCRIBE_QUEUE]),
              help='Only show jobs from this queue')
@click.option('--state', type=click.Choice([JOB_QUEUED, JOB_IN_FLIGHT, JOB_COMPLETED, JOB_FAILED]),
              help='Only show jobs in this state')
@click.option('--limit', type=int, default=50, show_default=True)
@click.pass_context
def jobs(ctx, queue_name, state, limit):
    """
    Show queued, running and recently finished jobs.

    Example:
        python main.py jobs --queue unsubscribe --state failed
    """
    job_list = get_job_queue(ctx).list_jobs(queue=queue_name, state=state, limit=limit)

    if not job_list:
        click.echo("\nNo jobs found")
        return

    click.echo(f"\nJobs: {len(job_list)}")
    click.echo("=" * 80)
    for job in job_list:
        click.echo(f"  {job.id:<50} {job.state:<10} attempts={job.attempts_made}/{job.max_attempts}")
        if job.last_error:
            click.secho(f"      last error: {job.last_error}", fg='red')
    click.echo("=" * 80)
