"""
Subscription commands: listing and queueing unsubscribes.
"""

import click

from src.database import SubscriptionStore
from src.database.models import SUBSCRIPTION_ACTIVE, SUBSCRIPTION_FAILED, SUBSCRIPTION_UNSUBSCRIBED
from ..utils import get_job_queue, get_session_manager, parse_subscription_ids


@click.command('list-subscriptions')
@click.option('--user', 'user_id', required=True, help='User id to list subscriptions for')
@click.option('--status', type=click.Choice([SUBSCRIPTION_ACTIVE, SUBSCRIPTION_UNSUBSCRIBED,
                                             SUBSCRIPTION_FAILED]),
              help='Only show subscriptions in this status')
@click.pass_context
def list_subscriptions(ctx, user_id, status):
    """
    List detected subscriptions for a user, most recently seen first.

    Example:
        python main.py list-subscriptions --user alice
        python main.py list-subscriptions --user alice --status FAILED
    """
    with get_session_manager(ctx).get_session() as session:
        store = SubscriptionStore(session)
        subscriptions = store.list_subscriptions(user_id, status=status)

        label = status or 'all'
        if not subscriptions:
            click.echo(f"\nNo subscriptions found ({label})")
            return

        click.echo(f"\nSubscriptions for {user_id} ({label}): {len(subscriptions)}")
        click.echo("=" * 80)

        for sub in subscriptions:
            click.echo(f"\n  ID: {sub.id} [{sub.status}]")
            click.echo(f"  Name: {sub.display_name}")
            click.echo(f"  From: {sub.from_address or '-'}")
            if sub.list_id:
                click.echo(f"  List-ID: {sub.list_id}")
            click.echo(f"  Emails: {sub.message_count}")
            methods = []
            if sub.unsubscribe_http_url:
                methods.append('one-click' if sub.one_click_supported else 'http')
            if sub.unsubscribe_mailto:
                methods.append('mailto')
            if methods:
                click.echo(f"  Methods: {', '.join(methods)}")

        click.echo("\n" + "=" * 80)


@click.command('unsubscribe')
@click.option('--user', 'user_id', required=True, help='User id owning the subscriptions')
@click.argument('ids')
@click.pass_context
def unsubscribe(ctx, user_id, ids):
    """
    Queue unsubscribe jobs for subscription IDS.

    IDS accepts "5", "1,2,3", "1-5" or a mix such as "1,3-5,7".

    Example:
        python main.py unsubscribe --user alice 3,7-9
    """
    subscription_ids = parse_subscription_ids(ids)
    if not subscription_ids:
        raise click.BadParameter("No subscription ids given", param_hint='IDS')

    try:
        count = get_job_queue(ctx).enqueue_unsubscribe(user_id, subscription_ids)
    except Exception as e:
        click.secho(f"✗ Could not queue unsubscribe: {e}", fg='red')
        raise click.Abort()

    click.secho(f"✓ Queued unsubscribe for {count} subscription(s)", fg='green')
