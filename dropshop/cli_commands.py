"""
Flask CLI commands for operating the shop.

Commands:
- flask init-db: create missing tables
- flask release-stale-orders: cancel abandoned checkouts and free their stock
- flask audit-ledger: compare reserved counters with open orders
- flask wait-for-order: poll the API until a PaymentIntent's order exists
"""
import click
from flask import current_app

from dropshop.database import get_database, get_session
from dropshop.models import AlertKind, AlertSeverity
from dropshop.services import inventory_service
from dropshop.services.alert_service import raise_admin_alert
from dropshop.services.order_service import get_order_service
from dropshop.services.order_polling import ApiOrderFetcher, OrderPollingTimeout, wait_for_order


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('init-db')
    def init_db_command():
        """Create all tables that do not exist yet."""
        get_database().create_all()
        click.echo(click.style('Database tables created.', fg='green'))

    @app.cli.command('release-stale-orders')
    @click.option('--minutes', type=int, default=None, help='Age after which a pending order is stale')
    def release_stale_orders(minutes):
        """Cancel Stripe orders stuck in pending and release their stock."""
        minutes = minutes or current_app.config.get('STALE_ORDER_MINUTES', 30)
        released = get_order_service().release_stale_orders(older_than_minutes=minutes)

        if not released:
            click.echo(f'No pending orders older than {minutes} minutes.')
            return
        click.echo(click.style(f'Released {len(released)} stale orders: {released}', fg='green'))

    @app.cli.command('audit-ledger')
    @click.option('--drop-id', type=int, default=None, help='Only audit this drop')
    @click.option('--fix', is_flag=True, default=False, help='Repair the drift found')
    def audit_ledger(drop_id, fix):
        """Find drop products whose reserved quantity disagrees with open orders."""
        session = get_session()
        drift = inventory_service.get_ledger_drift(session, drop_id)

        if not drift:
            session.rollback()
            click.echo(click.style('Ledger is consistent.', fg='green'))
            return

        for entry in drift:
            click.echo(
                f"drop_product {entry['drop_product_id']} (drop {entry['drop_id']}): "
                f"reserved={entry['reserved_quantity']} expected={entry['expected_reserved']} "
                f"difference={entry['difference']:+d}"
            )

        if not fix:
            session.rollback()
            click.echo(click.style(f'{len(drift)} rows drifted. Run again with --fix to repair.', fg='yellow'))
            return

        try:
            result = inventory_service.repair_ledger_drift(session, drift)
            raise_admin_alert(
                session,
                AlertKind.LEDGER_DRIFT,
                f"Ledger audit repaired {len(result['repaired'])} rows, "
                f"{len(result['unresolved'])} need manual review",
                severity=AlertSeverity.CRITICAL if result['unresolved'] else AlertSeverity.WARNING,
                details={'drift': drift, **result},
            )
            session.commit()
        except Exception as e:
            session.rollback()
            click.echo(click.style(f'Repair failed: {e}', fg='red'))
            raise SystemExit(1)

        click.echo(click.style(f"Repaired: {result['repaired']}", fg='green'))
        if result['unresolved']:
            click.echo(click.style(f"Not enough stock to restore: {result['unresolved']}", fg='red'))

    @app.cli.command('wait-for-order')
    @click.argument('payment_intent_id')
    @click.option('--base-url', default=None, help='API to poll, defaults to ORDER_API_BASE_URL')
    @click.option('--attempts', type=int, default=10, show_default=True)
    @click.option('--initial-delay', type=float, default=0.5, show_default=True, help='Seconds before the 2nd attempt')
    def wait_for_order_command(payment_intent_id, base_url, attempts, initial_delay):
        """Wait until the order paid by PAYMENT_INTENT_ID exists, as the confirmation page does."""
        fetch = ApiOrderFetcher(base_url or current_app.config['ORDER_API_BASE_URL'])
        try:
            result = wait_for_order(fetch, payment_intent_id, max_attempts=attempts, initial_delay=initial_delay)
        except OrderPollingTimeout as e:
            click.echo(click.style(f'{e} ({e.attempts} attempts)', fg='red'))
            raise SystemExit(1)

        order = result.order
        click.echo(click.style(
            f"Order {order['publicCode']} ({order['status']}) found after {result.attempts} attempts",
            fg='green',
        ))
