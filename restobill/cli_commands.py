"""
Flask CLI commands for database and billing setup.

Commands:
- flask init-db: Create all tables
- flask set-billing-config: Store a restaurant's tax settings
"""

import click
from restobill.database import get_session, create_schema
from restobill.models import BillingConfig
from restobill.utils.money import parse_rate
from restobill.exceptions import InvalidAmount


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('init-db')
    def init_db_command():
        """Create every table of the order engine."""
        create_schema()
        click.echo(click.style('Database schema created.', fg='green'))

    @app.cli.command('set-billing-config')
    @click.option('--restaurant-id', type=int, required=True, help='Restaurant ID')
    @click.option('--tax-rate', required=True, help='Tax rate in percent, e.g. 8.5')
    @click.option('--tax-enabled/--tax-disabled', default=True, help='Apply tax to bills')
    @click.option('--currency', default='USD', show_default=True, help='ISO currency code')
    def set_billing_config(restaurant_id, tax_rate, tax_enabled, currency):
        """Create or update the tax settings of a restaurant."""
        try:
            rate = parse_rate(tax_rate, 'tax_rate')
        except InvalidAmount as e:
            click.echo(click.style(f'Invalid tax rate: {e.message}', fg='red'))
            return

        session = get_session()
        try:
            config = session.query(BillingConfig).filter_by(restaurant_id=restaurant_id).first()
            if not config:
                config = BillingConfig(restaurant_id=restaurant_id)
                session.add(config)

            config.tax_enabled = tax_enabled
            config.tax_rate = rate
            config.currency = currency.upper()
            session.commit()

            click.echo(click.style(f'Billing config saved for restaurant {restaurant_id}', fg='green'))
            click.echo(f'   Tax: {"enabled" if tax_enabled else "disabled"} ({rate}%)')
            click.echo(f'   Currency: {config.currency}')

        except Exception as e:
            session.rollback()
            click.echo(click.style(f'Error saving billing config: {str(e)}', fg='red'))
        finally:
            session.remove()
