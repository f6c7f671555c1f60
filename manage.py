#!/usr/bin/env python3
"""Maintenance commands for Hotel Suite.

Usage:
    python manage.py --help
    python manage.py seed-plans
    python manage.py check-subscriptions
    python manage.py sync-usage --org-id 3
"""

from __future__ import annotations

from typing import Optional

import click


def get_app_context():
    """Get Flask application context."""
    from app import create_app
    app = create_app()
    return app.app_context()


@click.group()
def cli():
    """Maintenance tools for Hotel Suite."""
    pass


@cli.command("seed-plans")
def seed_plans():
    """Create the default subscription plans if none exist."""
    with get_app_context():
        from extensions import db
        from services.billing import seed_default_plans

        added = seed_default_plans()
        db.session.commit()
        click.echo(f"Seeded {added} plans." if added else "Plans already present.")


@cli.command("check-subscriptions")
def check_subscriptions():
    """Move expired trials and overdue subscriptions to their next status."""
    with get_app_context():
        from services.billing import check_subscription_expiry

        changed = check_subscription_expiry()
        click.echo(f"{changed} subscriptions changed status.")


@cli.command("sync-usage")
@click.option("--org-id", type=int, help="Only this organization")
def sync_usage(org_id: Optional[int]):
    """Recount rooms and users into the current usage period."""
    with get_app_context():
        from extensions import db
        from models import Organization
        from services.usage import sync_resource_usage

        query = Organization.query.filter_by(is_active=True)
        if org_id:
            query = query.filter_by(id=org_id)
        orgs = query.all()
        if not orgs:
            click.echo("No matching organization.", err=True)
            raise SystemExit(1)
        for org in orgs:
            synced = sync_resource_usage(org.id)
            click.echo(f"{org.slug}: rooms={synced['rooms']} users={synced['users']}")
        db.session.commit()


if __name__ == "__main__":
    cli()
