"""Configuration loading: YAML file plus environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets

import yaml

from config_models import (
    AppConfig,
    BillingConfig,
    LoyaltyConfig,
    NotificationConfig,
    StripeConfig,
)

logger = logging.getLogger(__name__)


def env_bool(name: str, default) -> bool:
    return os.environ.get(name, str(default)).lower() in ("true", "1", "yes")


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, BillingConfig, LoyaltyConfig, NotificationConfig,
    StripeConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    billing_cfg = raw.get("billing", {})
    loyalty_cfg = raw.get("loyalty", {})
    notif_cfg = raw.get("notifications", {})
    stripe_cfg = raw.get("stripe", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml for stable sessions across restarts."
        )

    enabled_types = notif_cfg.get("enabled_types", ["reservation", "checkin", "payment"])
    env_types = os.environ.get("NOTIFICATION_TYPES")
    if env_types:
        enabled_types = [t.strip() for t in env_types.split(",") if t.strip()]

    return (
        AppConfig(
            name=app_cfg.get("name", "Hotel Suite"),
            secret_key=secret_key,
            base_currency=os.environ.get("BASE_CURRENCY", app_cfg.get("base_currency", "XOF")),
        ),
        BillingConfig(
            trial_days=int(os.environ.get("BILLING_TRIAL_DAYS", billing_cfg.get("trial_days", 30))),
            grace_period_days=int(
                os.environ.get("BILLING_GRACE_PERIOD_DAYS", billing_cfg.get("grace_period_days", 14))
            ),
            default_plan_slug=os.environ.get(
                "BILLING_DEFAULT_PLAN", billing_cfg.get("default_plan_slug", "pro")
            ),
        ),
        LoyaltyConfig(
            currency_unit=int(os.environ.get("LOYALTY_CURRENCY_UNIT", loyalty_cfg.get("currency_unit", 1000))),
            silver_threshold=int(loyalty_cfg.get("silver_threshold", 50000)),
            gold_threshold=int(loyalty_cfg.get("gold_threshold", 200000)),
            platinum_threshold=int(loyalty_cfg.get("platinum_threshold", 500000)),
        ),
        NotificationConfig(
            max_items=int(os.environ.get("NOTIFICATION_MAX_ITEMS", notif_cfg.get("max_items", 100))),
            enabled_types=set(enabled_types),
        ),
        StripeConfig(
            enabled=env_bool("STRIPE_ENABLED", stripe_cfg.get("enabled", False)),
            secret_key=os.environ.get("STRIPE_SECRET_KEY", stripe_cfg.get("secret_key", "")),
            webhook_secret=os.environ.get("STRIPE_WEBHOOK_SECRET", stripe_cfg.get("webhook_secret", "")),
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///hotel_suite.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
