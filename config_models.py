from dataclasses import dataclass, field


@dataclass
class AppConfig:
    name: str
    secret_key: str
    base_currency: str


@dataclass
class BillingConfig:
    trial_days: int
    grace_period_days: int
    default_plan_slug: str


@dataclass
class LoyaltyConfig:
    currency_unit: int
    silver_threshold: int
    gold_threshold: int
    platinum_threshold: int


@dataclass
class NotificationConfig:
    max_items: int
    enabled_types: set = field(default_factory=lambda: {"reservation", "checkin", "payment"})


@dataclass
class StripeConfig:
    enabled: bool
    secret_key: str
    webhook_secret: str
