"""Configuration loading: YAML file + environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets

import yaml

from config_models import AppConfig, BillingConfig, EmailConfig, StripeConfig

logger = logging.getLogger(__name__)


def _env_flag(name: str, default) -> bool:
    return os.environ.get(name, str(default)).lower() in ("true", "1", "yes")


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, EmailConfig, StripeConfig, BillingConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    email_cfg = raw.get("email", {})
    stripe_cfg = raw.get("stripe", {})
    billing_cfg = raw.get("billing", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml for stable sessions across restarts."
        )

    stripe_key = os.environ.get("STRIPE_SECRET_KEY", stripe_cfg.get("secret_key", ""))
    if not stripe_key:
        logger.warning("STRIPE_SECRET_KEY not configured, Stripe calls will be rejected")

    billing_day = int(os.environ.get("BILLING_DAY", billing_cfg.get("billing_day", 1)))
    dunning_day = int(os.environ.get("BILLING_DUNNING_DAY", billing_cfg.get("dunning_day", 6)))
    if not 1 <= billing_day < dunning_day <= 28:
        raise ValueError(
            f"billing_day ({billing_day}) must precede dunning_day ({dunning_day}) within 1..28"
        )

    return (
        AppConfig(
            name=app_cfg.get("name", "LicenseBilling"),
            secret_key=secret_key,
            base_url=os.environ.get("APP_BASE_URL", app_cfg.get("base_url", "http://localhost:5000")),
        ),
        EmailConfig(
            enabled=_env_flag("EMAIL_ENABLED", email_cfg.get("enabled", False)),
            smtp_host=os.environ.get("SMTP_HOST", email_cfg.get("smtp_host", "")),
            smtp_port=int(os.environ.get("SMTP_PORT", email_cfg.get("smtp_port", 587))),
            smtp_user=os.environ.get("SMTP_USER", email_cfg.get("smtp_user", "")),
            smtp_password=os.environ.get("SMTP_PASSWORD", email_cfg.get("smtp_password", "")),
            sender=os.environ.get("EMAIL_SENDER", email_cfg.get("sender", "")),
            operator_cc=os.environ.get("EMAIL_OPERATOR_CC", email_cfg.get("operator_cc", "")),
        ),
        StripeConfig(
            secret_key=stripe_key,
            webhook_secret=os.environ.get(
                "STRIPE_WEBHOOK_SECRET", stripe_cfg.get("webhook_secret", "")
            ),
            currency=os.environ.get("STRIPE_CURRENCY", stripe_cfg.get("currency", "usd")).lower(),
            api_version=os.environ.get("STRIPE_API_VERSION", stripe_cfg.get("api_version", "")),
        ),
        BillingConfig(
            billing_day=billing_day,
            dunning_day=dunning_day,
            max_invoice_attempts=int(
                os.environ.get("BILLING_MAX_ATTEMPTS", billing_cfg.get("max_invoice_attempts", 3))
            ),
            job_lock_ttl_minutes=int(
                os.environ.get("JOB_LOCK_TTL_MINUTES", billing_cfg.get("job_lock_ttl_minutes", 120))
            ),
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///license_billing.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
