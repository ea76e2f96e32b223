from dataclasses import dataclass


@dataclass
class AppConfig:
    name: str
    secret_key: str
    base_url: str


@dataclass
class EmailConfig:
    enabled: bool
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    sender: str
    operator_cc: str


@dataclass
class StripeConfig:
    secret_key: str
    webhook_secret: str
    currency: str
    api_version: str


@dataclass
class BillingConfig:
    billing_day: int
    dunning_day: int
    max_invoice_attempts: int
    job_lock_ttl_minutes: int
