"""
Process configuration, read once from the environment.
"""

import json
import os
from dataclasses import dataclass, field
from importlib import resources
from typing import Optional

from account_pool.errors import ConfigError

WEEKLY = "WEEKLY"
MONTHLY = "MONTHLY"

DEFAULT_MAX_LEASE_BUDGET_AMOUNT = 1000.0
DEFAULT_MAX_LEASE_PERIOD = 704800  # seconds
DEFAULT_PRINCIPAL_BUDGET_AMOUNT = 1000.0
DEFAULT_LEASE_LENGTH_IN_DAYS = 7
DEFAULT_USAGE_TTL = 30 * 24 * 3600  # roughly one month
DEFAULT_THRESHOLD_PERCENTILES = [75.0, 100.0]
DEFAULT_NUKE_TIMEOUT_SECONDS = 60 * 60


def load_template(name: str) -> str:
    """Read a template bundled with the package."""
    return resources.files("account_pool").joinpath("templates").joinpath(name).read_text(encoding="utf-8")


def _float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {raw!r}", e) from e


def _int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {raw!r}", e) from e


def _list(name: str, default: list) -> list:
    """Accept either a JSON array or a comma-separated string."""
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return list(default)
    raw = raw.strip()
    if raw.startswith("["):
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise ConfigError(f"{name} is not a valid JSON list", e) from e
    return [part.strip() for part in raw.split(",") if part.strip()]


def _bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() == "true"


@dataclass(frozen=True)
class Settings:
    """All tunables for the account pool services."""

    region: str = "us-east-1"
    account_table: str = "Accounts"
    lease_table: str = "Leases"
    usage_table: str = "Usage"

    max_lease_budget_amount: float = DEFAULT_MAX_LEASE_BUDGET_AMOUNT
    max_lease_period: int = DEFAULT_MAX_LEASE_PERIOD
    principal_budget_amount: float = DEFAULT_PRINCIPAL_BUDGET_AMOUNT
    principal_budget_period: str = WEEKLY
    default_lease_length_in_days: int = DEFAULT_LEASE_LENGTH_IN_DAYS
    usage_ttl: int = DEFAULT_USAGE_TTL

    threshold_percentiles: list[float] = field(
        default_factory=lambda: list(DEFAULT_THRESHOLD_PERCENTILES)
    )
    notification_from_email: Optional[str] = None
    notification_bcc_emails: list[str] = field(default_factory=list)
    template_html: Optional[str] = None
    template_text: Optional[str] = None
    template_subject: Optional[str] = None

    reset_queue_url: Optional[str] = None
    reset_build_name: str = "ResetCodeBuild"
    lease_locked_topic_arn: Optional[str] = None
    lease_ended_topic_arn: Optional[str] = None
    lease_added_topic_arn: Optional[str] = None
    reset_complete_topic_arn: Optional[str] = None

    nuke_template_bucket: Optional[str] = None
    nuke_template_key: Optional[str] = None
    nuke_template_default: str = "default-nuke-config-template.yml"
    nuke_enabled: bool = False
    nuke_regions: list[str] = field(default_factory=lambda: ["us-east-1"])
    nuke_timeout_seconds: float = DEFAULT_NUKE_TIMEOUT_SECONDS

    reset_account_id: Optional[str] = None
    reset_admin_role_name: Optional[str] = None
    reset_principal_role_name: Optional[str] = None
    reset_principal_policy_name: Optional[str] = None

    def __post_init__(self):
        if self.principal_budget_period not in (WEEKLY, MONTHLY):
            raise ConfigError(
                f"PRINCIPAL_BUDGET_PERIOD must be {WEEKLY} or {MONTHLY}, "
                f"got {self.principal_budget_period!r}"
            )

    @classmethod
    def from_env(cls) -> "Settings":
        """Create settings from environment variables."""
        return cls(
            region=os.environ.get("AWS_CURRENT_REGION", "us-east-1"),
            account_table=os.environ.get("ACCOUNT_DB", "Accounts"),
            lease_table=os.environ.get("LEASE_DB", "Leases"),
            usage_table=os.environ.get("USAGE_DB", "Usage"),
            max_lease_budget_amount=_float("MAX_LEASE_BUDGET_AMOUNT", DEFAULT_MAX_LEASE_BUDGET_AMOUNT),
            max_lease_period=_int("MAX_LEASE_PERIOD", DEFAULT_MAX_LEASE_PERIOD),
            principal_budget_amount=_float("PRINCIPAL_BUDGET_AMOUNT", DEFAULT_PRINCIPAL_BUDGET_AMOUNT),
            principal_budget_period=os.environ.get("PRINCIPAL_BUDGET_PERIOD", WEEKLY).upper(),
            default_lease_length_in_days=_int("DEFAULT_LEASE_LENGTH_IN_DAYS", DEFAULT_LEASE_LENGTH_IN_DAYS),
            usage_ttl=_int("USAGE_TTL", DEFAULT_USAGE_TTL),
            threshold_percentiles=[
                float(p)
                for p in _list("BUDGET_NOTIFICATION_THRESHOLD_PERCENTILES", DEFAULT_THRESHOLD_PERCENTILES)
            ],
            notification_from_email=os.environ.get("BUDGET_NOTIFICATION_FROM_EMAIL"),
            notification_bcc_emails=_list("BUDGET_NOTIFICATION_BCC_EMAILS", []),
            template_html=os.environ.get("BUDGET_NOTIFICATION_TEMPLATE_HTML"),
            template_text=os.environ.get("BUDGET_NOTIFICATION_TEMPLATE_TEXT"),
            template_subject=os.environ.get("BUDGET_NOTIFICATION_TEMPLATE_SUBJECT"),
            reset_queue_url=os.environ.get("RESET_QUEUE_URL"),
            reset_build_name=os.environ.get("RESET_BUILD_NAME", "ResetCodeBuild"),
            lease_locked_topic_arn=os.environ.get("LEASE_LOCKED_TOPIC_ARN"),
            lease_ended_topic_arn=os.environ.get("LEASE_ENDED_TOPIC_ARN"),
            lease_added_topic_arn=os.environ.get("LEASE_ADDED_TOPIC_ARN"),
            reset_complete_topic_arn=os.environ.get("RESET_COMPLETE_TOPIC_ARN"),
            nuke_template_bucket=os.environ.get("RESET_NUKE_TEMPLATE_BUCKET") or None,
            nuke_template_key=os.environ.get("RESET_NUKE_TEMPLATE_KEY") or None,
            nuke_template_default=os.environ.get(
                "RESET_NUKE_TEMPLATE_DEFAULT", "default-nuke-config-template.yml"
            ),
            nuke_enabled=_bool("RESET_NUKE_TOGGLE"),
            nuke_regions=_list("RESET_NUKE_REGIONS", ["us-east-1"]),
            nuke_timeout_seconds=_float("RESET_NUKE_TIMEOUT_SECONDS", DEFAULT_NUKE_TIMEOUT_SECONDS),
            reset_account_id=os.environ.get("RESET_ACCOUNT"),
            reset_admin_role_name=os.environ.get("RESET_ACCOUNT_ADMIN_ROLE_NAME"),
            reset_principal_role_name=os.environ.get("RESET_ACCOUNT_PRINCIPAL_ROLE_NAME"),
            reset_principal_policy_name=os.environ.get("RESET_ACCOUNT_PRINCIPAL_POLICY_NAME"),
        )
