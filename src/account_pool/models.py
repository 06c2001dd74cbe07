"""
Lease, Account and Usage records.

Money is carried as float in memory and converted to Decimal at the
DynamoDB boundary (boto3's resource layer rejects floats).
"""

import re
from dataclasses import asdict, dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

ROLE_ARN_PATTERN = re.compile(r"arn:aws:iam::\d{12}:role/(.+)")


class LeaseStatus(str, Enum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    RESET_LOCK = "ResetLock"
    FINANCE_LOCK = "FinanceLock"
    RESET_FINANCE_LOCK = "ResetFinanceLock"


class LeaseStatusReason(str, Enum):
    EXPIRED = "Expired"
    OVER_BUDGET = "OverBudget"
    OVER_PRINCIPAL_BUDGET = "OverPrincipalBudget"
    DESTROYED = "Destroyed"
    ACTIVE = "Active"
    ROLLED_BACK = "RolledBack"
    ACCOUNT_ORPHANED = "AccountOrphaned"


class AccountStatus(str, Enum):
    READY = "Ready"
    NOT_READY = "NotReady"
    LEASED = "Leased"
    ORPHANED = "Orphaned"


def _to_decimal(value: Optional[float]) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    return float(value)


def _to_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    return int(value)


def _plain(value: Any) -> Any:
    """Convert DynamoDB Decimals nested in metadata back to int/float."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _dynamo(value: Any) -> Any:
    if isinstance(value, float):
        return Decimal(str(value))
    if isinstance(value, dict):
        return {k: _dynamo(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_dynamo(v) for v in value]
    return value


def _drop_none(item: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in item.items() if v is not None}


@dataclass
class Lease:
    """A time- and budget-bounded claim by a principal on one account."""

    account_id: Optional[str] = None
    principal_id: Optional[str] = None
    id: Optional[str] = None
    status: Optional[LeaseStatus] = None
    status_reason: Optional[LeaseStatusReason] = None
    created_on: Optional[int] = None
    last_modified_on: Optional[int] = None
    status_modified_on: Optional[int] = None
    budget_amount: Optional[float] = None
    budget_currency: Optional[str] = None
    budget_notification_emails: list[str] = field(default_factory=list)
    expires_on: Optional[int] = None
    metadata: Optional[dict[str, Any]] = None

    def to_item(self) -> dict[str, Any]:
        """Serialize to a DynamoDB item."""
        return _drop_none(
            {
                "AccountId": self.account_id,
                "PrincipalId": self.principal_id,
                "Id": self.id,
                "LeaseStatus": self.status.value if self.status else None,
                "LeaseStatusReason": self.status_reason.value if self.status_reason else None,
                "CreatedOn": self.created_on,
                "LastModifiedOn": self.last_modified_on,
                "LeaseStatusModifiedOn": self.status_modified_on,
                "BudgetAmount": _to_decimal(self.budget_amount),
                "BudgetCurrency": self.budget_currency,
                "BudgetNotificationEmails": self.budget_notification_emails or None,
                "ExpiresOn": self.expires_on,
                "Metadata": _dynamo(self.metadata),
            }
        )

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "Lease":
        status = item.get("LeaseStatus")
        reason = item.get("LeaseStatusReason")
        return cls(
            account_id=item.get("AccountId"),
            principal_id=item.get("PrincipalId"),
            id=item.get("Id"),
            status=LeaseStatus(status) if status else None,
            status_reason=LeaseStatusReason(reason) if reason else None,
            created_on=_to_int(item.get("CreatedOn")),
            last_modified_on=_to_int(item.get("LastModifiedOn")),
            status_modified_on=_to_int(item.get("LeaseStatusModifiedOn")),
            budget_amount=_to_float(item.get("BudgetAmount")),
            budget_currency=item.get("BudgetCurrency"),
            budget_notification_emails=list(item.get("BudgetNotificationEmails") or []),
            expires_on=_to_int(item.get("ExpiresOn")),
            metadata=_plain(item.get("Metadata")),
        )

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly view, used for SNS events and handler responses."""
        data = asdict(self)
        data["status"] = self.status.value if self.status else None
        data["status_reason"] = self.status_reason.value if self.status_reason else None
        return data

    def __str__(self) -> str:
        return f"{self.principal_id} @ {self.account_id}"


@dataclass
class Account:
    """A pooled AWS account."""

    id: str
    status: Optional[AccountStatus] = None
    admin_role_arn: Optional[str] = None
    principal_role_arn: Optional[str] = None
    principal_policy_hash: Optional[str] = None
    created_on: Optional[int] = None
    last_modified_on: Optional[int] = None
    metadata: Optional[dict[str, Any]] = None

    def to_item(self) -> dict[str, Any]:
        return _drop_none(
            {
                "Id": self.id,
                "AccountStatus": self.status.value if self.status else None,
                "AdminRoleArn": self.admin_role_arn,
                "PrincipalRoleArn": self.principal_role_arn,
                "PrincipalPolicyHash": self.principal_policy_hash,
                "CreatedOn": self.created_on,
                "LastModifiedOn": self.last_modified_on,
                "Metadata": _dynamo(self.metadata),
            }
        )

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "Account":
        status = item.get("AccountStatus")
        return cls(
            id=item["Id"],
            status=AccountStatus(status) if status else None,
            admin_role_arn=item.get("AdminRoleArn"),
            principal_role_arn=item.get("PrincipalRoleArn"),
            principal_policy_hash=item.get("PrincipalPolicyHash"),
            created_on=_to_int(item.get("CreatedOn")),
            last_modified_on=_to_int(item.get("LastModifiedOn")),
            metadata=_plain(item.get("Metadata")),
        )


@dataclass
class Usage:
    """Cached spend for one principal on one account for one UTC day."""

    principal_id: str
    account_id: str
    start_date: int  # epoch seconds, 00:00:00 UTC
    end_date: int  # epoch seconds, 23:59:59 UTC
    cost_amount: float
    cost_currency: str = "USD"
    time_to_live: Optional[int] = None

    def to_item(self) -> dict[str, Any]:
        return _drop_none(
            {
                "StartDate": self.start_date,
                "EndDate": self.end_date,
                "PrincipalId": self.principal_id,
                "AccountId": self.account_id,
                "CostAmount": _to_decimal(self.cost_amount),
                "CostCurrency": self.cost_currency,
                "TimeToLive": self.time_to_live,
            }
        )

    @classmethod
    def from_item(cls, item: dict[str, Any]) -> "Usage":
        return cls(
            principal_id=item["PrincipalId"],
            account_id=item["AccountId"],
            start_date=int(item["StartDate"]),
            end_date=int(item["EndDate"]),
            cost_amount=float(item.get("CostAmount", 0)),
            cost_currency=item.get("CostCurrency", "USD"),
            time_to_live=_to_int(item.get("TimeToLive")),
        )


@dataclass
class ResetResult:
    """Per-account outcome of a reset-queue drain."""

    build_trigger: bool = False
    message_deletion: bool = False

    @property
    def ok(self) -> bool:
        return self.build_trigger and self.message_deletion


@dataclass
class ResetOutput:
    """Aggregate outcome of a reset-queue drain."""

    accounts: dict[str, ResetResult] = field(default_factory=dict)
    success: bool = True
    errors: list[Exception] = field(default_factory=list)


def role_name_from_arn(arn: Optional[str]) -> Optional[str]:
    """Extract the role name from an IAM role ARN, or None if malformed."""
    if not arn:
        return None
    match = ROLE_ARN_PATTERN.fullmatch(arn)
    if not match:
        return None
    return match.group(1)
