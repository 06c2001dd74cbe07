"""
Lease validation: record field rules and the ordered creation policy.
"""

import re
import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

from account_pool.errors import ValidationError
from account_pool.models import Lease
from account_pool.settings import MONTHLY, WEEKLY

ACCOUNT_ID_PATTERN = re.compile(r"^[0-9]{12}$")


def is_uuid4(value: str) -> bool:
    try:
        parsed = uuid.UUID(value)
    except (TypeError, ValueError, AttributeError):
        return False
    return parsed.version == 4 and str(parsed) == value.lower()


def validate_account_id(account_id: Optional[str]) -> None:
    if account_id is None or not ACCOUNT_ID_PATTERN.match(account_id):
        raise ValidationError("lease", f"accountId {account_id!r} must be a string of 12 digits")


def validate_principal_id(principal_id: Optional[str]) -> None:
    if principal_id is None:
        raise ValidationError("lease", "principalId must be provided")


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def validate_new_lease_fields(lease: Lease) -> None:
    """Reject server-assigned fields and malformed identifiers on a create request."""
    server_assigned = {
        "id": lease.id,
        "leaseStatus": lease.status,
        "leaseStatusReason": lease.status_reason,
        "createdOn": lease.created_on,
        "lastModifiedOn": lease.last_modified_on,
    }
    for name, value in server_assigned.items():
        if value is not None:
            raise ValidationError("lease", f"{name} must be empty")

    if lease.account_id is not None:
        validate_account_id(lease.account_id)
    validate_principal_id(lease.principal_id)
    if lease.budget_amount is not None and not _is_number(lease.budget_amount):
        raise ValidationError("lease", "budgetAmount must be a number")
    if lease.expires_on is not None and not _is_number(lease.expires_on):
        raise ValidationError("lease", "expiresOn must be a number")


def validate_lease_record(lease: Lease) -> None:
    """Field rules for a persisted lease."""
    validate_account_id(lease.account_id)
    validate_principal_id(lease.principal_id)
    if lease.id is None or not is_uuid4(lease.id):
        raise ValidationError("lease", f"id {lease.id!r} must be a UUIDv4")
    if lease.budget_amount is not None and lease.budget_amount < 0:
        raise ValidationError("lease", "budgetAmount must not be negative")


def billing_period_start(period: str, now: datetime) -> datetime:
    """Start of the principal billing period containing ``now``.

    WEEKLY periods start on the most recent Sunday at 00:00 UTC,
    MONTHLY periods on the 1st of the month at 00:00 UTC.
    """
    now = now.astimezone(timezone.utc)
    if period == WEEKLY:
        # Monday is 0, Sunday is 6
        days_since_sunday = (now.weekday() + 1) % 7
        sunday = now - timedelta(days=days_since_sunday)
        return datetime(sunday.year, sunday.month, sunday.day, tzinfo=timezone.utc)
    if period == MONTHLY:
        return datetime(now.year, now.month, 1, tzinfo=timezone.utc)
    raise ValidationError("principal budget period", f"unknown period {period!r}")


def validate_lease_request(
    lease: Lease,
    now: int,
    max_lease_budget_amount: float,
    max_lease_period: int,
    principal_budget_amount: float,
    principal_spend: float,
) -> None:
    """Creation policy checks, in order. The first failing rule wins.

    ``now`` is epoch seconds; ``principal_spend`` is what the principal has
    already spent in the current billing period.
    """
    # 1. Principal must be named
    if not lease.principal_id:
        raise ValidationError("lease", "invalid request parameters")

    # 2. Expiry must be in the future
    if lease.expires_on is not None and lease.expires_on <= now:
        raise ValidationError(
            "lease",
            f"Requested lease has a desired expiry date less than today: {lease.expires_on}",
        )

    # 3. Budget must fit under the per-lease ceiling
    budget = lease.budget_amount or 0.0
    if budget > max_lease_budget_amount:
        raise ValidationError(
            "lease",
            f"Requested lease has a budget amount of {budget:.2f}, which is greater than "
            f"max lease budget amount of {max_lease_budget_amount:.2f}",
        )

    # 4. Duration must fit under the max lease period
    max_expires_on = now + max_lease_period
    if lease.expires_on is not None and lease.expires_on > max_expires_on:
        raise ValidationError(
            "lease",
            f"Requested lease has a budget expires on of {lease.expires_on}, which is greater "
            f"than max lease period of {max_expires_on}",
        )

    # 5. Principal must have budget left this period
    if principal_spend > principal_budget_amount:
        raise ValidationError(
            "lease",
            f"Unable to create lease: User principal {lease.principal_id} has already spent "
            f"{principal_spend:.2f} of their {principal_budget_amount:.2f} principal budget",
        )
