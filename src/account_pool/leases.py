"""
Lease service: create, read, list and end leases.
"""

import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from account_pool.errors import (
    AccountPoolError,
    AlreadyExistsError,
    ConflictError,
    MultiError,
    NotFoundError,
    ValidationError,
)
from account_pool.models import AccountStatus, Lease, LeaseStatus, LeaseStatusReason
from account_pool.store import LeasePage, LeaseQuery
from account_pool.validation import validate_lease_request, validate_new_lease_fields

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


class LeaseService:
    """Lease lifecycle on top of the lease store.

    ``leases`` must provide the reader, writer and transitioner roles;
    ``spend`` provides ``calculate_principal_spend``.
    """

    def __init__(
        self,
        leases: Any,
        accounts: Any,
        spend: Any,
        events: Any,
        max_lease_budget_amount: float,
        max_lease_period: int,
        principal_budget_amount: float,
        default_lease_length_in_days: int,
        lease_ended_topic_arn: Optional[str] = None,
        lease_added_topic_arn: Optional[str] = None,
    ):
        self.leases = leases
        self.accounts = accounts
        self.spend = spend
        self.events = events
        self.max_lease_budget_amount = max_lease_budget_amount
        self.max_lease_period = max_lease_period
        self.principal_budget_amount = principal_budget_amount
        self.default_lease_length_in_days = default_lease_length_in_days
        self.lease_ended_topic_arn = lease_ended_topic_arn
        self.lease_added_topic_arn = lease_added_topic_arn

    def create(self, lease: Lease, now: Optional[int] = None) -> Lease:
        """Validate and persist a new Active lease for ``lease.principal_id``."""
        now = now or int(time.time())

        # 1. Field rules
        validate_new_lease_fields(lease)

        # 2. One live lease per principal
        if lease.principal_id:
            for existing in self.leases.list_by_principal(lease.principal_id):
                if existing.status != LeaseStatus.INACTIVE:
                    raise AlreadyExistsError("lease", f"with principal {lease.principal_id}")

        # 3. Defaults
        if lease.expires_on is None:
            lease.expires_on = now + self.default_lease_length_in_days * SECONDS_PER_DAY
        if lease.metadata is None:
            lease.metadata = {}
        if lease.budget_currency is None:
            lease.budget_currency = "USD"

        # 4. Creation policy
        principal_spend = 0.0
        if lease.principal_id:
            principal_spend = self.spend.calculate_principal_spend(
                lease.principal_id, datetime.fromtimestamp(now, tz=timezone.utc)
            )
        validate_lease_request(
            lease,
            now=now,
            max_lease_budget_amount=self.max_lease_budget_amount,
            max_lease_period=self.max_lease_period,
            principal_budget_amount=self.principal_budget_amount,
            principal_spend=principal_spend,
        )

        # 5. Claim an account
        if lease.account_id is None:
            lease.account_id = self.accounts.assign_ready_account(now).id
        else:
            self.accounts.transition(lease.account_id, AccountStatus.READY, AccountStatus.LEASED, now)

        # 6. Persist and announce, releasing the account on failure
        lease.id = str(uuid.uuid4())
        lease.status = LeaseStatus.ACTIVE
        lease.status_reason = LeaseStatusReason.ACTIVE
        lease.created_on = now
        lease.last_modified_on = now
        lease.status_modified_on = now
        saved = False
        try:
            self.leases.put(lease)
            saved = True
            self.events.publish_event(self.lease_added_topic_arn, lease.to_dict())
        except AccountPoolError as e:
            logger.error("Failed to create lease %s: %s", lease, e)
            self._rollback(lease, saved, now, e)
            raise

        logger.info("Created lease %s (%s)", lease, lease.id)
        return lease

    def _rollback(self, lease: Lease, saved: bool, now: int, error: AccountPoolError) -> None:
        """Undo a half-finished create: end the saved lease and return the account to Ready."""
        errors: list[AccountPoolError] = []
        if saved:
            try:
                self.leases.transition_status(
                    lease.account_id,
                    lease.principal_id,
                    LeaseStatus.ACTIVE,
                    LeaseStatus.INACTIVE,
                    LeaseStatusReason.ROLLED_BACK,
                    now,
                )
            except AccountPoolError as e:
                errors.append(e)
        try:
            self.accounts.transition(lease.account_id, AccountStatus.LEASED, AccountStatus.READY, now)
        except AccountPoolError as e:
            errors.append(e)

        if errors:
            logger.error("Failed to roll back lease %s: %s", lease, errors)
            raise MultiError(
                f"Failed to Rollback Account Lease for {lease.account_id} - {lease.principal_id}",
                [error, *errors],
            ) from error
        logger.info("Rolled back lease %s", lease)

    def get(self, lease_id: str) -> Lease:
        lease = self.leases.get_by_id(lease_id)
        if lease is None:
            raise NotFoundError("lease", lease_id)
        return lease

    def list(self, query: LeaseQuery) -> LeasePage:
        if query.id is not None:
            raise ValidationError("lease", "id is not a valid filter when listing leases")
        return self.leases.find(query)

    def delete(
        self,
        lease_id: str,
        reason: LeaseStatusReason = LeaseStatusReason.DESTROYED,
        now: Optional[int] = None,
    ) -> Lease:
        """End an Active lease and send its account to reset."""
        now = now or int(time.time())
        lease = self.get(lease_id)
        if lease.status != LeaseStatus.ACTIVE:
            raise ConflictError("lease", lease_id, "lease is not active")

        updated = self.leases.transition_status(
            lease.account_id,
            lease.principal_id,
            LeaseStatus.ACTIVE,
            LeaseStatus.INACTIVE,
            reason,
            now,
        )
        logger.info("Ended lease %s: %s", updated, reason.value)

        self.accounts.begin_reset(updated.account_id, now)
        self.events.publish_event(self.lease_ended_topic_arn, updated.to_dict())
        return updated
