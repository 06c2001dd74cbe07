"""
Account status management: assignment, reclaim, reset queueing, orphaning
and the post-reset sweep.
"""

import logging
import time
from typing import Any, Optional

from account_pool.errors import (
    AccountPoolError,
    ConfigError,
    ConflictError,
    MultiError,
    NotFoundError,
    StatusTransitionError,
)
from account_pool.models import Account, AccountStatus, LeaseStatus, LeaseStatusReason

logger = logging.getLogger(__name__)


class AccountService:
    def __init__(
        self,
        accounts: Any,
        leases: Any,
        events: Any = None,
        reset_queue: Any = None,
        reset_complete_topic_arn: Optional[str] = None,
    ):
        self.accounts = accounts
        self.leases = leases
        self.events = events
        self.reset_queue = reset_queue
        self.reset_complete_topic_arn = reset_complete_topic_arn

    def get(self, account_id: str) -> Account:
        account = self.accounts.get(account_id)
        if account is None:
            raise NotFoundError("account", account_id)
        return account

    def transition(
        self,
        account_id: str,
        prev_status: AccountStatus,
        next_status: AccountStatus,
        now: Optional[int] = None,
    ) -> Account:
        now = now or int(time.time())
        logger.info("Account %s: %s -> %s", account_id, prev_status.value, next_status.value)
        return self.accounts.transition_status(account_id, prev_status, next_status, now)

    def assign_ready_account(self, now: Optional[int] = None) -> Account:
        """Claim a Ready account for a new lease (Ready -> Leased)."""
        for account in self.accounts.find_by_status(AccountStatus.READY):
            try:
                return self.transition(account.id, AccountStatus.READY, AccountStatus.LEASED, now)
            except StatusTransitionError:
                # Claimed by someone else in the meantime
                continue
        raise ConflictError("account", "pool", "no accounts are available")

    def begin_reset(self, account_id: str, now: Optional[int] = None) -> None:
        """Mark a leased account NotReady and queue it for reset."""
        try:
            self.transition(account_id, AccountStatus.LEASED, AccountStatus.NOT_READY, now)
        except StatusTransitionError as e:
            logger.info("Account %s was not Leased, leaving status as is: %s", account_id, e)
        if self.reset_queue is not None:
            self.reset_queue.send(account_id)

    def queue_not_ready_accounts(self) -> list[str]:
        """Send every NotReady account to the reset queue; returns the queued IDs."""
        if self.reset_queue is None:
            raise ConfigError("RESET_QUEUE_URL must be set to populate the reset queue")

        queued: list[str] = []
        errors: list[AccountPoolError] = []
        for account in self.accounts.find_by_status(AccountStatus.NOT_READY):
            logger.info("Resetting account: %s", account.id)
            try:
                self.reset_queue.send(account.id)
                queued.append(account.id)
            except AccountPoolError as e:
                logger.error("Failed to queue account %s for reset: %s", account.id, e)
                errors.append(e)

        if errors:
            raise MultiError("Failed to queue accounts for reset", errors)
        return queued

    def orphan_account(self, account_id: str, now: Optional[int] = None) -> Account:
        """Mark an account Orphaned and end every Active lease on it."""
        now = now or int(time.time())
        account = self.get(account_id)
        if account.status != AccountStatus.ORPHANED:
            account = self.transition(account_id, account.status, AccountStatus.ORPHANED, now)

        errors: list[AccountPoolError] = []
        for lease in self.leases.list_by_account(account_id):
            if lease.status != LeaseStatus.ACTIVE:
                continue
            try:
                self.leases.transition_status(
                    lease.account_id,
                    lease.principal_id,
                    LeaseStatus.ACTIVE,
                    LeaseStatus.INACTIVE,
                    LeaseStatusReason.ACCOUNT_ORPHANED,
                    now,
                )
            except AccountPoolError as e:
                logger.error("Failed to end lease %s on orphaned account: %s", lease, e)
                errors.append(e)

        if errors:
            raise MultiError(f"Failed to end leases on orphaned account {account_id}", errors)
        return account

    def complete_reset(self, account_id: str, now: Optional[int] = None) -> None:
        """Unlock leases held for the reset and return the account to the pool.

        ResetLock leases go back to Active, ResetFinanceLock to FinanceLock.
        The account moves NotReady -> Ready; if it was not NotReady it is
        left alone.
        """
        now = now or int(time.time())
        unlocks = {
            LeaseStatus.RESET_LOCK: LeaseStatus.ACTIVE,
            LeaseStatus.RESET_FINANCE_LOCK: LeaseStatus.FINANCE_LOCK,
        }

        errors: list[AccountPoolError] = []
        for lease in self.leases.list_by_account(account_id):
            next_status = unlocks.get(lease.status)
            if next_status is None:
                continue
            logger.info(
                "Setting lease %s from %s to %s", lease, lease.status.value, next_status.value
            )
            try:
                self.leases.transition_status(
                    lease.account_id,
                    lease.principal_id,
                    lease.status,
                    next_status,
                    lease.status_reason or LeaseStatusReason.ACTIVE,
                    now,
                )
            except AccountPoolError as e:
                errors.append(e)
        if errors:
            raise MultiError(f"Failed to unlock leases for account {account_id}", errors)

        try:
            account = self.transition(account_id, AccountStatus.NOT_READY, AccountStatus.READY, now)
        except StatusTransitionError:
            logger.info("Account %s was not NotReady, leaving status as is", account_id)
            return

        if self.events is not None:
            self.events.publish_event(
                self.reset_complete_topic_arn,
                {"id": account.id, "accountStatus": account.status.value},
            )
