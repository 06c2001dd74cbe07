"""
Reset queue drain.

Each queue message names one account that needs a reset. For every message
the account's leases are reset-locked, a reset build is started and the
message is deleted. Messages that fail stay on the queue for redelivery.
"""

import logging
from typing import Any

from account_pool.errors import (
    AccountPoolError,
    NotFoundError,
    StatusTransitionError,
    ValidationError,
)
from account_pool.models import (
    LeaseStatus,
    LeaseStatusReason,
    ResetOutput,
    ResetResult,
    role_name_from_arn,
)

logger = logging.getLogger(__name__)

MAX_MESSAGES_PER_BATCH = 10

RESET_LOCKS = {
    LeaseStatus.ACTIVE: LeaseStatus.RESET_LOCK,
    LeaseStatus.FINANCE_LOCK: LeaseStatus.RESET_FINANCE_LOCK,
}


class ResetQueueDrainer:
    def __init__(self, queue: Any, accounts: Any, leases: Any, builder: Any):
        self.queue = queue
        self.accounts = accounts
        self.leases = leases
        self.builder = builder

    def drain(self, now: int) -> ResetOutput:
        """Process batches until the queue comes back empty."""
        output = ResetOutput()
        while True:
            try:
                messages = self.queue.receive(MAX_MESSAGES_PER_BATCH)
            except AccountPoolError as e:
                logger.error("Failed to receive reset messages: %s", e)
                output.success = False
                output.errors.append(e)
                return output

            if not messages:
                return output

            for message in messages:
                account_id = message.get("Body", "").strip()
                result = ResetResult()
                try:
                    self._reset(account_id, message["ReceiptHandle"], result, now)
                except AccountPoolError as e:
                    logger.error("Failed to trigger reset for account %s: %s", account_id, e)
                    output.success = False
                    output.errors.append(e)

                # An account queued twice keeps its failed result
                previous = output.accounts.get(account_id)
                if previous is None or previous.ok:
                    output.accounts[account_id] = result

    def _reset(self, account_id: str, receipt_handle: str, result: ResetResult, now: int) -> None:
        # 1. Look up the account and its role names
        account = self.accounts.get(account_id)
        if account is None:
            raise NotFoundError("account", account_id)
        admin_role_name = role_name_from_arn(account.admin_role_arn)
        principal_role_name = role_name_from_arn(account.principal_role_arn)
        if admin_role_name is None or principal_role_name is None:
            raise ValidationError("account", f"account {account_id} has a malformed role ARN")

        # 2. Freeze its leases
        self.reset_lock_leases(account_id, now)

        # 3. Start the reset build
        build_id = self.builder.start_build(
            {
                "RESET_ACCOUNT": account_id,
                "RESET_ACCOUNT_ADMIN_ROLE_NAME": admin_role_name,
                "RESET_ACCOUNT_PRINCIPAL_ROLE_NAME": principal_role_name,
            }
        )
        result.build_trigger = True
        logger.info("Started reset build %s for account %s", build_id, account_id)

        # 4. Done with the message
        self.queue.delete(receipt_handle)
        result.message_deletion = True

    def reset_lock_leases(self, account_id: str, now: int) -> None:
        """Active -> ResetLock and FinanceLock -> ResetFinanceLock for every lease on the account.

        A lease that already moved on is left as it is, so a redelivered
        message locks nothing twice.
        """
        for lease in self.leases.list_by_account(account_id):
            next_status = RESET_LOCKS.get(lease.status)
            if next_status is None:
                continue
            try:
                self.leases.transition_status(
                    lease.account_id,
                    lease.principal_id,
                    lease.status,
                    next_status,
                    lease.status_reason or LeaseStatusReason.ACTIVE,
                    now,
                )
                logger.info("Lease %s: %s -> %s", lease, lease.status.value, next_status.value)
            except StatusTransitionError:
                logger.info("Lease %s is already locked", lease)
