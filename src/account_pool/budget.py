"""
Budget evaluation for active leases.

A budget check computes the lease's spend (today's cost from Cost Explorer
plus cached daily usage since the lease started), the principal's spend for
the current billing period, decides whether the lease must end, and sends a
threshold notification email.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from account_pool.errors import AccountPoolError, MultiError, NotFoundError, ValidationError
from account_pool.models import Account, Lease, LeaseStatus, LeaseStatusReason, Usage
from account_pool.validation import billing_period_start

logger = logging.getLogger(__name__)


def determine_threshold_percentile(
    threshold_percentiles: list[float], budget_amount: float, actual_spend: float
) -> float:
    """Highest configured percentile of ``budget_amount`` that ``actual_spend`` has reached, else 0."""
    for percentile in sorted(threshold_percentiles, reverse=True):
        if actual_spend >= budget_amount * percentile / 100:
            return percentile
    return 0


def is_lease_expired(
    lease: Lease, now: int, actual_spend: float, principal_spend: float, principal_budget_amount: float
) -> tuple[bool, LeaseStatusReason]:
    """Decide whether a lease must end, and why. Expiry wins over budget."""
    if lease.expires_on is not None and now >= lease.expires_on:
        return True, LeaseStatusReason.EXPIRED
    if actual_spend >= (lease.budget_amount or 0.0):
        return True, LeaseStatusReason.OVER_BUDGET
    if principal_spend > principal_budget_amount:
        return True, LeaseStatusReason.OVER_PRINCIPAL_BUDGET
    return False, LeaseStatusReason.ACTIVE


def _day_start(value: datetime) -> datetime:
    value = value.astimezone(timezone.utc)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


@dataclass
class BudgetCheckResult:
    """Outcome of one budget check."""

    lease: Lease
    actual_spend: float
    principal_spend: float
    expired: bool
    reason: LeaseStatusReason
    notified: bool = False
    errors: list[AccountPoolError] = field(default_factory=list)


class BudgetEvaluator:
    """Computes spend for a lease and ends it when it runs out of time or money."""

    def __init__(
        self,
        accounts: Any,
        leases: Any,
        usage: Any,
        token_service: Any,
        cost_provider: Callable[[Any], Any],
        notifier: Any,
        events: Any,
        reset_queue: Any,
        principal_budget_amount: float,
        principal_budget_period: str,
        usage_ttl: int,
        lease_locked_topic_arn: Optional[str] = None,
    ):
        self.accounts = accounts
        self.leases = leases
        self.usage = usage
        self.token_service = token_service
        self.cost_provider = cost_provider
        self.notifier = notifier
        self.events = events
        self.reset_queue = reset_queue
        self.principal_budget_amount = principal_budget_amount
        self.principal_budget_period = principal_budget_period
        self.usage_ttl = usage_ttl
        self.lease_locked_topic_arn = lease_locked_topic_arn

    def calculate_lease_spend(self, account: Account, lease: Lease, now: datetime) -> float:
        """Spend on ``account`` by the lease's principal since the lease became active.

        Today's cost is fetched live and cached as a Usage record; earlier
        days come from the cache.
        """
        started_on = lease.status_modified_on or lease.created_on
        if started_on is None:
            raise ValidationError("lease", f"lease {lease} has no LeaseStatusModifiedOn or CreatedOn")

        # 1. Today's spend, as the account admin
        session = self.token_service.assume_role(
            account.admin_role_arn, f"AccountPoolBudgetCheck{account.id}"
        )
        today = _day_start(now)
        tomorrow = today + timedelta(days=1)
        today_spend = self.cost_provider(session).calculate_total_spend(today, tomorrow)

        # 2. Cache it
        self.usage.put(
            Usage(
                principal_id=lease.principal_id,
                account_id=lease.account_id,
                start_date=int(today.timestamp()),
                end_date=int(tomorrow.timestamp()) - 1,
                cost_amount=today_spend,
                cost_currency="USD",
                time_to_live=int(now.timestamp()) + self.usage_ttl,
            )
        )

        # 3. Add cached days from lease start through yesterday
        lease_start = datetime.fromtimestamp(started_on, tz=timezone.utc)
        yesterday_end = today - timedelta(seconds=1)
        total = today_spend
        for record in self.usage.get_by_date_range(lease_start, yesterday_end):
            if record.principal_id == lease.principal_id and record.account_id == lease.account_id:
                total += record.cost_amount

        logger.info("Lease %s has spent %.2f (today %.2f)", lease, total, today_spend)
        return total

    def calculate_principal_spend(self, principal_id: str, now: datetime) -> float:
        """Spend by the principal across all accounts in the current billing period."""
        start = billing_period_start(self.principal_budget_period, now)
        end = _day_start(now) + timedelta(days=1) - timedelta(seconds=1)
        return sum(record.cost_amount for record in self.usage.get_by_principal(principal_id, start, end))

    def check_budget(self, lease: Lease, now: Optional[datetime] = None) -> BudgetCheckResult:
        """Run a full budget check for one lease.

        Failures after the spend is known are collected, so a failed status
        transition still lets the notification go out; they are raised
        together as a MultiError at the end.
        """
        now = now or datetime.now(timezone.utc)
        now_epoch = int(now.timestamp())

        account = self.accounts.get(lease.account_id)
        if account is None:
            raise NotFoundError("account", lease.account_id)

        actual_spend = self.calculate_lease_spend(account, lease, now)
        principal_spend = self.calculate_principal_spend(lease.principal_id, now)

        expired, reason = is_lease_expired(
            lease, now_epoch, actual_spend, principal_spend, self.principal_budget_amount
        )
        result = BudgetCheckResult(
            lease=lease,
            actual_spend=actual_spend,
            principal_spend=principal_spend,
            expired=expired,
            reason=reason,
        )

        if expired:
            logger.info("Ending lease %s: %s", lease, reason.value)
            self._end_lease(lease, reason, now_epoch, result)

        try:
            result.notified = self.notifier.send_budget_notification(
                lease, actual_spend, principal_spend
            )
        except AccountPoolError as e:
            logger.error("Failed to send budget notification for %s: %s", lease, e)
            result.errors.append(e)

        if result.errors:
            raise MultiError("Budget check failed", result.errors)
        return result

    def _end_lease(
        self, lease: Lease, reason: LeaseStatusReason, now: int, result: BudgetCheckResult
    ) -> None:
        # 1. Deactivate, conditional on the status we read
        try:
            result.lease = self.leases.transition_status(
                lease.account_id,
                lease.principal_id,
                lease.status,
                LeaseStatus.INACTIVE,
                reason,
                now,
            )
        except AccountPoolError as e:
            logger.error("Failed to deactivate lease %s: %s", lease, e)
            result.errors.append(e)

        # 2. Announce the lock, only for leases that were in use
        if lease.status == LeaseStatus.ACTIVE:
            try:
                self.events.publish_event(self.lease_locked_topic_arn, result.lease.to_dict())
            except AccountPoolError as e:
                logger.error("Failed to publish lease locked event for %s: %s", lease, e)
                result.errors.append(e)

        # 3. Queue the account for reset
        if self.reset_queue is None:
            logger.warning("No reset queue configured, account %s not queued", lease.account_id)
            return
        try:
            self.reset_queue.send(lease.account_id)
        except AccountPoolError as e:
            logger.error("Failed to enqueue account %s for reset: %s", lease.account_id, e)
            result.errors.append(e)
