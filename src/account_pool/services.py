"""
Service wiring. Build a ServiceContext once per invocation and pass it down.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import boto3

from account_pool.accounts import AccountService
from account_pool.aws import (
    CodeBuildTrigger,
    CostExplorerSpend,
    S3Storage,
    SesEmailSender,
    SnsNotifier,
    SqsQueue,
    TokenService,
)
from account_pool.budget import BudgetEvaluator
from account_pool.leases import LeaseService
from account_pool.notification import BudgetNotifier
from account_pool.nuke import AwsNukeRunner
from account_pool.reset_queue import ResetQueueDrainer
from account_pool.settings import Settings
from account_pool.store import AccountTable, LeaseTable, UsageTable

logger = logging.getLogger(__name__)


@dataclass
class ServiceContext:
    """Everything the entrypoints need, constructed once."""

    settings: Settings
    lease_table: Any
    account_table: Any
    usage_table: Any
    token_service: Any
    cost_provider: Callable[[Any], Any]
    events: Any
    email_sender: Any
    storage: Any
    reset_queue: Optional[Any] = None
    builder: Optional[Any] = None
    nuke_runner: Any = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "ServiceContext":
        region = settings.region
        dynamodb = boto3.resource("dynamodb", region_name=region)
        logger.info("Building services for region %s", region)
        return cls(
            settings=settings,
            lease_table=LeaseTable(settings.lease_table, dynamodb=dynamodb),
            account_table=AccountTable(settings.account_table, dynamodb=dynamodb),
            usage_table=UsageTable(settings.usage_table, dynamodb=dynamodb),
            token_service=TokenService(region),
            cost_provider=lambda session: CostExplorerSpend(session=session),
            events=SnsNotifier(region),
            email_sender=SesEmailSender(region),
            storage=S3Storage(region),
            reset_queue=SqsQueue(settings.reset_queue_url, region) if settings.reset_queue_url else None,
            builder=CodeBuildTrigger(settings.reset_build_name, region),
            nuke_runner=AwsNukeRunner(),
        )

    def account_service(self) -> AccountService:
        return AccountService(
            accounts=self.account_table,
            leases=self.lease_table,
            events=self.events,
            reset_queue=self.reset_queue,
            reset_complete_topic_arn=self.settings.reset_complete_topic_arn,
        )

    def notifier(self) -> BudgetNotifier:
        s = self.settings
        return BudgetNotifier(
            email_sender=self.email_sender,
            from_address=s.notification_from_email,
            bcc_addresses=s.notification_bcc_emails,
            threshold_percentiles=s.threshold_percentiles,
            principal_budget_amount=s.principal_budget_amount,
            template_html=s.template_html,
            template_text=s.template_text,
            template_subject=s.template_subject,
        )

    def budget_evaluator(self) -> BudgetEvaluator:
        s = self.settings
        return BudgetEvaluator(
            accounts=self.account_table,
            leases=self.lease_table,
            usage=self.usage_table,
            token_service=self.token_service,
            cost_provider=self.cost_provider,
            notifier=self.notifier(),
            events=self.events,
            reset_queue=self.reset_queue,
            principal_budget_amount=s.principal_budget_amount,
            principal_budget_period=s.principal_budget_period,
            usage_ttl=s.usage_ttl,
            lease_locked_topic_arn=s.lease_locked_topic_arn,
        )

    def lease_service(self) -> LeaseService:
        s = self.settings
        return LeaseService(
            leases=self.lease_table,
            accounts=self.account_service(),
            spend=self.budget_evaluator(),
            events=self.events,
            max_lease_budget_amount=s.max_lease_budget_amount,
            max_lease_period=s.max_lease_period,
            principal_budget_amount=s.principal_budget_amount,
            default_lease_length_in_days=s.default_lease_length_in_days,
            lease_ended_topic_arn=s.lease_ended_topic_arn,
            lease_added_topic_arn=s.lease_added_topic_arn,
        )

    def reset_drainer(self) -> ResetQueueDrainer:
        return ResetQueueDrainer(
            queue=self.reset_queue,
            accounts=self.account_table,
            leases=self.lease_table,
            builder=self.builder,
        )
