"""
Thin wrappers over the AWS services the account pool talks to.

Each wrapper owns one boto3 client and exposes only the calls the services
need, so tests can replace a collaborator with a MagicMock of the same shape.
"""

import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from account_pool.errors import InternalServerError

logger = logging.getLogger(__name__)


def _fail(action: str, error: Exception) -> InternalServerError:
    logger.error("%s failed: %s", action, error)
    return InternalServerError(f"{action} failed", error)


class TokenService:
    """STS role assumption."""

    def __init__(self, region: str = "us-east-1", client: Any = None):
        self.region = region
        self.sts = client or boto3.client("sts", region_name=region)

    def assume_role(self, role_arn: str, session_name: str) -> boto3.Session:
        """Assume ``role_arn`` and return a boto3 session bound to its credentials."""
        try:
            response = self.sts.assume_role(RoleArn=role_arn, RoleSessionName=session_name)
        except (BotoCoreError, ClientError) as e:
            raise _fail(f"assume role {role_arn}", e) from e
        creds = response["Credentials"]
        return boto3.Session(
            aws_access_key_id=creds["AccessKeyId"],
            aws_secret_access_key=creds["SecretAccessKey"],
            aws_session_token=creds["SessionToken"],
            region_name=self.region,
        )


class CostExplorerSpend:
    """Account spend from Cost Explorer (always us-east-1)."""

    def __init__(self, session: Optional[boto3.Session] = None, client: Any = None):
        if client is None:
            client = (session or boto3).client("ce", region_name="us-east-1")
        self.ce = client

    def calculate_total_spend(self, start: datetime, end: datetime) -> float:
        """Sum of daily UnblendedCost over [start, end)."""
        try:
            response = self.ce.get_cost_and_usage(
                TimePeriod={"Start": start.strftime("%Y-%m-%d"), "End": end.strftime("%Y-%m-%d")},
                Granularity="DAILY",
                Metrics=["UnblendedCost"],
            )
        except (BotoCoreError, ClientError) as e:
            raise _fail("Cost Explorer query", e) from e

        total_cost = Decimal("0")
        for result in response.get("ResultsByTime", []):
            amount = result.get("Total", {}).get("UnblendedCost", {}).get("Amount", "0")
            total_cost += Decimal(amount)
        return float(total_cost)


class SqsQueue:
    """One SQS queue, addressed by URL."""

    def __init__(self, queue_url: str, region: str = "us-east-1", client: Any = None):
        self.queue_url = queue_url
        self.sqs = client or boto3.client("sqs", region_name=region)

    def receive(self, max_messages: int = 10) -> list[dict[str, Any]]:
        try:
            response = self.sqs.receive_message(
                QueueUrl=self.queue_url, MaxNumberOfMessages=max_messages
            )
        except (BotoCoreError, ClientError) as e:
            raise _fail(f"receive from {self.queue_url}", e) from e
        return response.get("Messages", [])

    def delete(self, receipt_handle: str) -> None:
        try:
            self.sqs.delete_message(QueueUrl=self.queue_url, ReceiptHandle=receipt_handle)
        except (BotoCoreError, ClientError) as e:
            raise _fail(f"delete from {self.queue_url}", e) from e

    def send(self, body: str) -> None:
        try:
            self.sqs.send_message(QueueUrl=self.queue_url, MessageBody=body)
        except (BotoCoreError, ClientError) as e:
            raise _fail(f"send to {self.queue_url}", e) from e


class CodeBuildTrigger:
    """Starts builds of one CodeBuild project."""

    def __init__(self, project_name: str, region: str = "us-east-1", client: Any = None):
        self.project_name = project_name
        self.codebuild = client or boto3.client("codebuild", region_name=region)

    def start_build(self, environment: dict[str, str]) -> str:
        """Start a build with PLAINTEXT environment overrides; returns the build id."""
        overrides = [
            {"name": name, "value": value, "type": "PLAINTEXT"}
            for name, value in environment.items()
        ]
        try:
            response = self.codebuild.start_build(
                projectName=self.project_name,
                environmentVariablesOverride=overrides,
            )
        except (BotoCoreError, ClientError) as e:
            raise _fail(f"start build {self.project_name}", e) from e
        return response["build"]["id"]


def prepare_sns_message_json(body: Any) -> str:
    """Wrap a payload in the SNS JSON envelope used for protocol-specific messages."""
    encoded = body if isinstance(body, str) else json.dumps(body, default=str)
    return json.dumps({"default": encoded, "Body": encoded})


class SnsNotifier:
    """Publishes events to SNS topics."""

    def __init__(self, region: str = "us-east-1", client: Any = None):
        self.sns = client or boto3.client("sns", region_name=region)

    def publish(self, topic_arn: str, message: str, is_json: bool = False) -> str:
        kwargs: dict[str, Any] = {"TopicArn": topic_arn, "Message": message}
        if is_json:
            kwargs["MessageStructure"] = "json"
        try:
            response = self.sns.publish(**kwargs)
        except (BotoCoreError, ClientError) as e:
            raise _fail(f"publish to {topic_arn}", e) from e
        return response.get("MessageId", "")

    def publish_event(self, topic_arn: Optional[str], payload: Any) -> Optional[str]:
        """Publish a JSON event; no-op when the topic is not configured."""
        if not topic_arn:
            return None
        return self.publish(topic_arn, prepare_sns_message_json(payload), is_json=True)


class SesEmailSender:
    """Sends HTML + text email through SES."""

    def __init__(self, region: str = "us-east-1", client: Any = None):
        self.ses = client or boto3.client("ses", region_name=region)

    def send_email(
        self,
        from_address: str,
        to_addresses: list[str],
        bcc_addresses: list[str],
        subject: str,
        body_html: str,
        body_text: str,
    ) -> str:
        try:
            response = self.ses.send_email(
                Source=from_address,
                Destination={"ToAddresses": to_addresses, "BccAddresses": bcc_addresses},
                Message={
                    "Subject": {"Data": subject, "Charset": "UTF-8"},
                    "Body": {
                        "Html": {"Data": body_html, "Charset": "UTF-8"},
                        "Text": {"Data": body_text, "Charset": "UTF-8"},
                    },
                },
            )
        except (BotoCoreError, ClientError) as e:
            raise _fail("send email", e) from e
        return response.get("MessageId", "")


class S3Storage:
    """Reads objects from S3."""

    def __init__(self, region: str = "us-east-1", client: Any = None):
        self.s3 = client or boto3.client("s3", region_name=region)

    def get_object(self, bucket: str, key: str) -> bytes:
        try:
            response = self.s3.get_object(Bucket=bucket, Key=key)
            return response["Body"].read()
        except (BotoCoreError, ClientError) as e:
            raise _fail(f"get s3://{bucket}/{key}", e) from e
