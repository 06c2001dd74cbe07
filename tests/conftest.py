from datetime import datetime, timezone

import boto3
import pytest
from moto import mock_aws

from account_pool.models import Account, AccountStatus, Lease, LeaseStatus, LeaseStatusReason
from account_pool.store import AccountTable, LeaseTable, UsageTable

REGION = "us-east-1"
ACCOUNT_ID = "123456789012"
PRINCIPAL_ID = "user-1"

# Wednesday
NOW = datetime(2024, 5, 15, 12, 0, 0, tzinfo=timezone.utc)
NOW_EPOCH = int(NOW.timestamp())


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    """Fake credentials so nothing can reach a real account."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)


@pytest.fixture
def dynamodb():
    """Mocked DynamoDB with the Leases, Accounts and Usage tables."""
    with mock_aws():
        resource = boto3.resource("dynamodb", region_name=REGION)
        resource.create_table(
            TableName="Leases",
            KeySchema=[
                {"AttributeName": "AccountId", "KeyType": "HASH"},
                {"AttributeName": "PrincipalId", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "AccountId", "AttributeType": "S"},
                {"AttributeName": "PrincipalId", "AttributeType": "S"},
                {"AttributeName": "Id", "AttributeType": "S"},
            ],
            GlobalSecondaryIndexes=[
                {
                    "IndexName": "LeaseId",
                    "KeySchema": [{"AttributeName": "Id", "KeyType": "HASH"}],
                    "Projection": {"ProjectionType": "ALL"},
                },
                {
                    "IndexName": "PrincipalId",
                    "KeySchema": [{"AttributeName": "PrincipalId", "KeyType": "HASH"}],
                    "Projection": {"ProjectionType": "ALL"},
                },
            ],
            BillingMode="PAY_PER_REQUEST",
        )
        resource.create_table(
            TableName="Accounts",
            KeySchema=[{"AttributeName": "Id", "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": "Id", "AttributeType": "S"}],
            BillingMode="PAY_PER_REQUEST",
        )
        resource.create_table(
            TableName="Usage",
            KeySchema=[
                {"AttributeName": "StartDate", "KeyType": "HASH"},
                {"AttributeName": "UsageKey", "KeyType": "RANGE"},
            ],
            AttributeDefinitions=[
                {"AttributeName": "StartDate", "AttributeType": "N"},
                {"AttributeName": "UsageKey", "AttributeType": "S"},
            ],
            BillingMode="PAY_PER_REQUEST",
        )
        yield resource


@pytest.fixture
def lease_table(dynamodb):
    return LeaseTable("Leases", dynamodb=dynamodb)


@pytest.fixture
def account_table(dynamodb):
    return AccountTable("Accounts", dynamodb=dynamodb)


@pytest.fixture
def usage_table(dynamodb):
    return UsageTable("Usage", dynamodb=dynamodb)


@pytest.fixture
def make_lease():
    """Factory for persisted-looking leases."""

    def _make(**overrides):
        values = dict(
            account_id=ACCOUNT_ID,
            principal_id=PRINCIPAL_ID,
            id="6f1c2b9e-3d4a-4c5b-8e7f-0a1b2c3d4e5f",
            status=LeaseStatus.ACTIVE,
            status_reason=LeaseStatusReason.ACTIVE,
            created_on=NOW_EPOCH - 2 * 86400,
            last_modified_on=NOW_EPOCH - 2 * 86400,
            status_modified_on=NOW_EPOCH - 2 * 86400,
            budget_amount=100.0,
            budget_currency="USD",
            budget_notification_emails=["owner@example.com"],
            expires_on=NOW_EPOCH + 5 * 86400,
            metadata={},
        )
        values.update(overrides)
        return Lease(**values)

    return _make


@pytest.fixture
def make_account():
    """Factory for pool accounts."""

    def _make(account_id=ACCOUNT_ID, status=AccountStatus.LEASED, **overrides):
        values = dict(
            id=account_id,
            status=status,
            admin_role_arn=f"arn:aws:iam::{account_id}:role/AdminRole",
            principal_role_arn=f"arn:aws:iam::{account_id}:role/PrincipalRole",
            created_on=NOW_EPOCH - 30 * 86400,
            last_modified_on=NOW_EPOCH - 30 * 86400,
        )
        values.update(overrides)
        return Account(**values)

    return _make

