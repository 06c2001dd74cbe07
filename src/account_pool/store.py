"""
DynamoDB record stores for leases, accounts and usage.

Status changes are conditional writes guarded by the previous status; a
failed precondition surfaces as StatusTransitionError and leaves the record
untouched. Callers depend on the narrow role protocols below rather than on
the concrete tables.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

import boto3
from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import BotoCoreError, ClientError

from account_pool.errors import InternalServerError, StatusTransitionError
from account_pool.models import (
    Account,
    AccountStatus,
    Lease,
    LeaseStatus,
    LeaseStatusReason,
    Usage,
)

logger = logging.getLogger(__name__)

LEASE_ID_INDEX = "LeaseId"
LEASE_PRINCIPAL_INDEX = "PrincipalId"


def _is_conditional_check_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


def _epoch(value: datetime) -> int:
    return int(value.timestamp())


@dataclass
class LeaseQuery:
    """Filters and cursor for listing leases. ``id`` is never a valid filter."""

    id: Optional[str] = None
    account_id: Optional[str] = None
    principal_id: Optional[str] = None
    status: Optional[LeaseStatus] = None
    next_account_id: Optional[str] = None
    next_principal_id: Optional[str] = None
    limit: Optional[int] = None


@dataclass
class LeasePage:
    leases: list[Lease]
    next_account_id: Optional[str] = None
    next_principal_id: Optional[str] = None


# Role protocols


class LeaseReader(Protocol):
    def get(self, account_id: str, principal_id: str) -> Optional[Lease]: ...

    def get_by_id(self, lease_id: str) -> Optional[Lease]: ...

    def list_by_principal(self, principal_id: str) -> list[Lease]: ...

    def list_by_account(self, account_id: str) -> list[Lease]: ...

    def find(self, query: LeaseQuery) -> LeasePage: ...


class LeaseWriter(Protocol):
    def put(self, lease: Lease) -> None: ...


class LeaseTransitioner(Protocol):
    def transition_status(
        self,
        account_id: str,
        principal_id: str,
        prev_status: LeaseStatus,
        next_status: LeaseStatus,
        reason: LeaseStatusReason,
        now: int,
    ) -> Lease: ...


class AccountReader(Protocol):
    def get(self, account_id: str) -> Optional[Account]: ...

    def find_by_status(self, status: AccountStatus) -> list[Account]: ...


class AccountTransitioner(Protocol):
    def transition_status(
        self, account_id: str, prev_status: AccountStatus, next_status: AccountStatus, now: int
    ) -> Account: ...


class UsageStore(Protocol):
    def put(self, usage: Usage) -> None: ...

    def get_by_date_range(self, start: datetime, end: datetime) -> list[Usage]: ...

    def get_by_principal(self, principal_id: str, start: datetime, end: datetime) -> list[Usage]: ...


# DynamoDB implementations


class LeaseTable:
    """Leases keyed by (AccountId, PrincipalId) with Id and PrincipalId indexes."""

    def __init__(self, table_name: str, region: str = "us-east-1", dynamodb: Any = None):
        resource = dynamodb or boto3.resource("dynamodb", region_name=region)
        self.table = resource.Table(table_name)

    def get(self, account_id: str, principal_id: str) -> Optional[Lease]:
        try:
            response = self.table.get_item(
                Key={"AccountId": account_id, "PrincipalId": principal_id},
                ConsistentRead=True,
            )
        except (BotoCoreError, ClientError) as e:
            logger.error("Failed to get lease %s @ %s: %s", principal_id, account_id, e)
            raise InternalServerError(f"failed to get lease {principal_id} @ {account_id}", e) from e
        item = response.get("Item")
        return Lease.from_item(item) if item else None

    def get_by_id(self, lease_id: str) -> Optional[Lease]:
        items = self._query(IndexName=LEASE_ID_INDEX, KeyConditionExpression=Key("Id").eq(lease_id))
        return Lease.from_item(items[0]) if items else None

    def list_by_principal(self, principal_id: str) -> list[Lease]:
        items = self._query(
            IndexName=LEASE_PRINCIPAL_INDEX,
            KeyConditionExpression=Key("PrincipalId").eq(principal_id),
        )
        return [Lease.from_item(item) for item in items]

    def list_by_account(self, account_id: str) -> list[Lease]:
        items = self._query(
            KeyConditionExpression=Key("AccountId").eq(account_id),
            ConsistentRead=True,
        )
        return [Lease.from_item(item) for item in items]

    def find(self, query: LeaseQuery) -> LeasePage:
        """Scan one page of leases matching the query filters."""
        kwargs: dict[str, Any] = {"ConsistentRead": True}

        condition = None
        for attr, value in (
            ("AccountId", query.account_id),
            ("PrincipalId", query.principal_id),
            ("LeaseStatus", query.status.value if query.status else None),
        ):
            if value is None:
                continue
            clause = Attr(attr).eq(value)
            condition = clause if condition is None else condition & clause
        if condition is not None:
            kwargs["FilterExpression"] = condition

        if query.next_account_id and query.next_principal_id:
            kwargs["ExclusiveStartKey"] = {
                "AccountId": query.next_account_id,
                "PrincipalId": query.next_principal_id,
            }
        if query.limit:
            kwargs["Limit"] = query.limit

        try:
            response = self.table.scan(**kwargs)
        except (BotoCoreError, ClientError) as e:
            logger.error("Failed to list leases: %s", e)
            raise InternalServerError("failed to list leases", e) from e

        page = LeasePage(leases=[Lease.from_item(item) for item in response.get("Items", [])])
        last_key = response.get("LastEvaluatedKey")
        if last_key:
            page.next_account_id = last_key.get("AccountId")
            page.next_principal_id = last_key.get("PrincipalId")
        return page

    def put(self, lease: Lease) -> None:
        try:
            self.table.put_item(Item=lease.to_item())
        except (BotoCoreError, ClientError) as e:
            logger.error("Failed to write lease %s: %s", lease, e)
            raise InternalServerError(f"failed to write lease {lease}", e) from e

    def transition_status(
        self,
        account_id: str,
        principal_id: str,
        prev_status: LeaseStatus,
        next_status: LeaseStatus,
        reason: LeaseStatusReason,
        now: int,
    ) -> Lease:
        """Move a lease from ``prev_status`` to ``next_status``, or fail if it is not in ``prev_status``."""
        try:
            response = self.table.update_item(
                Key={"AccountId": account_id, "PrincipalId": principal_id},
                UpdateExpression=(
                    "SET LeaseStatus = :next, LeaseStatusReason = :reason, "
                    "LastModifiedOn = :now, LeaseStatusModifiedOn = :now"
                ),
                ConditionExpression=Attr("LeaseStatus").eq(prev_status.value),
                ExpressionAttributeValues={
                    ":next": next_status.value,
                    ":reason": reason.value,
                    ":now": now,
                },
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if _is_conditional_check_failure(e):
                raise StatusTransitionError(
                    "lease", f"{principal_id} @ {account_id}", prev_status.value, next_status.value
                ) from e
            logger.error("Failed to transition lease %s @ %s: %s", principal_id, account_id, e)
            raise InternalServerError(f"failed to transition lease {principal_id} @ {account_id}", e) from e
        except BotoCoreError as e:
            logger.error("Failed to transition lease %s @ %s: %s", principal_id, account_id, e)
            raise InternalServerError(f"failed to transition lease {principal_id} @ {account_id}", e) from e
        return Lease.from_item(response["Attributes"])

    def _query(self, **kwargs) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        try:
            while True:
                response = self.table.query(**kwargs)
                items.extend(response.get("Items", []))
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    return items
                kwargs["ExclusiveStartKey"] = last_key
        except (BotoCoreError, ClientError) as e:
            logger.error("Failed to query leases: %s", e)
            raise InternalServerError("failed to query leases", e) from e


class AccountTable:
    """Accounts keyed by Id."""

    def __init__(self, table_name: str, region: str = "us-east-1", dynamodb: Any = None):
        resource = dynamodb or boto3.resource("dynamodb", region_name=region)
        self.table = resource.Table(table_name)

    def get(self, account_id: str) -> Optional[Account]:
        try:
            response = self.table.get_item(Key={"Id": account_id}, ConsistentRead=True)
        except (BotoCoreError, ClientError) as e:
            logger.error("Failed to get account %s: %s", account_id, e)
            raise InternalServerError(f"failed to get account {account_id}", e) from e
        item = response.get("Item")
        return Account.from_item(item) if item else None

    def find_by_status(self, status: AccountStatus) -> list[Account]:
        kwargs: dict[str, Any] = {
            "FilterExpression": Attr("AccountStatus").eq(status.value),
            "ConsistentRead": True,
        }
        accounts: list[Account] = []
        try:
            while True:
                response = self.table.scan(**kwargs)
                accounts.extend(Account.from_item(item) for item in response.get("Items", []))
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    return accounts
                kwargs["ExclusiveStartKey"] = last_key
        except (BotoCoreError, ClientError) as e:
            logger.error("Failed to scan accounts: %s", e)
            raise InternalServerError("failed to scan accounts", e) from e

    def put(self, account: Account) -> None:
        try:
            self.table.put_item(Item=account.to_item())
        except (BotoCoreError, ClientError) as e:
            logger.error("Failed to write account %s: %s", account.id, e)
            raise InternalServerError(f"failed to write account {account.id}", e) from e

    def transition_status(
        self, account_id: str, prev_status: AccountStatus, next_status: AccountStatus, now: int
    ) -> Account:
        try:
            response = self.table.update_item(
                Key={"Id": account_id},
                UpdateExpression="SET AccountStatus = :next, LastModifiedOn = :now",
                ConditionExpression=Attr("AccountStatus").eq(prev_status.value),
                ExpressionAttributeValues={":next": next_status.value, ":now": now},
                ReturnValues="ALL_NEW",
            )
        except ClientError as e:
            if _is_conditional_check_failure(e):
                raise StatusTransitionError(
                    "account", account_id, prev_status.value, next_status.value
                ) from e
            logger.error("Failed to transition account %s: %s", account_id, e)
            raise InternalServerError(f"failed to transition account {account_id}", e) from e
        except BotoCoreError as e:
            logger.error("Failed to transition account %s: %s", account_id, e)
            raise InternalServerError(f"failed to transition account {account_id}", e) from e
        return Account.from_item(response["Attributes"])


class UsageTable:
    """Daily usage records, partitioned by StartDate (epoch seconds at 00:00 UTC)."""

    def __init__(self, table_name: str, region: str = "us-east-1", dynamodb: Any = None):
        resource = dynamodb or boto3.resource("dynamodb", region_name=region)
        self.table = resource.Table(table_name)

    @staticmethod
    def usage_key(principal_id: str, account_id: str) -> str:
        return f"{principal_id}#{account_id}"

    def put(self, usage: Usage) -> None:
        item = usage.to_item()
        item["UsageKey"] = self.usage_key(usage.principal_id, usage.account_id)
        try:
            self.table.put_item(Item=item)
        except (BotoCoreError, ClientError) as e:
            logger.error(
                "Failed to write usage for %s @ %s: %s", usage.principal_id, usage.account_id, e
            )
            raise InternalServerError("failed to write usage", e) from e

    def get_by_date_range(self, start: datetime, end: datetime) -> list[Usage]:
        """All usage records whose StartDate falls on a day in [start, end]."""
        day = datetime(start.year, start.month, start.day, tzinfo=timezone.utc)
        records: list[Usage] = []
        while day <= end:
            records.extend(self._query_day(_epoch(day)))
            day += timedelta(days=1)
        return records

    def get_by_principal(self, principal_id: str, start: datetime, end: datetime) -> list[Usage]:
        """The principal's usage records, across all accounts, for days in [start, end]."""
        day = datetime(start.year, start.month, start.day, tzinfo=timezone.utc)
        records: list[Usage] = []
        while day <= end:
            # The key prefix also matches principals whose ID starts with "<id>#"
            records.extend(
                r for r in self._query_day(_epoch(day), f"{principal_id}#") if r.principal_id == principal_id
            )
            day += timedelta(days=1)
        return records

    def _query_day(self, start_date: int, key_prefix: Optional[str] = None) -> list[Usage]:
        condition = Key("StartDate").eq(start_date)
        if key_prefix:
            condition = condition & Key("UsageKey").begins_with(key_prefix)
        kwargs: dict[str, Any] = {"KeyConditionExpression": condition}
        records: list[Usage] = []
        try:
            while True:
                response = self.table.query(**kwargs)
                records.extend(Usage.from_item(item) for item in response.get("Items", []))
                last_key = response.get("LastEvaluatedKey")
                if not last_key:
                    return records
                kwargs["ExclusiveStartKey"] = last_key
        except (BotoCoreError, ClientError) as e:
            logger.error("Failed to query usage for %s: %s", start_date, e)
            raise InternalServerError("failed to query usage", e) from e
