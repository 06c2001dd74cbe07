"""
AWS Lambda entry points for the account pool.

- check_budget: invoked per lease by the budget fan-out schedule.
- populate_reset_queue: queues every NotReady account for reset on a schedule.
- process_reset_queue: drains the reset queue on a schedule.
- leases_api: API Gateway proxy for the lease endpoints.

Each invocation builds its services from the environment unless a
ServiceContext is passed in.
"""

import json
import logging
import time
from typing import Any, Optional

from account_pool.errors import AccountPoolError, ClientRequestError, MultiError
from account_pool.models import Lease, LeaseStatus, LeaseStatusReason
from account_pool.services import ServiceContext
from account_pool.settings import Settings
from account_pool.store import LeaseQuery

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def _services(services: Optional[ServiceContext]) -> ServiceContext:
    return services or ServiceContext.from_settings(Settings.from_env())


def check_budget(event, _context, services: Optional[ServiceContext] = None):
    """Budget check for the lease carried in the event."""
    lease = Lease.from_item(event.get("lease", event))
    logger.info("Budget check triggered for lease %s", lease)

    result = _services(services).budget_evaluator().check_budget(lease)

    logger.info(
        "Budget check complete for %s. Spend: $%.2f of $%.2f, principal spend: $%.2f, expired: %s",
        lease,
        result.actual_spend,
        lease.budget_amount or 0.0,
        result.principal_spend,
        result.expired,
    )
    return {
        "statusCode": 200,
        "body": {
            "account_id": lease.account_id,
            "principal_id": lease.principal_id,
            "actual_spend": result.actual_spend,
            "principal_spend": result.principal_spend,
            "expired": result.expired,
            "reason": result.reason.value,
            "notified": result.notified,
        },
    }


def populate_reset_queue(event, _context, services: Optional[ServiceContext] = None):
    """Queue every NotReady account for reset."""
    logger.info("Populate reset queue triggered. Event: %s", json.dumps(event, default=str))

    queued = _services(services).account_service().queue_not_ready_accounts()

    logger.info("Queued %d accounts for reset", len(queued))
    return {"statusCode": 200, "body": {"accounts": queued}}


def process_reset_queue(event, _context, services: Optional[ServiceContext] = None):
    """Drain the reset queue, starting one reset build per account."""
    logger.info("Reset queue drain triggered. Event: %s", json.dumps(event, default=str))

    output = _services(services).reset_drainer().drain(int(time.time()))
    accounts = {
        account_id: {
            "build_trigger": result.build_trigger,
            "message_deletion": result.message_deletion,
        }
        for account_id, result in output.accounts.items()
    }
    logger.info("Reset queue drain complete. Success: %s, accounts: %s", output.success, accounts)

    if not output.success:
        raise MultiError("Could not successfully trigger a reset on all accounts", output.errors)
    return {"statusCode": 200, "body": {"success": output.success, "accounts": accounts}}


def _parse_body(event) -> dict[str, Any]:
    try:
        body = json.loads(event.get("body") or "{}")
    except json.JSONDecodeError as e:
        raise ClientRequestError("invalid request parameters", e) from e
    if not isinstance(body, dict):
        raise ClientRequestError("invalid request parameters")
    return body


def _enum(cls, value: Optional[str]):
    if not value:
        return None
    try:
        return cls(value)
    except ValueError as e:
        raise ClientRequestError(f"invalid value {value!r} for {cls.__name__}", e) from e


def _number(body: dict[str, Any], key: str, cast):
    value = body.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ClientRequestError(f"invalid request parameters: {key} must be a number")
    return cast(value)


def _lease_from_body(body: dict[str, Any]) -> Lease:
    emails = body.get("budgetNotificationEmails") or []
    if not isinstance(emails, list) or not all(isinstance(e, str) for e in emails):
        raise ClientRequestError(
            "invalid request parameters: budgetNotificationEmails must be a list of strings"
        )
    return Lease(
        account_id=body.get("accountId"),
        principal_id=body.get("principalId"),
        id=body.get("id"),
        status=_enum(LeaseStatus, body.get("leaseStatus")),
        status_reason=_enum(LeaseStatusReason, body.get("leaseStatusReason")),
        created_on=_number(body, "createdOn", int),
        last_modified_on=_number(body, "lastModifiedOn", int),
        budget_amount=_number(body, "budgetAmount", float),
        budget_currency=body.get("budgetCurrency"),
        budget_notification_emails=emails,
        expires_on=_number(body, "expiresOn", int),
        metadata=body.get("metadata"),
    )


def _lease_to_body(lease: Lease) -> dict[str, Any]:
    return {
        "id": lease.id,
        "accountId": lease.account_id,
        "principalId": lease.principal_id,
        "leaseStatus": lease.status.value if lease.status else None,
        "leaseStatusReason": lease.status_reason.value if lease.status_reason else None,
        "createdOn": lease.created_on,
        "lastModifiedOn": lease.last_modified_on,
        "leaseStatusModifiedOn": lease.status_modified_on,
        "budgetAmount": lease.budget_amount,
        "budgetCurrency": lease.budget_currency,
        "budgetNotificationEmails": lease.budget_notification_emails,
        "expiresOn": lease.expires_on,
        "metadata": lease.metadata,
    }


def _limit(value: Optional[str]) -> Optional[int]:
    if not value:
        return None
    try:
        return int(value)
    except ValueError as e:
        raise ClientRequestError(f"invalid limit {value!r}", e) from e


def leases_api(event, _context, services: Optional[ServiceContext] = None):
    """API Gateway proxy handler for /leases."""
    method = event.get("httpMethod", "GET")
    lease_id = (event.get("pathParameters") or {}).get("id")
    params = event.get("queryStringParameters") or {}

    try:
        leases = _services(services).lease_service()
        if method == "POST":
            lease = leases.create(_lease_from_body(_parse_body(event)))
            return {"statusCode": 201, "body": _lease_to_body(lease)}

        if method == "GET" and lease_id:
            return {"statusCode": 200, "body": _lease_to_body(leases.get(lease_id))}

        if method == "GET":
            page = leases.list(
                LeaseQuery(
                    id=params.get("id"),
                    account_id=params.get("accountId"),
                    principal_id=params.get("principalId"),
                    status=_enum(LeaseStatus, params.get("status")),
                    next_account_id=params.get("nextAccountId"),
                    next_principal_id=params.get("nextPrincipalId"),
                    limit=_limit(params.get("limit")),
                )
            )
            body: dict[str, Any] = {"leases": [_lease_to_body(lease) for lease in page.leases]}
            if page.next_account_id:
                body["nextAccountId"] = page.next_account_id
                body["nextPrincipalId"] = page.next_principal_id
            return {"statusCode": 200, "body": body}

        if method == "DELETE" and lease_id:
            return {"statusCode": 200, "body": _lease_to_body(leases.delete(lease_id))}

        raise ClientRequestError(f"{method} is not supported")
    except AccountPoolError as e:
        if e.http_code >= 500:
            logger.exception("Lease request failed: %s", e)
        return e.to_response()
