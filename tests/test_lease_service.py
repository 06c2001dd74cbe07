from unittest.mock import MagicMock, patch

import pytest

from account_pool.accounts import AccountService
from account_pool.errors import (
    AlreadyExistsError,
    ConflictError,
    InternalServerError,
    MultiError,
    NotFoundError,
    ValidationError,
)
from account_pool.leases import LeaseService
from account_pool.models import AccountStatus, Lease, LeaseStatus, LeaseStatusReason
from account_pool.store import LeaseQuery
from conftest import NOW_EPOCH

ADDED_TOPIC = "arn:aws:sns:us-east-1:123456789012:lease-added"


@pytest.fixture
def events():
    return MagicMock()


@pytest.fixture
def reset_queue():
    return MagicMock()


@pytest.fixture
def spend():
    mock = MagicMock()
    mock.calculate_principal_spend.return_value = 0.0
    return mock


@pytest.fixture
def service(lease_table, account_table, spend, events, reset_queue):
    accounts = AccountService(account_table, lease_table, events=events, reset_queue=reset_queue)
    return LeaseService(
        leases=lease_table,
        accounts=accounts,
        spend=spend,
        events=events,
        max_lease_budget_amount=1000.0,
        max_lease_period=7 * 86400,
        principal_budget_amount=1000.0,
        default_lease_length_in_days=7,
        lease_ended_topic_arn="arn:aws:sns:us-east-1:123456789012:lease-ended",
        lease_added_topic_arn=ADDED_TOPIC,
    )


class TestCreate:
    def test_create_assigns_ready_account(self, service, account_table, make_account):
        account_table.put(make_account("111111111111", AccountStatus.READY))

        lease = service.create(Lease(principal_id="user-1", budget_amount=100), now=NOW_EPOCH)

        assert lease.account_id == "111111111111"
        assert lease.status == LeaseStatus.ACTIVE
        assert lease.status_reason == LeaseStatusReason.ACTIVE
        assert lease.created_on == lease.last_modified_on == lease.status_modified_on == NOW_EPOCH
        assert lease.expires_on == NOW_EPOCH + 7 * 86400
        assert lease.metadata == {}
        assert account_table.get("111111111111").status == AccountStatus.LEASED
        assert service.get(lease.id).principal_id == "user-1"

    def test_second_active_lease_for_principal_fails(self, service, account_table, make_account):
        """At most one live lease per principal."""
        account_table.put(make_account("111111111111", AccountStatus.READY))
        account_table.put(make_account("222222222222", AccountStatus.READY))
        service.create(Lease(principal_id="user-1", budget_amount=100), now=NOW_EPOCH)

        with pytest.raises(AlreadyExistsError):
            service.create(Lease(principal_id="user-1", budget_amount=100), now=NOW_EPOCH)

        # Second account untouched
        statuses = {a.id: a.status for a in account_table.find_by_status(AccountStatus.READY)}
        assert len(statuses) == 1

    def test_inactive_lease_does_not_block(self, service, lease_table, account_table, make_account, make_lease):
        lease_table.put(make_lease(account_id="999999999999", status=LeaseStatus.INACTIVE))
        account_table.put(make_account("111111111111", AccountStatus.READY))

        lease = service.create(Lease(principal_id="user-1", budget_amount=100), now=NOW_EPOCH)
        assert lease.status == LeaseStatus.ACTIVE

    def test_budget_at_max_succeeds_and_above_fails(self, service, account_table, make_account):
        account_table.put(make_account("111111111111", AccountStatus.READY))
        with pytest.raises(ValidationError, match="max lease budget amount"):
            service.create(Lease(principal_id="user-2", budget_amount=1000.01), now=NOW_EPOCH)

        lease = service.create(Lease(principal_id="user-2", budget_amount=1000.0), now=NOW_EPOCH)
        assert lease.budget_amount == 1000.0

    def test_principal_over_budget_rejected(self, service, spend, account_table, make_account):
        account_table.put(make_account("111111111111", AccountStatus.READY))
        spend.calculate_principal_spend.return_value = 1500.0

        with pytest.raises(ValidationError, match="already spent 1500.00"):
            service.create(Lease(principal_id="user-1", budget_amount=10), now=NOW_EPOCH)
        assert account_table.get("111111111111").status == AccountStatus.READY

    def test_no_ready_account_is_conflict(self, service):
        with pytest.raises(ConflictError, match="no accounts are available"):
            service.create(Lease(principal_id="user-1", budget_amount=10), now=NOW_EPOCH)

    def test_named_account_must_be_ready(self, service, account_table, make_account):
        account_table.put(make_account("111111111111", AccountStatus.LEASED))
        with pytest.raises(ConflictError):
            service.create(
                Lease(principal_id="user-1", account_id="111111111111", budget_amount=10),
                now=NOW_EPOCH,
            )

    def test_create_publishes_lease_added(self, service, account_table, make_account, events):
        account_table.put(make_account("111111111111", AccountStatus.READY))

        lease = service.create(Lease(principal_id="user-1", budget_amount=100), now=NOW_EPOCH)

        topic, payload = events.publish_event.call_args[0]
        assert topic == ADDED_TOPIC
        assert payload["id"] == lease.id
        assert payload["status"] == "Active"


class TestCreateRollback:
    """A create that fails after claiming an account gives the account back."""

    def test_failed_save_returns_account_to_pool(self, service, lease_table, account_table, make_account, events):
        account_table.put(make_account("111111111111", AccountStatus.READY))

        with patch.object(lease_table, "put", side_effect=InternalServerError("dynamodb down")):
            with pytest.raises(InternalServerError, match="dynamodb down"):
                service.create(Lease(principal_id="user-1", budget_amount=100), now=NOW_EPOCH)

        assert account_table.get("111111111111").status == AccountStatus.READY
        assert lease_table.list_by_principal("user-1") == []
        events.publish_event.assert_not_called()

    def test_failed_publish_rolls_back_lease_and_account(self, service, lease_table, account_table, make_account, events):
        account_table.put(make_account("111111111111", AccountStatus.READY))
        events.publish_event.side_effect = InternalServerError("sns down")

        with pytest.raises(InternalServerError, match="sns down"):
            service.create(Lease(principal_id="user-1", budget_amount=100), now=NOW_EPOCH)

        assert account_table.get("111111111111").status == AccountStatus.READY
        rolled_back = lease_table.get("111111111111", "user-1")
        assert rolled_back.status == LeaseStatus.INACTIVE
        assert rolled_back.status_reason == LeaseStatusReason.ROLLED_BACK

        # The rolled-back lease does not block a retry
        events.publish_event.side_effect = None
        lease = service.create(Lease(principal_id="user-1", budget_amount=100), now=NOW_EPOCH)
        assert lease.status == LeaseStatus.ACTIVE

    def test_failed_rollback_is_reported(self, service, lease_table, account_table, make_account):
        account_table.put(make_account("111111111111", AccountStatus.READY))

        def orphan_then_fail(lease):
            account_table.put(make_account("111111111111", AccountStatus.ORPHANED))
            raise InternalServerError("dynamodb down")

        with patch.object(lease_table, "put", side_effect=orphan_then_fail):
            with pytest.raises(MultiError) as exc:
                service.create(Lease(principal_id="user-1", budget_amount=100), now=NOW_EPOCH)

        assert str(exc.value).startswith("Failed to Rollback Account Lease for 111111111111 - user-1")
        assert str(exc.value.errors[0]) == "dynamodb down"
        assert account_table.get("111111111111").status == AccountStatus.ORPHANED


class TestReadAndList:
    def test_get_missing_is_not_found(self, service):
        with pytest.raises(NotFoundError) as exc:
            service.get("00000000-0000-4000-8000-000000000000")
        assert exc.value.http_code == 404

    def test_list_rejects_id_filter(self, service):
        with pytest.raises(ValidationError):
            service.list(LeaseQuery(id="6f1c2b9e-3d4a-4c5b-8e7f-0a1b2c3d4e5f"))

    def test_list_by_principal(self, service, lease_table, make_lease):
        lease_table.put(make_lease())
        lease_table.put(make_lease(principal_id="user-2", id="a0a0a0a0-0000-4000-8000-000000000002"))

        page = service.list(LeaseQuery(principal_id="user-2"))
        assert [lease.principal_id for lease in page.leases] == ["user-2"]


class TestDelete:
    def test_delete_active_lease(self, service, lease_table, account_table, make_lease, make_account, events, reset_queue):
        account_table.put(make_account(status=AccountStatus.LEASED))
        lease = make_lease()
        lease_table.put(lease)

        updated = service.delete(lease.id, now=NOW_EPOCH)

        assert updated.status == LeaseStatus.INACTIVE
        assert updated.status_reason == LeaseStatusReason.DESTROYED
        assert updated.last_modified_on == NOW_EPOCH
        assert updated.status_modified_on == NOW_EPOCH
        assert account_table.get(lease.account_id).status == AccountStatus.NOT_READY
        reset_queue.send.assert_called_once_with(lease.account_id)
        events.publish_event.assert_called_once()
        assert events.publish_event.call_args[0][0].endswith("lease-ended")

    def test_delete_inactive_lease_is_conflict(self, service, lease_table, make_lease, events):
        """Deleting twice fails and leaves the record alone."""
        lease = make_lease(status=LeaseStatus.INACTIVE, status_reason=LeaseStatusReason.EXPIRED)
        lease_table.put(lease)

        with pytest.raises(ConflictError):
            service.delete(lease.id, now=NOW_EPOCH)

        assert lease_table.get(lease.account_id, lease.principal_id) == lease
        events.publish_event.assert_not_called()
