from unittest.mock import MagicMock

import boto3
import pytest
from moto import mock_aws

from account_pool.aws import SqsQueue
from account_pool.errors import InternalServerError, StatusTransitionError
from account_pool.models import AccountStatus, LeaseStatus
from account_pool.reset_queue import ResetQueueDrainer
from conftest import ACCOUNT_ID, NOW_EPOCH, PRINCIPAL_ID

ACCOUNTS = ["111111111111", "222222222222", "333333333333", "444444444444", "555555555555"]


def _messages(account_ids):
    return [{"Body": account_id, "ReceiptHandle": f"rh-{account_id}"} for account_id in account_ids]


@pytest.fixture
def builder():
    mock = MagicMock()
    mock.start_build.return_value = "ResetCodeBuild:build-1"
    return mock


class TestDrain:
    def test_one_lookup_failure_out_of_five(self, make_account, builder):
        """Account #3 fails lookup: four succeed, one fails, only four messages deleted."""
        queue = MagicMock()
        queue.receive.side_effect = [_messages(ACCOUNTS), []]

        def get_account(account_id):
            if account_id == ACCOUNTS[2]:
                raise InternalServerError("lookup failed")
            return make_account(account_id)

        accounts = MagicMock()
        accounts.get.side_effect = get_account
        leases = MagicMock()
        leases.list_by_account.return_value = []

        output = ResetQueueDrainer(queue, accounts, leases, builder).drain(NOW_EPOCH)

        assert output.success is False
        assert len(output.accounts) == 5
        failed = output.accounts[ACCOUNTS[2]]
        assert (failed.build_trigger, failed.message_deletion) == (False, False)
        for account_id in ACCOUNTS[:2] + ACCOUNTS[3:]:
            assert output.accounts[account_id].build_trigger is True
            assert output.accounts[account_id].message_deletion is True
        assert queue.delete.call_count == 4
        assert builder.start_build.call_count == 4

    def test_build_environment(self, make_account, builder):
        queue = MagicMock()
        queue.receive.side_effect = [_messages([ACCOUNT_ID]), []]
        accounts = MagicMock()
        accounts.get.return_value = make_account()
        leases = MagicMock()
        leases.list_by_account.return_value = []

        output = ResetQueueDrainer(queue, accounts, leases, builder).drain(NOW_EPOCH)

        assert output.success is True
        builder.start_build.assert_called_once_with(
            {
                "RESET_ACCOUNT": ACCOUNT_ID,
                "RESET_ACCOUNT_ADMIN_ROLE_NAME": "AdminRole",
                "RESET_ACCOUNT_PRINCIPAL_ROLE_NAME": "PrincipalRole",
            }
        )
        queue.delete.assert_called_once_with(f"rh-{ACCOUNT_ID}")

    def test_malformed_role_arn_fails_account(self, make_account, builder):
        queue = MagicMock()
        queue.receive.side_effect = [_messages([ACCOUNT_ID]), []]
        accounts = MagicMock()
        accounts.get.return_value = make_account(admin_role_arn="not-an-arn")

        output = ResetQueueDrainer(queue, accounts, MagicMock(), builder).drain(NOW_EPOCH)

        assert output.success is False
        builder.start_build.assert_not_called()
        queue.delete.assert_not_called()

    def test_build_failure_keeps_message(self, make_account, builder):
        queue = MagicMock()
        queue.receive.side_effect = [_messages([ACCOUNT_ID]), []]
        accounts = MagicMock()
        accounts.get.return_value = make_account()
        leases = MagicMock()
        leases.list_by_account.return_value = []
        builder.start_build.side_effect = InternalServerError("codebuild down")

        output = ResetQueueDrainer(queue, accounts, leases, builder).drain(NOW_EPOCH)

        assert output.success is False
        assert output.accounts[ACCOUNT_ID].build_trigger is False
        queue.delete.assert_not_called()

    def test_receive_error_stops_drain(self, builder):
        queue = MagicMock()
        queue.receive.side_effect = InternalServerError("sqs down")

        output = ResetQueueDrainer(queue, MagicMock(), MagicMock(), builder).drain(NOW_EPOCH)

        assert output.success is False
        assert output.accounts == {}
        assert queue.receive.call_count == 1

    def test_lease_lock_race_is_treated_as_locked(self, make_account, make_lease, builder):
        """Another drain locked the lease first: still trigger and delete."""
        queue = MagicMock()
        queue.receive.side_effect = [_messages([ACCOUNT_ID]), []]
        accounts = MagicMock()
        accounts.get.return_value = make_account()
        leases = MagicMock()
        leases.list_by_account.return_value = [make_lease()]
        leases.transition_status.side_effect = StatusTransitionError(
            "lease", "x", "Active", "ResetLock"
        )

        output = ResetQueueDrainer(queue, accounts, leases, builder).drain(NOW_EPOCH)

        assert output.success is True
        queue.delete.assert_called_once()

    def test_lock_transition_error_aborts_account(self, make_account, make_lease, builder):
        queue = MagicMock()
        queue.receive.side_effect = [_messages([ACCOUNT_ID]), []]
        accounts = MagicMock()
        accounts.get.return_value = make_account()
        leases = MagicMock()
        leases.list_by_account.return_value = [make_lease()]
        leases.transition_status.side_effect = InternalServerError("dynamodb down")

        output = ResetQueueDrainer(queue, accounts, leases, builder).drain(NOW_EPOCH)

        assert output.success is False
        builder.start_build.assert_not_called()
        queue.delete.assert_not_called()


class TestDrainWithMockedAWS:
    """Drain against moto SQS and DynamoDB."""

    def test_redelivered_message_locks_once(self, lease_table, account_table, make_lease, make_account, builder):
        account_table.put(make_account(status=AccountStatus.NOT_READY))
        lease_table.put(make_lease())
        lease_table.put(
            make_lease(
                principal_id="user-2",
                id="a0a0a0a0-0000-4000-8000-000000000002",
                status=LeaseStatus.FINANCE_LOCK,
            )
        )

        sqs = boto3.client("sqs", region_name="us-east-1")
        queue_url = sqs.create_queue(QueueName="reset")["QueueUrl"]
        queue = SqsQueue(queue_url, client=sqs)
        drainer = ResetQueueDrainer(queue, account_table, lease_table, builder)

        queue.send(ACCOUNT_ID)
        first = drainer.drain(NOW_EPOCH)
        assert first.success is True

        # Redelivery of the same account
        queue.send(ACCOUNT_ID)
        second = drainer.drain(NOW_EPOCH + 100)
        assert second.success is True

        active = lease_table.get(ACCOUNT_ID, PRINCIPAL_ID)
        finance = lease_table.get(ACCOUNT_ID, "user-2")
        assert active.status == LeaseStatus.RESET_LOCK
        assert finance.status == LeaseStatus.RESET_FINANCE_LOCK
        # Locked by the first pass only
        assert active.status_modified_on == NOW_EPOCH
        assert finance.status_modified_on == NOW_EPOCH
        assert sqs.get_queue_attributes(
            QueueUrl=queue_url, AttributeNames=["ApproximateNumberOfMessages"]
        )["Attributes"]["ApproximateNumberOfMessages"] == "0"

    @mock_aws
    def test_missing_account_leaves_message(self, builder):
        sqs = boto3.client("sqs", region_name="us-east-1")
        queue_url = sqs.create_queue(QueueName="reset")["QueueUrl"]
        queue = SqsQueue(queue_url, client=sqs)
        queue.send("999999999999")
        accounts = MagicMock()
        accounts.get.return_value = None

        output = ResetQueueDrainer(queue, accounts, MagicMock(), builder).drain(NOW_EPOCH)

        assert output.success is False
        assert output.accounts["999999999999"].message_deletion is False
        attrs = sqs.get_queue_attributes(
            QueueUrl=queue_url, AttributeNames=["ApproximateNumberOfMessagesNotVisible"]
        )["Attributes"]
        assert attrs["ApproximateNumberOfMessagesNotVisible"] == "1"


class TestDuplicateMessages:
    def test_failed_attempt_is_not_hidden_by_later_success(self, make_account, builder):
        """The same account queued twice: first build fails, second succeeds."""
        queue = MagicMock()
        queue.receive.side_effect = [
            [
                {"Body": ACCOUNT_ID, "ReceiptHandle": "rh-1"},
                {"Body": ACCOUNT_ID, "ReceiptHandle": "rh-2"},
            ],
            [],
        ]
        accounts = MagicMock()
        accounts.get.return_value = make_account()
        leases = MagicMock()
        leases.list_by_account.return_value = []
        builder.start_build.side_effect = [InternalServerError("codebuild down"), "ResetCodeBuild:build-2"]

        output = ResetQueueDrainer(queue, accounts, leases, builder).drain(NOW_EPOCH)

        assert output.success is False
        assert output.accounts[ACCOUNT_ID].ok is False
        queue.delete.assert_called_once_with("rh-2")

    def test_later_failure_replaces_success(self, make_account, builder):
        queue = MagicMock()
        queue.receive.side_effect = [
            [
                {"Body": ACCOUNT_ID, "ReceiptHandle": "rh-1"},
                {"Body": ACCOUNT_ID, "ReceiptHandle": "rh-2"},
            ],
            [],
        ]
        accounts = MagicMock()
        accounts.get.return_value = make_account()
        leases = MagicMock()
        leases.list_by_account.return_value = []
        builder.start_build.side_effect = ["ResetCodeBuild:build-1", InternalServerError("codebuild down")]

        output = ResetQueueDrainer(queue, accounts, leases, builder).drain(NOW_EPOCH)

        assert output.success is False
        assert output.accounts[ACCOUNT_ID].ok is False
