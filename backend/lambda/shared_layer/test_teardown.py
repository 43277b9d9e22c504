"""test_teardown.py — Teardown orchestrator scenarios."""

from __future__ import annotations

import os
import sys
import unittest
from unittest.mock import MagicMock, patch

from botocore.exceptions import ClientError, EndpointConnectionError

sys.path.insert(0, os.path.join(os.path.dirname(os.path.abspath(__file__)), "python"))

import mcod_shared.teardown as teardown
from mcod_shared import config
from mcod_shared.errors import InvalidStatusTransition

DETAIL = {
    "clusterArn": "arn:aws:ecs:us-east-1:123456789012:cluster/minecraft-on-demand",
    "containerInstanceArn": "arn:aws:ecs:us-east-1:123456789012:container-instance/ci-1",
    "taskArn": "arn:aws:ecs:us-east-1:123456789012:task/t-1",
}
NOW = 1700000600000


def _client_error(code, op):
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


class TeardownTestCase(unittest.TestCase):
    def setUp(self):
        self.waits = []
        self.calls = []
        self.ecs = MagicMock()
        self.ssm = MagicMock()
        self.ec2 = MagicMock()
        self.ecs.describe_tasks.return_value = {
            "tasks": [{"tags": [
                {"key": "serverId", "value": "abc123def456"},
                {"key": "startedAt", "value": "1700000000000"},
            ]}]
        }
        self.ecs.describe_container_instances.return_value = {
            "containerInstances": [{"ec2InstanceId": "i-0abc"}]
        }
        self.ssm.send_command.return_value = {"Command": {"CommandId": "cmd-1"}}
        self.ssm.get_command_invocation.side_effect = [{"Status": "InProgress"}, {"Status": "Success"}]
        self.ec2.terminate_instances.side_effect = lambda **kw: self.calls.append("terminate")

        self.get_record = MagicMock(return_value={"serverId": "abc123def456", "serverStatus": "RUNNING"})
        self.mark_stopped = MagicMock(side_effect=lambda *a: self.calls.append("close") or True)
        self.observe = MagicMock()

        patches = [
            patch.object(teardown, "_get_ecs", return_value=self.ecs),
            patch.object(teardown, "_get_ssm", return_value=self.ssm),
            patch.object(teardown, "_get_ec2", return_value=self.ec2),
            patch.object(teardown, "get_server_record", self.get_record),
            patch.object(teardown, "mark_server_stopped", self.mark_stopped),
            patch.object(teardown, "_epoch_ms", return_value=NOW),
            patch.object(teardown, "_emit_structured_observability", self.observe),
            patch.object(config, "SYNC_POLL_SECONDS", 10),
            patch.object(config, "SYNC_MAX_ATTEMPTS", 60),
            patch.object(config, "WORLDS_BUCKET", "worlds"),
            patch.object(config, "WORLD_DATA_DIR", "/minecraft_data"),
        ]
        for p in patches:
            p.start()
            self.addCleanup(p.stop)

    def _sleep(self, seconds):
        self.waits.append(seconds)

    def _teardown(self):
        return teardown.teardown_server(dict(DETAIL), sleep=self._sleep, execution_id="exec-1")

    def _leak_events(self):
        return [c for c in self.observe.call_args_list if c.kwargs.get("event") == "instance_leaked"]


class TeardownScenarioTests(TeardownTestCase):
    def test_sync_then_reclaim_then_close(self):
        ctx = self._teardown()

        self.assertEqual(ctx["status"], "SUCCEEDED")
        self.assertEqual(ctx["state"], "End")
        self.assertEqual(self.waits, [10.0, 10.0])
        self.assertEqual(self.ssm.get_command_invocation.call_count, 2)
        self.ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-0abc"])
        self.mark_stopped.assert_called_once_with("abc123def456", 1700000000000, NOW)
        self.assertEqual(self.calls, ["terminate", "close"])
        self.assertEqual(self._leak_events(), [])

    def test_failed_sync_never_reclaims(self):
        self.ssm.get_command_invocation.side_effect = [{"Status": "Failed"}]

        ctx = self._teardown()

        self.assertEqual(ctx["status"], "FAILED")
        self.assertEqual(ctx["state"], "SyncFailed")
        self.ec2.terminate_instances.assert_not_called()
        self.mark_stopped.assert_not_called()
        leaks = self._leak_events()
        self.assertEqual(len(leaks), 1)
        self.assertEqual(leaks[0].kwargs["extra"]["instance_id"], "i-0abc")

    def test_other_terminal_statuses_never_reclaim(self):
        for status in ("Cancelled", "TimedOut", "Cancelling", ""):
            self.ssm.get_command_invocation.side_effect = [{"Status": status}]
            self.ec2.terminate_instances.reset_mock()

            ctx = self._teardown()

            self.assertEqual(ctx["state"], "SyncFailed", status)
            self.ec2.terminate_instances.assert_not_called()

    def test_sync_poll_is_bounded(self):
        self.ssm.get_command_invocation.side_effect = None
        self.ssm.get_command_invocation.return_value = {"Status": "InProgress"}

        with patch.object(config, "SYNC_MAX_ATTEMPTS", 3):
            ctx = self._teardown()

        self.assertEqual(ctx["state"], "SyncFailed")
        self.assertEqual(ctx["error"], "SyncTimedOut")
        self.assertEqual(self.ssm.get_command_invocation.call_count, 3)
        self.ec2.terminate_instances.assert_not_called()

    def test_invocation_not_yet_visible_counts_as_pending(self):
        self.ssm.get_command_invocation.side_effect = [
            _client_error("InvocationDoesNotExist", "GetCommandInvocation"),
            {"Status": "Success"},
        ]

        ctx = self._teardown()

        self.assertEqual(ctx["status"], "SUCCEEDED")
        self.assertEqual(self.waits, [10.0, 10.0])

    def test_status_lookup_failure_ends_in_sync_failed(self):
        self.ssm.get_command_invocation.side_effect = [_client_error("AccessDenied", "GetCommandInvocation")]

        ctx = self._teardown()

        self.assertEqual(ctx["state"], "SyncFailed")
        self.assertEqual(ctx["error"], "SyncStatusUnavailable")
        self.ec2.terminate_instances.assert_not_called()

    def test_status_lookup_connection_error_ends_in_sync_failed(self):
        self.ssm.get_command_invocation.side_effect = EndpointConnectionError(
            endpoint_url="https://ssm.us-east-1.amazonaws.com"
        )

        ctx = self._teardown()

        self.assertEqual(ctx["state"], "SyncFailed")
        self.assertEqual(ctx["error"], "SyncStatusUnavailable")
        self.ec2.terminate_instances.assert_not_called()
        self.assertEqual(len(self._leak_events()), 1)


class TeardownStepTests(TeardownTestCase):
    def test_sync_command_mirrors_world_to_user_prefix(self):
        self._teardown()

        kwargs = self.ssm.send_command.call_args.kwargs
        self.assertEqual(kwargs["DocumentName"], "AWS-RunShellScript")
        self.assertEqual(kwargs["InstanceIds"], ["i-0abc"])
        script = kwargs["Parameters"]["commands"][0]
        self.assertIn("aws s3 sync /minecraft_data s3://worlds/$USER_ID --delete", script)
        self.assertIn("X-aws-ec2-metadata-token", script)
        self.assertIn('test -n "$USER_ID"', script)
        self.ssm.get_command_invocation.assert_called_with(CommandId="cmd-1", InstanceId="i-0abc")

    def test_tags_recovered_before_anything_else(self):
        self.ecs.describe_tasks.return_value = {"tasks": [{"tags": [{"key": "serverId", "value": "abc"}]}]}

        ctx = self._teardown()

        self.assertEqual(ctx["state"], "TeardownFailed")
        self.assertEqual(ctx["error"], "MissingCorrelationTags")
        self.ecs.describe_container_instances.assert_not_called()
        self.ssm.send_command.assert_not_called()
        self.ec2.terminate_instances.assert_not_called()
        self.ecs.describe_tasks.assert_called_once_with(
            cluster=DETAIL["clusterArn"], tasks=[DETAIL["taskArn"]], include=["TAGS"]
        )

    def test_non_numeric_started_at_tag_rejected(self):
        self.ecs.describe_tasks.return_value = {"tasks": [{"tags": [
            {"key": "serverId", "value": "abc"},
            {"key": "startedAt", "value": "yesterday"},
        ]}]}

        ctx = self._teardown()
        self.assertEqual(ctx["error"], "MissingCorrelationTags")

    def test_duplicate_notification_for_stopped_record_is_noop(self):
        self.get_record.return_value = {"serverId": "abc123def456", "serverStatus": "STOPPED"}

        ctx = self._teardown()

        self.assertEqual(ctx["status"], "SUCCEEDED")
        self.assertTrue(ctx["alreadyStopped"])
        self.ssm.send_command.assert_not_called()
        self.ec2.terminate_instances.assert_not_called()
        self.mark_stopped.assert_not_called()

    def test_unknown_record_fails(self):
        self.get_record.return_value = None
        ctx = self._teardown()
        self.assertEqual(ctx["error"], "RecordNotFound")
        self.ssm.send_command.assert_not_called()

    def test_unresolvable_instance_fails(self):
        self.ecs.describe_container_instances.return_value = {"containerInstances": [], "failures": [{}]}
        ctx = self._teardown()
        self.assertEqual(ctx["state"], "TeardownFailed")
        self.assertEqual(ctx["error"], "ResolveInstanceFailed")
        self.ssm.send_command.assert_not_called()

    def test_send_failure_ends_in_sync_failed(self):
        self.ssm.send_command.side_effect = _client_error("InvalidInstanceId", "SendCommand")
        ctx = self._teardown()
        self.assertEqual(ctx["state"], "SyncFailed")
        self.ec2.terminate_instances.assert_not_called()

    def test_already_terminated_instance_still_closes_record(self):
        self.ec2.terminate_instances.side_effect = _client_error("InvalidInstanceID.NotFound", "TerminateInstances")

        ctx = self._teardown()

        self.assertEqual(ctx["status"], "SUCCEEDED")
        self.assertEqual(ctx["reclaimResult"], "already_terminated")
        self.mark_stopped.assert_called_once()

    def test_reclaim_failure_does_not_close_record(self):
        self.ec2.terminate_instances.side_effect = _client_error("UnauthorizedOperation", "TerminateInstances")

        ctx = self._teardown()

        self.assertEqual(ctx["state"], "TeardownFailed")
        self.assertEqual(ctx["error"], "ReclaimFailed")
        self.mark_stopped.assert_not_called()

    def test_reclaim_connection_error_fails_without_closing_record(self):
        self.ec2.terminate_instances.side_effect = EndpointConnectionError(
            endpoint_url="https://ec2.us-east-1.amazonaws.com"
        )

        ctx = self._teardown()

        self.assertEqual(ctx["state"], "TeardownFailed")
        self.assertEqual(ctx["error"], "ReclaimFailed")
        self.mark_stopped.assert_not_called()
        self.assertEqual(len(self._leak_events()), 1)

    def test_close_rejected_when_record_never_ran(self):
        self.mark_stopped.side_effect = InvalidStatusTransition("PENDING -> STOPPED")

        ctx = self._teardown()

        self.assertEqual(ctx["error"], "RecordUpdateRejected")
        self.ec2.terminate_instances.assert_called_once()
        self.assertEqual(self._leak_events(), [])

    def test_notification_missing_fields_rejected(self):
        with self.assertRaises(ValueError):
            teardown.teardown_server({"taskArn": "t"}, sleep=self._sleep)


if __name__ == "__main__":
    unittest.main()
