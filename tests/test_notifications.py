from __future__ import annotations

import pytest

from reclaim.core.exceptions import MalformedPayloadError
from reclaim.events import (
    InstanceRebalanceRecommendation,
    InstanceScheduledChange,
    InstanceSpotInterrupted,
    InstanceStopping,
    InstanceTerminating,
)
from reclaim.notifications import Kind, classify

from factories import envelope, message, rebalance, scheduled_change, spot_interruption, state_change


class TestClassify:
    def test_spot_interruption(self):
        notification = classify(message(spot_interruption("i-0abc"), message_id="m-1", receipt_handle="r-1"))

        assert notification.kind is Kind.SPOT_INTERRUPTION
        assert notification.instance_ids == ("i-0abc",)
        assert notification.message_id == "m-1"
        assert notification.receipt_handle == "r-1"
        assert notification.terminal

    def test_rebalance(self):
        notification = classify(message(rebalance("i-0abc")))

        assert notification.kind is Kind.REBALANCE
        assert not notification.terminal

    def test_scheduled_change_lists_every_affected_instance(self):
        notification = classify(message(scheduled_change("i-0abc", "i-0def")))

        assert notification.kind is Kind.SCHEDULED_CHANGE
        assert notification.instance_ids == ("i-0abc", "i-0def")

    @pytest.mark.parametrize(
        ("service", "category"),
        [("RDS", "scheduledChange"), ("EC2", "issue"), ("EC2", "accountNotification")],
    )
    def test_health_events_outside_ec2_scheduled_changes_affect_nothing(self, service, category):
        notification = classify(message(scheduled_change("i-0abc", service=service, category=category)))

        assert notification.kind is Kind.SCHEDULED_CHANGE
        assert notification.instance_ids == ()

    @pytest.mark.parametrize(
        ("state", "kind"),
        [
            ("pending", Kind.STATE_CHANGE_NON_TERMINAL),
            ("running", Kind.STATE_CHANGE_NON_TERMINAL),
            ("stopping", Kind.STATE_CHANGE_TERMINAL),
            ("stopped", Kind.STATE_CHANGE_TERMINAL),
            ("shutting-down", Kind.STATE_CHANGE_TERMINAL),
            ("terminated", Kind.STATE_CHANGE_TERMINAL),
            ("Terminated", Kind.STATE_CHANGE_TERMINAL),
        ],
    )
    def test_state_change(self, state, kind):
        notification = classify(message(state_change("i-0abc", state)))

        assert notification.kind is kind
        assert notification.state == state.lower()
        assert notification.instance_ids == ("i-0abc",)

    def test_unrecognized_envelope_is_unknown(self):
        notification = classify(message(envelope("aws.autoscaling", "EC2 Instance Launch Successful", {})))

        assert notification.kind is Kind.UNKNOWN
        assert notification.source == "aws.autoscaling"
        assert notification.instance_ids == ()

    def test_keeps_raw_payload(self):
        body = spot_interruption("i-0abc")

        notification = classify(message(body))

        assert notification.payload == body

    @pytest.mark.parametrize(
        "body",
        [
            "",
            "{not json",
            '"a string"',
            "[]",
            envelope("aws.ec2", "EC2 Spot Instance Interruption Warning", None),
            envelope("aws.ec2", "EC2 Spot Instance Interruption Warning", {"instance-action": "terminate"}),
            envelope("aws.ec2", "EC2 Instance State-change Notification", {"instance-id": "i-0abc"}),
            envelope("aws.health", "AWS Health Event", {"service": "EC2", "eventTypeCategory": "scheduledChange"}),
        ],
    )
    def test_malformed(self, body):
        with pytest.raises(MalformedPayloadError):
            classify(message(body))

    def test_missing_body_is_malformed(self):
        with pytest.raises(MalformedPayloadError):
            classify({"MessageId": "m-1", "ReceiptHandle": "r-1"})


class TestEventFor:
    @pytest.mark.parametrize(
        ("body", "event_type", "reason", "event_kind"),
        [
            (spot_interruption("i-0abc"), InstanceSpotInterrupted, "InstanceSpotInterrupted", "Warning"),
            (rebalance("i-0abc"), InstanceRebalanceRecommendation, "InstanceRebalanceRecommendation", "Normal"),
            (scheduled_change("i-0abc"), InstanceScheduledChange, "InstanceUnhealthy", "Normal"),
            (state_change("i-0abc", "stopping"), InstanceStopping, "InstanceStopping", "Warning"),
            (state_change("i-0abc", "stopped"), InstanceStopping, "InstanceStopping", "Warning"),
            (state_change("i-0abc", "shutting-down"), InstanceTerminating, "InstanceTerminating", "Warning"),
            (state_change("i-0abc", "terminated"), InstanceTerminating, "InstanceTerminating", "Warning"),
        ],
    )
    def test_event_per_kind(self, body, event_type, reason, event_kind):
        event = classify(message(body)).event_for("node-a", "i-0abc")

        assert event == event_type(node="node-a", instance_id="i-0abc")
        assert event.type == event_kind
        assert event.reason == reason
        assert "node-a" in event.message

    def test_non_terminal_state_has_no_event(self):
        assert classify(message(state_change("i-0abc", "running"))).event_for("node-a", "i-0abc") is None
