"""Offline Classification Example.

Shows how raw queue messages map to notification kinds and node events,
without touching AWS or a cluster.
"""

import json

from reclaim import classify

MESSAGES = [
    {
        "source": "aws.ec2",
        "detail-type": "EC2 Instance State-change Notification",
        "detail": {"instance-id": "i-0123456789abcdef0", "state": "stopping"},
    },
    {
        "source": "aws.health",
        "detail-type": "AWS Health Event",
        "detail": {
            "service": "EC2",
            "eventTypeCategory": "scheduledChange",
            "affectedEntities": [{"entityValue": "i-0123456789abcdef0"}, {"entityValue": "i-0fedcba9876543210"}],
        },
    },
    {"source": "aws.s3", "detail-type": "Object Created", "detail": {}},
]


if __name__ == "__main__":
    for n, body in enumerate(MESSAGES):
        notification = classify({"MessageId": f"m-{n}", "ReceiptHandle": f"r-{n}", "Body": json.dumps(body)})
        print(f"{notification.message_id}: {notification.kind} -> {list(notification.instance_ids)}")
        for instance_id in notification.instance_ids:
            event = notification.event_for(f"node-{instance_id}", instance_id)
            if event is not None:
                print(f"    [{event.type}] {event.reason}")
